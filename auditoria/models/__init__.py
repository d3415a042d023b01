"""SQLAlchemy models for the audit engine."""

from auditoria.models.authorization import (
    AuthorizationConsumptionRecord,
    AuthorizationRecord,
    AuthorizationServiceRecord,
)
from auditoria.models.base import Base, TimeStampedModel, UUIDModel
from auditoria.models.radicado import RadicadoRecord
from auditoria.models.reference import (
    ClinicalCompatibilityRecord,
    ContractRecord,
    HabilitationRecordRow,
    ModeratingFeeRecord,
    TariffCatalogRecord,
)
from auditoria.models.rule import (
    RuleApplicationPassRecord,
    RuleApplicationRecord,
    RuleRecord,
)

__all__ = [
    "AuthorizationConsumptionRecord",
    "AuthorizationRecord",
    "AuthorizationServiceRecord",
    "Base",
    "ClinicalCompatibilityRecord",
    "ContractRecord",
    "HabilitationRecordRow",
    "ModeratingFeeRecord",
    "RadicadoRecord",
    "RuleApplicationPassRecord",
    "RuleApplicationRecord",
    "RuleRecord",
    "TariffCatalogRecord",
    "TimeStampedModel",
    "UUIDModel",
]
