"""Pydantic domain schemas."""

from auditoria.schemas.authorization import (
    Authorization,
    AuthorizationCheck,
    AuthorizationConsumption,
    AuthorizedService,
)
from auditoria.schemas.radicado import (
    AppliedRule,
    Document,
    ExternalQueryAttempt,
    Glosa,
    LineItem,
    Liquidation,
    PatientProfile,
    Radicado,
    RadicadoCreate,
    StatusChange,
    Validation,
)
from auditoria.schemas.reference import (
    CategoryMultiplier,
    ClinicalCompatibility,
    Contract,
    CopayRow,
    HabilitationRecord,
    ModeratingFeeRow,
    PactedTariff,
    TariffCatalogEntry,
)
from auditoria.schemas.rule import (
    Rule,
    RuleApplication,
    RuleCreate,
    RuleInterpretation,
    RulePreview,
    RuleUpdate,
)

__all__ = [
    "AppliedRule",
    "Authorization",
    "AuthorizationCheck",
    "AuthorizationConsumption",
    "AuthorizedService",
    "CategoryMultiplier",
    "ClinicalCompatibility",
    "Contract",
    "CopayRow",
    "Document",
    "ExternalQueryAttempt",
    "Glosa",
    "HabilitationRecord",
    "LineItem",
    "Liquidation",
    "ModeratingFeeRow",
    "PactedTariff",
    "PatientProfile",
    "Radicado",
    "RadicadoCreate",
    "Rule",
    "RuleApplication",
    "RuleCreate",
    "RuleInterpretation",
    "RulePreview",
    "RuleUpdate",
    "StatusChange",
    "TariffCatalogEntry",
    "Validation",
]
