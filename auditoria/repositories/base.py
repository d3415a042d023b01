"""
Repository Interfaces.

Abstract persistence seams for the audit engine. Two implementations exist:
in-memory (demo mode, also used by tests) and SQLAlchemy (live mode).
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Optional
from uuid import UUID

from auditoria.core.enums import (
    IncomeCategory,
    RadicadoStatus,
    Regimen,
    RuleType,
    ServiceType,
    TariffSchedule,
)
from auditoria.schemas.authorization import Authorization, AuthorizationConsumption
from auditoria.schemas.radicado import Radicado
from auditoria.schemas.reference import (
    ClinicalCompatibility,
    Contract,
    HabilitationRecord,
    ModeratingFeeRow,
    TariffCatalogEntry,
)
from auditoria.schemas.rule import Rule, RuleApplication, RuleUsageStats


class ReferenceDataRepository(ABC):
    """Read-mostly reference data: catalog, contracts, fees, habilitations."""

    @abstractmethod
    async def get_tariff(
        self, code: str, schedule: TariffSchedule = TariffSchedule.ISS_2004
    ) -> Optional[TariffCatalogEntry]:
        """Reference tariff for a procedure code in a schedule."""
        pass

    @abstractmethod
    async def list_contracts(self, payer_nit: str) -> list[Contract]:
        """All contracts of a payer, any provider scope or validity."""
        pass

    @abstractmethod
    async def list_moderating_fees(
        self,
        regimen: Regimen,
        category: IncomeCategory,
        service_type: ServiceType,
    ) -> list[ModeratingFeeRow]:
        """Standalone moderating fee rows for a key."""
        pass

    @abstractmethod
    async def list_habilitations(self, provider_nit: str) -> list[HabilitationRecord]:
        """Habilitation records of a provider."""
        pass

    @abstractmethod
    async def list_clinical_compatibility(self) -> list[ClinicalCompatibility]:
        """Procedure/diagnosis compatibility table."""
        pass


class RadicadoRepository(ABC):
    """Radicado persistence with optimistic versioning."""

    @abstractmethod
    async def add(self, radicado: Radicado) -> Radicado:
        """Insert a new radicado; the number must be unique."""
        pass

    @abstractmethod
    async def get(self, radicado_id: UUID) -> Optional[Radicado]:
        pass

    @abstractmethod
    async def get_by_number(self, number: str) -> Optional[Radicado]:
        pass

    @abstractmethod
    async def save(self, radicado: Radicado, expected_version: int) -> Radicado:
        """
        Replace a radicado if its stored version equals `expected_version`.

        Returns the radicado with its version incremented.

        Raises:
            ConcurrencyConflictError: the stored version moved on
        """
        pass

    @abstractmethod
    async def list_radicados(
        self,
        status: Optional[RadicadoStatus] = None,
        offset: int = 0,
        limit: int = 100,
    ) -> list[Radicado]:
        pass


class AuthorizationRepository(ABC):
    """Authorization persistence; consumption must be atomic per authorization."""

    @abstractmethod
    async def add(self, authorization: Authorization) -> Authorization:
        pass

    @abstractmethod
    async def get_by_number(self, number: str) -> Optional[Authorization]:
        pass

    @abstractmethod
    async def save(self, authorization: Authorization) -> Authorization:
        """Persist status and metadata changes (not quantities)."""
        pass

    @abstractmethod
    async def consume(
        self,
        number: str,
        procedure_code: str,
        radicado_id: UUID,
        line_number: int,
        quantity: int,
    ) -> Authorization:
        """
        Set the units held by one radicado line item.

        Raises:
            AuthorizationNotFoundError: unknown number
            AuthorizationConsumptionError: the budget would be exceeded
        """
        pass

    @abstractmethod
    async def list_consumptions(
        self, radicado_id: UUID
    ) -> list[tuple[str, AuthorizationConsumption]]:
        """(authorization number, consumption) pairs held by a radicado."""
        pass

    @abstractmethod
    async def list_expiring(self, as_of: date) -> list[Authorization]:
        """Active authorizations whose expiry date is before `as_of`."""
        pass


class RuleRepository(ABC):
    """Rule persistence plus the append-only application log."""

    @abstractmethod
    async def add(self, rule: Rule) -> Rule:
        """Insert a rule, assigning its creation sequence."""
        pass

    @abstractmethod
    async def get(self, rule_id: UUID) -> Optional[Rule]:
        pass

    @abstractmethod
    async def save(self, rule: Rule) -> Rule:
        pass

    @abstractmethod
    async def delete(self, rule_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_rules(
        self,
        active_only: bool = False,
        rule_type: Optional[RuleType] = None,
    ) -> list[Rule]:
        """Rules ordered by (priority, sequence)."""
        pass

    @abstractmethod
    async def record_pass(
        self,
        radicado_id: UUID,
        pass_id: UUID,
        applications: list[RuleApplication],
    ) -> None:
        """Append a pass's applications and make it the radicado's latest pass."""
        pass

    @abstractmethod
    async def usage_stats(self) -> dict[UUID, RuleUsageStats]:
        """
        Usage per rule, counting only each radicado's latest pass.

        Re-running a radicado therefore replaces its contribution instead of
        adding to it.
        """
        pass

    @abstractmethod
    async def list_applications(self, rule_id: UUID) -> list[RuleApplication]:
        """Full application history of a rule (every pass)."""
        pass
