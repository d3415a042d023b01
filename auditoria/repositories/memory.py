"""
In-Memory Repositories.

Demo-mode storage backed by dictionaries. Records are copied on the way in and
out so callers never share mutable state with the store.
"""

from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from auditoria.core.enums import (
    AuthorizationStatus,
    IncomeCategory,
    RadicadoStatus,
    Regimen,
    RuleType,
    ServiceType,
    TariffSchedule,
)
from auditoria.repositories.base import (
    AuthorizationRepository,
    RadicadoRepository,
    ReferenceDataRepository,
    RuleRepository,
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
from auditoria.services.authorization_ledger import apply_consumption
from auditoria.utils.errors import (
    AuthorizationNotFoundError,
    ConcurrencyConflictError,
    DuplicateRecordError,
)


class InMemoryReferenceDataRepository(ReferenceDataRepository):
    """Reference data held in lists; seed with `load()`."""

    def __init__(self):
        self._tariffs: dict[tuple[TariffSchedule, str], TariffCatalogEntry] = {}
        self._contracts: list[Contract] = []
        self._fees: list[ModeratingFeeRow] = []
        self._habilitations: list[HabilitationRecord] = []
        self._compatibility: list[ClinicalCompatibility] = []

    def load(
        self,
        tariffs: Iterable[TariffCatalogEntry] = (),
        contracts: Iterable[Contract] = (),
        moderating_fees: Iterable[ModeratingFeeRow] = (),
        habilitations: Iterable[HabilitationRecord] = (),
        clinical_compatibility: Iterable[ClinicalCompatibility] = (),
    ) -> "InMemoryReferenceDataRepository":
        for entry in tariffs:
            self._tariffs[(entry.schedule, entry.code)] = entry
        self._contracts.extend(contracts)
        self._fees.extend(moderating_fees)
        self._habilitations.extend(habilitations)
        self._compatibility.extend(clinical_compatibility)
        return self

    async def get_tariff(
        self, code: str, schedule: TariffSchedule = TariffSchedule.ISS_2004
    ) -> Optional[TariffCatalogEntry]:
        return self._tariffs.get((schedule, code))

    async def list_contracts(self, payer_nit: str) -> list[Contract]:
        return [c.model_copy(deep=True) for c in self._contracts if c.payer_nit == payer_nit]

    async def list_moderating_fees(
        self,
        regimen: Regimen,
        category: IncomeCategory,
        service_type: ServiceType,
    ) -> list[ModeratingFeeRow]:
        return [
            row
            for row in self._fees
            if row.regimen == regimen
            and row.category == category
            and row.service_type == service_type
        ]

    async def list_habilitations(self, provider_nit: str) -> list[HabilitationRecord]:
        return [h for h in self._habilitations if h.provider_nit == provider_nit]

    async def list_clinical_compatibility(self) -> list[ClinicalCompatibility]:
        return list(self._compatibility)


class InMemoryRadicadoRepository(RadicadoRepository):
    """Radicados keyed by id with a version check on save."""

    def __init__(self):
        self._items: dict[UUID, Radicado] = {}

    async def add(self, radicado: Radicado) -> Radicado:
        if any(r.number == radicado.number for r in self._items.values()):
            raise DuplicateRecordError("Radicado", radicado.number)
        self._items[radicado.id] = radicado.model_copy(deep=True)
        return radicado.model_copy(deep=True)

    async def get(self, radicado_id: UUID) -> Optional[Radicado]:
        stored = self._items.get(radicado_id)
        return stored.model_copy(deep=True) if stored else None

    async def get_by_number(self, number: str) -> Optional[Radicado]:
        for stored in self._items.values():
            if stored.number == number:
                return stored.model_copy(deep=True)
        return None

    async def save(self, radicado: Radicado, expected_version: int) -> Radicado:
        stored = self._items.get(radicado.id)
        actual = stored.version if stored else None
        if actual != expected_version:
            raise ConcurrencyConflictError(str(radicado.id), expected_version, actual)
        saved = radicado.model_copy(
            deep=True,
            update={
                "version": expected_version + 1,
                "updated_at": datetime.now(timezone.utc),
            },
        )
        self._items[radicado.id] = saved
        return saved.model_copy(deep=True)

    async def list_radicados(
        self,
        status: Optional[RadicadoStatus] = None,
        offset: int = 0,
        limit: int = 100,
    ) -> list[Radicado]:
        items = sorted(self._items.values(), key=lambda r: r.created_at)
        if status is not None:
            items = [r for r in items if r.status == status]
        return [r.model_copy(deep=True) for r in items[offset : offset + limit]]


class InMemoryAuthorizationRepository(AuthorizationRepository):
    """Authorizations keyed by number."""

    def __init__(self):
        self._items: dict[str, Authorization] = {}

    def load(self, authorizations: Iterable[Authorization]) -> "InMemoryAuthorizationRepository":
        for authorization in authorizations:
            self._items[authorization.number] = authorization.model_copy(deep=True)
        return self

    async def add(self, authorization: Authorization) -> Authorization:
        if authorization.number in self._items:
            raise DuplicateRecordError("Authorization", authorization.number)
        self._items[authorization.number] = authorization.model_copy(deep=True)
        return authorization.model_copy(deep=True)

    async def get_by_number(self, number: str) -> Optional[Authorization]:
        stored = self._items.get(number)
        return stored.model_copy(deep=True) if stored else None

    async def save(self, authorization: Authorization) -> Authorization:
        stored = self._items.get(authorization.number)
        if stored is None:
            raise AuthorizationNotFoundError(authorization.number)
        # Quantities only change through consume()
        updated = authorization.model_copy(
            deep=True,
            update={"services": stored.services, "consumptions": stored.consumptions},
        )
        self._items[authorization.number] = updated
        return updated.model_copy(deep=True)

    async def consume(
        self,
        number: str,
        procedure_code: str,
        radicado_id: UUID,
        line_number: int,
        quantity: int,
    ) -> Authorization:
        stored = self._items.get(number)
        if stored is None:
            raise AuthorizationNotFoundError(number)
        updated = apply_consumption(stored, procedure_code, radicado_id, line_number, quantity)
        self._items[number] = updated
        return updated.model_copy(deep=True)

    async def list_consumptions(
        self, radicado_id: UUID
    ) -> list[tuple[str, AuthorizationConsumption]]:
        return [
            (number, consumption.model_copy())
            for number, authorization in self._items.items()
            for consumption in authorization.consumptions
            if consumption.radicado_id == radicado_id
        ]

    async def list_expiring(self, as_of: date) -> list[Authorization]:
        return [
            a.model_copy(deep=True)
            for a in self._items.values()
            if a.status == AuthorizationStatus.ACTIVE and a.expiry_date < as_of
        ]


def aggregate_usage(
    applications: Iterable[RuleApplication],
    latest_pass: dict[UUID, UUID],
) -> dict[UUID, RuleUsageStats]:
    """Fold an application log into per-rule stats, latest pass per radicado only."""
    stats: defaultdict[UUID, RuleUsageStats] = defaultdict(RuleUsageStats)
    for app in applications:
        if latest_pass.get(app.radicado_id) != app.pass_id:
            continue
        entry = stats[app.rule_id]
        entry.times_applied += 1
        entry.amount_affected += app.amount_affected
        entry.glosas_avoided += app.glosas_avoided
        if entry.last_applied_at is None or app.applied_at > entry.last_applied_at:
            entry.last_applied_at = app.applied_at
    return dict(stats)


class InMemoryRuleRepository(RuleRepository):
    """Rules and their application log."""

    def __init__(self):
        self._rules: dict[UUID, Rule] = {}
        self._sequence = 0
        self._applications: list[RuleApplication] = []
        self._latest_pass: dict[UUID, UUID] = {}

    async def add(self, rule: Rule) -> Rule:
        self._sequence += 1
        stored = rule.model_copy(deep=True, update={"sequence": self._sequence})
        self._rules[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get(self, rule_id: UUID) -> Optional[Rule]:
        stored = self._rules.get(rule_id)
        return stored.model_copy(deep=True) if stored else None

    async def save(self, rule: Rule) -> Rule:
        self._rules[rule.id] = rule.model_copy(deep=True)
        return rule.model_copy(deep=True)

    async def delete(self, rule_id: UUID) -> bool:
        return self._rules.pop(rule_id, None) is not None

    async def list_rules(
        self,
        active_only: bool = False,
        rule_type: Optional[RuleType] = None,
    ) -> list[Rule]:
        rules = [
            r
            for r in self._rules.values()
            if (not active_only or r.active) and (rule_type is None or r.rule_type == rule_type)
        ]
        return [r.model_copy(deep=True) for r in sorted(rules, key=lambda r: r.sort_key)]

    async def record_pass(
        self,
        radicado_id: UUID,
        pass_id: UUID,
        applications: list[RuleApplication],
    ) -> None:
        self._applications.extend(a.model_copy() for a in applications)
        self._latest_pass[radicado_id] = pass_id

    async def usage_stats(self) -> dict[UUID, RuleUsageStats]:
        return aggregate_usage(self._applications, self._latest_pass)

    async def list_applications(self, rule_id: UUID) -> list[RuleApplication]:
        return [a.model_copy() for a in self._applications if a.rule_id == rule_id]


__all__ = [
    "InMemoryAuthorizationRepository",
    "InMemoryRadicadoRepository",
    "InMemoryReferenceDataRepository",
    "InMemoryRuleRepository",
    "aggregate_usage",
]
