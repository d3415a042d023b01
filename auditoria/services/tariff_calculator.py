"""
Tariff and Copay Calculator.

Provides:
- Contract resolution for (payer, provider, service date)
- Expected pacted value: pacted tariff > category multiplier > global factor
- Moderating fee (cuota moderadora) with exemptions and caps
- Copay (copago) from the contract table

The calculation functions are pure; `TariffCalculator` only adds the
repository lookups around them.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from auditoria.core.config import get_audit_settings
from auditoria.core.enums import (
    CareType,
    Exemption,
    IncomeCategory,
    Regimen,
    ServiceType,
    TariffSchedule,
)
from auditoria.repositories.base import ReferenceDataRepository
from auditoria.schemas.radicado import PatientProfile
from auditoria.schemas.reference import (
    Contract,
    ModeratingFeeRow,
    TariffCatalogEntry,
)
from auditoria.utils.errors import ReferenceDataMissingError
from auditoria.utils.text import normalize_label

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
UNITS = Decimal("1")

CARE_TYPE_SERVICE: dict[CareType, ServiceType] = {
    CareType.EMERGENCY: ServiceType.EMERGENCY_CONSULTATION,
    CareType.OUTPATIENT: ServiceType.GENERAL_CONSULTATION,
    CareType.INPATIENT: ServiceType.HOSPITALIZATION,
    CareType.SURGICAL: ServiceType.SURGICAL_PROCEDURE,
}


def money(value: Decimal) -> Decimal:
    """Round a COP amount to cents."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class TariffQuote:
    """Expected value of one procedure unit and how it was derived."""

    procedure_code: str
    expected_value: Decimal
    basis: str  # pacted | category | global | default
    reference_value: Optional[Decimal] = None
    factor: Optional[Decimal] = None
    contract_id: Optional[str] = None


# =============================================================================
# Contract Resolution
# =============================================================================


def resolve_contract(
    contracts: Iterable[Contract],
    payer_nit: str,
    provider_nit: Optional[str],
    service_date: date,
) -> Optional[Contract]:
    """
    Contract valid on `service_date` for a payer and provider.

    A provider-scoped contract wins over the payer-wide default. If several
    remain at the same specificity, the one that started most recently wins.
    """
    candidates = [
        c
        for c in contracts
        if c.payer_nit == payer_nit
        and c.is_valid_on(service_date)
        and (c.provider_nit is None or c.provider_nit == provider_nit)
    ]
    if not candidates:
        return None

    scoped = [c for c in candidates if c.provider_nit is not None]
    pool = scoped or candidates
    pool.sort(key=lambda c: (c.start_date, c.created_at), reverse=True)
    if len(pool) > 1:
        logger.warning(
            f"{len(pool)} contracts match payer {payer_nit} / provider {provider_nit} "
            f"on {service_date}; using '{pool[0].name}'"
        )
    return pool[0]


# =============================================================================
# Expected Value
# =============================================================================


def expected_value(
    tariff: TariffCatalogEntry,
    contract: Optional[Contract],
    service_date: date,
    default_factor: Decimal = Decimal("1.0"),
) -> TariffQuote:
    """
    Expected pacted value of one unit of a procedure.

    Precedence: procedure-specific pacted value valid on the date, then the
    multiplier of the procedure's category, then the contract global factor.
    Without a contract the reference tariff is multiplied by `default_factor`.
    """
    if contract is None:
        return TariffQuote(
            procedure_code=tariff.code,
            expected_value=money(tariff.value * default_factor),
            basis="default",
            reference_value=tariff.value,
            factor=default_factor,
        )

    for pacted in contract.pacted_tariffs:
        if pacted.procedure_code == tariff.code and pacted.is_valid_on(service_date):
            return TariffQuote(
                procedure_code=tariff.code,
                expected_value=money(pacted.value),
                basis="pacted",
                reference_value=tariff.value,
                contract_id=str(contract.id),
            )

    category = normalize_label(tariff.category)
    for rule in contract.category_multipliers:
        if normalize_label(rule.category) == category:
            return TariffQuote(
                procedure_code=tariff.code,
                expected_value=money(tariff.value * rule.multiplier),
                basis="category",
                reference_value=tariff.value,
                factor=rule.multiplier,
                contract_id=str(contract.id),
            )

    return TariffQuote(
        procedure_code=tariff.code,
        expected_value=money(tariff.value * contract.global_factor),
        basis="global",
        reference_value=tariff.value,
        factor=contract.global_factor,
        contract_id=str(contract.id),
    )


def variance(billed_unit: Decimal, expected: Decimal) -> Decimal:
    """Relative variance (billed - expected) / expected."""
    if expected == 0:
        return Decimal("0") if billed_unit == 0 else Decimal("1")
    return (billed_unit - expected) / expected


# =============================================================================
# Moderating Fee and Copay
# =============================================================================


def exemption_matches(exemption: Exemption, profile: Optional[PatientProfile]) -> bool:
    if exemption == Exemption.ALL:
        return True
    if profile is None:
        return False
    if exemption == Exemption.UNDER_ONE_YEAR:
        return profile.age_years is not None and profile.age_years < 1
    if exemption == Exemption.PREGNANT:
        return profile.pregnant
    if exemption == Exemption.DISPLACED:
        return profile.displaced
    if exemption == Exemption.CONFLICT_VICTIM:
        return profile.conflict_victim
    return False


def moderating_fee(
    row: ModeratingFeeRow,
    profile: Optional[PatientProfile],
    minimum_wage: Decimal,
) -> Decimal:
    """
    Fee charged by one cuota moderadora row.

    Zero when any exemption matches; otherwise a fixed value if set, else a
    percentage of the minimum wage rounded to whole pesos. A cap, when set,
    is never exceeded.
    """
    if any(exemption_matches(e, profile) for e in row.exemptions):
        return Decimal("0")

    if row.fixed_value > 0:
        fee = row.fixed_value
    elif row.percentage:
        wage = row.minimum_wage or minimum_wage
        fee = (wage * row.percentage / 100).quantize(UNITS, rounding=ROUND_HALF_UP)
    else:
        return Decimal("0")

    if row.cap is not None:
        fee = min(fee, row.cap)
    return money(fee)


def copay(
    contract: Optional[Contract],
    regimen: Regimen,
    category: IncomeCategory,
    billed_value: Decimal,
) -> Decimal:
    """Copay from the contract table; zero when no row applies."""
    if contract is None:
        return Decimal("0")
    for row in contract.copays:
        if row.regimen == regimen and row.category == category:
            amount = billed_value * row.percentage / 100
            if row.cap is not None:
                amount = min(amount, row.cap)
            return money(amount)
    return Decimal("0")


# =============================================================================
# Calculator Service
# =============================================================================


class TariffCalculator:
    """Resolves reference data and applies the pure tariff functions."""

    def __init__(
        self,
        reference: ReferenceDataRepository,
        default_factor: Optional[Decimal] = None,
        minimum_wage: Optional[Decimal] = None,
    ):
        settings = get_audit_settings()
        self._reference = reference
        self._default_factor = (
            settings.DEFAULT_GLOBAL_FACTOR if default_factor is None else default_factor
        )
        self._minimum_wage = settings.MINIMUM_WAGE if minimum_wage is None else minimum_wage

    async def find_contract(
        self,
        payer_nit: str,
        provider_nit: Optional[str],
        service_date: date,
    ) -> Optional[Contract]:
        contracts = await self._reference.list_contracts(payer_nit)
        contract = resolve_contract(contracts, payer_nit, provider_nit, service_date)
        if contract is None:
            logger.warning(
                f"No active contract for payer {payer_nit} on {service_date}; "
                f"using factor {self._default_factor}"
            )
        return contract

    async def find_tariff(
        self, procedure_code: str, contract: Optional[Contract]
    ) -> TariffCatalogEntry:
        """
        Reference tariff for a procedure in the contract's schedule.

        Custom schedules are priced against ISS-2004.

        Raises:
            ReferenceDataMissingError: procedure not in the catalog
        """
        schedule = contract.tariff_schedule if contract else TariffSchedule.ISS_2004
        if schedule == TariffSchedule.CUSTOM:
            schedule = TariffSchedule.ISS_2004
        tariff = await self._reference.get_tariff(procedure_code, schedule)
        if tariff is None:
            raise ReferenceDataMissingError("tariff", f"{schedule.value}:{procedure_code}")
        return tariff

    async def quote(
        self,
        procedure_code: str,
        payer_nit: str,
        provider_nit: Optional[str],
        service_date: date,
    ) -> TariffQuote:
        """Expected value of a procedure for a payer/provider on a date."""
        contract = await self.find_contract(payer_nit, provider_nit, service_date)
        tariff = await self.find_tariff(procedure_code, contract)
        return expected_value(tariff, contract, service_date, self._default_factor)

    def quote_tariff(
        self,
        tariff: TariffCatalogEntry,
        contract: Optional[Contract],
        service_date: date,
    ) -> TariffQuote:
        """Expected value when contract and tariff are already resolved."""
        return expected_value(tariff, contract, service_date, self._default_factor)

    async def moderating_fee(
        self,
        regimen: Regimen,
        category: IncomeCategory,
        service_type: ServiceType,
        profile: Optional[PatientProfile],
        contract: Optional[Contract] = None,
    ) -> Decimal:
        """
        Moderating fee for a patient.

        Contract rows take precedence over the standalone schedule.

        Raises:
            ReferenceDataMissingError: no row for the key
        """
        rows = [
            r
            for r in (contract.moderating_fees if contract else [])
            if r.active
            and r.regimen == regimen
            and r.category == category
            and r.service_type == service_type
        ]
        if not rows:
            rows = [
                r
                for r in await self._reference.list_moderating_fees(regimen, category, service_type)
                if r.active
            ]
        if not rows:
            raise ReferenceDataMissingError(
                "moderating_fee", f"{regimen.value}/{category.value}/{service_type.value}"
            )
        row = max(rows, key=lambda r: r.year or 0)
        return moderating_fee(row, profile, self._minimum_wage)

    def copay(
        self,
        contract: Optional[Contract],
        regimen: Regimen,
        category: IncomeCategory,
        billed_value: Decimal,
    ) -> Decimal:
        return copay(contract, regimen, category, billed_value)
