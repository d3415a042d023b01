"""
Pydantic Schemas for Reference Data.

Provides:
- Tariff catalog entries (ISS-2004 style reference schedule)
- Payer/provider contracts (convenios) with pacted values, category
  multipliers, copay and moderating-fee tables
- Standalone moderating fee schedule rows (cuotas moderadoras)
- Provider habilitation records
- Procedure/diagnosis compatibility entries
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from auditoria.core.enums import (
    ContractType,
    Exemption,
    IncomeCategory,
    Regimen,
    ServiceType,
    TariffSchedule,
)


def _within(day: date, start: Optional[date], end: Optional[date]) -> bool:
    """Inclusive window check; a missing bound is open."""
    if start is not None and day < start:
        return False
    if end is not None and day > end:
        return False
    return True


# =============================================================================
# Tariff Catalog
# =============================================================================


class TariffCatalogEntry(BaseModel):
    """Reference tariff for one procedure code."""

    model_config = ConfigDict(from_attributes=True)

    code: str = Field(..., min_length=1, description="CUPS procedure code")
    description: str
    category: str = Field(..., description="Catalog category, e.g. 'Consulta', 'Cirugía'")
    schedule: TariffSchedule = TariffSchedule.ISS_2004
    value: Decimal = Field(..., ge=0, description="Reference value in COP")
    requires_authorization: bool = False
    service_type: Optional[ServiceType] = None


# =============================================================================
# Contract (Convenio)
# =============================================================================


class PactedTariff(BaseModel):
    """Procedure-specific value agreed in a contract."""

    procedure_code: str
    value: Decimal = Field(..., ge=0)
    description: Optional[str] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None

    def is_valid_on(self, day: date) -> bool:
        return _within(day, self.valid_from, self.valid_to)


class CategoryMultiplier(BaseModel):
    """Multiplier applied to the reference tariff of a whole category."""

    category: str
    multiplier: Decimal = Field(..., gt=0)
    specialty: Optional[str] = None


class CopayRow(BaseModel):
    """Copay (copago) entry: percentage of the billed value with optional cap."""

    regimen: Regimen
    category: IncomeCategory
    percentage: Decimal = Field(..., ge=0, le=100)
    cap: Optional[Decimal] = Field(None, ge=0)


class ModeratingFeeRow(BaseModel):
    """
    Moderating fee (cuota moderadora) keyed by regimen, category and service type.

    A fixed value greater than zero wins over the percentage. The percentage
    is applied to the reference minimum wage.
    """

    model_config = ConfigDict(from_attributes=True)

    regimen: Regimen
    category: IncomeCategory
    service_type: ServiceType
    fixed_value: Decimal = Field(default=Decimal("0"), ge=0)
    percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    cap: Optional[Decimal] = Field(None, ge=0)
    minimum_wage: Optional[Decimal] = Field(None, gt=0)
    exemptions: list[Exemption] = Field(default_factory=list)
    year: Optional[int] = None
    active: bool = True
    description: Optional[str] = None


class Contract(BaseModel):
    """Payer-provider pricing agreement (convenio de tarifas)."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    name: str
    payer_nit: str
    payer_name: Optional[str] = None
    provider_nit: Optional[str] = Field(
        None, description="Provider scope; None means payer-wide default"
    )
    contract_type: ContractType = ContractType.POS
    tariff_schedule: TariffSchedule = TariffSchedule.ISS_2004
    global_factor: Decimal = Field(default=Decimal("1.0"), gt=0)
    pacted_tariffs: list[PactedTariff] = Field(default_factory=list)
    category_multipliers: list[CategoryMultiplier] = Field(default_factory=list)
    copays: list[CopayRow] = Field(default_factory=list)
    moderating_fees: list[ModeratingFeeRow] = Field(default_factory=list)
    start_date: date
    end_date: Optional[date] = None
    active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def check_window(self) -> "Contract":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self

    def is_valid_on(self, day: date) -> bool:
        return self.active and _within(day, self.start_date, self.end_date)


# =============================================================================
# Habilitation and Clinical Compatibility
# =============================================================================


class HabilitationRecord(BaseModel):
    """Provider habilitation for a service category."""

    model_config = ConfigDict(from_attributes=True)

    provider_nit: str
    service_category: str
    code: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    active: bool = True

    def is_valid_on(self, day: date) -> bool:
        return self.active and _within(day, self.start_date, self.end_date)


class ClinicalCompatibility(BaseModel):
    """
    Diagnoses that justify a procedure (or a whole procedure category).

    Prefixes are CIE-10 codes without dots, e.g. "K35" covers "K35.8".
    """

    model_config = ConfigDict(from_attributes=True)

    procedure_code: Optional[str] = None
    procedure_category: Optional[str] = None
    allowed_diagnosis_prefixes: list[str] = Field(default_factory=list)
    excluded_diagnosis_prefixes: list[str] = Field(default_factory=list)
    description: Optional[str] = None

    @model_validator(mode="after")
    def check_target(self) -> "ClinicalCompatibility":
        if not self.procedure_code and not self.procedure_category:
            raise ValueError("procedure_code or procedure_category is required")
        return self
