"""
Pydantic Schemas for Radicados.

A radicado is one claim bundle submitted by a provider (IPS) to a payer (EPS).
It owns the validations, glosas, applied rules, liquidation and external
query attempts of its latest pipeline pass.

Validations are frozen: once the rule engine has run, effects are recorded by
adding a new validation that supersedes the previous one.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from auditoria.core.enums import (
    CareType,
    DocumentType,
    ExternalSystem,
    GlosaSource,
    GlosaType,
    IncomeCategory,
    RadicadoStatus,
    Regimen,
    ServiceType,
    ValidationType,
    ValidationVerdict,
    ValueRange,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def classify_value_range(value: Decimal) -> ValueRange:
    """Bracket a billed value: <100k, <500k, <1M, otherwise."""
    if value < Decimal("100000"):
        return ValueRange.UNDER_100K
    if value < Decimal("500000"):
        return ValueRange.UNDER_500K
    if value < Decimal("1000000"):
        return ValueRange.UNDER_1M
    return ValueRange.OVER_1M


# =============================================================================
# Intake Schemas
# =============================================================================


class Document(BaseModel):
    """Document attached to a radicado by the external uploader."""

    document_type: DocumentType
    original_name: str
    size_bytes: int
    processed: bool = False
    uploaded_at: datetime = Field(default_factory=_utcnow)


class PatientProfile(BaseModel):
    """Patient attributes relevant to fees, exemptions and rule predicates."""

    document_number: str
    name: Optional[str] = None
    age_years: Optional[int] = Field(None, ge=0)
    regimen: Optional[Regimen] = None
    income_category: Optional[IncomeCategory] = None
    pregnant: bool = False
    displaced: bool = False
    conflict_victim: bool = False


class LineItem(BaseModel):
    """One billed procedure, already extracted from the invoice."""

    line_number: int = Field(..., ge=1)
    procedure_code: str
    procedure_name: Optional[str] = None
    quantity: int = Field(default=1)
    unit_value: Decimal
    service_date: date
    diagnosis_code: Optional[str] = None
    authorization_number: Optional[str] = None
    service_type: Optional[ServiceType] = None

    @property
    def billed_value(self) -> Decimal:
        return self.unit_value * self.quantity


class RadicadoCreate(BaseModel):
    """Data handed over by intake to open a radicado."""

    number: str = Field(..., min_length=1, description="Unique claim number")
    provider_nit: str
    provider_name: Optional[str] = None
    payer_nit: str
    payer_name: Optional[str] = None
    invoice_number: str
    invoice_date: date
    billed_total: Decimal = Field(..., ge=0)
    care_type: CareType = CareType.OUTPATIENT
    service_type: Optional[ServiceType] = None
    patient: PatientProfile
    documents: list[Document] = Field(default_factory=list)
    line_items: list[LineItem] = Field(default_factory=list)
    observations: list[str] = Field(default_factory=list)


# =============================================================================
# Pipeline Output Schemas
# =============================================================================


class Validation(BaseModel):
    """One verdict from one validator for one line item."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    pass_number: int
    line_number: Optional[int] = None
    validation_type: ValidationType
    verdict: ValidationVerdict
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    supersedes: Optional[UUID] = None
    exempt: bool = False
    rule_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_failing(self) -> bool:
        return self.verdict != ValidationVerdict.APPROVED and not self.exempt


class Glosa(BaseModel):
    """Monetary objection against one line item."""

    id: UUID = Field(default_factory=uuid4)
    code: str
    description: str
    glosa_type: GlosaType
    amount: Decimal = Field(..., ge=0)
    line_number: Optional[int] = None
    validation_id: Optional[UUID] = None
    rule_id: Optional[UUID] = None
    source: GlosaSource = GlosaSource.SYSTEM
    pass_number: int = 0


class AppliedRule(BaseModel):
    """Rule effect recorded on the radicado."""

    rule_id: UUID
    rule_name: str
    action: str
    result: str
    line_number: Optional[int] = None
    amount_affected: Decimal = Decimal("0")


class Liquidation(BaseModel):
    """Financial summary of a pipeline pass."""

    billed_total: Decimal
    accepted_value: Decimal
    glosa_total: Decimal
    final_payable: Decimal
    moderating_fee: Optional[Decimal] = None
    copay: Optional[Decimal] = None
    observations: list[str] = Field(default_factory=list)
    excel_generated: bool = False
    liquidated_at: datetime = Field(default_factory=_utcnow)
    liquidated_by: Optional[str] = None
    pass_number: int = 0


class ExternalQueryAttempt(BaseModel):
    """Best-effort lookup against an external system."""

    system: ExternalSystem
    url: str
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    response: dict[str, Any] = Field(default_factory=dict)
    queried_at: datetime = Field(default_factory=_utcnow)


class StatusChange(BaseModel):
    """Entry in the radicado status history."""

    from_status: RadicadoStatus
    to_status: RadicadoStatus
    event: str
    at: datetime = Field(default_factory=_utcnow)
    triggered_by: Optional[str] = None
    reason: Optional[str] = None


# =============================================================================
# Radicado
# =============================================================================


class Radicado(RadicadoCreate):
    """Claim bundle with its pipeline state."""

    id: UUID = Field(default_factory=uuid4)
    status: RadicadoStatus = RadicadoStatus.PENDING
    validations: list[Validation] = Field(default_factory=list)
    glosas: list[Glosa] = Field(default_factory=list)
    applied_rules: list[AppliedRule] = Field(default_factory=list)
    liquidation: Optional[Liquidation] = None
    external_queries: list[ExternalQueryAttempt] = Field(default_factory=list)
    status_history: list[StatusChange] = Field(default_factory=list)
    pass_number: int = 0
    version: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def value_range(self) -> ValueRange:
        return classify_value_range(self.billed_total)

    @property
    def effective_validations(self) -> list[Validation]:
        """Validations of the latest pass that no other validation supersedes."""
        superseded = {v.supersedes for v in self.validations if v.supersedes}
        return [v for v in self.validations if v.id not in superseded]

    def line(self, line_number: int) -> Optional[LineItem]:
        for item in self.line_items:
            if item.line_number == line_number:
                return item
        return None
