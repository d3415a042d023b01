"""
Pydantic Schemas for Billing Rules.

Rule actions are a closed tagged union. An interpretation that does not parse
into one of the known kinds is rejected when the rule is created or edited;
the engine only ever sees validated actions.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from auditoria.core.enums import (
    ConditionOperator,
    IncomeCategory,
    Regimen,
    RuleActionKind,
    RuleScopeKind,
    RuleType,
    ValidationType,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Actions
# =============================================================================


class SuppressGlosaBelow(BaseModel):
    """Drop glosas whose amount is below a threshold."""

    kind: Literal["suppress_glosa_below"] = "suppress_glosa_below"
    threshold: Decimal = Field(..., gt=0)


class CapGlosaAmount(BaseModel):
    """Reduce glosa amounts to a ceiling."""

    kind: Literal["cap_glosa_amount"] = "cap_glosa_amount"
    max_amount: Decimal = Field(..., ge=0)


class RequireAuthorizationFor(BaseModel):
    """Demand an authorization for a procedure category that normally needs none."""

    kind: Literal["require_authorization_for"] = "require_authorization_for"
    procedure_category: str = Field(..., min_length=1)


class PatientPredicate(BaseModel):
    """Patient profile match; every populated field must hold."""

    min_age: Optional[int] = Field(None, ge=0)
    max_age: Optional[int] = Field(None, ge=0)
    pregnant: Optional[bool] = None
    displaced: Optional[bool] = None
    conflict_victim: Optional[bool] = None
    regimen: Optional[Regimen] = None
    income_category: Optional[IncomeCategory] = None

    @model_validator(mode="after")
    def check_not_empty(self) -> "PatientPredicate":
        if all(value is None for value in self.model_dump().values()):
            raise ValueError("patient predicate needs at least one criterion")
        return self


class ExemptPatientProfile(BaseModel):
    """Exempt failing validations of patients matching a predicate."""

    kind: Literal["exempt_patient_profile"] = "exempt_patient_profile"
    predicate: PatientPredicate


class SkipValidation(BaseModel):
    """Treat a validation type as passed."""

    kind: Literal["skip_validation"] = "skip_validation"
    validation_type: ValidationType


class WidenTariffTolerance(BaseModel):
    """Accept tariff variances up to a percentage."""

    kind: Literal["widen_tariff_tolerance"] = "widen_tariff_tolerance"
    percentage: Decimal = Field(..., gt=0, le=100)


RuleAction = Annotated[
    Union[
        SuppressGlosaBelow,
        CapGlosaAmount,
        RequireAuthorizationFor,
        ExemptPatientProfile,
        SkipValidation,
        WidenTariffTolerance,
    ],
    Field(discriminator="kind"),
]


# Action kinds admitted by each declared rule type
ACTIONS_BY_RULE_TYPE: dict[RuleType, frozenset[RuleActionKind]] = {
    RuleType.GLOSA: frozenset({
        RuleActionKind.SUPPRESS_GLOSA_BELOW,
        RuleActionKind.CAP_GLOSA_AMOUNT,
        RuleActionKind.EXEMPT_PATIENT_PROFILE,
    }),
    RuleType.AUTHORIZATION: frozenset({
        RuleActionKind.REQUIRE_AUTHORIZATION_FOR,
        RuleActionKind.SKIP_VALIDATION,
        RuleActionKind.EXEMPT_PATIENT_PROFILE,
    }),
    RuleType.VALUE: frozenset({
        RuleActionKind.SUPPRESS_GLOSA_BELOW,
        RuleActionKind.CAP_GLOSA_AMOUNT,
        RuleActionKind.WIDEN_TARIFF_TOLERANCE,
    }),
    RuleType.DATE: frozenset({RuleActionKind.SKIP_VALIDATION}),
    RuleType.SERVICE: frozenset({
        RuleActionKind.SKIP_VALIDATION,
        RuleActionKind.REQUIRE_AUTHORIZATION_FOR,
    }),
    RuleType.GENERAL: frozenset(RuleActionKind),
}


# =============================================================================
# Conditions and Scope
# =============================================================================

# Line-item attributes a condition may reference
CONDITION_FIELDS: frozenset[str] = frozenset({
    "billed_value",
    "unit_value",
    "expected_value",
    "glosa_amount",
    "quantity",
    "procedure_code",
    "procedure_name",
    "procedure_category",
    "diagnosis_code",
    "care_type",
    "service_type",
    "authorization_number",
    "value_range",
    "payer_nit",
    "provider_nit",
})


class RuleCondition(BaseModel):
    """Condition over a line-item field; all conditions of a rule are AND-ed."""

    field: str = Field(..., min_length=1)
    operator: ConditionOperator
    value: Optional[Any] = None
    value_max: Optional[Any] = None

    @model_validator(mode="after")
    def check_operands(self) -> "RuleCondition":
        if self.field not in CONDITION_FIELDS:
            raise ValueError(f"unknown condition field: {self.field}")
        needs_value = self.operator not in (
            ConditionOperator.EXISTS,
            ConditionOperator.NOT_EXISTS,
        )
        if needs_value and self.value is None:
            raise ValueError(f"operator {self.operator.value} requires a value")
        if self.operator == ConditionOperator.BETWEEN and self.value_max is None:
            raise ValueError("operator between requires value_max")
        return self


class RuleScope(BaseModel):
    """Where a rule applies (ambito)."""

    kind: RuleScopeKind = RuleScopeKind.GLOBAL
    value: Optional[str] = None

    @model_validator(mode="after")
    def check_value(self) -> "RuleScope":
        if self.kind != RuleScopeKind.GLOBAL and not self.value:
            raise ValueError(f"scope {self.kind.value} requires a value")
        return self


# =============================================================================
# Interpretation
# =============================================================================


class RuleInterpretation(BaseModel):
    """Structured result of interpreting a rule description."""

    action: RuleAction
    conditions: list[RuleCondition] = Field(default_factory=list)
    confidence: float = Field(..., ge=0, le=100)
    explanation: str = ""
    processed_by: str = "llm"
    processed_at: datetime = Field(default_factory=_utcnow)

    @property
    def action_kind(self) -> RuleActionKind:
        return RuleActionKind(self.action.kind)


class RulePreview(BaseModel):
    """Interpretation preview returned without persisting anything."""

    description: str
    rule_type: RuleType
    interpretation: Optional[RuleInterpretation] = None
    is_valid: bool
    errors: list[str] = Field(default_factory=list)

    @property
    def confidence(self) -> Optional[float]:
        return self.interpretation.confidence if self.interpretation else None


# =============================================================================
# Rule
# =============================================================================


class RuleChange(BaseModel):
    """Entry in a rule's change history."""

    at: datetime = Field(default_factory=_utcnow)
    by: Optional[str] = None
    change: str
    previous_description: Optional[str] = None


class RuleUsageStats(BaseModel):
    """Usage statistics derived from the application log."""

    times_applied: int = 0
    amount_affected: Decimal = Decimal("0")
    glosas_avoided: int = 0
    last_applied_at: Optional[datetime] = None


class RuleCreate(BaseModel):
    """Data required to author a rule."""

    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    rule_type: RuleType
    priority: Optional[int] = None
    active: bool = True
    scope: RuleScope = Field(default_factory=RuleScope)
    created_by: Optional[str] = None


class RuleUpdate(BaseModel):
    """Partial update of a rule."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1, max_length=2000)
    rule_type: Optional[RuleType] = None
    priority: Optional[int] = None
    scope: Optional[RuleScope] = None


class Rule(BaseModel):
    """Administrator-authored billing rule (regla de facturación)."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    name: str
    description: str
    rule_type: RuleType
    active: bool = False
    priority: int = 100
    sequence: int = Field(0, description="Creation order; breaks priority ties")
    scope: RuleScope = Field(default_factory=RuleScope)
    interpretation: Optional[RuleInterpretation] = None
    interpretation_errors: list[str] = Field(default_factory=list)
    change_history: list[RuleChange] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    stats: RuleUsageStats = Field(default_factory=RuleUsageStats)

    @property
    def is_interpretation_valid(self) -> bool:
        return self.interpretation is not None and not self.interpretation_errors

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.priority, self.sequence)


class RuleApplication(BaseModel):
    """Append-only log entry: one rule effect on one radicado item."""

    id: UUID = Field(default_factory=uuid4)
    rule_id: UUID
    radicado_id: UUID
    pass_id: UUID
    line_number: Optional[int] = None
    action: RuleActionKind
    amount_affected: Decimal = Decimal("0")
    glosas_avoided: int = 0
    applied_at: datetime = Field(default_factory=_utcnow)


class RuleExample(BaseModel):
    """Canned example shown to rule authors."""

    name: str
    description: str
    rule_type: RuleType
