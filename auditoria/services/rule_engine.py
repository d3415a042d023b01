"""
Rule Application Engine.
Source: rule stage of the radicado audit pipeline

Applies active billing rules to the draft validations and glosas of one
pass. Rules run in ascending priority, ties broken by creation order. Each
rule sees the working set as left by the rules before it: a suppressed glosa
or an exempted validation is no longer visible to later rules.

Every effect is logged as a RuleApplication; usage statistics are derived
from that log by the rule repository.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional
from uuid import UUID

from auditoria.core.enums import (
    ConditionOperator,
    RuleActionKind,
    RuleScopeKind,
    ValidationType,
    ValidationVerdict,
)
from auditoria.schemas.radicado import (
    AppliedRule,
    Glosa,
    PatientProfile,
    Radicado,
    Validation,
)
from auditoria.schemas.rule import (
    CapGlosaAmount,
    ExemptPatientProfile,
    PatientPredicate,
    RequireAuthorizationFor,
    Rule,
    RuleApplication,
    RuleCondition,
    RuleScope,
    SkipValidation,
    SuppressGlosaBelow,
    WidenTariffTolerance,
)
from auditoria.services.glosa_generator import GlosaGenerator
from auditoria.services.radicado_validators import LineContext
from auditoria.services.tariff_calculator import money
from auditoria.utils.text import normalize_code, normalize_label

logger = logging.getLogger(__name__)

Facts = dict[str, Any]


# =============================================================================
# Facts, Conditions and Scope
# =============================================================================


def build_line_facts(ctx: LineContext) -> Facts:
    """Attributes of one line item that rule conditions can reference."""
    item = ctx.item
    radicado = ctx.radicado
    return {
        "billed_value": item.billed_value,
        "unit_value": item.unit_value,
        "expected_value": ctx.quote.expected_value if ctx.quote else None,
        "quantity": item.quantity,
        "procedure_code": item.procedure_code,
        "procedure_name": item.procedure_name or (ctx.tariff.description if ctx.tariff else None),
        "procedure_category": ctx.tariff.category if ctx.tariff else None,
        "diagnosis_code": item.diagnosis_code,
        "care_type": radicado.care_type.value,
        "service_type": item.service_type.value if item.service_type else None,
        "authorization_number": item.authorization_number,
        "value_range": int(radicado.value_range),
        "payer_nit": radicado.payer_nit,
        "provider_nit": radicado.provider_nit,
    }


def _as_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return Decimal(str(value).replace(",", "").replace("$", "").strip())
    except InvalidOperation:
        return None


def evaluate_condition(condition: RuleCondition, facts: Facts) -> bool:
    """Evaluate one condition; a missing fact only satisfies `not_exists`."""
    actual = facts.get(condition.field)
    present = actual is not None and actual != ""

    if condition.operator == ConditionOperator.EXISTS:
        return present
    if condition.operator == ConditionOperator.NOT_EXISTS:
        return not present
    if not present:
        return False

    if condition.operator == ConditionOperator.CONTAINS:
        return normalize_label(str(condition.value)) in normalize_label(str(actual))

    number = _as_decimal(actual)
    operand = _as_decimal(condition.value)

    if condition.operator == ConditionOperator.EQ:
        if number is not None and operand is not None:
            return number == operand
        return normalize_label(str(actual)) == normalize_label(str(condition.value))

    if number is None or operand is None:
        return False
    if condition.operator == ConditionOperator.LT:
        return number < operand
    if condition.operator == ConditionOperator.GT:
        return number > operand
    if condition.operator == ConditionOperator.BETWEEN:
        upper = _as_decimal(condition.value_max)
        return upper is not None and operand <= number <= upper
    return False


def conditions_match(conditions: Iterable[RuleCondition], facts: Facts) -> bool:
    return all(evaluate_condition(condition, facts) for condition in conditions)


def scope_matches(scope: RuleScope, facts: Facts) -> bool:
    """Check a rule's scope (ambito) against one line item."""
    if scope.kind == RuleScopeKind.GLOBAL:
        return True
    wanted = scope.value or ""
    if scope.kind == RuleScopeKind.PAYER:
        return normalize_code(wanted) == normalize_code(facts.get("payer_nit"))
    if scope.kind == RuleScopeKind.PROCEDURE:
        return normalize_code(wanted) == normalize_code(facts.get("procedure_code")) or (
            facts.get("procedure_category") is not None
            and normalize_label(wanted) == normalize_label(facts["procedure_category"])
        )
    if scope.kind == RuleScopeKind.VALUE_RANGE:
        return str(facts.get("value_range")) == wanted.strip()
    if scope.kind == RuleScopeKind.CARE_TYPE:
        return normalize_label(wanted) == normalize_label(facts.get("care_type") or "")
    return False


def patient_matches(predicate: PatientPredicate, patient: PatientProfile) -> bool:
    """Every populated criterion of the predicate must hold."""
    if predicate.min_age is not None and (
        patient.age_years is None or patient.age_years < predicate.min_age
    ):
        return False
    if predicate.max_age is not None and (
        patient.age_years is None or patient.age_years > predicate.max_age
    ):
        return False
    for flag in ("pregnant", "displaced", "conflict_victim"):
        wanted = getattr(predicate, flag)
        if wanted is not None and getattr(patient, flag) != wanted:
            return False
    if predicate.regimen is not None and patient.regimen != predicate.regimen:
        return False
    if predicate.income_category is not None and patient.income_category != predicate.income_category:
        return False
    return True


# =============================================================================
# Working Set
# =============================================================================


@dataclass
class WorkingSet:
    """Draft validations and glosas of one pass while rules apply."""

    validations: list[Validation]
    glosas: dict[UUID, Glosa] = field(default_factory=dict)  # keyed by validation id
    applications: list[RuleApplication] = field(default_factory=list)
    applied_rules: list[AppliedRule] = field(default_factory=list)

    def effective(self, line_number: int) -> list[Validation]:
        superseded = {v.supersedes for v in self.validations if v.supersedes}
        return [
            v
            for v in self.validations
            if v.line_number == line_number and v.id not in superseded
        ]

    def live_glosas(self, line_number: int) -> list[Glosa]:
        return [g for g in self.glosas.values() if g.line_number == line_number]

    def replace(self, old: Validation, new: Validation) -> None:
        self.validations.append(new)
        self.glosas.pop(old.id, None)


@dataclass
class RuleEngineResult:
    validations: list[Validation]
    glosas: list[Glosa]
    applications: list[RuleApplication]
    applied_rules: list[AppliedRule]


# =============================================================================
# Engine
# =============================================================================


class RuleEngine:
    """Applies an ordered set of rules to one radicado pass."""

    def __init__(self, generator: Optional[GlosaGenerator] = None):
        self.generator = generator or GlosaGenerator()

    async def apply(
        self,
        radicado: Radicado,
        rules: Iterable[Rule],
        validations: list[Validation],
        facts_by_line: dict[int, Facts],
        pass_id: UUID,
        pass_number: int,
    ) -> RuleEngineResult:
        """
        Draft glosas for the failing validations and run every usable rule.

        Args:
            radicado: Radicado being processed (read only)
            rules: Active rules; re-sorted by (priority, sequence) here
            validations: Validator output of this pass
            facts_by_line: Condition facts per line number
            pass_id: Identifier of this pass in the application log
            pass_number: Radicado pass counter stamped on new records
        """
        ws = WorkingSet(validations=list(validations))
        for glosa in self.generator.draft_all(validations, radicado, pass_number):
            ws.glosas[glosa.validation_id] = glosa

        for rule in sorted(rules, key=lambda r: r.sort_key):
            if not rule.active:
                continue
            if not rule.is_interpretation_valid:
                logger.warning(f"Rule '{rule.name}' has no valid interpretation, skipped")
                continue

            for item in radicado.line_items:
                facts = facts_by_line.get(item.line_number, {})
                if not scope_matches(rule.scope, facts):
                    continue
                self._apply_to_line(rule, radicado, item.line_number, facts, ws, pass_id, pass_number)

        if ws.applications:
            logger.info(
                f"Radicado {radicado.number}: {len(ws.applications)} rule effect(s) applied"
            )
        return RuleEngineResult(
            validations=ws.validations,
            glosas=list(ws.glosas.values()),
            applications=ws.applications,
            applied_rules=ws.applied_rules,
        )

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def _apply_to_line(
        self,
        rule: Rule,
        radicado: Radicado,
        line_number: int,
        facts: Facts,
        ws: WorkingSet,
        pass_id: UUID,
        pass_number: int,
    ) -> None:
        action = rule.interpretation.action
        conditions = rule.interpretation.conditions

        if isinstance(action, SuppressGlosaBelow):
            for glosa in ws.live_glosas(line_number):
                if glosa.amount >= action.threshold:
                    continue
                if not conditions_match(conditions, {**facts, "glosa_amount": glosa.amount}):
                    continue
                del ws.glosas[glosa.validation_id]
                self._record(
                    ws, rule, radicado, pass_id, line_number, glosa.amount, 1,
                    f"Glosa {glosa.code} de {glosa.amount} suprimida (umbral {action.threshold})",
                )

        elif isinstance(action, CapGlosaAmount):
            for glosa in ws.live_glosas(line_number):
                if glosa.amount <= action.max_amount:
                    continue
                if not conditions_match(conditions, {**facts, "glosa_amount": glosa.amount}):
                    continue
                reduced = glosa.amount - action.max_amount
                ws.glosas[glosa.validation_id] = glosa.model_copy(
                    update={"amount": money(action.max_amount)}
                )
                self._record(
                    ws, rule, radicado, pass_id, line_number, reduced, 0,
                    f"Glosa {glosa.code} limitada a {action.max_amount}",
                )

        elif isinstance(action, ExemptPatientProfile):
            if patient_matches(action.predicate, radicado.patient):
                self._exempt(rule, radicado, line_number, facts, ws, pass_id, pass_number, None)

        elif isinstance(action, SkipValidation):
            self._exempt(
                rule, radicado, line_number, facts, ws, pass_id, pass_number, action.validation_type
            )

        elif isinstance(action, WidenTariffTolerance):
            for validation in ws.effective(line_number):
                if validation.validation_type != ValidationType.TARIFF or not validation.is_failing:
                    continue
                variance_pct = abs(Decimal(str(validation.details.get("variance_pct", "0"))))
                if variance_pct > action.percentage:
                    continue
                self._exempt_one(
                    rule, radicado, validation, facts, ws, pass_id, pass_number,
                    f"Variación {variance_pct}% aceptada (tolerancia ampliada a {action.percentage}%)",
                )

        elif isinstance(action, RequireAuthorizationFor):
            self._require_authorization(rule, action, radicado, line_number, facts, ws, pass_id, pass_number)

    def _exempt(
        self,
        rule: Rule,
        radicado: Radicado,
        line_number: int,
        facts: Facts,
        ws: WorkingSet,
        pass_id: UUID,
        pass_number: int,
        validation_type: Optional[ValidationType],
    ) -> None:
        for validation in ws.effective(line_number):
            if not validation.is_failing:
                continue
            if validation_type is not None and validation.validation_type != validation_type:
                continue
            self._exempt_one(
                rule, radicado, validation, facts, ws, pass_id, pass_number,
                f"Validación {validation.validation_type.value} exenta",
            )

    def _exempt_one(
        self,
        rule: Rule,
        radicado: Radicado,
        validation: Validation,
        facts: Facts,
        ws: WorkingSet,
        pass_id: UUID,
        pass_number: int,
        result: str,
    ) -> None:
        glosa = ws.glosas.get(validation.id)
        if glosa is None:
            # already suppressed by an earlier rule
            return
        if not conditions_match(rule.interpretation.conditions, {**facts, "glosa_amount": glosa.amount}):
            return

        exempted = Validation(
            pass_number=pass_number,
            line_number=validation.line_number,
            validation_type=validation.validation_type,
            verdict=validation.verdict,
            message=f"{validation.message} (exenta por regla '{rule.name}')",
            details=validation.details,
            supersedes=validation.id,
            exempt=True,
            rule_id=rule.id,
        )
        ws.replace(validation, exempted)
        self._record(ws, rule, radicado, pass_id, validation.line_number, glosa.amount, 1, result)

    def _require_authorization(
        self,
        rule: Rule,
        action: RequireAuthorizationFor,
        radicado: Radicado,
        line_number: int,
        facts: Facts,
        ws: WorkingSet,
        pass_id: UUID,
        pass_number: int,
    ) -> None:
        category = facts.get("procedure_category")
        if category is None or normalize_label(category) != normalize_label(action.procedure_category):
            return
        if facts.get("authorization_number"):
            return
        if not conditions_match(rule.interpretation.conditions, facts):
            return

        for validation in ws.effective(line_number):
            if validation.validation_type != ValidationType.AUTHORIZATION:
                continue
            if validation.is_failing or validation.exempt:
                continue
            if validation.details.get("authorization_required", True):
                continue

            required = Validation(
                pass_number=pass_number,
                line_number=line_number,
                validation_type=ValidationType.AUTHORIZATION,
                verdict=ValidationVerdict.REJECTED,
                message=(
                    f"La regla '{rule.name}' exige autorización para servicios de "
                    f"{action.procedure_category} y no fue reportada"
                ),
                details={**validation.details, "authorization_required": True},
                supersedes=validation.id,
                rule_id=rule.id,
            )
            ws.replace(validation, required)
            glosa = self.generator.draft(required, radicado, pass_number)
            ws.glosas[required.id] = glosa
            self._record(
                ws, rule, radicado, pass_id, line_number, glosa.amount, 0,
                f"Autorización exigida para {action.procedure_category}",
            )

    @staticmethod
    def _record(
        ws: WorkingSet,
        rule: Rule,
        radicado: Radicado,
        pass_id: UUID,
        line_number: Optional[int],
        amount: Decimal,
        glosas_avoided: int,
        result: str,
    ) -> None:
        kind = RuleActionKind(rule.interpretation.action.kind)
        ws.applications.append(
            RuleApplication(
                rule_id=rule.id,
                radicado_id=radicado.id,
                pass_id=pass_id,
                line_number=line_number,
                action=kind,
                amount_affected=money(amount),
                glosas_avoided=glosas_avoided,
            )
        )
        ws.applied_rules.append(
            AppliedRule(
                rule_id=rule.id,
                rule_name=rule.name,
                action=kind.value,
                result=result,
                line_number=line_number,
                amount_affected=money(amount),
            )
        )
