"""
Glosa Generator Service.
Source: glosa stage of the radicado audit pipeline

Turns failing validations into glosas with deterministic codes and amounts.
Drafts are produced before rule application so rules can suppress or cap
them; `finalize` clamps what survives so a line item is never objected for
more than it billed.
"""

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from auditoria.core.enums import GlosaSource, GlosaType, ValidationType
from auditoria.schemas.radicado import Glosa, Radicado, Validation
from auditoria.services.tariff_calculator import money


@dataclass(frozen=True)
class GlosaCode:
    code: str
    glosa_type: GlosaType
    label: str


GLOSA_CODES: dict[ValidationType, GlosaCode] = {
    ValidationType.AUTHORIZATION: GlosaCode("101", GlosaType.AUTHORIZATION, "Autorización"),
    ValidationType.TARIFF: GlosaCode("102", GlosaType.TARIFF_VARIANCE, "Diferencia de tarifa"),
    ValidationType.PROCEDURE_CODE: GlosaCode("201", GlosaType.ADMINISTRATIVE, "Código de procedimiento inválido"),
    ValidationType.SERVICE: GlosaCode("202", GlosaType.ADMINISTRATIVE, "Servicio no habilitado"),
    ValidationType.CLINICAL_COHERENCE: GlosaCode("301", GlosaType.TECHNICAL, "Incoherencia clínica"),
    ValidationType.DATE: GlosaCode("401", GlosaType.ADMINISTRATIVE, "Inconsistencia de fechas"),
}


class GlosaGenerator:
    """Generates glosas from validations."""

    def glosa_amount(self, validation: Validation, radicado: Radicado) -> Decimal:
        """
        Billed value of the affected line item; for tariff glosas only the
        amount billed above the expected value.
        """
        item = radicado.line(validation.line_number) if validation.line_number else None
        if item is None:
            return Decimal("0.00")

        if validation.validation_type == ValidationType.TARIFF:
            expected = validation.details.get("expected_value")
            if expected is None:
                return money(item.billed_value)
            excess = (item.unit_value - Decimal(str(expected))) * item.quantity
            return money(max(excess, Decimal("0")))

        return money(item.billed_value)

    def draft(
        self,
        validation: Validation,
        radicado: Radicado,
        pass_number: int,
        source: GlosaSource = GlosaSource.SYSTEM,
    ) -> Optional[Glosa]:
        """
        Draft the glosa of one validation, or None if it does not fail.

        A tariff variance below the expected value has nothing to object and
        drafts no glosa.
        """
        if not validation.is_failing:
            return None

        amount = self.glosa_amount(validation, radicado)
        if validation.validation_type == ValidationType.TARIFF and amount <= 0:
            return None

        code = GLOSA_CODES[validation.validation_type]
        return Glosa(
            code=code.code,
            description=f"{code.label}: {validation.message}",
            glosa_type=code.glosa_type,
            amount=amount,
            line_number=validation.line_number,
            validation_id=validation.id,
            rule_id=validation.rule_id,
            source=source if validation.rule_id is None else GlosaSource.RULE,
            pass_number=pass_number,
        )

    def draft_all(
        self,
        validations: Iterable[Validation],
        radicado: Radicado,
        pass_number: int,
    ) -> list[Glosa]:
        drafts = (self.draft(v, radicado, pass_number) for v in validations)
        return [glosa for glosa in drafts if glosa is not None]

    def finalize(self, glosas: Iterable[Glosa], radicado: Radicado) -> list[Glosa]:
        """
        Order glosas by line and code and clamp each line's cumulative amount
        at its billed value.
        """
        ordered = sorted(glosas, key=lambda g: (g.line_number or 0, g.code))
        claimed: dict[Optional[int], Decimal] = defaultdict(lambda: Decimal("0"))
        final: list[Glosa] = []

        for glosa in ordered:
            item = radicado.line(glosa.line_number) if glosa.line_number else None
            amount = glosa.amount
            if item is not None:
                room = max(money(item.billed_value) - claimed[glosa.line_number], Decimal("0"))
                amount = min(amount, room)
            claimed[glosa.line_number] += amount
            final.append(glosa.model_copy(update={"amount": money(amount)}))

        return final
