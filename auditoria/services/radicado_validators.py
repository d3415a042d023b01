"""
Radicado Validators.
Source: validation stage of the radicado audit pipeline

Provides validation services for authorization, tariff variance, service
habilitation, clinical coherence, date coherence and procedure code checks.

Each validator works on a LineContext: one line item plus the reference data
the orchestrator prefetched for it. Validators never see each other's output
within a pass; `ValidatorSet.run` gathers all of them concurrently and merges
the results only after every check has finished.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional, Sequence

from auditoria.core.enums import ValidationType, ValidationVerdict
from auditoria.schemas.authorization import Authorization
from auditoria.schemas.radicado import LineItem, Radicado, Validation
from auditoria.schemas.reference import (
    ClinicalCompatibility,
    Contract,
    HabilitationRecord,
    TariffCatalogEntry,
)
from auditoria.services.authorization_ledger import check_authorization
from auditoria.services.tariff_calculator import TariffQuote, variance
from auditoria.utils.text import normalize_code, normalize_label

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineContext:
    """Read-only inputs of every validator for one line item."""

    radicado: Radicado
    item: LineItem
    as_of: date
    pass_number: int
    tariff: Optional[TariffCatalogEntry] = None
    contract: Optional[Contract] = None
    quote: Optional[TariffQuote] = None
    authorization: Optional[Authorization] = None
    already_requested: int = 0
    habilitations: tuple[HabilitationRecord, ...] = ()
    compatibility: tuple[ClinicalCompatibility, ...] = ()
    tolerance: Decimal = Decimal("0.05")
    max_days_after_authorization: int = 30
    notes: dict[str, Any] = field(default_factory=dict)


def _format_cop(value: Decimal) -> str:
    return f"${value:,.0f}"


class RadicadoValidator(ABC):
    """Base class: one check, one Validation per line item."""

    validation_type: ValidationType

    @abstractmethod
    async def validate(self, ctx: LineContext) -> Validation:
        pass

    def applies_to(self, ctx: LineContext) -> bool:
        return True

    def _result(
        self,
        ctx: LineContext,
        verdict: ValidationVerdict,
        message: str,
        **details: Any,
    ) -> Validation:
        return Validation(
            pass_number=ctx.pass_number,
            line_number=ctx.item.line_number,
            validation_type=self.validation_type,
            verdict=verdict,
            message=message,
            details={"procedure_code": ctx.item.procedure_code, **details},
        )


# =============================================================================
# Authorization Validator
# =============================================================================


class AuthorizationValidator(RadicadoValidator):
    """Validates the authorization covering a billed procedure."""

    validation_type = ValidationType.AUTHORIZATION

    async def validate(self, ctx: LineContext) -> Validation:
        item = ctx.item
        required = bool(ctx.tariff and ctx.tariff.requires_authorization)

        if not item.authorization_number:
            if required:
                return self._result(
                    ctx,
                    ValidationVerdict.REJECTED,
                    f"El servicio {item.procedure_code} requiere autorización y no fue reportada",
                    authorization_required=True,
                )
            return self._result(
                ctx,
                ValidationVerdict.APPROVED,
                "El servicio no requiere autorización",
                authorization_required=False,
            )

        check = check_authorization(
            ctx.authorization,
            item.authorization_number,
            item.procedure_code,
            item.quantity,
            ctx.as_of,
            patient_document=ctx.radicado.patient.document_number,
            radicado_id=ctx.radicado.id,
            already_requested=ctx.already_requested,
        )
        return self._result(
            ctx,
            ValidationVerdict.APPROVED if check.valid else ValidationVerdict.REJECTED,
            check.message,
            authorization_required=True,
            authorization_number=check.number,
            requested=check.requested,
            available=check.available,
            expired=check.expired,
        )


# =============================================================================
# Tariff Variance Validator
# =============================================================================


class TariffVarianceValidator(RadicadoValidator):
    """Compares the billed unit value against the expected pacted value."""

    validation_type = ValidationType.TARIFF

    def applies_to(self, ctx: LineContext) -> bool:
        return ctx.quote is not None

    async def validate(self, ctx: LineContext) -> Validation:
        quote = ctx.quote
        billed_unit = ctx.item.unit_value
        delta = variance(billed_unit, quote.expected_value)
        variance_pct = (delta * 100).quantize(Decimal("0.01"))
        details = {
            "expected_value": str(quote.expected_value),
            "billed_unit_value": str(billed_unit),
            "variance_pct": str(variance_pct),
            "tolerance_pct": str((ctx.tolerance * 100).quantize(Decimal("0.01"))),
            "basis": quote.basis,
        }

        if abs(delta) > ctx.tolerance:
            direction = "superior" if delta > 0 else "inferior"
            return self._result(
                ctx,
                ValidationVerdict.REJECTED,
                (
                    f"Valor facturado {_format_cop(billed_unit)} {direction} al pactado "
                    f"{_format_cop(quote.expected_value)} (variación {variance_pct}%)"
                ),
                **details,
            )
        return self._result(
            ctx,
            ValidationVerdict.APPROVED,
            f"Valor dentro de la tolerancia (variación {variance_pct}%)",
            **details,
        )


# =============================================================================
# Service Habilitation Validator
# =============================================================================


class HabilitationValidator(RadicadoValidator):
    """Validates the provider is habilitated for the service category."""

    validation_type = ValidationType.SERVICE

    def applies_to(self, ctx: LineContext) -> bool:
        return ctx.tariff is not None

    async def validate(self, ctx: LineContext) -> Validation:
        category = ctx.tariff.category
        wanted = normalize_label(category)
        service_date = ctx.item.service_date
        record = next(
            (
                h
                for h in ctx.habilitations
                if normalize_label(h.service_category) == wanted and h.is_valid_on(service_date)
            ),
            None,
        )
        if record is None:
            return self._result(
                ctx,
                ValidationVerdict.REJECTED,
                (
                    f"El prestador {ctx.radicado.provider_nit} no tiene habilitado el servicio "
                    f"'{category}' a la fecha {service_date.isoformat()}"
                ),
                service_category=category,
            )
        return self._result(
            ctx,
            ValidationVerdict.APPROVED,
            f"Servicio '{category}' habilitado",
            service_category=category,
            habilitation_code=record.code,
        )


# =============================================================================
# Clinical Coherence Validator
# =============================================================================


class ClinicalCoherenceValidator(RadicadoValidator):
    """Checks the billed procedure against the stated diagnosis."""

    validation_type = ValidationType.CLINICAL_COHERENCE

    @staticmethod
    def _find_entry(ctx: LineContext) -> Optional[ClinicalCompatibility]:
        for entry in ctx.compatibility:
            if entry.procedure_code and entry.procedure_code == ctx.item.procedure_code:
                return entry
        if ctx.tariff is not None:
            category = normalize_label(ctx.tariff.category)
            for entry in ctx.compatibility:
                if entry.procedure_category and normalize_label(entry.procedure_category) == category:
                    return entry
        return None

    async def validate(self, ctx: LineContext) -> Validation:
        entry = self._find_entry(ctx)
        diagnosis = normalize_code(ctx.item.diagnosis_code)

        if entry is None:
            return self._result(
                ctx,
                ValidationVerdict.APPROVED,
                "Sin restricciones de coherencia clínica para el procedimiento",
                diagnosis_code=ctx.item.diagnosis_code,
            )

        if not diagnosis:
            return self._result(
                ctx,
                ValidationVerdict.REJECTED,
                f"El procedimiento {ctx.item.procedure_code} requiere diagnóstico CIE-10",
                diagnosis_code=None,
            )

        excluded = [normalize_code(p) for p in entry.excluded_diagnosis_prefixes]
        allowed = [normalize_code(p) for p in entry.allowed_diagnosis_prefixes]

        if any(diagnosis.startswith(prefix) for prefix in excluded) or (
            allowed and not any(diagnosis.startswith(prefix) for prefix in allowed)
        ):
            return self._result(
                ctx,
                ValidationVerdict.REJECTED,
                (
                    f"El diagnóstico {ctx.item.diagnosis_code} no es coherente con el "
                    f"procedimiento {ctx.item.procedure_code}"
                ),
                diagnosis_code=ctx.item.diagnosis_code,
                allowed_prefixes=entry.allowed_diagnosis_prefixes,
                excluded_prefixes=entry.excluded_diagnosis_prefixes,
            )

        return self._result(
            ctx,
            ValidationVerdict.APPROVED,
            "Diagnóstico coherente con el procedimiento",
            diagnosis_code=ctx.item.diagnosis_code,
        )


# =============================================================================
# Date Coherence Validator
# =============================================================================


class DateValidator(RadicadoValidator):
    """Checks service, invoice and authorization dates against each other."""

    validation_type = ValidationType.DATE

    async def validate(self, ctx: LineContext) -> Validation:
        service_date = ctx.item.service_date
        invoice_date = ctx.radicado.invoice_date
        details = {
            "service_date": service_date.isoformat(),
            "invoice_date": invoice_date.isoformat(),
        }

        if service_date > ctx.as_of:
            return self._result(
                ctx,
                ValidationVerdict.REJECTED,
                f"La fecha de servicio {service_date.isoformat()} es posterior a la fecha actual",
                **details,
            )

        if invoice_date < service_date:
            return self._result(
                ctx,
                ValidationVerdict.REJECTED,
                "La fecha de factura es anterior a la fecha del servicio",
                **details,
            )

        authorization = ctx.authorization
        if authorization is not None and ctx.item.authorization_number:
            days = (service_date - authorization.issue_date).days
            details["days_after_authorization"] = days
            if days < 0:
                return self._result(
                    ctx,
                    ValidationVerdict.WARNING,
                    "El servicio se prestó antes de la emisión de la autorización",
                    **details,
                )
            if days > ctx.max_days_after_authorization:
                return self._result(
                    ctx,
                    ValidationVerdict.WARNING,
                    (
                        f"El servicio se prestó {days} días después de emitida la "
                        f"autorización (máximo recomendado: {ctx.max_days_after_authorization} días)"
                    ),
                    **details,
                )

        return self._result(ctx, ValidationVerdict.APPROVED, "Fechas coherentes", **details)


# =============================================================================
# Procedure Code Validator
# =============================================================================


class ProcedureCodeValidator(RadicadoValidator):
    """Checks the CUPS code exists in the reference catalog."""

    validation_type = ValidationType.PROCEDURE_CODE

    async def validate(self, ctx: LineContext) -> Validation:
        if ctx.tariff is None:
            return self._result(
                ctx,
                ValidationVerdict.REJECTED,
                f"Código CUPS {ctx.item.procedure_code} no existe en el tarifario de referencia",
                reference_data_missing=True,
            )
        return self._result(
            ctx,
            ValidationVerdict.APPROVED,
            f"Código CUPS válido: {ctx.tariff.description}",
            category=ctx.tariff.category,
        )


# =============================================================================
# Validator Set
# =============================================================================


def default_validators() -> list[RadicadoValidator]:
    return [
        ProcedureCodeValidator(),
        AuthorizationValidator(),
        TariffVarianceValidator(),
        HabilitationValidator(),
        ClinicalCoherenceValidator(),
        DateValidator(),
    ]


class ValidatorSet:
    """Runs every applicable validator for every line item concurrently."""

    def __init__(self, validators: Optional[Sequence[RadicadoValidator]] = None):
        self.validators = list(validators) if validators is not None else default_validators()

    async def run(self, contexts: Sequence[LineContext]) -> list[Validation]:
        """
        Validate all line items.

        A validator that raises produces a rejected validation for its own
        line item; the remaining checks are unaffected.
        """
        jobs = [
            (ctx, validator)
            for ctx in contexts
            for validator in self.validators
            if validator.applies_to(ctx)
        ]
        results = await asyncio.gather(
            *(validator.validate(ctx) for ctx, validator in jobs),
            return_exceptions=True,
        )

        validations: list[Validation] = []
        for (ctx, validator), result in zip(jobs, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"{validator.__class__.__name__} failed on line "
                    f"{ctx.item.line_number}: {result}"
                )
                validations.append(
                    Validation(
                        pass_number=ctx.pass_number,
                        line_number=ctx.item.line_number,
                        validation_type=validator.validation_type,
                        verdict=ValidationVerdict.REJECTED,
                        message=f"Error interno en la validación: {result}",
                        details={
                            "procedure_code": ctx.item.procedure_code,
                            "error": str(result),
                        },
                    )
                )
            else:
                validations.append(result)
        return validations
