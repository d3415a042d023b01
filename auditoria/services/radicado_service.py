"""
Radicado Service.

Orchestrates the audit pipeline of a radicado:

    intake -> validators (concurrent) -> rule engine -> glosa generator
           -> liquidation -> commit

Provides:
- Intake and document attachment
- Pipeline passes, serialized per radicado and retried on version conflicts
- Finalization, export flag and rejection
- Radicado queries

A pass works on a private copy of the radicado. Nothing is written until the
commit step: authorization consumption is synchronized first, then the
radicado is saved with a version check, then the rule application log is
recorded. A pass that fails before the save leaves the stored radicado untouched
and the authorization ledger as it was: a failed save gives back the units
synchronized for it.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

from auditoria.core.config import AuditSettings, get_audit_settings
from auditoria.core.enums import RadicadoStatus, ValidationType, ValidationVerdict
from auditoria.repositories import Repositories, get_repositories
from auditoria.schemas.authorization import Authorization
from auditoria.schemas.radicado import Document, Radicado, RadicadoCreate, Validation
from auditoria.schemas.reference import Contract
from auditoria.schemas.rule import RuleApplication
from auditoria.services.authorization_ledger import AuthorizationLedger
from auditoria.services.external_query import PayerVerificationClient
from auditoria.services.glosa_generator import GlosaGenerator
from auditoria.services.liquidation import LiquidationAggregator
from auditoria.services.radicado_state_machine import (
    RadicadoStateMachine,
    TransitionEvent,
    get_state_machine,
)
from auditoria.services.radicado_validators import LineContext, ValidatorSet
from auditoria.services.rule_engine import RuleEngine, build_line_facts
from auditoria.services.tariff_calculator import CARE_TYPE_SERVICE, TariffCalculator
from auditoria.utils.errors import (
    AuditError,
    AuthorizationConsumptionError,
    ConcurrencyConflictError,
    InvalidTransitionError,
    MalformedRadicadoError,
    RadicadoNotFoundError,
    ReferenceDataMissingError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Structural Checks
# =============================================================================


def document_errors(documents: Iterable[Document]) -> list[str]:
    return [
        f"Documento '{doc.original_name}' inválido: tamaño {doc.size_bytes} bytes"
        for doc in documents
        if doc.size_bytes <= 0
    ]


def structural_errors(radicado: Radicado) -> list[str]:
    """Problems that make a pass impossible; an empty list means processable."""
    errors: list[str] = []
    if not radicado.line_items:
        errors.append("El radicado no tiene líneas de servicio")

    seen: set[int] = set()
    for item in radicado.line_items:
        if item.line_number in seen:
            errors.append(f"Línea {item.line_number} duplicada")
        seen.add(item.line_number)
        if item.quantity <= 0:
            errors.append(f"Línea {item.line_number}: cantidad {item.quantity} inválida")
        if item.unit_value < 0:
            errors.append(f"Línea {item.line_number}: valor unitario negativo")

    lines_total = sum((item.billed_value for item in radicado.line_items), Decimal("0"))
    if radicado.line_items and lines_total != radicado.billed_total:
        errors.append(
            f"El total facturado {radicado.billed_total} no coincide con la suma "
            f"de las líneas {lines_total}"
        )
    errors.extend(document_errors(radicado.documents))
    return errors


# =============================================================================
# Radicado Service
# =============================================================================


class RadicadoService:
    """Entry point of the audit engine for radicados."""

    def __init__(
        self,
        repositories: Repositories,
        settings: Optional[AuditSettings] = None,
        ledger: Optional[AuthorizationLedger] = None,
        calculator: Optional[TariffCalculator] = None,
        validators: Optional[ValidatorSet] = None,
        engine: Optional[RuleEngine] = None,
        aggregator: Optional[LiquidationAggregator] = None,
        state_machine: Optional[RadicadoStateMachine] = None,
        payer_client: Optional[PayerVerificationClient] = None,
        clock: Optional[Callable[[], date]] = None,
    ):
        self.repositories = repositories
        self.settings = settings or get_audit_settings()
        self.clock = clock or date.today
        self.ledger = ledger or AuthorizationLedger(repositories.authorizations, clock=self.clock)
        self.calculator = calculator or TariffCalculator(repositories.reference)
        self.validators = validators or ValidatorSet()
        self.generator = GlosaGenerator()
        self.engine = engine or RuleEngine(self.generator)
        self.aggregator = aggregator or LiquidationAggregator()
        self.state_machine = state_machine or get_state_machine()
        self.payer_client = payer_client
        self._locks: defaultdict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_radicado(self, radicado_id: UUID) -> Radicado:
        radicado = await self.repositories.radicados.get(radicado_id)
        if radicado is None:
            raise RadicadoNotFoundError(str(radicado_id))
        return radicado

    async def get_radicado_by_number(self, number: str) -> Radicado:
        radicado = await self.repositories.radicados.get_by_number(number)
        if radicado is None:
            raise RadicadoNotFoundError(number)
        return radicado

    async def list_radicados(
        self,
        status: Optional[RadicadoStatus] = None,
        offset: int = 0,
        limit: int = 100,
    ) -> list[Radicado]:
        return await self.repositories.radicados.list_radicados(
            status=status, offset=offset, limit=limit
        )

    # =========================================================================
    # Intake
    # =========================================================================

    def _missing_documents(self, radicado: Radicado) -> list[str]:
        present = {doc.document_type for doc in radicado.documents}
        return [t.value for t in self.settings.REQUIRED_DOCUMENT_TYPES if t not in present]

    def _advance_intake(self, radicado: Radicado, triggered_by: Optional[str]) -> None:
        """Reject on malformed documents, start processing once complete."""
        errors = document_errors(radicado.documents)
        if errors:
            self.state_machine.apply(
                radicado, TransitionEvent.REJECT, triggered_by, reason="; ".join(errors)
            )
            return

        missing = self._missing_documents(radicado)
        if missing:
            note = f"Documentos requeridos faltantes: {', '.join(missing)}"
            if note not in radicado.observations:
                radicado.observations.append(note)
            return

        self.state_machine.apply(radicado, TransitionEvent.START_PROCESSING, triggered_by)

    async def intake(self, data: RadicadoCreate, received_by: Optional[str] = None) -> Radicado:
        """
        Register a radicado handed over by intake.

        Raises:
            DuplicateRecordError: the radicado number already exists
        """
        radicado = Radicado(**data.model_dump())
        self._advance_intake(radicado, received_by)
        stored = await self.repositories.radicados.add(radicado)
        logger.info(f"Radicado {stored.number} received ({stored.status.value})")
        return stored

    async def add_documents(
        self,
        radicado_id: UUID,
        documents: list[Document],
        added_by: Optional[str] = None,
    ) -> Radicado:
        async with self._locks[radicado_id]:
            radicado = await self.get_radicado(radicado_id)
            expected_version = radicado.version
            radicado.documents.extend(documents)
            if radicado.status == RadicadoStatus.PENDING:
                self._advance_intake(radicado, added_by)
            return await self.repositories.radicados.save(radicado, expected_version)

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def run_pipeline(self, radicado_id: UUID, triggered_by: Optional[str] = None) -> Radicado:
        """
        Run a full pass and return the committed radicado.

        Passes of the same radicado are serialized; a pass that loses a
        version race is retried from a fresh read.

        Raises:
            RadicadoNotFoundError: unknown radicado
            MalformedRadicadoError: structural errors; nothing is written
            InvalidTransitionError: the radicado cannot be processed from its status
            ConcurrencyConflictError: retries exhausted
        """
        attempts = self.settings.PIPELINE_MAX_RETRIES
        async with self._locks[radicado_id]:
            for attempt in range(1, attempts + 1):
                try:
                    return await self._run_pass(radicado_id, triggered_by)
                except ConcurrencyConflictError as e:
                    if attempt == attempts:
                        logger.error(f"Radicado {radicado_id}: giving up after {attempts} attempts")
                        raise
                    logger.warning(
                        f"Radicado {radicado_id}: concurrency conflict ({e.message}), "
                        f"retrying ({attempt}/{attempts})"
                    )
        raise AuditError(f"Pipeline for radicado {radicado_id} did not run")

    def _enter_processing(self, radicado: Radicado, triggered_by: Optional[str]) -> None:
        if radicado.status == RadicadoStatus.IN_PROCESS:
            return
        if radicado.status == RadicadoStatus.PENDING:
            missing = self._missing_documents(radicado)
            if missing:
                raise InvalidTransitionError(
                    radicado.status.value,
                    TransitionEvent.START_PROCESSING.value,
                    f"Documentos requeridos faltantes: {', '.join(missing)}",
                )
            self.state_machine.apply(radicado, TransitionEvent.START_PROCESSING, triggered_by)
            return
        self.state_machine.apply(radicado, TransitionEvent.REEVALUATE, triggered_by)

    async def _run_pass(self, radicado_id: UUID, triggered_by: Optional[str]) -> Radicado:
        stored = await self.get_radicado(radicado_id)
        expected_version = stored.version
        work = stored.model_copy(deep=True)

        errors = structural_errors(work)
        if errors:
            raise MalformedRadicadoError(str(work.id), errors)

        self._enter_processing(work, triggered_by)

        as_of = self.clock()
        pass_id = uuid4()
        pass_number = work.pass_number + 1
        observations: list[str] = []

        # Validation
        contexts, radicado_contract = await self._build_contexts(work, as_of, pass_number)
        validations = await self.validators.run(contexts)
        self.state_machine.apply(work, TransitionEvent.VALIDATION_COMPLETE, triggered_by)

        # Rules and glosas
        rules = await self.repositories.rules.list_rules(active_only=True)
        outcome = await self.engine.apply(
            work,
            rules,
            validations,
            {ctx.item.line_number: build_line_facts(ctx) for ctx in contexts},
            pass_id,
            pass_number,
        )
        glosas = self.generator.finalize(outcome.glosas, work)

        # Patient share and external lookups
        moderating_fee, copay = await self._patient_share(work, radicado_contract, observations)
        if self.payer_client is not None:
            attempt = await self.payer_client.verify(work)
            work.external_queries = [attempt]
            if not attempt.success:
                observations.append(
                    f"Consulta externa a {attempt.system.value} fallida: {attempt.error}"
                )

        # Liquidation
        work.validations = outcome.validations
        work.glosas = glosas
        work.applied_rules = outcome.applied_rules
        work.pass_number = pass_number
        work.liquidation = self.aggregator.aggregate(
            work,
            glosas,
            outcome.applied_rules,
            moderating_fee=moderating_fee,
            copay=copay,
            observations=observations,
            pass_number=pass_number,
            liquidated_by=triggered_by,
        )
        self.state_machine.apply(
            work,
            TransitionEvent.GLOSAS_FOUND if glosas else TransitionEvent.LIQUIDATE,
            triggered_by,
        )

        saved = await self._commit(work, expected_version, pass_id, outcome.applications)
        await self._expire_authorizations(saved.effective_validations, as_of)

        logger.info(
            f"Radicado {saved.number} pass {pass_number}: {len(glosas)} glosa(s), "
            f"final payable {saved.liquidation.final_payable}"
        )
        return saved

    async def _build_contexts(
        self, radicado: Radicado, as_of: date, pass_number: int
    ) -> tuple[list[LineContext], Optional[Contract]]:
        reference = self.repositories.reference
        habilitations = tuple(await reference.list_habilitations(radicado.provider_nit))
        compatibility = tuple(await reference.list_clinical_compatibility())

        authorizations: dict[str, Optional[Authorization]] = {}
        requested: dict[tuple[str, str], int] = defaultdict(int)
        contexts: list[LineContext] = []
        first_contract: Optional[Contract] = None

        for item in sorted(radicado.line_items, key=lambda i: i.line_number):
            contract = await self.calculator.find_contract(
                radicado.payer_nit, radicado.provider_nit, item.service_date
            )
            if first_contract is None:
                first_contract = contract

            try:
                tariff = await self.calculator.find_tariff(item.procedure_code, contract)
            except ReferenceDataMissingError as e:
                logger.warning(f"Radicado {radicado.number} line {item.line_number}: {e.message}")
                tariff = None
            quote = self.calculator.quote_tariff(tariff, contract, item.service_date) if tariff else None

            authorization = None
            already_requested = 0
            if item.authorization_number:
                number = item.authorization_number
                if number not in authorizations:
                    authorizations[number] = await self.ledger.peek(number)
                authorization = authorizations[number]
                already_requested = requested[(number, item.procedure_code)]
                requested[(number, item.procedure_code)] += item.quantity

            contexts.append(
                LineContext(
                    radicado=radicado,
                    item=item,
                    as_of=as_of,
                    pass_number=pass_number,
                    tariff=tariff,
                    contract=contract,
                    quote=quote,
                    authorization=authorization,
                    already_requested=already_requested,
                    habilitations=habilitations,
                    compatibility=compatibility,
                    tolerance=self.settings.TARIFF_TOLERANCE,
                    max_days_after_authorization=self.settings.AUTHORIZATION_MAX_DAYS_BEFORE_SERVICE,
                )
            )
        return contexts, first_contract

    async def _patient_share(
        self,
        radicado: Radicado,
        contract: Optional[Contract],
        observations: list[str],
    ) -> tuple[Optional[Decimal], Optional[Decimal]]:
        """Moderating fee and copay of the patient; informational only."""
        patient = radicado.patient
        if patient.regimen is None or patient.income_category is None:
            return None, None

        copay = self.calculator.copay(
            contract, patient.regimen, patient.income_category, radicado.billed_total
        )
        service_type = radicado.service_type or CARE_TYPE_SERVICE.get(radicado.care_type)
        if service_type is None:
            observations.append("Cuota moderadora no calculada: tipo de servicio sin definir")
            return None, copay

        try:
            fee = await self.calculator.moderating_fee(
                patient.regimen, patient.income_category, service_type, patient, contract
            )
        except ReferenceDataMissingError as e:
            observations.append(f"Cuota moderadora no calculada: sin tarifa para {e.key}")
            return None, copay
        return fee, copay

    @staticmethod
    def _held_authorizations(radicado: Radicado) -> dict[tuple[str, int], tuple[str, int]]:
        """Units each approved line item holds on its authorization."""
        held: dict[tuple[str, int], tuple[str, int]] = {}
        for validation in radicado.effective_validations:
            if validation.validation_type != ValidationType.AUTHORIZATION:
                continue
            if validation.verdict != ValidationVerdict.APPROVED or validation.exempt:
                continue
            item = radicado.line(validation.line_number)
            if item is None or not item.authorization_number:
                continue
            held[(item.authorization_number, item.line_number)] = (
                item.procedure_code,
                item.quantity,
            )
        return held

    async def _commit(
        self,
        radicado: Radicado,
        expected_version: int,
        pass_id: UUID,
        applications: list[RuleApplication],
    ) -> Radicado:
        held_before = await self.ledger.held_by(radicado.id)
        try:
            await self.ledger.sync_radicado_consumption(
                radicado.id, self._held_authorizations(radicado)
            )
        except AuthorizationConsumptionError as e:
            # Another radicado consumed the units after validation
            raise ConcurrencyConflictError(
                e.number,
                message=f"Authorization {e.number} changed during the pass: {e.message}",
            ) from e

        saved = await self._save_or_restore(radicado, expected_version, held_before)
        await self.repositories.rules.record_pass(radicado.id, pass_id, applications)
        return saved

    async def _save_or_restore(
        self,
        radicado: Radicado,
        expected_version: int,
        held_before: dict[tuple[str, int], tuple[str, int]],
    ) -> Radicado:
        """Save the radicado; if the save fails, give back the units synced for it."""
        try:
            return await self.repositories.radicados.save(radicado, expected_version)
        except Exception:
            logger.warning(
                f"Radicado {radicado.number}: save failed, restoring authorization consumption"
            )
            await self.ledger.sync_radicado_consumption(radicado.id, held_before)
            raise

    async def _expire_authorizations(self, validations: list[Validation], as_of: date) -> None:
        numbers = {
            v.details.get("authorization_number")
            for v in validations
            if v.validation_type == ValidationType.AUTHORIZATION and v.details.get("expired")
        }
        for number in filter(None, numbers):
            await self.ledger.mark_expired(number, as_of)

    # =========================================================================
    # Closing Operations
    # =========================================================================

    async def finalize(self, radicado_id: UUID, finalized_by: Optional[str] = None) -> Radicado:
        """Operator confirmation of a liquidated radicado."""
        async with self._locks[radicado_id]:
            radicado = await self.get_radicado(radicado_id)
            expected_version = radicado.version
            self.state_machine.apply(radicado, TransitionEvent.FINALIZE, finalized_by)
            return await self.repositories.radicados.save(radicado, expected_version)

    async def mark_exported(self, radicado_id: UUID, exported_by: Optional[str] = None) -> Radicado:
        """Flag the liquidation report as generated, finalizing when configured."""
        async with self._locks[radicado_id]:
            radicado = await self.get_radicado(radicado_id)
            if radicado.liquidation is None:
                raise AuditError(
                    f"Radicado {radicado.number} has no liquidation to export",
                    {"radicado_id": str(radicado_id)},
                )
            expected_version = radicado.version
            radicado.liquidation.excel_generated = True
            if self.settings.AUTO_FINALIZE_ON_EXPORT and self.state_machine.can_apply(
                radicado.status, TransitionEvent.FINALIZE
            ):
                self.state_machine.apply(
                    radicado, TransitionEvent.FINALIZE, exported_by, reason="Exportación del reporte"
                )
            return await self.repositories.radicados.save(radicado, expected_version)

    async def reject(
        self,
        radicado_id: UUID,
        reason: str,
        rejected_by: Optional[str] = None,
    ) -> Radicado:
        """Reject a radicado and release the authorization units it held."""
        async with self._locks[radicado_id]:
            radicado = await self.get_radicado(radicado_id)
            expected_version = radicado.version
            self.state_machine.apply(radicado, TransitionEvent.REJECT, rejected_by, reason=reason)
            held_before = await self.ledger.held_by(radicado.id)
            await self.ledger.sync_radicado_consumption(radicado.id, {})
            return await self._save_or_restore(radicado, expected_version, held_before)


# Singleton instance
_radicado_service: Optional[RadicadoService] = None


def get_radicado_service() -> RadicadoService:
    """Get or create the radicado service over the shared repositories."""
    global _radicado_service
    if _radicado_service is None:
        settings = get_audit_settings()
        _radicado_service = RadicadoService(
            get_repositories(),
            settings=settings,
            payer_client=PayerVerificationClient.from_settings(settings),
        )
    return _radicado_service


def reset_radicado_service() -> None:
    global _radicado_service
    _radicado_service = None
