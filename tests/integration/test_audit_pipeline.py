"""
Integration tests for the radicado audit pipeline.

Runs intake -> validators -> rule engine -> glosas -> liquidation -> commit
over the in-memory repositories seeded with the demo reference data.
The PostgreSQL tests run only when AUDITORIA_TEST_DATABASE_URL is set.
"""

import asyncio
import os
from datetime import date
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from auditoria.core.enums import (
    AuthorizationStatus,
    DocumentType,
    RadicadoStatus,
    RuleType,
)
from auditoria.schemas.radicado import Document
from auditoria.schemas.rule import RuleCreate
from auditoria.services.external_query import PayerVerificationClient
from auditoria.services.radicado_service import RadicadoService
from auditoria.utils.errors import (
    AuditError,
    AuthorizationConsumptionError,
    ConcurrencyConflictError,
    InvalidTransitionError,
    MalformedRadicadoError,
)

TODAY = date(2024, 6, 15)
SUPPRESS_TEXT = "No generar glosas menores a $20.000"


def authorized_consultation(quantity: int = 2, unit_value: str = "51750") -> dict:
    return {
        "procedure_code": "890201",
        "quantity": quantity,
        "unit_value": Decimal(unit_value),
        "diagnosis_code": "J06.9",
        "authorization_number": "AUT20240001",
    }


async def units_used(repositories, number: str = "AUT20240001") -> int:
    authorization = await repositories.authorizations.get_by_number(number)
    return authorization.services[0].quantity_used


@pytest.mark.integration
class TestPipeline:
    """End-to-end passes over a single radicado"""

    @pytest.mark.asyncio
    async def test_clean_radicado_is_liquidated(self, radicado_service, repositories, make_radicado):
        """Test a radicado without findings is liquidated in full"""
        stored = await radicado_service.intake(make_radicado([authorized_consultation()]), "radicador")
        assert stored.status == RadicadoStatus.IN_PROCESS

        result = await radicado_service.run_pipeline(stored.id, "auditor")

        assert result.status == RadicadoStatus.LIQUIDATED
        assert result.glosas == []
        assert result.pass_number == 1
        assert result.liquidation.billed_total == Decimal("103500")
        assert result.liquidation.final_payable == Decimal("103500")
        assert result.liquidation.moderating_fee == Decimal("4500")
        assert result.liquidation.copay == Decimal("20700")
        assert {v.validation_type.value for v in result.effective_validations} == {
            "authorization",
            "tariff",
            "service",
            "clinical_coherence",
            "date",
            "procedure_code",
        }

        authorization = await repositories.authorizations.get_by_number("AUT20240001")
        assert authorization.services[0].quantity_used == 2
        assert authorization.status == AuthorizationStatus.PARTIALLY_USED

    @pytest.mark.asyncio
    async def test_overbilled_line_gets_glosa(self, radicado_service, make_radicado):
        """Test a tariff excess becomes a glosa and reduces the payable"""
        stored = await radicado_service.intake(
            make_radicado([authorized_consultation(quantity=1, unit_value="60000")])
        )
        result = await radicado_service.run_pipeline(stored.id)

        assert result.status == RadicadoStatus.WITH_GLOSAS
        assert [(g.code, g.amount) for g in result.glosas] == [("102", Decimal("8250.00"))]
        assert result.liquidation.final_payable == Decimal("51750.00")

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, radicado_service, repositories, make_radicado):
        """Test re-running a pass does not double count consumption or rule stats"""
        stored = await radicado_service.intake(make_radicado([authorized_consultation()]))
        first = await radicado_service.run_pipeline(stored.id)
        second = await radicado_service.run_pipeline(stored.id)

        assert second.pass_number == 2
        assert second.version > first.version
        assert second.liquidation.final_payable == first.liquidation.final_payable
        assert len(second.validations) == len(first.validations)
        assert await units_used(repositories) == 2

    @pytest.mark.asyncio
    async def test_rule_stats_follow_latest_pass(
        self, radicado_service, rule_service, interpreter, make_radicado, make_interpretation
    ):
        """Test a suppressing rule removes the glosa and is counted once per radicado"""
        interpreter.register(
            SUPPRESS_TEXT, make_interpretation({"kind": "suppress_glosa_below", "threshold": 20000})
        )
        rule = await rule_service.create_rule(
            RuleCreate(name="Umbral", description=SUPPRESS_TEXT, rule_type=RuleType.GLOSA)
        )
        stored = await radicado_service.intake(
            make_radicado([authorized_consultation(quantity=1, unit_value="60000")])
        )

        first = await radicado_service.run_pipeline(stored.id)
        await radicado_service.run_pipeline(stored.id)

        assert first.status == RadicadoStatus.LIQUIDATED
        assert first.glosas == []
        assert [a.rule_name for a in first.applied_rules] == ["Umbral"]
        stats = (await rule_service.usage_stats())[rule.id]
        assert stats.times_applied == 1
        assert stats.glosas_avoided == 1
        assert len(await rule_service.rule_history(rule.id)) == 2

    @pytest.mark.asyncio
    async def test_underbilled_line_has_no_glosa(self, radicado_service, make_radicado):
        """Test billing below the pacted value is flagged but not objected"""
        stored = await radicado_service.intake(
            make_radicado([authorized_consultation(quantity=1, unit_value="40000")])
        )
        result = await radicado_service.run_pipeline(stored.id)

        tariff = [v for v in result.effective_validations if v.validation_type.value == "tariff"]
        assert tariff[0].is_failing
        assert result.status == RadicadoStatus.LIQUIDATED
        assert result.glosas == []
        assert result.liquidation.accepted_value == Decimal("40000.00")
        assert result.liquidation.final_payable == Decimal("40000.00")

    @pytest.mark.asyncio
    async def test_failed_save_restores_consumption(
        self, radicado_service, repositories, make_radicado, monkeypatch
    ):
        """Test authorization units are given back when the radicado cannot be saved"""
        stored = await radicado_service.intake(make_radicado([authorized_consultation()]))

        async def conflicting_save(radicado, expected_version):
            raise ConcurrencyConflictError(str(radicado.id), expected_version, expected_version + 1)

        monkeypatch.setattr(repositories.radicados, "save", conflicting_save)

        with pytest.raises(ConcurrencyConflictError):
            await radicado_service.run_pipeline(stored.id)

        assert await units_used(repositories) == 0
        unchanged = await radicado_service.get_radicado(stored.id)
        assert unchanged.status == RadicadoStatus.IN_PROCESS
        assert unchanged.liquidation is None

    @pytest.mark.asyncio
    async def test_failed_rerun_keeps_committed_consumption(
        self, radicado_service, repositories, make_radicado, monkeypatch
    ):
        """Test a failed re-run leaves the units of the committed pass in place"""
        stored = await radicado_service.intake(make_radicado([authorized_consultation()]))
        committed = await radicado_service.run_pipeline(stored.id)

        async def failing_save(radicado, expected_version):
            raise RuntimeError("connection lost")

        monkeypatch.setattr(repositories.radicados, "save", failing_save)

        with pytest.raises(RuntimeError):
            await radicado_service.run_pipeline(stored.id)

        assert await units_used(repositories) == 2
        assert (await radicado_service.get_radicado(stored.id)).version == committed.version

    @pytest.mark.asyncio
    async def test_malformed_pass_leaves_radicado_untouched(self, radicado_service, make_radicado):
        """Test a structural error aborts the pass without writing anything"""
        stored = await radicado_service.intake(
            make_radicado([authorized_consultation()], billed_total=Decimal("999"))
        )

        with pytest.raises(MalformedRadicadoError) as exc_info:
            await radicado_service.run_pipeline(stored.id)

        assert "no coincide" in exc_info.value.errors[0]
        current = await radicado_service.get_radicado(stored.id)
        assert current.version == stored.version
        assert current.status == RadicadoStatus.IN_PROCESS
        assert current.pass_number == 0
        assert current.liquidation is None

    @pytest.mark.asyncio
    async def test_payer_query_failure_is_observation(self, repositories, make_radicado):
        """Test a failed external lookup does not block liquidation"""
        client = PayerVerificationClient(
            "https://verificacion.example.test/radicados",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        service = RadicadoService(repositories, payer_client=client, clock=lambda: TODAY)
        stored = await service.intake(make_radicado([authorized_consultation()]))

        result = await service.run_pipeline(stored.id)

        assert result.status == RadicadoStatus.LIQUIDATED
        assert len(result.external_queries) == 1
        assert not result.external_queries[0].success
        assert (
            "Consulta externa a nueva_eps fallida: nueva_eps returned HTTP 500"
            in result.liquidation.observations
        )


@pytest.mark.integration
class TestIntake:
    """Document completeness and malformed intake"""

    @pytest.mark.asyncio
    async def test_missing_documents_keep_pending(self, radicado_service, make_radicado):
        """Test processing waits for the required documents"""
        stored = await radicado_service.intake(
            make_radicado([authorized_consultation()], documents=[])
        )
        assert stored.status == RadicadoStatus.PENDING
        assert "Documentos requeridos faltantes: factura" in stored.observations

        with pytest.raises(InvalidTransitionError):
            await radicado_service.run_pipeline(stored.id)

        updated = await radicado_service.add_documents(
            stored.id,
            [Document(document_type=DocumentType.INVOICE, original_name="factura.pdf", size_bytes=1024)],
        )
        assert updated.status == RadicadoStatus.IN_PROCESS

        result = await radicado_service.run_pipeline(stored.id)
        assert result.status == RadicadoStatus.LIQUIDATED

    @pytest.mark.asyncio
    async def test_empty_document_rejects(self, radicado_service, make_radicado):
        """Test a zero-byte document rejects the radicado at intake"""
        stored = await radicado_service.intake(
            make_radicado(
                [authorized_consultation()],
                documents=[Document(document_type=DocumentType.INVOICE, original_name="vacia.pdf", size_bytes=0)],
            )
        )
        assert stored.status == RadicadoStatus.REJECTED
        assert "vacia.pdf" in stored.status_history[-1].reason


@pytest.mark.integration
class TestClosing:
    """Export, finalization and rejection"""

    @pytest.mark.asyncio
    async def test_export_finalizes(self, radicado_service, make_radicado):
        """Test exporting the report finalizes a liquidated radicado"""
        stored = await radicado_service.intake(make_radicado([authorized_consultation()]))
        await radicado_service.run_pipeline(stored.id)

        exported = await radicado_service.mark_exported(stored.id, "auditor")

        assert exported.liquidation.excel_generated
        assert exported.status == RadicadoStatus.FINALIZED

    @pytest.mark.asyncio
    async def test_export_requires_liquidation(self, radicado_service, make_radicado):
        """Test a radicado without liquidation cannot be exported"""
        stored = await radicado_service.intake(make_radicado([authorized_consultation()]))
        with pytest.raises(AuditError):
            await radicado_service.mark_exported(stored.id)

    @pytest.mark.asyncio
    async def test_finalized_can_be_reevaluated(self, radicado_service, make_radicado):
        """Test a finalized radicado re-enters the pipeline"""
        stored = await radicado_service.intake(make_radicado([authorized_consultation()]))
        await radicado_service.run_pipeline(stored.id)
        await radicado_service.finalize(stored.id)

        result = await radicado_service.run_pipeline(stored.id)

        assert result.status == RadicadoStatus.LIQUIDATED
        assert result.pass_number == 2

    @pytest.mark.asyncio
    async def test_reject_releases_consumption(self, radicado_service, repositories, make_radicado):
        """Test rejecting a radicado frees the authorization units it held"""
        stored = await radicado_service.intake(make_radicado([authorized_consultation()]))
        await radicado_service.run_pipeline(stored.id)
        assert await units_used(repositories) == 2

        rejected = await radicado_service.reject(stored.id, "Factura duplicada", "auditor")

        assert rejected.status == RadicadoStatus.REJECTED
        assert rejected.status_history[-1].reason == "Factura duplicada"
        assert await units_used(repositories) == 0

    @pytest.mark.asyncio
    async def test_failed_reject_keeps_consumption(
        self, radicado_service, repositories, make_radicado, monkeypatch
    ):
        """Test a reject that cannot be saved does not release the units"""
        stored = await radicado_service.intake(make_radicado([authorized_consultation()]))
        await radicado_service.run_pipeline(stored.id)

        async def conflicting_save(radicado, expected_version):
            raise ConcurrencyConflictError(str(radicado.id), expected_version, expected_version + 1)

        monkeypatch.setattr(repositories.radicados, "save", conflicting_save)

        with pytest.raises(ConcurrencyConflictError):
            await radicado_service.reject(stored.id, "Factura duplicada")

        assert await units_used(repositories) == 2
        assert (await radicado_service.get_radicado(stored.id)).status == RadicadoStatus.LIQUIDATED


@pytest.mark.integration
class TestConcurrency:
    """Radicados competing for the same authorization"""

    @pytest.mark.asyncio
    async def test_authorization_cannot_be_overconsumed(
        self, radicado_service, repositories, make_radicado
    ):
        """Test two radicados racing on one authorization never exceed its quantity"""
        first = await radicado_service.intake(
            make_radicado([authorized_consultation()], number="RAD-2024-0101")
        )
        second = await radicado_service.intake(
            make_radicado([authorized_consultation()], number="RAD-2024-0102")
        )

        results = await asyncio.gather(
            radicado_service.run_pipeline(first.id),
            radicado_service.run_pipeline(second.id),
        )

        assert sorted(r.status.value for r in results) == ["liquidated", "with_glosas"]
        loser = next(r for r in results if r.status == RadicadoStatus.WITH_GLOSAS)
        assert [g.code for g in loser.glosas] == ["101"]
        assert await units_used(repositories) == 2

    @pytest.mark.asyncio
    async def test_same_radicado_passes_serialize(self, radicado_service, make_radicado):
        """Test concurrent passes of one radicado both commit in turn"""
        stored = await radicado_service.intake(make_radicado([authorized_consultation()]))

        results = await asyncio.gather(
            radicado_service.run_pipeline(stored.id),
            radicado_service.run_pipeline(stored.id),
        )

        assert sorted(r.pass_number for r in results) == [1, 2]


DATABASE_URL = os.environ.get("AUDITORIA_TEST_DATABASE_URL")


@pytest.mark.integration
@pytest.mark.slow
@pytest.mark.skipif(not DATABASE_URL, reason="AUDITORIA_TEST_DATABASE_URL not set")
class TestSqlRepositories:
    """SQL-enforced concurrency guards against PostgreSQL"""

    @pytest_asyncio.fixture
    async def session_maker(self):
        from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
        from sqlalchemy.pool import NullPool

        from auditoria.db.seeds import seed_database
        from auditoria.models import Base

        engine = create_async_engine(DATABASE_URL, poolclass=NullPool)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        maker = async_sessionmaker(engine, expire_on_commit=False)
        await seed_database(maker)
        yield maker
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, session_maker, make_radicado):
        """Test a save with a stale version raises a conflict"""
        from auditoria.repositories.sql import SqlRadicadoRepository
        from auditoria.schemas.radicado import Radicado

        repository = SqlRadicadoRepository(session_maker)
        stored = await repository.add(
            Radicado(**make_radicado([authorized_consultation()]).model_dump())
        )
        await repository.save(stored, stored.version)

        with pytest.raises(ConcurrencyConflictError):
            await repository.save(stored, stored.version)

    @pytest.mark.asyncio
    async def test_consumption_budget_enforced(self, session_maker):
        """Test consumption beyond the authorized quantity fails"""
        from uuid import uuid4

        from auditoria.repositories.sql import SqlAuthorizationRepository

        repository = SqlAuthorizationRepository(session_maker)
        radicado_id = uuid4()
        await repository.consume("AUT20240001", "890201", radicado_id, 1, 2)

        with pytest.raises(AuthorizationConsumptionError):
            await repository.consume("AUT20240001", "890201", uuid4(), 1, 2)

        authorization = await repository.get_by_number("AUT20240001")
        assert authorization.services[0].quantity_used == 2


@pytest.mark.integration
class TestServiceWiring:
    """Shared service instances built from settings"""

    @pytest.fixture(autouse=True)
    def fresh_singletons(self):
        from auditoria.repositories import reset_repositories
        from auditoria.services.radicado_service import reset_radicado_service
        from auditoria.services.rule_service import reset_rule_service

        reset_repositories()
        reset_radicado_service()
        reset_rule_service()
        yield
        reset_repositories()
        reset_radicado_service()
        reset_rule_service()

    def test_demo_mode_shares_repositories(self):
        """Test both services run over the same in-memory repositories"""
        from auditoria.repositories.memory import InMemoryRadicadoRepository
        from auditoria.services.radicado_service import get_radicado_service
        from auditoria.services.rule_service import get_rule_service

        radicados = get_radicado_service()
        rules = get_rule_service()

        assert radicados is get_radicado_service()
        assert isinstance(radicados.repositories.radicados, InMemoryRadicadoRepository)
        assert rules.repository is radicados.repositories.rules
        assert radicados.payer_client is None

    def test_payer_client_from_settings(self, monkeypatch):
        """Test a configured verification URL enables the external lookup"""
        from auditoria.core.config import reset_audit_settings
        from auditoria.services.radicado_service import get_radicado_service

        monkeypatch.setenv("AUDITORIA_PAYER_VERIFICATION_URL", "https://verificacion.example.test")
        reset_audit_settings()

        assert get_radicado_service().payer_client.url == "https://verificacion.example.test"
