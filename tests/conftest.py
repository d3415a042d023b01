"""
Pytest Configuration and Fixtures.
Shared test fixtures for all test modules.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

import pytest

from auditoria.core.config import reset_audit_settings
from auditoria.core.enums import (
    CareType,
    DocumentType,
    IncomeCategory,
    Regimen,
    RuleType,
)
from auditoria.db import seeds
from auditoria.repositories import Repositories
from auditoria.repositories.memory import (
    InMemoryAuthorizationRepository,
    InMemoryRadicadoRepository,
    InMemoryReferenceDataRepository,
    InMemoryRuleRepository,
)
from auditoria.schemas.radicado import Document, LineItem, PatientProfile, RadicadoCreate
from auditoria.schemas.rule import RuleInterpretation
from auditoria.services.authorization_ledger import AuthorizationLedger
from auditoria.services.radicado_service import RadicadoService
from auditoria.services.rule_service import RuleService
from auditoria.utils.errors import RuleInterpretationError

TODAY = date(2024, 6, 15)


class StubInterpreter:
    """RuleInterpreter returning canned interpretations keyed by description."""

    def __init__(self, responses: Optional[dict] = None):
        self.responses = responses or {}
        self.calls: list[tuple[str, RuleType]] = []

    def register(self, description: str, payload) -> None:
        self.responses[description] = payload

    async def interpret(self, description: str, rule_type: RuleType) -> RuleInterpretation:
        self.calls.append((description, rule_type))
        payload = self.responses.get(description)
        if payload is None:
            raise RuleInterpretationError("Sin interpretación disponible")
        if isinstance(payload, Exception):
            raise payload
        return RuleInterpretation.model_validate(payload)


def build_interpretation(
    action: dict, confidence: float = 95, conditions: Optional[list] = None
) -> dict:
    """Raw interpretation payload."""
    return {
        "action": action,
        "conditions": conditions or [],
        "confidence": confidence,
        "explanation": f"Acción {action['kind']}",
    }


@pytest.fixture(autouse=True)
def clean_settings():
    """Every test starts from default settings."""
    reset_audit_settings()
    yield
    reset_audit_settings()


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def reference_repository() -> InMemoryReferenceDataRepository:
    """Reference data seeded with the demo catalog and contract."""
    return InMemoryReferenceDataRepository().load(
        tariffs=seeds.tariff_catalog(),
        contracts=seeds.contracts(),
        moderating_fees=seeds.moderating_fees(),
        habilitations=seeds.habilitations(),
        clinical_compatibility=seeds.clinical_compatibility(),
    )


@pytest.fixture
def authorization_repository() -> InMemoryAuthorizationRepository:
    return InMemoryAuthorizationRepository().load(seeds.demo_authorizations(as_of=TODAY))


@pytest.fixture
def repositories(reference_repository, authorization_repository) -> Repositories:
    return Repositories(
        reference=reference_repository,
        radicados=InMemoryRadicadoRepository(),
        authorizations=authorization_repository,
        rules=InMemoryRuleRepository(),
    )


@pytest.fixture
def ledger(authorization_repository) -> AuthorizationLedger:
    return AuthorizationLedger(authorization_repository, clock=lambda: TODAY)


@pytest.fixture
def interpreter() -> StubInterpreter:
    return StubInterpreter()


@pytest.fixture
def rule_service(repositories, interpreter) -> RuleService:
    return RuleService(repositories.rules, interpreter)


@pytest.fixture
def radicado_service(repositories) -> RadicadoService:
    return RadicadoService(repositories, clock=lambda: TODAY)


@pytest.fixture
def patient() -> PatientProfile:
    return PatientProfile(
        document_number="1020304050",
        name="María Fernanda López",
        age_years=34,
        regimen=Regimen.CONTRIBUTIVO,
        income_category=IncomeCategory.A,
    )


@pytest.fixture
def make_radicado(patient):
    """Factory for intake data; each line is a dict of LineItem fields."""

    def _make(
        lines: list[dict],
        number: str = "RAD-2024-0001",
        documents: Optional[list[Document]] = None,
        care_type: CareType = CareType.OUTPATIENT,
        **overrides,
    ) -> RadicadoCreate:
        items = [
            LineItem(
                line_number=index,
                service_date=line.pop("service_date", date(2024, 6, 10)),
                **line,
            )
            for index, line in enumerate((dict(line) for line in lines), start=1)
        ]
        total = sum((item.billed_value for item in items), Decimal("0"))
        data = {
            "number": number,
            "provider_nit": seeds.DEMO_PROVIDER_NIT,
            "provider_name": "Clínica Demo",
            "payer_nit": seeds.NUEVA_EPS_NIT,
            "payer_name": "NUEVA EPS",
            "invoice_number": f"FE-{number}",
            "invoice_date": date(2024, 6, 12),
            "billed_total": total,
            "care_type": care_type,
            "patient": patient,
            "documents": documents
            if documents is not None
            else [Document(document_type=DocumentType.INVOICE, original_name="factura.pdf", size_bytes=2048)],
            "line_items": items,
        }
        data.update(overrides)
        return RadicadoCreate(**data)

    return _make


@pytest.fixture
def make_interpretation():
    return build_interpretation
