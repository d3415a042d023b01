"""
Reference Data Seeds.

Sample ISS-2004 catalog, the NUEVA EPS demo contract, the moderating fee
schedule, habilitations and the clinical compatibility table. Used to populate
demo-mode repositories and fresh databases.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditoria.core.enums import (
    ContractType,
    Exemption,
    IncomeCategory,
    Regimen,
    ServiceType,
    TariffSchedule,
)
from auditoria.models.authorization import AuthorizationRecord
from auditoria.models.reference import (
    ClinicalCompatibilityRecord,
    ContractRecord,
    HabilitationRecordRow,
    ModeratingFeeRecord,
    TariffCatalogRecord,
)
from auditoria.schemas.authorization import Authorization, AuthorizedService
from auditoria.schemas.reference import (
    CategoryMultiplier,
    ClinicalCompatibility,
    Contract,
    CopayRow,
    HabilitationRecord,
    ModeratingFeeRow,
    PactedTariff,
    TariffCatalogEntry,
)
from auditoria.utils.logging import get_logger

logger = get_logger(__name__)

NUEVA_EPS_NIT = "800249604"
DEMO_PROVIDER_NIT = "900123456"


def tariff_catalog() -> list[TariffCatalogEntry]:
    """Subset of the ISS-2004 reference schedule."""
    rows = [
        ("890201", "Consulta de primera vez por medicina general", "Consulta", "45000", False, ServiceType.GENERAL_CONSULTATION),
        ("890301", "Consulta de control por medicina general", "Consulta", "38000", False, ServiceType.GENERAL_CONSULTATION),
        ("890202", "Consulta de primera vez por medicina especializada", "Consulta", "62000", False, ServiceType.SPECIALIST_CONSULTATION),
        ("890701", "Consulta de urgencias por medicina general", "Urgencias", "58000", False, ServiceType.EMERGENCY_CONSULTATION),
        ("903841", "Glucosa en suero u otro fluido", "Laboratorio", "12500", False, ServiceType.LABORATORY),
        ("902210", "Hemograma IV", "Laboratorio", "28000", False, ServiceType.LABORATORY),
        ("871121", "Radiografía de tórax", "Imagenología", "65000", False, ServiceType.IMAGING),
        ("881602", "Ecografía de abdomen total", "Imagenología", "118000", True, ServiceType.IMAGING),
        ("470101", "Apendicectomía", "Cirugía", "1850000", True, ServiceType.SURGICAL_PROCEDURE),
        ("513100", "Colecistectomía por laparoscopia", "Cirugía", "2450000", True, ServiceType.SURGICAL_PROCEDURE),
    ]
    return [
        TariffCatalogEntry(
            code=code,
            description=description,
            category=category,
            schedule=TariffSchedule.ISS_2004,
            value=Decimal(value),
            requires_authorization=requires_authorization,
            service_type=service_type,
        )
        for code, description, category, value, requires_authorization, service_type in rows
    ]


def contracts() -> list[Contract]:
    """NUEVA EPS payer-wide POS contract (ISS-2004 + 15%)."""
    return [
        Contract(
            name="Convenio NUEVA EPS - POS 2024",
            payer_nit=NUEVA_EPS_NIT,
            payer_name="NUEVA EPS",
            contract_type=ContractType.POS,
            tariff_schedule=TariffSchedule.ISS_2004,
            global_factor=Decimal("1.15"),
            pacted_tariffs=[
                PactedTariff(
                    procedure_code="513100",
                    value=Decimal("2600000"),
                    description="Colecistectomía paquete integral",
                ),
            ],
            category_multipliers=[
                CategoryMultiplier(category="Consulta", multiplier=Decimal("1.15")),
                CategoryMultiplier(category="Cirugía", multiplier=Decimal("1.20")),
                CategoryMultiplier(category="Laboratorio", multiplier=Decimal("1.10")),
            ],
            copays=[
                CopayRow(regimen=Regimen.CONTRIBUTIVO, category=IncomeCategory.A, percentage=Decimal("20"), cap=Decimal("1200000")),
                CopayRow(regimen=Regimen.CONTRIBUTIVO, category=IncomeCategory.B, percentage=Decimal("15"), cap=Decimal("900000")),
                CopayRow(regimen=Regimen.CONTRIBUTIVO, category=IncomeCategory.C, percentage=Decimal("10"), cap=Decimal("600000")),
            ],
            moderating_fees=[
                ModeratingFeeRow(
                    regimen=Regimen.CONTRIBUTIVO,
                    category=IncomeCategory.A,
                    service_type=ServiceType.GENERAL_CONSULTATION,
                    fixed_value=Decimal("4500"),
                ),
            ],
            start_date=date(2024, 1, 1),
            end_date=None,
        )
    ]


def moderating_fees() -> list[ModeratingFeeRow]:
    """Standalone cuota moderadora schedule."""
    return [
        ModeratingFeeRow(
            regimen=Regimen.SUBSIDIADO,
            category=IncomeCategory.B,
            service_type=ServiceType.GENERAL_CONSULTATION,
            fixed_value=Decimal("0"),
            exemptions=[Exemption.ALL],
            description="Régimen subsidiado exento de cuota moderadora",
        ),
        ModeratingFeeRow(
            regimen=Regimen.CONTRIBUTIVO,
            category=IncomeCategory.A,
            service_type=ServiceType.GENERAL_CONSULTATION,
            fixed_value=Decimal("4500"),
            exemptions=[Exemption.UNDER_ONE_YEAR, Exemption.PREGNANT],
        ),
        ModeratingFeeRow(
            regimen=Regimen.CONTRIBUTIVO,
            category=IncomeCategory.B,
            service_type=ServiceType.GENERAL_CONSULTATION,
            fixed_value=Decimal("18000"),
            exemptions=[Exemption.UNDER_ONE_YEAR, Exemption.PREGNANT, Exemption.DISPLACED],
        ),
        ModeratingFeeRow(
            regimen=Regimen.CONTRIBUTIVO,
            category=IncomeCategory.C,
            service_type=ServiceType.GENERAL_CONSULTATION,
            percentage=Decimal("3.6"),
            cap=Decimal("47300"),
            exemptions=[Exemption.UNDER_ONE_YEAR, Exemption.PREGNANT, Exemption.CONFLICT_VICTIM],
        ),
        ModeratingFeeRow(
            regimen=Regimen.CONTRIBUTIVO,
            category=IncomeCategory.A,
            service_type=ServiceType.LABORATORY,
            percentage=Decimal("0.3"),
            cap=Decimal("3500"),
        ),
    ]


def habilitations() -> list[HabilitationRecord]:
    """Service categories habilitated for the demo provider."""
    return [
        HabilitationRecord(
            provider_nit=DEMO_PROVIDER_NIT,
            service_category=category,
            start_date=date(2023, 1, 1),
        )
        for category in ("Consulta", "Urgencias", "Laboratorio", "Imagenología", "Cirugía")
    ]


def clinical_compatibility() -> list[ClinicalCompatibility]:
    """Procedure/diagnosis compatibility table."""
    return [
        ClinicalCompatibility(
            procedure_code="470101",
            allowed_diagnosis_prefixes=["K35", "K36", "K37"],
            description="Apendicectomía requiere diagnóstico de apendicitis",
        ),
        ClinicalCompatibility(
            procedure_code="513100",
            allowed_diagnosis_prefixes=["K80", "K81", "K82"],
            description="Colecistectomía requiere patología de vesícula",
        ),
        ClinicalCompatibility(
            procedure_category="Imagenología",
            excluded_diagnosis_prefixes=["Z00"],
            description="Imágenes diagnósticas no aplican a control de rutina",
        ),
    ]


def demo_authorizations(as_of: Optional[date] = None) -> list[Authorization]:
    """Authorizations valid around `as_of` for demo patients."""
    as_of = as_of or date.today()
    return [
        Authorization(
            number="AUT20240001",
            patient_document="1020304050",
            patient_name="María Fernanda López",
            payer_nit=NUEVA_EPS_NIT,
            principal_diagnosis="J06.9",
            services=[
                AuthorizedService(
                    procedure_code="890201",
                    description="Consulta de primera vez por medicina general",
                    quantity=3,
                    authorized_value=Decimal("51750"),
                ),
            ],
            issue_date=as_of - timedelta(days=10),
            expiry_date=as_of + timedelta(days=80),
        ),
        Authorization(
            number="AUT20240002",
            patient_document="79123456",
            patient_name="Carlos Andrés Pérez",
            payer_nit=NUEVA_EPS_NIT,
            principal_diagnosis="K35.8",
            services=[
                AuthorizedService(procedure_code="470101", description="Apendicectomía", quantity=1),
                AuthorizedService(procedure_code="902210", description="Hemograma IV", quantity=2),
            ],
            issue_date=as_of - timedelta(days=5),
            expiry_date=as_of + timedelta(days=25),
        ),
    ]


async def seed_database(session_maker: async_sessionmaker[AsyncSession]) -> None:
    """Insert reference data and demo authorizations into an empty database."""
    async with session_maker() as session:
        session.add_all(TariffCatalogRecord.from_schema(e) for e in tariff_catalog())
        session.add_all(ContractRecord.from_schema(c) for c in contracts())
        session.add_all(ModeratingFeeRecord.from_schema(r) for r in moderating_fees())
        session.add_all(HabilitationRecordRow.from_schema(h) for h in habilitations())
        session.add_all(
            ClinicalCompatibilityRecord.from_schema(c) for c in clinical_compatibility()
        )
        session.add_all(AuthorizationRecord.from_schema(a) for a in demo_authorizations())
        await session.commit()
    logger.info("Reference data seeded")
