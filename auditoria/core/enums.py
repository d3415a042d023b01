"""
Core Enumerations for the Radicado Audit Engine.

Closed vocabularies shared by schemas, persistence models and services.
Values mirror the terms used by Colombian EPS/IPS billing documents.
"""

from enum import Enum


# =============================================================================
# Provider Configuration Enums
# =============================================================================


class LLMProvider(str, Enum):
    """Available LLM providers for rule interpretation."""

    ANTHROPIC = "anthropic"  # Primary: Claude
    OPENAI = "openai"  # Fallback: GPT-4o
    OLLAMA = "ollama"  # Local, open-source
    AZURE_OPENAI = "azure_openai"  # Enterprise: Azure OpenAI


class IntegrationMode(str, Enum):
    """Repository backend selection."""

    DEMO = "demo"  # In-memory repositories seeded with reference data
    LIVE = "live"  # SQLAlchemy repositories over PostgreSQL


class ProviderStatus(str, Enum):
    """Health status of a provider."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ExternalSystem(str, Enum):
    """External systems queried during a pipeline pass."""

    ONBASE = "onbase"
    NUEVA_EPS = "nueva_eps"
    ACIEL = "aciel"
    OTHER = "otro"


# =============================================================================
# Radicado Enums
# =============================================================================


class RadicadoStatus(str, Enum):
    """Radicado lifecycle status."""

    PENDING = "pending"
    IN_PROCESS = "in_process"
    VALIDATED = "validated"
    LIQUIDATED = "liquidated"
    WITH_GLOSAS = "with_glosas"
    FINALIZED = "finalized"
    REJECTED = "rejected"


class DocumentType(str, Enum):
    """Types of documents attached to a radicado."""

    INVOICE = "factura"
    CLINICAL_HISTORY = "historia_clinica"
    AUTHORIZATION = "autorizacion"
    SUPPORT = "soporte"
    OTHER = "otro"


class CareType(str, Enum):
    """Type of care that originated the claim."""

    EMERGENCY = "urgencias"
    OUTPATIENT = "consulta_externa"
    INPATIENT = "hospitalizacion"
    SURGICAL = "quirurgico"
    OTHER = "otro"


class ValueRange(int, Enum):
    """Billed value bracket ("rango") of a radicado."""

    UNDER_100K = 1
    UNDER_500K = 2
    UNDER_1M = 3
    OVER_1M = 4


# =============================================================================
# Validation and Glosa Enums
# =============================================================================


class ValidationType(str, Enum):
    """Validator that produced a verdict."""

    AUTHORIZATION = "authorization"
    TARIFF = "tariff"
    SERVICE = "service"
    CLINICAL_COHERENCE = "clinical_coherence"
    DATE = "date"
    PROCEDURE_CODE = "procedure_code"


class ValidationVerdict(str, Enum):
    """Outcome of a single validation."""

    APPROVED = "approved"
    REJECTED = "rejected"
    WARNING = "warning"


class GlosaType(str, Enum):
    """Classification of a glosa (denial)."""

    ADMINISTRATIVE = "administrative"
    TECHNICAL = "technical"
    TARIFF_VARIANCE = "tariff_variance"
    AUTHORIZATION = "authorization"


class GlosaSource(str, Enum):
    """Who originated a glosa."""

    SYSTEM = "system"
    RULE = "rule"
    MANUAL = "manual"


# =============================================================================
# Rule Enums
# =============================================================================


class RuleType(str, Enum):
    """Declared type of an administrator-authored rule."""

    GLOSA = "glosa"
    AUTHORIZATION = "authorization"
    VALUE = "value"
    DATE = "date"
    SERVICE = "service"
    GENERAL = "general"


class RuleActionKind(str, Enum):
    """Closed set of structured actions a rule can carry."""

    SUPPRESS_GLOSA_BELOW = "suppress_glosa_below"
    CAP_GLOSA_AMOUNT = "cap_glosa_amount"
    REQUIRE_AUTHORIZATION_FOR = "require_authorization_for"
    EXEMPT_PATIENT_PROFILE = "exempt_patient_profile"
    SKIP_VALIDATION = "skip_validation"
    WIDEN_TARIFF_TOLERANCE = "widen_tariff_tolerance"


class ConditionOperator(str, Enum):
    """Operators available to rule conditions."""

    LT = "lt"
    GT = "gt"
    EQ = "eq"
    CONTAINS = "contains"
    BETWEEN = "between"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class RuleScopeKind(str, Enum):
    """Where a rule applies."""

    GLOBAL = "global"
    PAYER = "payer"
    PROCEDURE = "procedure"
    VALUE_RANGE = "value_range"
    CARE_TYPE = "care_type"


# =============================================================================
# Authorization Enums
# =============================================================================


class AuthorizationStatus(str, Enum):
    """Authorization lifecycle status."""

    ACTIVE = "active"
    EXPIRED = "expired"
    VOIDED = "voided"
    USED = "used"
    PARTIALLY_USED = "partially_used"


# =============================================================================
# Contract and Fee Enums
# =============================================================================


class ContractType(str, Enum):
    """Type of payer-provider contract."""

    POS = "POS"
    NO_POS = "NO_POS"
    SOAT = "SOAT"
    PRIVATE = "PARTICULAR"
    CATASTROPHIC_EVENTS = "EVENTOS_CATASTROFICOS"


class TariffSchedule(str, Enum):
    """Reference tariff schedule a contract is priced against."""

    ISS_2001 = "ISS_2001"
    ISS_2004 = "ISS_2004"
    SOAT = "SOAT"
    CUSTOM = "PERSONALIZADO"


class Regimen(str, Enum):
    """Health insurance regimen."""

    CONTRIBUTIVO = "CONTRIBUTIVO"
    SUBSIDIADO = "SUBSIDIADO"


class IncomeCategory(str, Enum):
    """Income category of the affiliate."""

    A = "A"
    B = "B"
    C = "C"


class ServiceType(str, Enum):
    """Service type used to key moderating fees."""

    GENERAL_CONSULTATION = "CONSULTA_MEDICINA_GENERAL"
    SPECIALIST_CONSULTATION = "CONSULTA_ESPECIALIZADA"
    DENTAL_CONSULTATION = "CONSULTA_ODONTOLOGIA"
    EMERGENCY_CONSULTATION = "CONSULTA_URGENCIAS"
    OUTPATIENT_PROCEDURE = "PROCEDIMIENTO_AMBULATORIO"
    SURGICAL_PROCEDURE = "PROCEDIMIENTO_QUIRURGICO"
    HOSPITALIZATION = "HOSPITALIZACION"
    MEDICATION = "MEDICAMENTOS"
    DIAGNOSTIC_AIDS = "AYUDAS_DIAGNOSTICAS"
    IMAGING = "IMAGENOLOGIA"
    LABORATORY = "LABORATORIO"


class Exemption(str, Enum):
    """Moderating fee exemptions."""

    ALL = "Todos"
    UNDER_ONE_YEAR = "Menores de 1 año"
    PREGNANT = "Mujeres en embarazo"
    DISPLACED = "Población desplazada"
    CONFLICT_VICTIM = "Víctimas del conflicto"
