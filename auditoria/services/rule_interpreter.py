"""
Rule Interpreter.
Source: natural-language billing rules authored by audit administrators

Turns a free-text rule plus its declared type into a validated
RuleInterpretation. The interpreter is only called when a rule is created,
edited or previewed; the pipeline evaluates the persisted result.
"""

import asyncio
import logging
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from auditoria.core.config import get_audit_settings
from auditoria.core.enums import RuleType
from auditoria.gateways.base import GatewayError
from auditoria.gateways.llm_gateway import LLMGateway, get_llm_gateway
from auditoria.schemas.rule import (
    ACTIONS_BY_RULE_TYPE,
    CONDITION_FIELDS,
    RuleInterpretation,
)
from auditoria.utils.errors import RuleInterpretationError

logger = logging.getLogger(__name__)


class RuleInterpreter(Protocol):
    """Narrow interface to whatever turns rule text into a structured action."""

    async def interpret(self, description: str, rule_type: RuleType) -> RuleInterpretation:
        ...


SYSTEM_PROMPT = (
    "Eres un experto en auditoría y liquidación de cuentas médicas en Colombia. "
    "Conviertes reglas de negocio escritas en lenguaje natural en una estructura "
    "JSON ejecutable. Respondes únicamente con JSON válido, sin markdown."
)

INTERPRETATION_PROMPT = """Interpreta la siguiente regla de facturación.

Regla: "{description}"
Tipo de regla: {rule_type}

Campos disponibles para condiciones:
{fields}

Operadores: lt, gt, eq, contains, between (usa "value" y "value_max"), exists, not_exists.

Acciones disponibles (exactamente una):
- {{"kind": "suppress_glosa_below", "threshold": <valor COP>}}: no generar glosas de monto inferior al umbral
- {{"kind": "cap_glosa_amount", "max_amount": <valor COP>}}: limitar el monto de cada glosa
- {{"kind": "require_authorization_for", "procedure_category": "<categoría>"}}: exigir autorización para una categoría de procedimientos
- {{"kind": "exempt_patient_profile", "predicate": {{"min_age", "max_age", "pregnant", "displaced", "conflict_victim", "regimen", "income_category"}}}}: eximir pacientes que cumplan el perfil
- {{"kind": "skip_validation", "validation_type": "authorization|tariff|service|clinical_coherence|date|procedure_code"}}: no aplicar una validación
- {{"kind": "widen_tariff_tolerance", "percentage": <0-100>}}: aceptar variaciones de tarifa hasta el porcentaje indicado

Acciones compatibles con el tipo {rule_type}: {allowed}

Responde con este JSON:
{{
  "conditions": [{{"field": "...", "operator": "...", "value": ..., "value_max": ...}}],
  "action": {{"kind": "...", ...}},
  "confidence": <0-100>,
  "explanation": "Breve explicación de la interpretación"
}}

Ejemplo: "No generar glosas por valores menores a $5,000"
{{"conditions": [], "action": {{"kind": "suppress_glosa_below", "threshold": 5000}}, "confidence": 100, "explanation": "Se descartan glosas de monto inferior a 5.000 pesos"}}

Ejemplo: "Los servicios de urgencias no requieren autorización previa"
{{"conditions": [{{"field": "care_type", "operator": "eq", "value": "urgencias"}}], "action": {{"kind": "skip_validation", "validation_type": "authorization"}}, "confidence": 95, "explanation": "En atenciones de urgencias no se valida la autorización"}}
"""


def build_prompt(description: str, rule_type: RuleType) -> str:
    allowed = ", ".join(sorted(kind.value for kind in ACTIONS_BY_RULE_TYPE[rule_type]))
    return INTERPRETATION_PROMPT.format(
        description=description.strip(),
        rule_type=rule_type.value,
        fields="\n".join(f"- {name}" for name in sorted(CONDITION_FIELDS)),
        allowed=allowed,
    )


def parse_interpretation(payload: dict[str, Any], processed_by: str) -> RuleInterpretation:
    """Validate a raw interpretation payload into the closed action union."""
    try:
        return RuleInterpretation.model_validate({**payload, "processed_by": processed_by})
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or 'interpretation'}: {err['msg']}"
            for err in e.errors()
        ]
        raise RuleInterpretationError("La interpretación no corresponde a una acción conocida", errors) from e


def check_interpretation(
    interpretation: RuleInterpretation,
    rule_type: RuleType,
    confidence_floor: float,
) -> list[str]:
    """Return the reasons an interpretation cannot back an active rule."""
    errors: list[str] = []
    if interpretation.confidence < confidence_floor:
        errors.append(
            f"Confianza de interpretación {interpretation.confidence:.0f}% "
            f"inferior al mínimo de {confidence_floor:.0f}%"
        )
    if interpretation.action_kind not in ACTIONS_BY_RULE_TYPE[rule_type]:
        errors.append(
            f"La acción {interpretation.action_kind.value} no es compatible "
            f"con reglas de tipo {rule_type.value}"
        )
    return errors


class LLMRuleInterpreter:
    """RuleInterpreter backed by the LLM gateway."""

    def __init__(
        self,
        gateway: Optional[LLMGateway] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self._gateway = gateway
        self.timeout_seconds = timeout_seconds or get_audit_settings().LLM_TIMEOUT_SECONDS

    @property
    def gateway(self) -> LLMGateway:
        if self._gateway is None:
            self._gateway = get_llm_gateway()
        return self._gateway

    async def interpret(self, description: str, rule_type: RuleType) -> RuleInterpretation:
        if not description or not description.strip():
            raise RuleInterpretationError("La descripción de la regla está vacía")

        prompt = build_prompt(description, rule_type)
        try:
            response = await asyncio.wait_for(
                self.gateway.complete_json(prompt, SYSTEM_PROMPT),
                timeout=self.timeout_seconds,
            )
            payload = response.parse_json()
        except asyncio.TimeoutError as e:
            logger.warning(f"Rule interpretation timed out after {self.timeout_seconds}s")
            raise RuleInterpretationError(
                f"La interpretación excedió el tiempo límite de {self.timeout_seconds:.0f}s"
            ) from e
        except GatewayError as e:
            logger.warning(f"Rule interpretation failed: {e}")
            raise RuleInterpretationError(f"Error al interpretar la regla: {e}") from e

        interpretation = parse_interpretation(payload, processed_by=response.provider)
        logger.info(
            f"Rule interpreted as {interpretation.action_kind.value} "
            f"(confidence {interpretation.confidence:.0f}%)"
        )
        return interpretation
