"""
Rule Service for billing rule management.

Provides:
- Rule CRUD with interpretation at creation/edit time
- Activation toggle guarded by interpretation validity
- Interpretation preview without persisting
- Usage statistics derived from the application log
- Canned example rules for authors
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from auditoria.core.config import AuditSettings, get_audit_settings
from auditoria.core.enums import RuleType
from auditoria.repositories.base import RuleRepository
from auditoria.schemas.rule import (
    Rule,
    RuleApplication,
    RuleChange,
    RuleCreate,
    RuleExample,
    RuleInterpretation,
    RulePreview,
    RuleUpdate,
    RuleUsageStats,
)
from auditoria.services.rule_interpreter import RuleInterpreter, check_interpretation
from auditoria.utils.errors import AuditError, RuleInterpretationError, RuleNotFoundError

logger = logging.getLogger(__name__)


EXAMPLE_RULES: list[RuleExample] = [
    RuleExample(
        name="Ignora glosas en servicios de bajo valor",
        description="No generar glosas por valores menores a $5,000",
        rule_type=RuleType.GLOSA,
    ),
    RuleExample(
        name="No valida autorización en urgencias",
        description="Los servicios de urgencias no requieren autorización previa",
        rule_type=RuleType.AUTHORIZATION,
    ),
    RuleExample(
        name="Margen en procedimientos quirúrgicos",
        description="Aceptar valores hasta 15% por encima del tarifario para cirugías",
        rule_type=RuleType.VALUE,
    ),
    RuleExample(
        name="Tope de glosas administrativas",
        description="Ninguna glosa puede superar $200,000",
        rule_type=RuleType.GLOSA,
    ),
    RuleExample(
        name="Amplía la vigencia de autorizaciones",
        description="No validar fechas para servicios prestados en urgencias",
        rule_type=RuleType.DATE,
    ),
    RuleExample(
        name="Imágenes siempre autorizadas",
        description="Exigir autorización para todos los servicios de Imagenología",
        rule_type=RuleType.SERVICE,
    ),
    RuleExample(
        name="Protección a población vulnerable",
        description="No glosar a pacientes menores de un año ni a mujeres en embarazo",
        rule_type=RuleType.GLOSA,
    ),
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RuleService:
    """
    Service for billing rule operations.

    The interpreter is called only here; the pipeline reads the persisted
    interpretation through `active_rules`.
    """

    def __init__(
        self,
        repository: RuleRepository,
        interpreter: RuleInterpreter,
        settings: Optional[AuditSettings] = None,
    ):
        self.repository = repository
        self.interpreter = interpreter
        self.settings = settings or get_audit_settings()

    # =========================================================================
    # Interpretation
    # =========================================================================

    async def _interpret(
        self, description: str, rule_type: RuleType
    ) -> tuple[Optional[RuleInterpretation], list[str]]:
        try:
            interpretation = await self.interpreter.interpret(description, rule_type)
        except RuleInterpretationError as e:
            return None, e.errors
        errors = check_interpretation(
            interpretation, rule_type, self.settings.RULE_CONFIDENCE_FLOOR
        )
        return interpretation, errors

    async def preview(self, description: str, rule_type: RuleType) -> RulePreview:
        """Interpret a rule text without persisting anything."""
        interpretation, errors = await self._interpret(description, rule_type)
        return RulePreview(
            description=description,
            rule_type=rule_type,
            interpretation=interpretation,
            is_valid=interpretation is not None and not errors,
            errors=errors,
        )

    def examples(self) -> list[RuleExample]:
        return [example.model_copy() for example in EXAMPLE_RULES]

    # =========================================================================
    # CRUD
    # =========================================================================

    def _check_priority(self, priority: Optional[int]) -> int:
        if priority is None:
            return self.settings.RULE_DEFAULT_PRIORITY
        low, high = self.settings.RULE_MIN_PRIORITY, self.settings.RULE_MAX_PRIORITY
        if not low <= priority <= high:
            raise AuditError(
                f"Priority must be between {low} and {high}",
                {"priority": priority},
            )
        return priority

    async def create_rule(self, data: RuleCreate) -> Rule:
        """
        Create a rule, interpreting its description.

        A rule whose interpretation fails or is invalid is stored inactive
        with the errors, so the author can fix it.
        """
        priority = self._check_priority(data.priority)
        interpretation, errors = await self._interpret(data.description, data.rule_type)
        valid = interpretation is not None and not errors

        if data.active and not valid:
            logger.warning(f"Rule '{data.name}' stored inactive: {'; '.join(errors)}")

        rule = Rule(
            name=data.name,
            description=data.description,
            rule_type=data.rule_type,
            priority=priority,
            scope=data.scope,
            active=data.active and valid,
            interpretation=interpretation,
            interpretation_errors=errors,
            created_by=data.created_by,
            change_history=[RuleChange(by=data.created_by, change="Regla creada")],
        )
        rule = await self.repository.add(rule)
        logger.info(f"Rule '{rule.name}' created (priority {rule.priority}, active={rule.active})")
        return rule

    async def _load(self, rule_id: UUID) -> Rule:
        rule = await self.repository.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(str(rule_id))
        return rule

    async def get_rule(self, rule_id: UUID) -> Rule:
        rule = await self._load(rule_id)
        stats = await self.repository.usage_stats()
        rule.stats = stats.get(rule.id, RuleUsageStats())
        return rule

    async def list_rules(
        self,
        active_only: bool = False,
        rule_type: Optional[RuleType] = None,
    ) -> list[Rule]:
        """Rules in application order, with usage statistics."""
        rules = await self.repository.list_rules(active_only=active_only, rule_type=rule_type)
        stats = await self.repository.usage_stats()
        for rule in rules:
            rule.stats = stats.get(rule.id, RuleUsageStats())
        return rules

    async def active_rules(self) -> list[Rule]:
        return await self.repository.list_rules(active_only=True)

    async def update_rule(
        self,
        rule_id: UUID,
        data: RuleUpdate,
        updated_by: Optional[str] = None,
    ) -> Rule:
        """
        Edit a rule. A changed description or type is re-interpreted; an
        invalid result deactivates the rule.
        """
        rule = await self._load(rule_id)
        previous_description = rule.description
        changes: list[str] = []

        if data.name is not None and data.name != rule.name:
            changes.append(f"nombre: '{rule.name}' -> '{data.name}'")
            rule.name = data.name
        if data.priority is not None and data.priority != rule.priority:
            changes.append(f"prioridad: {rule.priority} -> {data.priority}")
            rule.priority = self._check_priority(data.priority)
        if data.scope is not None and data.scope != rule.scope:
            changes.append("ámbito actualizado")
            rule.scope = data.scope

        reinterpret = False
        if data.description is not None and data.description != rule.description:
            changes.append("descripción actualizada")
            rule.description = data.description
            reinterpret = True
        if data.rule_type is not None and data.rule_type != rule.rule_type:
            changes.append(f"tipo: {rule.rule_type.value} -> {data.rule_type.value}")
            rule.rule_type = data.rule_type
            reinterpret = True

        if not changes:
            return rule

        if reinterpret:
            rule.interpretation, rule.interpretation_errors = await self._interpret(
                rule.description, rule.rule_type
            )
            if rule.active and not rule.is_interpretation_valid:
                rule.active = False
                changes.append("desactivada por interpretación inválida")
                logger.warning(f"Rule '{rule.name}' deactivated after edit")

        rule.change_history.append(
            RuleChange(
                by=updated_by,
                change="; ".join(changes),
                previous_description=previous_description if reinterpret else None,
            )
        )
        rule.updated_at = _utcnow()
        return await self.repository.save(rule)

    async def toggle_rule(
        self,
        rule_id: UUID,
        active: Optional[bool] = None,
        toggled_by: Optional[str] = None,
    ) -> Rule:
        """
        Activate or deactivate a rule; without `active` the state flips.

        Raises:
            RuleInterpretationError: activating a rule without a valid interpretation
        """
        rule = await self._load(rule_id)
        target = (not rule.active) if active is None else active
        if target == rule.active:
            return rule

        if target and not rule.is_interpretation_valid:
            raise RuleInterpretationError(
                "La regla no tiene una interpretación válida",
                rule.interpretation_errors or ["Regla sin interpretar"],
            )

        rule.active = target
        rule.change_history.append(
            RuleChange(by=toggled_by, change="Regla activada" if target else "Regla desactivada")
        )
        rule.updated_at = _utcnow()
        logger.info(f"Rule '{rule.name}' {'activated' if target else 'deactivated'}")
        return await self.repository.save(rule)

    async def delete_rule(self, rule_id: UUID) -> None:
        if not await self.repository.delete(rule_id):
            raise RuleNotFoundError(str(rule_id))
        logger.info(f"Rule {rule_id} deleted")

    # =========================================================================
    # Statistics
    # =========================================================================

    async def usage_stats(self) -> dict[UUID, RuleUsageStats]:
        return await self.repository.usage_stats()

    async def rule_history(self, rule_id: UUID) -> list[RuleApplication]:
        """Every recorded application of a rule, all passes included."""
        await self._load(rule_id)
        return await self.repository.list_applications(rule_id)


# Singleton instance
_rule_service: Optional[RuleService] = None


def get_rule_service() -> RuleService:
    """Get or create the rule service over the shared repositories."""
    global _rule_service
    if _rule_service is None:
        from auditoria.repositories import get_repositories
        from auditoria.services.rule_interpreter import LLMRuleInterpreter

        _rule_service = RuleService(get_repositories().rules, LLMRuleInterpreter())
    return _rule_service


def reset_rule_service() -> None:
    global _rule_service
    _rule_service = None
