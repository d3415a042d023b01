"""
Radicado Status State Machine.

Provides:
- Valid status transitions
- Transition validation
- Status history recording

State Diagram:
    PENDING -> IN_PROCESS                 (all required documents present)
    IN_PROCESS -> VALIDATED               (validator set completed)
    VALIDATED -> LIQUIDATED | WITH_GLOSAS (liquidation written)
    LIQUIDATED | WITH_GLOSAS -> FINALIZED (operator confirmation or export)
    VALIDATED | LIQUIDATED | WITH_GLOSAS | FINALIZED -> IN_PROCESS (re-evaluation)
    any non-terminal -> REJECTED          (unrecoverable failure)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from auditoria.core.enums import RadicadoStatus
from auditoria.schemas.radicado import Radicado, StatusChange
from auditoria.utils.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class TransitionEvent(str, Enum):
    """Events that trigger state transitions."""

    START_PROCESSING = "start_processing"
    VALIDATION_COMPLETE = "validation_complete"
    LIQUIDATE = "liquidate"
    GLOSAS_FOUND = "glosas_found"
    FINALIZE = "finalize"
    REEVALUATE = "reevaluate"
    REJECT = "reject"


@dataclass(frozen=True)
class Transition:
    """A valid state transition."""

    from_status: RadicadoStatus
    to_status: RadicadoStatus
    event: TransitionEvent
    requires_reason: bool = False


@dataclass
class TransitionResult:
    """Result of a transition attempt."""

    success: bool
    from_status: RadicadoStatus
    to_status: Optional[RadicadoStatus] = None
    error: Optional[str] = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# =============================================================================
# Valid Transitions Definition
# =============================================================================


_REJECTABLE = (
    RadicadoStatus.PENDING,
    RadicadoStatus.IN_PROCESS,
    RadicadoStatus.VALIDATED,
    RadicadoStatus.LIQUIDATED,
    RadicadoStatus.WITH_GLOSAS,
)

_REEVALUABLE = (
    RadicadoStatus.VALIDATED,
    RadicadoStatus.LIQUIDATED,
    RadicadoStatus.WITH_GLOSAS,
    RadicadoStatus.FINALIZED,
)

VALID_TRANSITIONS: list[Transition] = [
    Transition(RadicadoStatus.PENDING, RadicadoStatus.IN_PROCESS, TransitionEvent.START_PROCESSING),
    Transition(RadicadoStatus.IN_PROCESS, RadicadoStatus.VALIDATED, TransitionEvent.VALIDATION_COMPLETE),
    Transition(RadicadoStatus.VALIDATED, RadicadoStatus.LIQUIDATED, TransitionEvent.LIQUIDATE),
    Transition(RadicadoStatus.VALIDATED, RadicadoStatus.WITH_GLOSAS, TransitionEvent.GLOSAS_FOUND),
    Transition(RadicadoStatus.LIQUIDATED, RadicadoStatus.FINALIZED, TransitionEvent.FINALIZE),
    Transition(RadicadoStatus.WITH_GLOSAS, RadicadoStatus.FINALIZED, TransitionEvent.FINALIZE),
    *(
        Transition(status, RadicadoStatus.IN_PROCESS, TransitionEvent.REEVALUATE)
        for status in _REEVALUABLE
    ),
    *(
        Transition(status, RadicadoStatus.REJECTED, TransitionEvent.REJECT, requires_reason=True)
        for status in _REJECTABLE
    ),
]


# =============================================================================
# State Machine
# =============================================================================


class RadicadoStateMachine:
    """
    State machine for radicado status transitions.

    Only the orchestrating service drives it; validators and rules never
    change a radicado's status.
    """

    def __init__(self, transitions: Optional[list[Transition]] = None):
        self._transitions: dict[tuple[RadicadoStatus, TransitionEvent], Transition] = {}
        self._from_status_map: dict[RadicadoStatus, list[Transition]] = {}
        for transition in transitions or VALID_TRANSITIONS:
            self._transitions[(transition.from_status, transition.event)] = transition
            self._from_status_map.setdefault(transition.from_status, []).append(transition)

    def get_valid_events(self, status: RadicadoStatus) -> list[TransitionEvent]:
        return [t.event for t in self._from_status_map.get(status, [])]

    def get_next_statuses(self, status: RadicadoStatus) -> list[RadicadoStatus]:
        return [t.to_status for t in self._from_status_map.get(status, [])]

    def can_apply(self, status: RadicadoStatus, event: TransitionEvent) -> bool:
        return (status, event) in self._transitions

    def validate_transition(
        self,
        status: RadicadoStatus,
        event: TransitionEvent,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        transition = self._transitions.get((status, event))
        if transition is None:
            return TransitionResult(
                success=False,
                from_status=status,
                error=f"Invalid transition: {status.value} + {event.value}",
            )
        if transition.requires_reason and not reason:
            return TransitionResult(
                success=False,
                from_status=status,
                error="Reason is required for this transition",
            )
        return TransitionResult(success=True, from_status=status, to_status=transition.to_status)

    def apply(
        self,
        radicado: Radicado,
        event: TransitionEvent,
        triggered_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Radicado:
        """
        Move a radicado to the status the event leads to and record it.

        Raises:
            InvalidTransitionError: the event is not valid from the current status
        """
        result = self.validate_transition(radicado.status, event, reason)
        if not result.success:
            logger.warning(f"Transition failed for radicado {radicado.number}: {result.error}")
            raise InvalidTransitionError(radicado.status.value, event.value, result.error)

        radicado.status_history.append(
            StatusChange(
                from_status=result.from_status,
                to_status=result.to_status,
                event=event.value,
                at=result.at,
                triggered_by=triggered_by,
                reason=reason,
            )
        )
        radicado.status = result.to_status
        radicado.updated_at = result.at

        logger.info(
            f"Radicado {radicado.number} transitioned: "
            f"{result.from_status.value} -> {result.to_status.value} (event: {event.value})"
        )
        return radicado


# =============================================================================
# Status Helpers
# =============================================================================


def is_terminal_status(status: RadicadoStatus) -> bool:
    return status == RadicadoStatus.REJECTED


def is_liquidated_status(status: RadicadoStatus) -> bool:
    """Statuses that carry a liquidation."""
    return status in (
        RadicadoStatus.LIQUIDATED,
        RadicadoStatus.WITH_GLOSAS,
        RadicadoStatus.FINALIZED,
    )


def get_status_display_name(status: RadicadoStatus) -> str:
    display_names = {
        RadicadoStatus.PENDING: "Pendiente",
        RadicadoStatus.IN_PROCESS: "En proceso",
        RadicadoStatus.VALIDATED: "Validado",
        RadicadoStatus.LIQUIDATED: "Liquidado",
        RadicadoStatus.WITH_GLOSAS: "Con glosas",
        RadicadoStatus.FINALIZED: "Finalizado",
        RadicadoStatus.REJECTED: "Rechazado",
    }
    return display_names.get(status, status.value)


# Singleton instance
_state_machine: Optional[RadicadoStateMachine] = None


def get_state_machine() -> RadicadoStateMachine:
    """Get singleton state machine instance."""
    global _state_machine
    if _state_machine is None:
        _state_machine = RadicadoStateMachine()
    return _state_machine
