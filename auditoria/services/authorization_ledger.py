"""
Authorization Ledger.

Provides:
- Pure predicates over authorizations (validity as of a date, availability)
- validate-authorization(number, procedure, quantity)
- Explicit lazy expiry on read
- Serialized consumption keyed by (radicado, line item)
- Voiding

Consumption of a single authorization is serialized with a per-authorization
asyncio.Lock; the SQL repository additionally uses a conditional UPDATE so two
processes cannot jointly exceed an authorized quantity.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from auditoria.core.enums import AuthorizationStatus
from auditoria.repositories.base import AuthorizationRepository
from auditoria.schemas.authorization import (
    Authorization,
    AuthorizationCheck,
    AuthorizationConsumption,
)
from auditoria.utils.errors import (
    AuthorizationConsumptionError,
    AuthorizationNotFoundError,
    AuthorizationStateError,
)

logger = logging.getLogger(__name__)

USABLE_STATUSES = frozenset({AuthorizationStatus.ACTIVE, AuthorizationStatus.PARTIALLY_USED})
VOIDABLE_STATUSES = USABLE_STATUSES


# =============================================================================
# Pure Predicates
# =============================================================================


def is_expired_as_of(authorization: Authorization, as_of: date) -> bool:
    """True once the expiry date has passed."""
    return as_of > authorization.expiry_date


def is_active_as_of(authorization: Authorization, as_of: date) -> bool:
    """True when the authorization can be billed against on `as_of`."""
    return (
        authorization.status in USABLE_STATUSES
        and authorization.issue_date <= as_of
        and not is_expired_as_of(authorization, as_of)
    )


def own_consumption(
    authorization: Authorization,
    procedure_code: str,
    radicado_id: Optional[UUID],
) -> int:
    """Units of a procedure already consumed by one radicado."""
    if radicado_id is None:
        return 0
    return sum(
        c.quantity
        for c in authorization.consumptions
        if c.radicado_id == radicado_id and c.procedure_code == procedure_code
    )


def available_quantity(
    authorization: Authorization,
    procedure_code: str,
    radicado_id: Optional[UUID] = None,
) -> Optional[int]:
    """
    Remaining units of a procedure.

    Units already consumed by `radicado_id` count as available to it, so a
    re-evaluated radicado is checked against the same budget as its first pass.
    Returns None when the procedure is not authorized.
    """
    service = authorization.service_for(procedure_code)
    if service is None:
        return None
    return service.available + own_consumption(authorization, procedure_code, radicado_id)


def check_authorization(
    authorization: Optional[Authorization],
    number: str,
    procedure_code: str,
    quantity: int,
    as_of: date,
    patient_document: Optional[str] = None,
    radicado_id: Optional[UUID] = None,
    already_requested: int = 0,
) -> AuthorizationCheck:
    """
    Decide whether `quantity` units of `procedure_code` can be billed.

    `already_requested` holds units claimed by earlier line items of the same
    radicado against the same authorization and procedure.
    """
    base = {"number": number, "procedure_code": procedure_code, "requested": quantity}

    if authorization is None:
        return AuthorizationCheck(valid=False, message="Autorización no encontrada", **base)

    base["status"] = authorization.status

    if authorization.status == AuthorizationStatus.VOIDED:
        return AuthorizationCheck(valid=False, message="Autorización anulada", **base)

    if is_expired_as_of(authorization, as_of) or authorization.status == AuthorizationStatus.EXPIRED:
        return AuthorizationCheck(
            valid=False, message="Autorización vencida", expired=True, **base
        )

    if as_of < authorization.issue_date:
        return AuthorizationCheck(
            valid=False,
            message=(
                "Autorización no vigente: expedida el "
                f"{authorization.issue_date.isoformat()}"
            ),
            **base,
        )

    if patient_document and authorization.patient_document != patient_document:
        return AuthorizationCheck(
            valid=False,
            message="La autorización no corresponde al paciente",
            **base,
        )

    available = available_quantity(authorization, procedure_code, radicado_id)
    if available is None:
        return AuthorizationCheck(
            valid=False,
            message=f"Servicio {procedure_code} no está autorizado",
            **base,
        )

    available = max(available - already_requested, 0)
    if quantity > available:
        return AuthorizationCheck(
            valid=False,
            message=(
                f"Cantidad excede lo autorizado. Disponible: {available}, "
                f"Solicitado: {quantity}"
            ),
            available=available,
            **base,
        )

    return AuthorizationCheck(
        valid=True, message="Autorización válida", available=available, **base
    )


def derive_usage_status(authorization: Authorization) -> AuthorizationStatus:
    """
    Status after a consumption change.

    Usage status only moves forward (active -> partially_used -> used);
    releasing units never reopens a used authorization's status.
    """
    if authorization.status not in (*USABLE_STATUSES, AuthorizationStatus.USED):
        return authorization.status
    total = sum(s.quantity for s in authorization.services)
    used = sum(s.quantity_used for s in authorization.services)
    if used >= total:
        return AuthorizationStatus.USED
    if authorization.status == AuthorizationStatus.USED:
        return AuthorizationStatus.USED
    if used > 0 or authorization.status == AuthorizationStatus.PARTIALLY_USED:
        return AuthorizationStatus.PARTIALLY_USED
    return AuthorizationStatus.ACTIVE


def apply_consumption(
    authorization: Authorization,
    procedure_code: str,
    radicado_id: UUID,
    line_number: int,
    quantity: int,
    at: Optional[datetime] = None,
) -> Authorization:
    """
    Set the units consumed by one radicado line item.

    Returns an updated copy; quantity 0 releases the line's consumption.
    Raises AuthorizationConsumptionError if the budget would be exceeded.
    """
    updated = authorization.model_copy(deep=True)
    service = updated.service_for(procedure_code)
    if service is None:
        raise AuthorizationConsumptionError(updated.number, procedure_code, 0, quantity)

    previous = next(
        (
            c
            for c in updated.consumptions
            if c.radicado_id == radicado_id and c.line_number == line_number
        ),
        None,
    )
    previous_quantity = previous.quantity if previous else 0
    delta = quantity - previous_quantity
    if delta > service.available:
        raise AuthorizationConsumptionError(
            updated.number,
            procedure_code,
            service.available + previous_quantity,
            quantity,
        )

    service.quantity_used += delta
    updated.consumptions = [c for c in updated.consumptions if c is not previous]
    if quantity > 0:
        updated.consumptions.append(
            AuthorizationConsumption(
                radicado_id=radicado_id,
                line_number=line_number,
                procedure_code=procedure_code,
                quantity=quantity,
                consumed_at=at or datetime.now(timezone.utc),
            )
        )
        updated.used_at = at or datetime.now(timezone.utc)
    updated.status = derive_usage_status(updated)
    return updated


# =============================================================================
# Ledger Service
# =============================================================================


class AuthorizationLedger:
    """Reads, consumes, expires and voids authorizations."""

    def __init__(
        self,
        repository: AuthorizationRepository,
        clock: Optional[Callable[[], date]] = None,
    ):
        self._repository = repository
        self._clock = clock or date.today
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _lock_for(self, number: str) -> asyncio.Lock:
        return self._locks[number]

    async def peek(self, number: str) -> Optional[Authorization]:
        """Read without applying expiry (validators work on snapshots)."""
        return await self._repository.get_by_number(number)

    async def get_authorization_by_number(
        self, number: str, as_of: Optional[date] = None
    ) -> Authorization:
        """
        Fetch an authorization, persisting an expiry that is due.

        Raises:
            AuthorizationNotFoundError: unknown number
        """
        authorization = await self._repository.get_by_number(number)
        if authorization is None:
            raise AuthorizationNotFoundError(number)
        as_of = as_of or self._clock()
        if authorization.status == AuthorizationStatus.ACTIVE and is_expired_as_of(
            authorization, as_of
        ):
            authorization = await self.mark_expired(number, as_of)
        return authorization

    async def validate_authorization(
        self,
        number: str,
        procedure_code: str,
        quantity: int,
        as_of: Optional[date] = None,
    ) -> AuthorizationCheck:
        """Check whether `quantity` units of a procedure can still be billed."""
        as_of = as_of or self._clock()
        authorization = await self._repository.get_by_number(number)
        check = check_authorization(authorization, number, procedure_code, quantity, as_of)
        if check.expired and authorization and authorization.status == AuthorizationStatus.ACTIVE:
            await self.mark_expired(number, as_of)
            check = check.model_copy(update={"status": AuthorizationStatus.EXPIRED})
        return check

    async def mark_expired(self, number: str, as_of: Optional[date] = None) -> Authorization:
        """Transition an active authorization past its expiry date to expired."""
        as_of = as_of or self._clock()
        async with self._lock_for(number):
            authorization = await self._repository.get_by_number(number)
            if authorization is None:
                raise AuthorizationNotFoundError(number)
            if authorization.status != AuthorizationStatus.ACTIVE or not is_expired_as_of(
                authorization, as_of
            ):
                return authorization
            authorization.status = AuthorizationStatus.EXPIRED
            saved = await self._repository.save(authorization)
            logger.info(f"Authorization {number} expired (expiry {authorization.expiry_date})")
            return saved

    async def expire_due(self, as_of: Optional[date] = None) -> list[Authorization]:
        """Sweep every active authorization past its expiry date to expired."""
        as_of = as_of or self._clock()
        expired = [
            await self.mark_expired(authorization.number, as_of)
            for authorization in await self._repository.list_expiring(as_of)
        ]
        if expired:
            logger.info(f"{len(expired)} authorization(s) expired as of {as_of}")
        return expired

    async def void(self, number: str, reason: str) -> Authorization:
        """Void an active or partially used authorization (terminal)."""
        async with self._lock_for(number):
            authorization = await self._repository.get_by_number(number)
            if authorization is None:
                raise AuthorizationNotFoundError(number)
            if authorization.status not in VOIDABLE_STATUSES:
                raise AuthorizationStateError(
                    f"Authorization {number} cannot be voided from {authorization.status.value}",
                    {"number": number, "status": authorization.status.value},
                )
            authorization.status = AuthorizationStatus.VOIDED
            authorization.void_reason = reason
            saved = await self._repository.save(authorization)
            logger.info(f"Authorization {number} voided: {reason}")
            return saved

    async def consume(
        self,
        number: str,
        procedure_code: str,
        radicado_id: UUID,
        line_number: int,
        quantity: int,
    ) -> Authorization:
        """
        Record the units consumed by a radicado line item.

        Idempotent per (radicado, line item): calling it again with the same
        quantity changes nothing, a different quantity applies the delta.
        """
        async with self._lock_for(number):
            return await self._repository.consume(
                number, procedure_code, radicado_id, line_number, quantity
            )

    async def held_by(self, radicado_id: UUID) -> dict[tuple[str, int], tuple[str, int]]:
        """Units the radicado currently holds, in the shape `sync_radicado_consumption` takes."""
        return {
            (number, c.line_number): (c.procedure_code, c.quantity)
            for number, c in await self._repository.list_consumptions(radicado_id)
        }

    async def sync_radicado_consumption(
        self,
        radicado_id: UUID,
        desired: dict[tuple[str, int], tuple[str, int]],
    ) -> None:
        """
        Make the ledger reflect exactly `desired` for one radicado.

        `desired` maps (authorization number, line number) to
        (procedure code, quantity). Consumptions the radicado held for other
        keys are released. If any consumption fails, changes already made in
        this call are reverted before the error propagates.
        """
        previous = await self.held_by(radicado_id)

        changes: list[tuple[tuple[str, int], str, int]] = []
        for key, (code, _) in previous.items():
            if key not in desired:
                changes.append((key, code, 0))
        for key, (code, quantity) in desired.items():
            if previous.get(key) != (code, quantity):
                if key in previous and previous[key][0] != code:
                    changes.append((key, previous[key][0], 0))
                changes.append((key, code, quantity))

        # Releases first so freed units are available to the increases
        changes.sort(key=lambda change: change[2] > 0)

        applied: list[tuple[tuple[str, int], str, int]] = []
        try:
            for (number, line_number), code, quantity in changes:
                await self.consume(number, code, radicado_id, line_number, quantity)
                applied.append(((number, line_number), code, quantity))
        except AuthorizationConsumptionError:
            for (number, line_number), code, _ in reversed(applied):
                restore = previous.get((number, line_number))
                quantity = restore[1] if restore and restore[0] == code else 0
                await self.consume(number, code, radicado_id, line_number, quantity)
            raise

        if changes:
            logger.debug(
                f"Radicado {radicado_id}: {len(changes)} authorization consumption change(s)"
            )
