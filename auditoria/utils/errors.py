"""
Custom Exceptions
Error taxonomy for the radicado audit engine.

Business outcomes (a failed validation) are never exceptions: they travel as
Validation records and become glosas. The classes below cover everything that
has to interrupt or degrade a pass, a rule edit or a ledger operation.
"""

from typing import Optional


class AuditError(Exception):
    """Base exception for the audit engine."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(AuditError):
    """Raised when a requested record does not exist."""

    pass


class RadicadoNotFoundError(NotFoundError):
    """Raised when a radicado is not found."""

    def __init__(self, radicado_id: str):
        super().__init__(f"Radicado {radicado_id} not found", {"radicado_id": radicado_id})


class RuleNotFoundError(NotFoundError):
    """Raised when a rule is not found."""

    def __init__(self, rule_id: str):
        super().__init__(f"Rule {rule_id} not found", {"rule_id": rule_id})


class AuthorizationNotFoundError(NotFoundError):
    """Raised when an authorization number is unknown."""

    def __init__(self, number: str):
        super().__init__("Autorización no encontrada", {"number": number})


class RuleInterpretationError(AuditError):
    """Raised when a rule description cannot be turned into a valid action."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.errors = errors or [message]
        super().__init__(message, {"errors": self.errors})


class ReferenceDataMissingError(AuditError):
    """Raised when no tariff, contract or fee row applies."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(
            f"No {kind} reference data for {key}",
            {"kind": kind, "key": key},
        )


class ExternalQueryError(AuditError):
    """Raised when an external lookup fails."""

    def __init__(self, system: str, message: str):
        self.system = system
        super().__init__(message, {"system": system})


class ConcurrencyConflictError(AuditError):
    """Raised when two writers race on the same radicado or authorization."""

    def __init__(
        self,
        resource_id: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
        message: Optional[str] = None,
    ):
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            message
            or (
                f"Concurrent modification of {resource_id}: "
                f"expected version {expected_version}, found {actual_version}"
            ),
            {
                "resource_id": resource_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )


class MalformedRadicadoError(AuditError):
    """Raised when a radicado cannot be processed at all."""

    def __init__(self, radicado_id: str, errors: list[str]):
        self.errors = errors
        super().__init__(
            f"Radicado {radicado_id} is malformed: {'; '.join(errors)}",
            {"radicado_id": radicado_id, "errors": errors},
        )


class InvalidTransitionError(AuditError):
    """Raised when a radicado status transition is not allowed."""

    def __init__(self, from_status: str, event: str, reason: Optional[str] = None):
        self.from_status = from_status
        self.event = event
        super().__init__(
            reason or f"Event '{event}' is not valid from status '{from_status}'",
            {"from_status": from_status, "event": event},
        )


class AuthorizationConsumptionError(AuditError):
    """Raised when a consumption would exceed an authorized quantity."""

    def __init__(self, number: str, procedure_code: str, available: int, requested: int):
        self.number = number
        self.procedure_code = procedure_code
        self.available = available
        self.requested = requested
        super().__init__(
            f"Cantidad excede lo autorizado. Disponible: {available}, Solicitado: {requested}",
            {
                "number": number,
                "procedure_code": procedure_code,
                "available": available,
                "requested": requested,
            },
        )


class AuthorizationStateError(AuditError):
    """Raised when an authorization cannot change to the requested state."""

    pass


class DuplicateRecordError(AuditError):
    """Raised when a unique business key already exists."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} {key} already exists", {"kind": kind, "key": key})


class GatewayError(AuditError):
    """Raised when no LLM provider produced a usable answer."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.provider = provider
        self.original_error = original_error
        super().__init__(message, {"provider": provider} if provider else None)


class ProviderUnavailableError(GatewayError):
    """Provider is not configured or refused the credentials."""

    pass


class ProviderTimeoutError(GatewayError):
    """Provider did not answer in time."""

    pass


class ProviderRateLimitError(GatewayError):
    """Provider rate limit exceeded."""

    pass
