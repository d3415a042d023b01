"""
External Query Service.

Best-effort payer verification lookups made during a pipeline pass. A failed
lookup is recorded as an ExternalQueryAttempt with its error and becomes an
observation; it never blocks the pass.
"""

import logging
from typing import Any, Optional

import httpx

from auditoria.core.config import AuditSettings, get_audit_settings
from auditoria.core.enums import ExternalSystem
from auditoria.schemas.radicado import ExternalQueryAttempt, Radicado
from auditoria.utils.errors import ExternalQueryError

logger = logging.getLogger(__name__)


class PayerVerificationClient:
    """Queries the payer's verification endpoint for a radicado."""

    def __init__(
        self,
        url: str,
        system: ExternalSystem = ExternalSystem.NUEVA_EPS,
        token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.system = system
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: Optional[AuditSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> Optional["PayerVerificationClient"]:
        """Build a client, or None when no verification URL is configured."""
        settings = settings or get_audit_settings()
        if not settings.PAYER_VERIFICATION_URL:
            return None
        return cls(
            url=settings.PAYER_VERIFICATION_URL,
            system=settings.PAYER_VERIFICATION_SYSTEM,
            token=settings.PAYER_VERIFICATION_TOKEN,
            timeout_seconds=settings.EXTERNAL_QUERY_TIMEOUT_SECONDS,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _fetch(self, radicado: Radicado) -> tuple[int, dict[str, Any]]:
        params = {
            "numero_radicado": radicado.number,
            "nit_prestador": radicado.provider_nit,
            "nit_pagador": radicado.payer_nit,
            "documento_paciente": radicado.patient.document_number,
        }
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, transport=self._transport
        ) as client:
            response = await client.get(self.url, params=params, headers=self._headers())

        if response.status_code >= 400:
            raise ExternalQueryError(
                self.system.value,
                f"{self.system.value} returned HTTP {response.status_code}",
            )
        try:
            body = response.json()
        except ValueError as e:
            raise ExternalQueryError(self.system.value, f"Invalid JSON response: {e}") from e
        if not isinstance(body, dict):
            body = {"data": body}
        return response.status_code, body

    async def verify(self, radicado: Radicado) -> ExternalQueryAttempt:
        """Run the lookup and record the attempt; never raises."""
        try:
            status_code, body = await self._fetch(radicado)
        except httpx.TimeoutException:
            error = f"Timeout after {self.timeout_seconds}s"
        except httpx.HTTPError as e:
            error = f"HTTP error: {e}"
        except ExternalQueryError as e:
            error = e.message
        else:
            return ExternalQueryAttempt(
                system=self.system,
                url=self.url,
                success=True,
                status_code=status_code,
                response=body,
            )

        logger.warning(f"External query to {self.system.value} failed for {radicado.number}: {error}")
        return ExternalQueryAttempt(system=self.system, url=self.url, success=False, error=error)
