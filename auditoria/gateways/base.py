"""
Provider Failover Gateway.

Rule interpretation depends on a remote model that can be slow, rate limited
or down. `BaseGateway.execute` walks the configured providers in order
(primary, then fallback) and returns a `GatewayResult` instead of raising.
Each provider keeps its own health record; after `circuit_breaker_threshold`
consecutive failures it is skipped for `circuit_breaker_timeout_seconds`.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from auditoria.core.enums import ProviderStatus
from auditoria.utils.errors import (
    GatewayError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

TRequest = TypeVar("TRequest")
TResponse = TypeVar("TResponse")
TProvider = TypeVar("TProvider", bound=Enum)

__all__ = [
    "BaseGateway",
    "GatewayConfig",
    "GatewayError",
    "GatewayResult",
    "ProviderHealth",
    "ProviderRateLimitError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
]


@dataclass
class GatewayConfig:
    """Provider order, timeouts and breaker thresholds."""

    primary_provider: str
    fallback_provider: Optional[str] = None
    fallback_on_error: bool = True
    timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout_seconds: float = 60.0

    @property
    def provider_order(self) -> list[str]:
        order = [self.primary_provider]
        if self.fallback_on_error and self.fallback_provider:
            order.append(self.fallback_provider)
        return order


@dataclass
class GatewayResult(Generic[TResponse]):
    """Outcome of `execute`; `error` joins the failure of every provider tried."""

    success: bool
    data: Optional[TResponse] = None
    error: Optional[str] = None
    provider_used: Optional[str] = None
    latency_ms: float = 0.0
    fallback_used: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderHealth:
    """Failure streak and breaker state of one provider."""

    status: ProviderStatus = ProviderStatus.UNKNOWN
    consecutive_failures: int = 0
    calls: int = 0
    failures: int = 0
    last_error: Optional[str] = None
    open_until: Optional[float] = None

    @property
    def is_circuit_open(self) -> bool:
        return self.open_until is not None and time.monotonic() < self.open_until

    def succeeded(self) -> None:
        self.calls += 1
        self.consecutive_failures = 0
        self.open_until = None
        self.status = ProviderStatus.HEALTHY

    def failed(self, error: str, threshold: int, cooldown_seconds: float) -> None:
        self.calls += 1
        self.failures += 1
        self.consecutive_failures += 1
        self.last_error = error
        if self.consecutive_failures >= threshold:
            self.open_until = time.monotonic() + cooldown_seconds
            self.status = ProviderStatus.UNHEALTHY
        else:
            self.status = ProviderStatus.DEGRADED


class BaseGateway(ABC, Generic[TRequest, TResponse, TProvider]):
    """
    Failover over interchangeable providers.

    Subclasses name the gateway, parse provider identifiers, set a provider
    up and run one request against it.
    """

    def __init__(self, config: GatewayConfig):
        self.config = config
        self._health: dict[str, ProviderHealth] = {}
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    @abstractmethod
    def gateway_name(self) -> str: ...

    @abstractmethod
    def _parse_provider(self, provider_str: str) -> TProvider: ...

    @abstractmethod
    async def _initialize_provider(self, provider: TProvider) -> None: ...

    @abstractmethod
    async def _execute_request(self, request: TRequest, provider: TProvider) -> TResponse: ...

    def _health_of(self, provider_str: str) -> ProviderHealth:
        return self._health.setdefault(provider_str, ProviderHealth())

    def get_all_status(self) -> dict[str, ProviderHealth]:
        return dict(self._health)

    async def initialize(self) -> None:
        """Set up each provider once; one that fails to set up starts unhealthy."""
        async with self._init_lock:
            if self._initialized:
                return
            for provider_str in self.config.provider_order:
                health = self._health_of(provider_str)
                try:
                    await self._initialize_provider(self._parse_provider(provider_str))
                except Exception as e:
                    health.status = ProviderStatus.UNHEALTHY
                    health.last_error = str(e)
                    logger.warning(f"{self.gateway_name}: {provider_str} unavailable: {e}")
                else:
                    health.status = ProviderStatus.HEALTHY
            self._initialized = True

    async def execute(self, request: TRequest) -> GatewayResult[TResponse]:
        """Run `request` on the first provider that answers."""
        await self.initialize()
        started = time.perf_counter()
        failures: list[str] = []

        for position, provider_str in enumerate(self.config.provider_order):
            health = self._health_of(provider_str)
            if health.is_circuit_open:
                failures.append(f"{provider_str}: circuit breaker open")
                continue

            try:
                data = await self._call(request, provider_str)
            except GatewayError as e:
                health.failed(
                    e.message,
                    self.config.circuit_breaker_threshold,
                    self.config.circuit_breaker_timeout_seconds,
                )
                failures.append(f"{provider_str}: {e.message}")
                logger.warning(f"{self.gateway_name}: {provider_str} failed: {e.message}")
                continue

            health.succeeded()
            return GatewayResult(
                success=True,
                data=data,
                provider_used=provider_str,
                fallback_used=position > 0,
                latency_ms=(time.perf_counter() - started) * 1000,
            )

        return GatewayResult(
            success=False,
            error="; ".join(failures) or "No provider available",
            latency_ms=(time.perf_counter() - started) * 1000,
        )

    async def _call(self, request: TRequest, provider_str: str) -> TResponse:
        """One provider, bounded by the timeout; every failure becomes a GatewayError."""
        timeout = self.config.timeout_seconds
        try:
            return await asyncio.wait_for(
                self._call_with_backoff(request, self._parse_provider(provider_str)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(f"Timeout after {timeout}s", provider=provider_str) from e
        except GatewayError:
            raise
        except Exception as e:
            raise GatewayError(str(e), provider=provider_str, original_error=e) from e

    async def _call_with_backoff(self, request: TRequest, provider: TProvider) -> TResponse:
        """Rate-limited calls are retried with a doubling delay."""
        delay = self.config.retry_delay_seconds
        attempts = max(self.config.retry_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                return await self._execute_request(request, provider)
            except ProviderRateLimitError:
                if attempt == attempts:
                    raise
                logger.info(
                    f"{self.gateway_name}: {provider.value} rate limited, "
                    f"retry {attempt}/{attempts - 1} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                delay *= 2
        raise GatewayError("No attempt was made", provider=provider.value)

    async def close(self) -> None:
        self._initialized = False
