"""
Unit tests for the provider gateway layer.
"""

from enum import Enum
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from auditoria.core.config import AuditSettings
from auditoria.core.enums import LLMProvider, ProviderStatus
from auditoria.gateways.base import (
    BaseGateway,
    GatewayConfig,
    GatewayError,
    ProviderRateLimitError,
    ProviderUnavailableError,
)
from auditoria.gateways.llm_gateway import LLMGateway, LLMRequest, LLMResponse, MessageRole


class FakeProvider(str, Enum):
    PRIMARY = "primary"
    BACKUP = "backup"


class FakeGateway(BaseGateway[str, str, FakeProvider]):
    """Gateway whose providers answer from a script."""

    def __init__(self, config: GatewayConfig, script: dict):
        super().__init__(config)
        self.script = script
        self.calls: list[FakeProvider] = []

    @property
    def gateway_name(self) -> str:
        return "Fake"

    async def _initialize_provider(self, provider: FakeProvider) -> None:
        if self.script.get(f"init:{provider.value}") == "fail":
            raise ProviderUnavailableError("not configured", provider=provider.value)

    async def _execute_request(self, request: str, provider: FakeProvider) -> str:
        self.calls.append(provider)
        outcome = self.script[provider.value]
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return f"{outcome}:{request}"

    def _parse_provider(self, provider_str: str) -> FakeProvider:
        return FakeProvider(provider_str)


def make_config(**overrides) -> GatewayConfig:
    data = {
        "primary_provider": "primary",
        "fallback_provider": "backup",
        "retry_delay_seconds": 0.0,
        "circuit_breaker_threshold": 2,
    }
    data.update(overrides)
    return GatewayConfig(**data)


class TestLLMResponse:
    """Tests for JSON extraction from completions."""

    def test_plain_json(self):
        """Test a bare JSON object is parsed."""
        response = LLMResponse(content='{"confidence": 90}', model="m", provider="anthropic")
        assert response.parse_json() == {"confidence": 90}

    def test_markdown_fences(self):
        """Test fenced JSON is unwrapped."""
        response = LLMResponse(
            content='```json\n{"action": {"kind": "cap_glosa_amount"}}\n```',
            model="m",
            provider="openai",
        )
        assert response.parse_json()["action"]["kind"] == "cap_glosa_amount"

    def test_invalid_json(self):
        """Test malformed content raises GatewayError."""
        response = LLMResponse(content="no es json", model="m", provider="openai")
        with pytest.raises(GatewayError) as exc_info:
            response.parse_json()
        assert exc_info.value.provider == "openai"

    def test_non_object(self):
        """Test a JSON array is rejected."""
        response = LLMResponse(content="[1, 2]", model="m", provider="openai")
        with pytest.raises(GatewayError):
            response.parse_json()


class TestLLMRequest:
    """Tests for request construction."""

    def test_simple_with_system_prompt(self):
        """Test the system prompt precedes the user prompt."""
        request = LLMRequest.simple("regla", system_prompt="sistema")
        assert [m.role for m in request.messages] == [MessageRole.SYSTEM, MessageRole.USER]
        assert request.messages[1].to_litellm_format() == {"role": "user", "content": "regla"}


class TestBaseGatewayFailover:
    """Tests for failover, retries and circuit breaking."""

    @pytest.mark.asyncio
    async def test_primary_success(self):
        """Test the primary provider answers when healthy."""
        gateway = FakeGateway(make_config(), {"primary": "ok", "backup": "ok"})
        result = await gateway.execute("req")
        assert result.success
        assert result.data == "ok:req"
        assert result.provider_used == "primary"
        assert not result.fallback_used

    @pytest.mark.asyncio
    async def test_fallback_on_error(self):
        """Test the backup answers when the primary fails."""
        gateway = FakeGateway(
            make_config(), {"primary": GatewayError("down"), "backup": "ok"}
        )
        result = await gateway.execute("req")
        assert result.success
        assert result.provider_used == "backup"
        assert result.fallback_used

    @pytest.mark.asyncio
    async def test_no_fallback_configured(self):
        """Test failures are reported on the result without a fallback."""
        gateway = FakeGateway(
            make_config(fallback_provider=None), {"primary": GatewayError("down")}
        )
        result = await gateway.execute("req")
        assert not result.success
        assert "primary: down" in result.error

    @pytest.mark.asyncio
    async def test_rate_limit_retried(self):
        """Test a rate-limited provider is retried before succeeding."""
        gateway = FakeGateway(
            make_config(fallback_provider=None),
            {"primary": [ProviderRateLimitError("429"), "ok"]},
        )
        result = await gateway.execute("req")
        assert result.success
        assert gateway.calls == [FakeProvider.PRIMARY, FakeProvider.PRIMARY]

    @pytest.mark.asyncio
    async def test_circuit_opens_after_threshold(self):
        """Test the primary is skipped once its circuit opens."""
        gateway = FakeGateway(make_config(), {"primary": GatewayError("down"), "backup": "ok"})
        await gateway.execute("one")
        await gateway.execute("two")
        gateway.calls.clear()

        result = await gateway.execute("three")

        assert result.success
        assert gateway.calls == [FakeProvider.BACKUP]
        health = gateway.get_all_status()["primary"]
        assert health.status == ProviderStatus.UNHEALTHY
        assert health.is_circuit_open

    @pytest.mark.asyncio
    async def test_failed_initialization_marks_unhealthy(self):
        """Test a provider that cannot initialize is marked unhealthy."""
        gateway = FakeGateway(
            make_config(), {"init:primary": "fail", "primary": "ok", "backup": "ok"}
        )
        await gateway.initialize()
        assert gateway.get_all_status()["primary"].status == ProviderStatus.UNHEALTHY
        assert gateway.get_all_status()["backup"].status == ProviderStatus.HEALTHY


def completion(content: str) -> SimpleNamespace:
    """Shape of a litellm completion response."""
    return SimpleNamespace(
        choices=[
            SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")
        ],
        model="claude-test",
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
    )


class TestLLMGateway:
    """Tests for the litellm-backed gateway."""

    @pytest.fixture
    def settings(self) -> AuditSettings:
        return AuditSettings(
            ANTHROPIC_API_KEY="test-key",
            OPENAI_API_KEY=None,
            LLM_FALLBACK_PROVIDER=LLMProvider.OPENAI,
        )

    @pytest.mark.asyncio
    async def test_complete_json(self, settings):
        """Test a JSON completion through the primary provider."""
        gateway = LLMGateway(settings=settings)
        with patch(
            "auditoria.gateways.llm_gateway.acompletion",
            new=AsyncMock(return_value=completion('{"confidence": 99}')),
        ) as mocked:
            response = await gateway.complete_json("regla", "sistema")

        assert response.parse_json() == {"confidence": 99}
        assert response.provider == "anthropic"
        assert response.usage["total_tokens"] == 15
        kwargs = mocked.call_args.kwargs
        assert kwargs["model"].startswith("anthropic/")
        assert "response_format" not in kwargs

    @pytest.mark.asyncio
    async def test_unconfigured_fallback_fails(self, settings):
        """Test failure is raised when the primary errors and the fallback has no key."""
        gateway = LLMGateway(settings=settings)
        with patch(
            "auditoria.gateways.llm_gateway.acompletion",
            new=AsyncMock(side_effect=RuntimeError("401 unauthorized")),
        ):
            with pytest.raises(GatewayError) as exc_info:
                await gateway.complete_json("regla")
        assert "LLM completion failed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_rate_limit_mapped(self, settings):
        """Test provider rate limit errors are classified."""
        gateway = LLMGateway(settings=settings)
        await gateway.initialize()
        with patch(
            "auditoria.gateways.llm_gateway.acompletion",
            new=AsyncMock(side_effect=RuntimeError("429 rate limit")),
        ):
            with pytest.raises(ProviderRateLimitError):
                await gateway._execute_request(
                    LLMRequest.simple("regla"), LLMProvider.ANTHROPIC
                )
