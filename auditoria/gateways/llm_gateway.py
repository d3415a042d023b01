"""
LLM Gateway with LiteLLM Integration.

Completions used to turn rule descriptions written in Spanish into structured
actions. The primary provider is Anthropic; OpenAI, Azure OpenAI or a local
Ollama model can serve as fallback.

Models are asked for a bare JSON object; `LLMResponse.parse_json` also accepts
one wrapped in markdown fences.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import litellm
from litellm import acompletion

from auditoria.core.config import AuditSettings, get_audit_settings
from auditoria.core.enums import LLMProvider
from auditoria.gateways.base import (
    BaseGateway,
    GatewayConfig,
    GatewayError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

litellm.suppress_debug_info = True

_FENCED = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class LLMMessage:
    role: MessageRole
    content: str

    def to_litellm_format(self) -> dict[str, Any]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class LLMRequest:
    """Chat completion request."""

    messages: list[LLMMessage]
    model_override: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 2000
    json_mode: bool = False

    @classmethod
    def simple(cls, prompt: str, system_prompt: Optional[str] = None) -> "LLMRequest":
        """User prompt, preceded by the system prompt when one is given."""
        messages = [LLMMessage(MessageRole.SYSTEM, system_prompt)] if system_prompt else []
        messages.append(LLMMessage(MessageRole.USER, prompt))
        return cls(messages=messages)


@dataclass
class LLMResponse:
    """Completion text and token usage."""

    content: str
    model: str
    provider: str
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)

    def parse_json(self) -> dict[str, Any]:
        """
        The completion as a JSON object.

        Raises:
            GatewayError: the content is not JSON or not an object
        """
        content = self.content.strip()
        fenced = _FENCED.match(content)
        if fenced:
            content = fenced.group(1)

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise GatewayError(f"Failed to parse LLM response as JSON: {e}", provider=self.provider)

        if not isinstance(parsed, dict):
            raise GatewayError("LLM response is not a JSON object", provider=self.provider)
        return parsed


def provider_kwargs(provider: LLMProvider, settings: AuditSettings) -> dict[str, Any]:
    """
    litellm keyword arguments for a provider.

    Raises:
        ProviderUnavailableError: the provider's credentials are not configured
    """
    if provider == LLMProvider.ANTHROPIC:
        required, kwargs = settings.ANTHROPIC_API_KEY, {
            "model": f"anthropic/{settings.ANTHROPIC_MODEL}",
            "api_key": settings.ANTHROPIC_API_KEY,
        }
    elif provider == LLMProvider.OPENAI:
        required, kwargs = settings.OPENAI_API_KEY, {
            "model": settings.OPENAI_MODEL,
            "api_key": settings.OPENAI_API_KEY,
        }
    elif provider == LLMProvider.AZURE_OPENAI:
        required, kwargs = settings.AZURE_OPENAI_API_KEY and settings.AZURE_OPENAI_ENDPOINT, {
            "model": f"azure/{settings.OPENAI_MODEL}",
            "api_key": settings.AZURE_OPENAI_API_KEY,
            "api_base": settings.AZURE_OPENAI_ENDPOINT,
            "api_version": settings.AZURE_OPENAI_API_VERSION,
        }
    else:
        # Local models need no credentials
        required, kwargs = True, {
            "model": f"ollama/{settings.OLLAMA_MODEL}",
            "api_base": settings.OLLAMA_BASE_URL,
        }

    if not required:
        raise ProviderUnavailableError(
            f"{provider.value} credentials not configured", provider=provider.value
        )
    return kwargs


def classify_provider_error(error: Exception, provider: str) -> GatewayError:
    """Map a litellm exception onto the gateway error family by its message."""
    text = str(error).lower()
    if "429" in text or "rate limit" in text:
        return ProviderRateLimitError(f"Rate limit exceeded: {error}", provider=provider)
    if "timeout" in text or "timed out" in text:
        return ProviderTimeoutError(f"Request timed out: {error}", provider=provider)
    if "401" in text or "unauthorized" in text:
        return ProviderUnavailableError(f"Authentication failed: {error}", provider=provider)
    return GatewayError(f"LLM request failed: {error}", provider=provider, original_error=error)


class LLMGateway(BaseGateway[LLMRequest, LLMResponse, LLMProvider]):
    """Rule-interpretation completions over the configured LLM providers."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        settings: Optional[AuditSettings] = None,
    ):
        self._settings = settings or get_audit_settings()
        super().__init__(config or self._config_from_settings(self._settings))
        self._kwargs_by_provider: dict[LLMProvider, dict[str, Any]] = {}

    @staticmethod
    def _config_from_settings(settings: AuditSettings) -> GatewayConfig:
        fallback = settings.LLM_FALLBACK_PROVIDER
        return GatewayConfig(
            primary_provider=settings.LLM_PRIMARY_PROVIDER.value,
            fallback_provider=fallback.value if fallback else None,
            fallback_on_error=settings.LLM_FALLBACK_ON_ERROR,
            timeout_seconds=settings.LLM_TIMEOUT_SECONDS,
        )

    @property
    def gateway_name(self) -> str:
        return "LLM"

    def _parse_provider(self, provider_str: str) -> LLMProvider:
        return LLMProvider(provider_str)

    async def _initialize_provider(self, provider: LLMProvider) -> None:
        self._kwargs_by_provider[provider] = provider_kwargs(provider, self._settings)
        logger.info(f"LLM provider {provider.value} ready")

    async def _execute_request(self, request: LLMRequest, provider: LLMProvider) -> LLMResponse:
        base = self._kwargs_by_provider.get(provider)
        if base is None:
            raise ProviderUnavailableError(
                f"Provider {provider.value} is not initialized", provider=provider.value
            )

        kwargs: dict[str, Any] = {
            **base,
            "model": request.model_override or base["model"],
            "messages": [m.to_litellm_format() for m in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        # Anthropic rejects response_format; the prompt asks for JSON instead
        if request.json_mode and provider != LLMProvider.ANTHROPIC:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            raise classify_provider_error(e, provider.value) from e

        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            model=response.model or kwargs["model"],
            provider=provider.value,
            finish_reason=choice.finish_reason or "stop",
            usage={
                key: getattr(usage, key, 0) if usage else 0
                for key in ("prompt_tokens", "completion_tokens", "total_tokens")
            },
        )

    async def complete_json(self, prompt: str, system_prompt: Optional[str] = None) -> LLMResponse:
        """
        JSON-mode completion with the configured temperature and token limit.

        Raises:
            GatewayError: every provider failed
        """
        request = LLMRequest.simple(prompt, system_prompt)
        request.json_mode = True
        request.temperature = self._settings.LLM_TEMPERATURE
        request.max_tokens = self._settings.LLM_MAX_TOKENS

        result = await self.execute(request)
        if not result.success or result.data is None:
            raise GatewayError(f"LLM completion failed: {result.error}")
        logger.debug(
            f"LLM completion by {result.provider_used} in {result.latency_ms:.0f}ms"
            + (" (fallback)" if result.fallback_used else "")
        )
        return result.data


# Singleton instance
_llm_gateway: Optional[LLMGateway] = None


def get_llm_gateway() -> LLMGateway:
    """Get or create the singleton LLM gateway instance."""
    global _llm_gateway
    if _llm_gateway is None:
        _llm_gateway = LLMGateway()
    return _llm_gateway


async def reset_llm_gateway() -> None:
    """Reset the LLM gateway (for testing)."""
    global _llm_gateway
    if _llm_gateway:
        await _llm_gateway.close()
    _llm_gateway = None
