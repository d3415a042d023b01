"""
Provider gateways.

Only the LLM gateway remains: it backs natural-language rule interpretation.
"""

from auditoria.gateways.base import (
    BaseGateway,
    GatewayConfig,
    GatewayError,
    GatewayResult,
    ProviderHealth,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from auditoria.gateways.llm_gateway import (
    LLMGateway,
    LLMMessage,
    LLMRequest,
    LLMResponse,
    MessageRole,
    get_llm_gateway,
    reset_llm_gateway,
)

__all__ = [
    "BaseGateway",
    "GatewayConfig",
    "GatewayError",
    "GatewayResult",
    "ProviderHealth",
    "ProviderRateLimitError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "LLMGateway",
    "LLMMessage",
    "LLMRequest",
    "LLMResponse",
    "MessageRole",
    "get_llm_gateway",
    "reset_llm_gateway",
]
