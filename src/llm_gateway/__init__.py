"""LLM Gateway - one contract in front of several LLM providers.

This package puts OpenAI and Anthropic behind a single interface with:

- Provider-agnostic messages, options and responses
- A typed error taxonomy (``GatewayError.kind``)
- Primary/fallback routing with one failover hop
- Streaming with optional callbacks
- Embeddings on a fixed, embedding-capable provider
- Best-effort LangSmith tracing

Example usage:
    from llm_gateway import Message, create_gateway

    gateway = create_gateway()
    response = await gateway.chat([Message(role="user", content="Hello")])
    print(response.content)
"""

from .types import (
    ChatOptions,
    ChatResponse,
    EmbedOptions,
    EmbedResponse,
    EmbedUsage,
    Feature,
    Message,
    StreamOptions,
    TaskType,
    TraceMetadata,
    UsageInfo,
)
from .errors import ErrorKind, GatewayError
from .providers import AnthropicProvider, BaseProvider, OpenAIProvider, ProviderCapabilities
from .circuit_breaker import CircuitBreaker, CircuitState
from .router import GatewayRouter
from .observability import LangSmithSink, NoOpSink, ObservabilitySink
from .tracing import TracedGateway, Tracer
from .config import GatewayConfig, get_effective_config, load_config
from .factory import build_provider, create_gateway, create_router, create_tracer

__all__ = [
    # Types
    "ChatOptions",
    "ChatResponse",
    "EmbedOptions",
    "EmbedResponse",
    "EmbedUsage",
    "Feature",
    "Message",
    "StreamOptions",
    "TaskType",
    "TraceMetadata",
    "UsageInfo",
    # Errors
    "ErrorKind",
    "GatewayError",
    # Providers
    "AnthropicProvider",
    "BaseProvider",
    "OpenAIProvider",
    "ProviderCapabilities",
    # Routing
    "CircuitBreaker",
    "CircuitState",
    "GatewayRouter",
    # Tracing
    "LangSmithSink",
    "NoOpSink",
    "ObservabilitySink",
    "TracedGateway",
    "Tracer",
    # Configuration
    "GatewayConfig",
    "get_effective_config",
    "load_config",
    "build_provider",
    "create_gateway",
    "create_router",
    "create_tracer",
]

__version__ = "0.1.0"
