"""Construction of providers, router and tracer from configuration.

The process builds one gateway at start-up and hands it to every consumer:

    from llm_gateway.factory import create_gateway

    gateway = create_gateway()
    if not gateway.is_ready():
        raise SystemExit("LLM gateway not configured")
"""

import logging
from typing import Dict, Optional, Type

import httpx

from .config import GatewayConfig, ProviderSettings, get_effective_config
from .errors import GatewayError
from .observability import LangSmithSink, ObservabilitySink
from .providers.anthropic import AnthropicProvider
from .providers.base import BaseProvider
from .providers.openai import OpenAIProvider
from .router import GatewayRouter
from .tracing import Tracer, TracedGateway

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[str, Type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
}


def build_provider(
    name: str,
    settings: Optional[ProviderSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BaseProvider:
    """Instantiate the adapter registered under ``name``.

    Raises:
        GatewayError: INVALID_REQUEST for an unknown provider name.
    """
    provider_cls = PROVIDER_CLASSES.get(name)
    if provider_cls is None:
        raise GatewayError.invalid_request(
            f"Unknown provider '{name}', must be one of {sorted(PROVIDER_CLASSES)}"
        )

    settings = settings or ProviderSettings()
    return provider_cls(
        api_key=settings.api_key,
        models=settings.models(),
        base_url=settings.base_url,
        default_timeout=settings.timeout_seconds,
        transport=transport,
    )


def create_router(
    config: Optional[GatewayConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> GatewayRouter:
    """Build a GatewayRouter from configuration.

    Adapters are shared when the same provider fills several roles.
    """
    config = config or get_effective_config()

    providers: Dict[str, BaseProvider] = {}

    def get(name: str) -> BaseProvider:
        if name not in providers:
            providers[name] = build_provider(name, config.provider_settings(name), transport)
        return providers[name]

    primary = get(config.provider)
    fallback = None
    if config.fallback_provider and config.fallback_provider != config.provider:
        fallback = get(config.fallback_provider)
    embed_provider = get(config.embed_provider)

    breaker_config = None
    if config.circuit_breaker.enabled:
        breaker_config = config.circuit_breaker.breaker_kwargs()

    router = GatewayRouter(
        primary=primary,
        fallback=fallback,
        embed_provider=embed_provider,
        circuit_breaker_config=breaker_config,
    )
    logger.info(f"LLM gateway providers: {router.get_provider_info()}")
    return router


def create_tracer(
    config: Optional[GatewayConfig] = None,
    sink: Optional[ObservabilitySink] = None,
) -> Tracer:
    """Build a Tracer; a LangSmith sink is used unless ``sink`` is given."""
    config = config or get_effective_config()
    tracing = config.tracing

    if sink is None:
        sink = LangSmithSink(api_key=tracing.api_key, endpoint=tracing.endpoint)

    return Tracer(
        sink=sink,
        project=tracing.project,
        enabled=tracing.enabled,
        output_char_limit=tracing.output_char_limit,
        message_char_limit=tracing.message_char_limit,
    )


def create_gateway(
    config: Optional[GatewayConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sink: Optional[ObservabilitySink] = None,
) -> TracedGateway:
    """Build the traced gateway from configuration."""
    config = config or get_effective_config()
    return TracedGateway(
        router=create_router(config, transport=transport),
        tracer=create_tracer(config, sink=sink),
    )
