"""Gateway router for provider selection and failover.

The GatewayRouter decides which adapter serves a call:
- Chat and streaming go to the primary adapter when it is available,
  otherwise to the fallback.
- A failed chat on the primary is retried exactly once on the fallback
  for retry-eligible errors (rate limits, server errors, generic errors).
- Streams never fail over; the caller re-invokes ``stream`` to retry.
- Embeddings always go to one fixed, embedding-capable adapter.

Optional per-adapter circuit breakers make selection skip an adapter
that keeps failing.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

from .circuit_breaker import CircuitBreaker
from .errors import GatewayError
from .providers.base import BaseProvider, validate_embed_text
from .types import ChatOptions, ChatResponse, EmbedOptions, EmbedResponse, Message, TaskType, TraceMetadata

logger = logging.getLogger(__name__)


async def gather_all_or_cancel(coros: Sequence[Awaitable[Any]]) -> List[Any]:
    """Run coroutines concurrently, cancelling the rest if one fails."""
    tasks = [asyncio.create_task(coro) for coro in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        raise


class GatewayRouter:
    """Routes chat, stream and embed calls across provider adapters.

    The router is immutable after construction apart from its optional
    circuit breakers, so one instance can be shared by every consumer.

    Example:
        router = GatewayRouter(
            primary=AnthropicProvider(api_key="..."),
            fallback=OpenAIProvider(api_key="..."),
        )
        response = await router.chat([Message(role="user", content="Hello")])
    """

    def __init__(
        self,
        primary: BaseProvider,
        fallback: Optional[BaseProvider] = None,
        embed_provider: Optional[BaseProvider] = None,
        circuit_breaker_config: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the router.

        Args:
            primary: Preferred chat/stream adapter.
            fallback: Adapter used when primary is unavailable or fails
                with a retry-eligible error.
            embed_provider: Adapter for all embedding calls. If None, the
                first available embedding-capable adapter of primary and
                fallback, else the first embedding-capable one.
            circuit_breaker_config: Keyword arguments for one
                CircuitBreaker per adapter. None disables breakers.

        Raises:
            GatewayError: NO_PROVIDER_CONFIGURED if neither primary nor
                fallback is available, CAPABILITY_UNSUPPORTED if no
                embedding-capable adapter is given.
        """
        if not primary.is_available() and (fallback is None or not fallback.is_available()):
            raise GatewayError.no_provider_configured()

        if embed_provider is None:
            capable = [
                p for p in (primary, fallback) if p is not None and p.capabilities.supports_embeddings
            ]
            embed_provider = next((p for p in capable if p.is_available()), None)
            if embed_provider is None and capable:
                embed_provider = capable[0]
            if embed_provider is None:
                raise GatewayError.capability_unsupported(primary.name, TaskType.EMBED.value)
        elif not embed_provider.capabilities.supports_embeddings:
            raise GatewayError.capability_unsupported(embed_provider.name, TaskType.EMBED.value)

        self._primary = primary
        self._fallback = fallback
        self._embed_provider = embed_provider

        self._circuit_breakers: Dict[str, CircuitBreaker] = {}
        if circuit_breaker_config is not None:
            for provider in (primary, fallback, embed_provider):
                if provider is not None and provider.name not in self._circuit_breakers:
                    self._circuit_breakers[provider.name] = CircuitBreaker(
                        provider=provider.name,
                        **circuit_breaker_config,
                    )

    @property
    def primary(self) -> BaseProvider:
        return self._primary

    @property
    def fallback(self) -> Optional[BaseProvider]:
        return self._fallback

    @property
    def embed_provider(self) -> BaseProvider:
        return self._embed_provider

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _breaker(self, provider: BaseProvider) -> Optional[CircuitBreaker]:
        return self._circuit_breakers.get(provider.name)

    def _allows(self, provider: BaseProvider) -> bool:
        breaker = self._breaker(provider)
        return breaker is None or breaker.allow_request()

    def select_provider(self) -> BaseProvider:
        """Pick the adapter for a chat or stream call.

        Raises:
            GatewayError: PROVIDER_UNAVAILABLE when no adapter has a
                credential, CIRCUIT_OPEN when every available adapter has
                an open circuit.
        """
        available = [
            p for p in (self._primary, self._fallback)
            if p is not None and p.is_available()
        ]
        if not available:
            raise GatewayError.provider_unavailable(self._primary.name)

        if available[0] is not self._primary:
            logger.warning(
                f"Primary provider '{self._primary.name}' unavailable, using '{available[0].name}'"
            )

        for provider in available:
            if self._allows(provider):
                return provider
            logger.warning(f"Circuit open for provider '{provider.name}', skipping")

        raise GatewayError.circuit_open(available[0].name)

    async def _call(self, provider: BaseProvider, fn: Callable[[], Awaitable[Any]]) -> Any:
        breaker = self._breaker(provider)
        if breaker is None:
            return await fn()
        return await breaker.execute(fn)

    def _can_fail_over(self, provider: BaseProvider, error: GatewayError) -> bool:
        fallback = self._fallback
        return (
            provider is self._primary
            and error.failover_eligible
            and fallback is not None
            and fallback is not provider
            and fallback.is_available()
            and self._allows(fallback)
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def chat(
        self,
        messages: Sequence[Message],
        options: Optional[ChatOptions] = None,
        metadata: Optional[TraceMetadata] = None,
    ) -> ChatResponse:
        """Send a chat completion, failing over once if needed.

        ``metadata`` is accepted for interface parity with the traced
        facade; the router itself does not read it.

        Raises:
            GatewayError: The primary's error when failover does not
                apply, otherwise the fallback's error.
        """
        provider = self.select_provider()

        try:
            return await self._call(provider, lambda: provider.chat(messages, options))
        except GatewayError as e:
            if not self._can_fail_over(provider, e):
                raise
            fallback = self._fallback
            logger.warning(
                f"Primary provider '{provider.name}' failed ({e.kind.value}), "
                f"failing over to '{fallback.name}'"
            )

        try:
            return await self._call(fallback, lambda: fallback.chat(messages, options))
        except GatewayError as e:
            logger.error(f"Fallback provider '{fallback.name}' also failed: {e.kind.value}")
            raise

    async def stream(
        self,
        messages: Sequence[Message],
        options: Optional[ChatOptions] = None,
        metadata: Optional[TraceMetadata] = None,
    ) -> AsyncIterator[str]:
        """Stream a chat completion from the selected adapter.

        There is no failover once a stream has been selected. Abandoning
        the iteration closes the adapter stream and its connection.
        """
        provider = self.select_provider()
        breaker = self._breaker(provider)

        inner = provider.stream(messages, options)
        try:
            async for chunk in inner:
                yield chunk
        except GatewayError as e:
            if breaker is not None and e.failover_eligible:
                breaker.record_failure()
            raise
        finally:
            await inner.aclose()

        if breaker is not None:
            breaker.record_success()

    async def embed(
        self,
        text: str,
        options: Optional[EmbedOptions] = None,
        metadata: Optional[TraceMetadata] = None,
    ) -> EmbedResponse:
        """Embed text with the fixed embedding adapter.

        Blank text is rejected with INVALID_REQUEST before any network call.
        """
        provider = self._embed_provider
        validate_embed_text(text, provider.name)
        provider.ensure_available()
        return await self._call(provider, lambda: provider.embed(text, options))

    async def embed_batch(
        self,
        texts: Sequence[str],
        options: Optional[EmbedOptions] = None,
        metadata: Optional[TraceMetadata] = None,
    ) -> List[EmbedResponse]:
        """Embed several texts concurrently.

        Results are in input order. Any failing item fails the whole batch.
        """
        provider = self._embed_provider
        for text in texts:
            validate_embed_text(text, provider.name)
        provider.ensure_available()

        return await gather_all_or_cancel([self.embed(text, options) for text in texts])

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def is_ready(self) -> bool:
        """Return True if chat and embeddings can both be served."""
        chat_ready = self._primary.is_available() or (
            self._fallback is not None and self._fallback.is_available()
        )
        return chat_ready and self._embed_provider.is_available()

    def get_provider_info(self) -> Dict[str, Optional[str]]:
        return {
            "primary": self._primary.name,
            "fallback": self._fallback.name if self._fallback is not None else None,
            "embed": self._embed_provider.name,
        }

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        """Return circuit breaker stats per provider (empty when disabled)."""
        return {name: cb.get_stats() for name, cb in self._circuit_breakers.items()}
