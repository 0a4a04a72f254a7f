"""Base provider for the LLM gateway.

A provider adapter wraps one external LLM service. It declares which
capabilities it offers (chat, streaming, embeddings), translates canonical
messages into the service's wire format, and maps every native failure
into a ``GatewayError``.

Subclasses implement ``_complete`` and ``_stream_chunks`` (and ``_embed``
when they support embeddings). The public ``chat``/``stream``/``embed``
methods here take care of availability checks, validation, option defaults,
deadlines and streaming callbacks.
"""

import asyncio
import json
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import httpx

from ..errors import ErrorKind, GatewayError
from ..types import (
    VALID_ROLES,
    ChatOptions,
    ChatResponse,
    EmbedOptions,
    EmbedResponse,
    Message,
    TaskType,
)

logger = logging.getLogger(__name__)

# Defaults applied when the caller leaves an option unset
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2048
DEFAULT_TOP_P = 1.0
DEFAULT_FREQUENCY_PENALTY = 0.0
DEFAULT_PRESENCE_PENALTY = 0.0
DEFAULT_EMBED_DIMENSIONS = 1536
DEFAULT_TIMEOUT = 120.0

# Per-message overhead used by token estimates
MESSAGE_TOKEN_OVERHEAD = 4

# Raised while reading a provider payload of the wrong shape
MALFORMED_PAYLOAD_ERRORS = (KeyError, IndexError, TypeError, ValueError, AttributeError)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Capabilities advertised by a provider adapter."""

    supports_chat: bool = True
    supports_streaming: bool = True
    supports_embeddings: bool = False

    def supports(self, task: TaskType) -> bool:
        if task is TaskType.CHAT:
            return self.supports_chat
        if task is TaskType.STREAM:
            return self.supports_streaming
        return self.supports_embeddings


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds.

    Returns None when the header is missing or not a number of seconds
    (HTTP-date values are not interpreted).
    """
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if math.isnan(seconds) or seconds < 0:
        return None
    return seconds


def validate_embed_text(text: str, provider: Optional[str] = None) -> None:
    """Reject empty or blank embedding input before any network call."""
    if not text or not text.strip():
        raise GatewayError.invalid_request("Text for embedding cannot be empty", provider=provider)


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[Tuple[Optional[str], str]]:
    """Yield ``(event, data)`` pairs from a server-sent-events response.

    Lines are read one at a time as the consumer pulls, so nothing is
    buffered ahead of the caller.
    """
    event: Optional[str] = None
    async for line in response.aiter_lines():
        if not line:
            event = None
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            yield event, line[len("data:"):].strip()


def _default(value, default):
    return default if value is None else value


class BaseProvider(ABC):
    """Abstract base class for provider adapters.

    Adapters are immutable after construction and keep no per-call state,
    so one instance can serve concurrent calls.
    """

    name: str = "base"
    default_base_url: str = ""
    capabilities: ProviderCapabilities = ProviderCapabilities()
    default_models: Mapping[TaskType, str] = {}

    # Adapter-local context-length detection: patterns capture the limit
    context_length_patterns: Sequence[re.Pattern] = ()
    context_length_markers: Sequence[str] = ()

    # Mid-stream error "type" values mapped to taxonomy kinds
    stream_error_kinds: Mapping[str, ErrorKind] = {}

    chars_per_token: float = 4.0

    def __init__(
        self,
        api_key: Optional[str] = None,
        models: Optional[Mapping[str, Optional[str]]] = None,
        base_url: Optional[str] = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the provider.

        Args:
            api_key: Provider credential. Empty or None leaves the provider
                unavailable.
            models: Optional model overrides keyed by task name
                ("chat", "stream", "embed").
            base_url: API base URL. If None, uses the provider default.
            default_timeout: Per-call deadline in seconds when the caller
                does not supply one.
            transport: Optional httpx transport, used for testing.
        """
        self._api_key = (api_key or "").strip()
        resolved: Dict[TaskType, str] = dict(self.default_models)
        for task_name, model in (models or {}).items():
            if model:
                resolved[TaskType(task_name)] = model
        self._models = resolved
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        self._default_timeout = default_timeout
        self._transport = transport

    def __repr__(self) -> str:
        return f"{type(self).__name__}(available={self.is_available()})"

    # ------------------------------------------------------------------
    # Capability and availability
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        """Return True iff a non-empty credential is configured."""
        return bool(self._api_key)

    def ensure_available(self) -> None:
        if not self.is_available():
            raise GatewayError.provider_unavailable(self.name)

    def get_model(self, task: Union[TaskType, str]) -> str:
        """Resolve the default model identifier for a task.

        Raises:
            GatewayError: CAPABILITY_UNSUPPORTED if this provider does not
                offer the task.
        """
        try:
            task = task if isinstance(task, TaskType) else TaskType(task)
        except ValueError:
            raise GatewayError.capability_unsupported(self.name, str(task))

        if not self.capabilities.supports(task):
            raise GatewayError.capability_unsupported(self.name, task.value)

        model = self._models.get(task)
        if model is None and task is TaskType.STREAM:
            model = self._models.get(TaskType.CHAT)
        if not model:
            raise GatewayError.capability_unsupported(self.name, task.value)
        return model

    # ------------------------------------------------------------------
    # Request preparation
    # ------------------------------------------------------------------

    def validate_messages(self, messages: Sequence[Message]) -> None:
        if not messages:
            raise GatewayError.invalid_request("Messages list cannot be empty", provider=self.name)

        for msg in messages:
            if msg.role not in VALID_ROLES:
                raise GatewayError.invalid_request(
                    f"Unsupported message role '{msg.role}'", provider=self.name
                )

        if not any(msg.content and msg.content.strip() for msg in messages):
            raise GatewayError.invalid_request(
                "At least one message must have content", provider=self.name
            )

    def normalize_messages(self, messages: Sequence[Message]) -> List[Message]:
        """Drop messages with blank content."""
        return [msg for msg in messages if msg.content and msg.content.strip()]

    def resolve_chat_options(
        self,
        options: Optional[ChatOptions] = None,
        task: TaskType = TaskType.CHAT,
    ) -> ChatOptions:
        """Fill unset chat options with provider defaults.

        The returned object keeps the caller's type, so StreamOptions
        callbacks survive.
        """
        options = options or ChatOptions()
        return replace(
            options,
            model=options.model or self.get_model(task),
            temperature=_default(options.temperature, DEFAULT_TEMPERATURE),
            max_tokens=_default(options.max_tokens, DEFAULT_MAX_TOKENS),
            top_p=_default(options.top_p, DEFAULT_TOP_P),
            frequency_penalty=_default(options.frequency_penalty, DEFAULT_FREQUENCY_PENALTY),
            presence_penalty=_default(options.presence_penalty, DEFAULT_PRESENCE_PENALTY),
            timeout=_default(options.timeout, self._default_timeout),
        )

    def resolve_embed_options(self, options: Optional[EmbedOptions] = None) -> EmbedOptions:
        options = options or EmbedOptions()
        return replace(
            options,
            model=options.model or self.get_model(TaskType.EMBED),
            dimensions=_default(options.dimensions, DEFAULT_EMBED_DIMENSIONS),
            timeout=_default(options.timeout, self._default_timeout),
        )

    def estimate_tokens(self, text: str) -> int:
        """Rough token estimate for providers that omit usage."""
        return math.ceil(len(text) / self.chars_per_token)

    def estimate_message_tokens(self, messages: Sequence[Message]) -> int:
        return sum(self.estimate_tokens(msg.content) + MESSAGE_TOKEN_OVERHEAD for msg in messages)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def chat(
        self,
        messages: Sequence[Message],
        options: Optional[ChatOptions] = None,
    ) -> ChatResponse:
        """Send a chat completion and return the canonical response."""
        self.ensure_available()
        self.validate_messages(messages)
        opts = self.resolve_chat_options(options, TaskType.CHAT)

        try:
            return await asyncio.wait_for(
                self._complete(self.normalize_messages(messages), opts),
                timeout=opts.timeout,
            )
        except asyncio.TimeoutError as e:
            raise GatewayError.deadline_exceeded(self.name, opts.timeout) from e
        except httpx.HTTPError as e:
            raise self._map_transport_error(e, opts.timeout) from e
        except MALFORMED_PAYLOAD_ERRORS as e:
            raise GatewayError.generic(self.name, f"Malformed {self.name} response: {e}") from e

    async def stream(
        self,
        messages: Sequence[Message],
        options: Optional[ChatOptions] = None,
    ) -> AsyncIterator[str]:
        """Stream a chat completion as text chunks.

        Yields:
            Text chunks in the order the provider emits them.

        Callbacks on StreamOptions fire once per chunk, once on completion
        and once on a taxonomy failure. Closing the generator early
        releases the underlying HTTP connection without firing callbacks.
        """
        self.ensure_available()
        self.validate_messages(messages)
        opts = self.resolve_chat_options(options, TaskType.STREAM)

        on_chunk = getattr(opts, "on_chunk", None)
        on_complete = getattr(opts, "on_complete", None)
        on_error = getattr(opts, "on_error", None)

        chunks = self._stream_chunks(self.normalize_messages(messages), opts)
        full_response = ""
        try:
            async for chunk in chunks:
                full_response += chunk
                if on_chunk:
                    on_chunk(chunk)
                yield chunk
        except GatewayError as e:
            if on_error:
                on_error(e)
            raise
        except httpx.HTTPError as e:
            error = self._map_transport_error(e, opts.timeout)
            if on_error:
                on_error(error)
            raise error from e
        except MALFORMED_PAYLOAD_ERRORS as e:
            error = GatewayError.generic(self.name, f"Malformed {self.name} stream event: {e}")
            if on_error:
                on_error(error)
            raise error from e
        finally:
            await chunks.aclose()

        if on_complete:
            on_complete(full_response)

    async def embed(self, text: str, options: Optional[EmbedOptions] = None) -> EmbedResponse:
        """Generate an embedding vector for text.

        Raises:
            GatewayError: CAPABILITY_UNSUPPORTED if this provider has no
                embedding model, INVALID_REQUEST for blank text.
        """
        if not self.capabilities.supports_embeddings:
            raise GatewayError.capability_unsupported(self.name, TaskType.EMBED.value)
        self.ensure_available()
        validate_embed_text(text, self.name)
        opts = self.resolve_embed_options(options)

        try:
            return await asyncio.wait_for(self._embed(text, opts), timeout=opts.timeout)
        except asyncio.TimeoutError as e:
            raise GatewayError.deadline_exceeded(self.name, opts.timeout) from e
        except httpx.HTTPError as e:
            raise self._map_transport_error(e, opts.timeout) from e
        except MALFORMED_PAYLOAD_ERRORS as e:
            raise GatewayError.generic(self.name, f"Malformed {self.name} response: {e}") from e

    # ------------------------------------------------------------------
    # Provider hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _headers(self) -> Dict[str, str]:
        """Return request headers, including the credential."""
        ...

    @abstractmethod
    async def _complete(self, messages: List[Message], options: ChatOptions) -> ChatResponse:
        ...

    @abstractmethod
    def _stream_chunks(self, messages: List[Message], options: ChatOptions) -> AsyncIterator[str]:
        """Async generator yielding text deltas from the provider stream."""
        ...

    async def _embed(self, text: str, options: EmbedOptions) -> EmbedResponse:
        raise GatewayError.capability_unsupported(self.name, TaskType.EMBED.value)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _client(self, timeout: Optional[float]) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _raise_for_status(self, response: httpx.Response) -> None:
        """Raise the mapped GatewayError for a non-2xx response."""
        if response.status_code < 400:
            return
        await response.aread()
        raise self.map_http_error(
            response.status_code,
            self._error_message(response),
            response.headers,
        )

    def _error_message(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:500]

        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str):
                return error
            if data.get("message"):
                return str(data["message"])
        return response.text[:500]

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    def map_http_error(
        self,
        status_code: int,
        message: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> GatewayError:
        """Map an HTTP failure to a taxonomy error."""
        headers = headers or {}

        if status_code == 429:
            return GatewayError.rate_limited(
                self.name, parse_retry_after(headers.get("retry-after"))
            )

        if status_code == 400:
            context_error = self._match_context_length(message)
            if context_error is not None:
                return context_error

        if status_code in (401, 403):
            return GatewayError.authentication_failed(self.name, status_code)

        if status_code >= 500:
            return GatewayError.server_error(self.name, message[:200], status_code)

        return GatewayError.generic(self.name, message, status_code)

    def map_stream_error(self, error: Mapping[str, Any]) -> GatewayError:
        """Map an error event received mid-stream."""
        message = str(error.get("message") or error)
        kind = self.stream_error_kinds.get(str(error.get("type") or ""))

        if kind is ErrorKind.RATE_LIMITED:
            return GatewayError.rate_limited(self.name)
        if kind is ErrorKind.AUTHENTICATION_FAILED:
            return GatewayError.authentication_failed(self.name)
        if kind is ErrorKind.SERVER_ERROR:
            return GatewayError.server_error(self.name, message[:200])

        context_error = self._match_context_length(message)
        if context_error is not None:
            return context_error
        return GatewayError.generic(self.name, message)

    def _match_context_length(self, message: str) -> Optional[GatewayError]:
        for pattern in self.context_length_patterns:
            match = pattern.search(message)
            if match:
                return GatewayError.context_length_exceeded(self.name, int(match.group(1)))
        if any(marker in message for marker in self.context_length_markers):
            return GatewayError.context_length_exceeded(self.name, None)
        return None

    def _map_transport_error(self, exc: httpx.HTTPError, timeout: Optional[float]) -> GatewayError:
        if isinstance(exc, httpx.TimeoutException):
            return GatewayError.deadline_exceeded(self.name, timeout)
        logger.debug(f"{self.name} transport error: {exc!r}")
        return GatewayError.generic(self.name, str(exc) or type(exc).__name__)

    def _decode_event(self, data: str) -> Dict[str, Any]:
        """Decode one SSE data payload."""
        try:
            event = json.loads(data)
        except ValueError as e:
            raise GatewayError.generic(self.name, f"Malformed {self.name} stream event: {e}") from e
        if not isinstance(event, dict):
            raise GatewayError.generic(self.name, f"Malformed {self.name} stream event: {data[:100]}")
        return event
