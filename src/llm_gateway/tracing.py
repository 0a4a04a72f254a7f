"""Best-effort tracing of gateway calls.

The Tracer wraps a chat, stream or embed call and records it as a run on an
observability sink:

1. Disabled tracing, or a sink that cannot start a run, means the call runs
   unmodified.
2. A run-start record with sanitized inputs goes out before the call.
3. Success records truncated output, usage and latency.
4. Failure records the error message and stack, then re-raises the
   original exception.

Sink failures are logged at debug level and never reach the caller.
Raw user ids never leave the tracer; they are replaced by a hash.
"""

import asyncio
import hashlib
import logging
import time
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

from .observability import NoOpSink, ObservabilitySink
from .providers.base import validate_embed_text
from .router import GatewayRouter, gather_all_or_cancel
from .types import ChatOptions, ChatResponse, EmbedOptions, EmbedResponse, Message, TraceMetadata

logger = logging.getLogger(__name__)

DEFAULT_PROJECT = "compilar-v0.5"
DEFAULT_OUTPUT_CHAR_LIMIT = 500
DEFAULT_MESSAGE_CHAR_LIMIT = 1000


def hash_user_id(user_id: str) -> str:
    """Return a deterministic, non-reversible id for a user."""
    return hashlib.sha256(user_id.encode()).hexdigest()[:16]


def sanitize_metadata(metadata: Optional[TraceMetadata]) -> Dict[str, Any]:
    """Flatten metadata, replacing ``user_id`` with ``user_id_hash``."""
    if metadata is None:
        return {}
    data = metadata.to_dict()
    user_id = data.pop("user_id", None)
    if user_id:
        data["user_id_hash"] = hash_user_id(str(user_id))
    return data


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class Tracer:
    """Records gateway calls as runs on an observability sink."""

    def __init__(
        self,
        sink: Optional[ObservabilitySink] = None,
        project: str = DEFAULT_PROJECT,
        enabled: bool = True,
        output_char_limit: int = DEFAULT_OUTPUT_CHAR_LIMIT,
        message_char_limit: int = DEFAULT_MESSAGE_CHAR_LIMIT,
    ):
        self._sink = sink if sink is not None else NoOpSink()
        self.project = project
        self.enabled = enabled
        self.output_char_limit = output_char_limit
        self.message_char_limit = message_char_limit

    def is_enabled(self) -> bool:
        if not self.enabled:
            return False
        try:
            return bool(self._sink.is_enabled())
        except Exception as e:
            logger.debug(f"Tracing sink check failed: {e}")
            return False

    def sanitize_messages(self, messages: Sequence[Message]) -> List[Dict[str, str]]:
        return [
            {"role": msg.role, "content": msg.content[: self.message_char_limit]}
            for msg in messages
        ]

    # ------------------------------------------------------------------
    # Sink calls (never raise)
    # ------------------------------------------------------------------

    async def _start_run(
        self,
        operation: str,
        run_type: str,
        inputs: Dict[str, Any],
        metadata: Optional[TraceMetadata],
    ) -> Optional[str]:
        if not self.is_enabled():
            return None

        feature = metadata.feature.value if metadata is not None else "unknown"
        run = {
            "id": str(uuid.uuid4()),
            "name": f"{operation}_{feature}",
            "run_type": run_type,
            "session_name": self.project,
            "inputs": inputs,
            "extra": {"metadata": sanitize_metadata(metadata)},
            "start_time": _now(),
        }
        try:
            return await self._sink.create_run(run)
        except Exception as e:
            logger.debug(f"Failed to start trace run {run['name']}: {e}")
            return None

    async def _end_run(self, run_id: Optional[str], patch: Dict[str, Any]) -> None:
        if run_id is None:
            return
        patch.setdefault("end_time", _now())
        try:
            await self._sink.update_run(run_id, patch)
        except Exception as e:
            logger.debug(f"Failed to update trace run {run_id}: {e}")

    def _error_patch(
        self,
        error: BaseException,
        metadata: Optional[TraceMetadata],
        **extra: Any,
    ) -> Dict[str, Any]:
        return {
            "error": str(error) or type(error).__name__,
            "extra": {
                "metadata": sanitize_metadata(metadata),
                "error_stack": "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                ),
                **extra,
            },
        }

    # ------------------------------------------------------------------
    # Wrappers
    # ------------------------------------------------------------------

    async def trace_chat(
        self,
        operation: Callable[[], Awaitable[ChatResponse]],
        messages: Sequence[Message],
        metadata: Optional[TraceMetadata] = None,
    ) -> ChatResponse:
        """Run a chat call and record it."""
        run_id = await self._start_run(
            "chat", "llm", {"messages": self.sanitize_messages(messages)}, metadata
        )
        if run_id is None:
            return await operation()

        start = time.perf_counter()
        try:
            response = await operation()
        except Exception as e:
            await self._end_run(run_id, self._error_patch(e, metadata))
            raise

        await self._end_run(run_id, {
            "outputs": {
                "content": response.content[: self.output_char_limit],
                "model": response.model,
            },
            "extra": {
                "metadata": {
                    **sanitize_metadata(metadata),
                    "usage": response.usage.to_dict(),
                    "finish_reason": response.finish_reason,
                    "latency_ms": _elapsed_ms(start),
                },
            },
        })
        return response

    async def trace_stream(
        self,
        operation: Callable[[], AsyncIterator[str]],
        messages: Sequence[Message],
        metadata: Optional[TraceMetadata] = None,
    ) -> AsyncIterator[str]:
        """Forward a stream chunk by chunk and record it once it ends.

        Chunks are passed through unmodified and in order. A stream the
        consumer abandons is recorded as cancelled.
        """
        run_id = await self._start_run(
            "stream", "llm", {"messages": self.sanitize_messages(messages)}, metadata
        )

        inner = operation()
        if run_id is None:
            try:
                async for chunk in inner:
                    yield chunk
            finally:
                await inner.aclose()
            return

        start = time.perf_counter()
        full_response = ""
        try:
            async for chunk in inner:
                full_response += chunk
                yield chunk
        except (GeneratorExit, asyncio.CancelledError):
            await self._end_run(run_id, {
                "error": "cancelled",
                "extra": {
                    "metadata": sanitize_metadata(metadata),
                    "partial_response": full_response[: self.output_char_limit],
                },
            })
            raise
        except Exception as e:
            await self._end_run(run_id, self._error_patch(
                e, metadata, partial_response=full_response[: self.output_char_limit]
            ))
            raise
        finally:
            await inner.aclose()

        await self._end_run(run_id, {
            "outputs": {"content": full_response[: self.output_char_limit]},
            "extra": {
                "metadata": {
                    **sanitize_metadata(metadata),
                    "latency_ms": _elapsed_ms(start),
                    "total_chars": len(full_response),
                },
            },
        })

    async def trace_embed(
        self,
        operation: Callable[[], Awaitable[EmbedResponse]],
        text: str,
        metadata: Optional[TraceMetadata] = None,
    ) -> EmbedResponse:
        """Run an embed call and record it."""
        run_id = await self._start_run(
            "embed", "embedding", {"text": text[: self.output_char_limit]}, metadata
        )
        if run_id is None:
            return await operation()

        start = time.perf_counter()
        try:
            response = await operation()
        except Exception as e:
            await self._end_run(run_id, self._error_patch(e, metadata))
            raise

        await self._end_run(run_id, {
            "outputs": {
                "dimensions": len(response.embedding),
                "model": response.model,
            },
            "extra": {
                "metadata": {
                    **sanitize_metadata(metadata),
                    "usage": {"total_tokens": response.usage.total_tokens},
                    "latency_ms": _elapsed_ms(start),
                },
            },
        })
        return response


class TracedGateway:
    """Router facade that traces every call.

    Consumers hold one TracedGateway built at process start (see
    ``llm_gateway.factory.create_gateway``) instead of a global instance.
    """

    def __init__(self, router: GatewayRouter, tracer: Optional[Tracer] = None):
        self.router = router
        self.tracer = tracer if tracer is not None else Tracer(enabled=False)

    async def chat(
        self,
        messages: Sequence[Message],
        options: Optional[ChatOptions] = None,
        metadata: Optional[TraceMetadata] = None,
    ) -> ChatResponse:
        return await self.tracer.trace_chat(
            lambda: self.router.chat(messages, options, metadata), messages, metadata
        )

    async def stream(
        self,
        messages: Sequence[Message],
        options: Optional[ChatOptions] = None,
        metadata: Optional[TraceMetadata] = None,
    ) -> AsyncIterator[str]:
        traced = self.tracer.trace_stream(
            lambda: self.router.stream(messages, options, metadata), messages, metadata
        )
        try:
            async for chunk in traced:
                yield chunk
        finally:
            await traced.aclose()

    async def embed(
        self,
        text: str,
        options: Optional[EmbedOptions] = None,
        metadata: Optional[TraceMetadata] = None,
    ) -> EmbedResponse:
        return await self.tracer.trace_embed(
            lambda: self.router.embed(text, options, metadata), text, metadata
        )

    async def embed_batch(
        self,
        texts: Sequence[str],
        options: Optional[EmbedOptions] = None,
        metadata: Optional[TraceMetadata] = None,
    ) -> List[EmbedResponse]:
        """Embed texts in input order, tracing each item.

        Every item is validated before any call goes out, so one blank
        entry fails the batch without network traffic.
        """
        provider = self.router.embed_provider
        for text in texts:
            validate_embed_text(text, provider.name)
        provider.ensure_available()

        return await gather_all_or_cancel([self.embed(text, options, metadata) for text in texts])

    def is_ready(self) -> bool:
        return self.router.is_ready()
