"""Tests for the best-effort Tracer and TracedGateway."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from llm_gateway.errors import ErrorKind, GatewayError
from llm_gateway.types import (
    ChatResponse,
    EmbedResponse,
    EmbedUsage,
    Feature,
    Message,
    TraceMetadata,
    UsageInfo,
)


class RecordingSink:
    """Sink that keeps every record in memory."""

    def __init__(self):
        self.created = []
        self.updates = []

    def is_enabled(self):
        return True

    async def create_run(self, run):
        self.created.append(run)
        return run["id"]

    async def update_run(self, run_id, patch):
        self.updates.append((run_id, patch))


def _failing_sink():
    sink = MagicMock()
    sink.is_enabled.return_value = True
    sink.create_run = AsyncMock(side_effect=ConnectionError("sink down"))
    sink.update_run = AsyncMock(side_effect=ConnectionError("sink down"))
    return sink


def _response(content="Hello there"):
    return ChatResponse(
        content=content,
        model="gpt-4",
        usage=UsageInfo.from_counts(7, 3),
        finish_reason="stop",
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def metadata():
    return TraceMetadata(
        feature=Feature.ASSESSMENT_COACHING,
        user_id="user-42",
        pillar="purpose",
        mode="egalitarian",
    )


class TestSanitization:
    """Test user id hashing and truncation."""

    def test_user_id_is_hashed(self, metadata):
        from llm_gateway.tracing import hash_user_id, sanitize_metadata

        data = sanitize_metadata(metadata)

        assert "user_id" not in data
        assert data["user_id_hash"] == hash_user_id("user-42")
        assert len(data["user_id_hash"]) == 16
        assert data["feature"] == "assessment_coaching"
        assert data["pillar"] == "purpose"

    def test_hash_is_deterministic(self):
        from llm_gateway.tracing import hash_user_id

        assert hash_user_id("abc") == hash_user_id("abc")
        assert hash_user_id("abc") != hash_user_id("abd")

    def test_no_metadata(self):
        from llm_gateway.tracing import sanitize_metadata

        assert sanitize_metadata(None) == {}

    def test_messages_truncated(self):
        from llm_gateway.tracing import Tracer

        tracer = Tracer(message_char_limit=10)
        sanitized = tracer.sanitize_messages([Message(role="user", content="x" * 50)])

        assert sanitized == [{"role": "user", "content": "x" * 10}]


class TestTraceChat:
    """Test Tracer.trace_chat."""

    @pytest.mark.asyncio
    async def test_disabled_runs_operation_unmodified(self, sink, hello):
        from llm_gateway.tracing import Tracer

        tracer = Tracer(sink=sink, enabled=False)
        expected = _response()

        result = await tracer.trace_chat(AsyncMock(return_value=expected), hello)

        assert result is expected
        assert sink.created == []

    @pytest.mark.asyncio
    async def test_success_records_start_and_end(self, sink, hello, metadata):
        from llm_gateway.tracing import Tracer

        tracer = Tracer(sink=sink, project="test-project", output_char_limit=5)
        expected = _response("Hello there")

        result = await tracer.trace_chat(AsyncMock(return_value=expected), hello, metadata)

        assert result is expected
        run = sink.created[0]
        assert run["name"] == "chat_assessment_coaching"
        assert run["run_type"] == "llm"
        assert run["session_name"] == "test-project"
        assert run["inputs"] == {"messages": [{"role": "user", "content": "hi"}]}
        assert "user-42" not in str(run)

        run_id, patch = sink.updates[0]
        assert run_id == run["id"]
        assert patch["outputs"] == {"content": "Hello", "model": "gpt-4"}
        assert patch["extra"]["metadata"]["usage"]["total_tokens"] == 10
        assert patch["extra"]["metadata"]["latency_ms"] >= 0
        assert "end_time" in patch

    @pytest.mark.asyncio
    async def test_failure_records_error_and_reraises(self, sink, hello, metadata):
        from llm_gateway.tracing import Tracer

        error = GatewayError.rate_limited("openai", 30)

        with pytest.raises(GatewayError) as exc_info:
            await Tracer(sink=sink).trace_chat(AsyncMock(side_effect=error), hello, metadata)

        assert exc_info.value is error
        _, patch = sink.updates[0]
        assert "Rate limit exceeded" in patch["error"]
        assert "GatewayError" in patch["extra"]["error_stack"]

    @pytest.mark.asyncio
    async def test_unreachable_sink_does_not_change_result(self, hello, metadata):
        from llm_gateway.tracing import Tracer

        sink = _failing_sink()
        expected = _response()

        result = await Tracer(sink=sink).trace_chat(AsyncMock(return_value=expected), hello, metadata)

        assert result is expected
        sink.update_run.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_update_does_not_change_result(self, hello):
        from llm_gateway.tracing import Tracer

        sink = RecordingSink()
        sink.update_run = AsyncMock(side_effect=RuntimeError("boom"))
        expected = _response()

        result = await Tracer(sink=sink).trace_chat(AsyncMock(return_value=expected), hello)

        assert result is expected
        assert sink.created[0]["name"] == "chat_unknown"

    @pytest.mark.asyncio
    async def test_failing_sink_keeps_original_error(self, hello):
        from llm_gateway.tracing import Tracer

        error = GatewayError.authentication_failed("openai", 401)

        with pytest.raises(GatewayError) as exc_info:
            await Tracer(sink=_failing_sink()).trace_chat(AsyncMock(side_effect=error), hello)

        assert exc_info.value is error


class TestTraceStream:
    """Test Tracer.trace_stream."""

    @staticmethod
    def _stream(chunks, error=None):
        async def gen():
            for chunk in chunks:
                yield chunk
            if error is not None:
                raise error

        return gen

    @pytest.mark.asyncio
    async def test_forwards_chunks_in_order(self, sink, hello, metadata):
        from llm_gateway.tracing import Tracer

        tracer = Tracer(sink=sink)
        chunks = [c async for c in tracer.trace_stream(self._stream(["a", "b", "c"]), hello, metadata)]

        assert chunks == ["a", "b", "c"]
        assert sink.created[0]["name"] == "stream_assessment_coaching"
        _, patch = sink.updates[0]
        assert patch["outputs"] == {"content": "abc"}
        assert patch["extra"]["metadata"]["total_chars"] == 3

    @pytest.mark.asyncio
    async def test_mid_stream_failure_records_partial(self, sink, hello):
        from llm_gateway.tracing import Tracer

        error = GatewayError.server_error("anthropic", "overloaded")
        received = []

        with pytest.raises(GatewayError) as exc_info:
            async for chunk in Tracer(sink=sink).trace_stream(self._stream(["par", "tial"], error), hello):
                received.append(chunk)

        assert exc_info.value is error
        assert received == ["par", "tial"]
        _, patch = sink.updates[0]
        assert patch["extra"]["partial_response"] == "partial"
        assert "overloaded" in patch["error"]

    @pytest.mark.asyncio
    async def test_abandoned_stream_recorded_as_cancelled(self, sink, hello):
        from llm_gateway.tracing import Tracer

        closed = asyncio.Event()

        async def gen():
            try:
                for chunk in ["1", "2", "3"]:
                    yield chunk
            finally:
                closed.set()

        stream = Tracer(sink=sink).trace_stream(gen, hello)
        assert await stream.__anext__() == "1"
        await stream.aclose()

        assert closed.is_set()
        _, patch = sink.updates[0]
        assert patch["error"] == "cancelled"
        assert patch["extra"]["partial_response"] == "1"

    @pytest.mark.asyncio
    async def test_disabled_stream_passes_through(self, hello):
        from llm_gateway.tracing import Tracer

        chunks = [c async for c in Tracer(enabled=False).trace_stream(self._stream(["x"]), hello)]
        assert chunks == ["x"]

    @pytest.mark.asyncio
    async def test_unreachable_sink_stream_passes_through(self, hello):
        from llm_gateway.tracing import Tracer

        tracer = Tracer(sink=_failing_sink())
        chunks = [c async for c in tracer.trace_stream(self._stream(["x", "y"]), hello)]

        assert chunks == ["x", "y"]


class TestTraceEmbed:
    """Test Tracer.trace_embed."""

    @pytest.mark.asyncio
    async def test_embed_records_dimensions(self, sink, metadata):
        from llm_gateway.tracing import Tracer

        expected = EmbedResponse(embedding=[0.1] * 4, model="text-embedding-3-small", usage=EmbedUsage(2))
        tracer = Tracer(sink=sink, output_char_limit=3)

        result = await tracer.trace_embed(AsyncMock(return_value=expected), "some text", metadata)

        assert result is expected
        run = sink.created[0]
        assert run["name"] == "embed_assessment_coaching"
        assert run["run_type"] == "embedding"
        assert run["inputs"] == {"text": "som"}
        _, patch = sink.updates[0]
        assert patch["outputs"] == {"dimensions": 4, "model": "text-embedding-3-small"}


class TestTracedGateway:
    """Test the traced router facade."""

    @pytest.mark.asyncio
    async def test_chat_through_router(self, stub_provider, sink, hello, metadata):
        from llm_gateway.router import GatewayRouter
        from llm_gateway.tracing import TracedGateway, Tracer

        router = GatewayRouter(primary=stub_provider("a"))
        gateway = TracedGateway(router, Tracer(sink=sink))

        response = await gateway.chat(hello, metadata=metadata)

        assert response.content == "a reply"
        assert len(sink.created) == 1
        assert gateway.is_ready() is True

    @pytest.mark.asyncio
    async def test_stream_through_router(self, stub_provider, sink, hello):
        from llm_gateway.router import GatewayRouter
        from llm_gateway.tracing import TracedGateway, Tracer

        gateway = TracedGateway(GatewayRouter(primary=stub_provider("a")), Tracer(sink=sink))

        chunks = [c async for c in gateway.stream(hello)]

        assert "".join(chunks) == "Hello!"
        assert sink.updates[0][1]["outputs"] == {"content": "Hello!"}

    @pytest.mark.asyncio
    async def test_embed_batch_traces_each_item(self, stub_provider, sink):
        from llm_gateway.router import GatewayRouter
        from llm_gateway.tracing import TracedGateway, Tracer

        gateway = TracedGateway(GatewayRouter(primary=stub_provider("e")), Tracer(sink=sink))

        results = await gateway.embed_batch(["a", "bb"])

        assert [r.embedding[0] for r in results] == [1.0, 2.0]
        assert len(sink.created) == 2

    @pytest.mark.asyncio
    async def test_embed_batch_rejects_blank_without_tracing(self, stub_provider, sink):
        from llm_gateway.router import GatewayRouter
        from llm_gateway.tracing import TracedGateway, Tracer

        gateway = TracedGateway(GatewayRouter(primary=stub_provider("e")), Tracer(sink=sink))

        with pytest.raises(GatewayError) as exc_info:
            await gateway.embed_batch(["ok", ""])

        assert exc_info.value.kind is ErrorKind.INVALID_REQUEST
        assert sink.created == []

    @pytest.mark.asyncio
    async def test_embed_batch_failure_cancels_pending_items(self, stub_provider, sink):
        from llm_gateway.router import GatewayRouter
        from llm_gateway.tracing import TracedGateway, Tracer

        embedder = stub_provider(
            "e",
            embed_error=GatewayError.server_error("e"),
            embed_delays={"slow": 5.0},
        )
        gateway = TracedGateway(GatewayRouter(primary=embedder), Tracer(sink=sink))

        with pytest.raises(GatewayError):
            await gateway.embed_batch(["fast", "slow"])
        await asyncio.sleep(0.05)

        assert embedder.embed_cancelled == ["slow"]

    @pytest.mark.asyncio
    async def test_default_tracer_is_disabled(self, stub_provider, hello):
        from llm_gateway.router import GatewayRouter
        from llm_gateway.tracing import TracedGateway

        gateway = TracedGateway(GatewayRouter(primary=stub_provider("a")))

        assert gateway.tracer.is_enabled() is False
        assert (await gateway.chat(hello)).content == "a reply"
