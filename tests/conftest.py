"""Shared test configuration and fixtures."""
import asyncio
from typing import AsyncIterator, Dict, List, Optional, Sequence

import pytest

from llm_gateway.errors import GatewayError
from llm_gateway.providers.base import BaseProvider, ProviderCapabilities
from llm_gateway.types import (
    ChatOptions,
    ChatResponse,
    EmbedOptions,
    EmbedResponse,
    EmbedUsage,
    Message,
    TaskType,
    UsageInfo,
)

# =============================================================================
# Environment Reset
# =============================================================================

_GATEWAY_ENV_VARS = (
    "LLM_GATEWAY_CONFIG",
    "LLM_PROVIDER",
    "LLM_FALLBACK_PROVIDER",
    "LLM_EMBED_PROVIDER",
    "LLM_TIMEOUT_SECONDS",
    "LLM_CIRCUIT_BREAKER_ENABLED",
    "OPENAI_API_KEY",
    "OPENAI_CHAT_MODEL",
    "OPENAI_EMBED_MODEL",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_CHAT_MODEL",
    "LANGSMITH_API_KEY",
    "LANGSMITH_PROJECT",
    "LANGSMITH_ENDPOINT",
    "LANGSMITH_TRACING",
)


@pytest.fixture(autouse=True)
def reset_env(monkeypatch):
    """Clear environment variables before each test."""
    for name in _GATEWAY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# =============================================================================
# Scripted Provider
# =============================================================================


class StubProvider(BaseProvider):
    """In-memory provider with scripted outcomes.

    Goes through the real BaseProvider chat/stream/embed paths, so
    availability checks, validation and callbacks behave as in production.
    """

    def __init__(
        self,
        name: str = "stub",
        api_key: Optional[str] = "test-key",
        supports_embeddings: bool = True,
        chat_error: Optional[GatewayError] = None,
        chunks: Sequence[str] = ("Hel", "lo", "!"),
        stream_error: Optional[GatewayError] = None,
        embed_error: Optional[GatewayError] = None,
        embed_delays: Optional[Dict[str, float]] = None,
    ):
        self.name = name
        self.capabilities = ProviderCapabilities(supports_embeddings=supports_embeddings)
        self.default_models = {
            TaskType.CHAT: f"{name}-chat",
            TaskType.EMBED: f"{name}-embed",
        }
        super().__init__(api_key=api_key)

        self.chat_error = chat_error
        self.chunks = list(chunks)
        self.stream_error = stream_error
        self.embed_error = embed_error
        self.embed_delays = embed_delays or {}

        self.chat_calls = 0
        self.stream_calls = 0
        self.stream_closed = False
        self.embedded: List[str] = []
        self.embed_cancelled: List[str] = []

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _complete(self, messages: List[Message], options: ChatOptions) -> ChatResponse:
        self.chat_calls += 1
        if self.chat_error is not None:
            raise self.chat_error
        return ChatResponse(
            content=f"{self.name} reply",
            model=options.model,
            usage=UsageInfo.from_counts(5, 3),
            finish_reason="stop",
        )

    async def _stream_chunks(
        self, messages: List[Message], options: ChatOptions
    ) -> AsyncIterator[str]:
        self.stream_calls += 1
        try:
            for chunk in self.chunks:
                yield chunk
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed = True

    async def _embed(self, text: str, options: EmbedOptions) -> EmbedResponse:
        self.embedded.append(text)
        try:
            await asyncio.sleep(self.embed_delays.get(text, 0))
        except asyncio.CancelledError:
            self.embed_cancelled.append(text)
            raise
        if self.embed_error is not None:
            raise self.embed_error
        return EmbedResponse(
            embedding=[float(len(text)), 0.5],
            model=options.model,
            usage=EmbedUsage(total_tokens=len(text)),
        )


@pytest.fixture
def stub_provider():
    """Return the StubProvider class for building scripted providers."""
    return StubProvider


@pytest.fixture
def hello():
    """A minimal one-turn conversation."""
    return [Message(role="user", content="hi")]


# =============================================================================
# Custom Pytest Markers
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
