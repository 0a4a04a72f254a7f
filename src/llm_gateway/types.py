"""Gateway types for provider-agnostic LLM calls.

This module defines the canonical message, option and response types that
every provider adapter accepts and returns. None of them carry behavior;
they are created per call and discarded afterwards.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

VALID_ROLES = frozenset({"system", "user", "assistant"})


class TaskType(Enum):
    """Tasks a provider may resolve a default model for."""

    CHAT = "chat"
    STREAM = "stream"
    EMBED = "embed"


class Feature(Enum):
    """Caller features that are tagged on traced runs."""

    ASSESSMENT_COACHING = "assessment_coaching"
    CHATBOT = "chatbot"
    RAG_QUERY = "rag_query"
    CONTENT_ANALYSIS = "content_analysis"
    QUIZ_GENERATION = "quiz_generation"


@dataclass(frozen=True)
class Message:
    """A single conversation turn."""

    role: str  # "system", "user", "assistant"
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ChatOptions:
    """Tuning parameters for a chat completion.

    Every field is optional; adapters fill in their own defaults.
    ``timeout`` is the per-call deadline in seconds.
    """

    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Optional[Union[str, List[str]]] = None
    timeout: Optional[float] = None

    def stop_sequences(self) -> Optional[List[str]]:
        """Return ``stop`` as a list, or None when unset."""
        if self.stop is None:
            return None
        if isinstance(self.stop, str):
            return [self.stop]
        return list(self.stop)


@dataclass(frozen=True)
class StreamOptions(ChatOptions):
    """Chat options plus optional streaming callbacks.

    The callbacks are notifications only. The stream's yielded chunks and
    raised errors remain the source of truth.
    """

    on_chunk: Optional[Callable[[str], None]] = None
    on_complete: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None


@dataclass(frozen=True)
class EmbedOptions:
    """Parameters for an embedding request."""

    model: Optional[str] = None
    dimensions: Optional[int] = None
    timeout: Optional[float] = None


@dataclass
class UsageInfo:
    """Token usage information from an API response."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int) -> "UsageInfo":
        """Build usage where the total is the sum of its parts."""
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ChatResponse:
    """Response from a chat completion."""

    content: str
    model: str
    usage: UsageInfo
    finish_reason: str


@dataclass
class EmbedUsage:
    """Token usage for an embedding request."""

    total_tokens: int


@dataclass
class EmbedResponse:
    """Embedding vector returned by an embedding-capable provider."""

    embedding: List[float]
    model: str
    usage: EmbedUsage


@dataclass
class TraceMetadata:
    """Metadata attached to traced runs.

    The named fields cover what every caller sets; anything else goes in
    ``extra``. ``user_id`` is hashed by the tracer before it leaves the
    process.
    """

    feature: Feature
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    pillar: Optional[str] = None
    mode: Optional[str] = None  # "egalitarian", "hierarchical"
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten to a plain dict, omitting unset fields."""
        data: Dict[str, Any] = dict(self.extra)
        data["feature"] = self.feature.value
        for key in ("user_id", "session_id", "pillar", "mode"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data
