"""Error taxonomy for the LLM gateway.

Every adapter maps its native failures into a single ``GatewayError`` whose
``kind`` tells the router and callers what happened. Callers branch on
``err.kind`` rather than on exception subclasses.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Canonical, provider-independent error kinds."""

    PROVIDER_UNAVAILABLE = "provider_unavailable"
    CAPABILITY_UNSUPPORTED = "capability_unsupported"
    RATE_LIMITED = "rate_limited"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    AUTHENTICATION_FAILED = "authentication_failed"
    SERVER_ERROR = "server_error"
    GENERIC = "generic"
    NO_PROVIDER_CONFIGURED = "no_provider_configured"
    INVALID_REQUEST = "invalid_request"
    CIRCUIT_OPEN = "circuit_open"


# Kinds that justify one failover hop to the fallback provider
FAILOVER_KINDS = frozenset({
    ErrorKind.RATE_LIMITED,
    ErrorKind.SERVER_ERROR,
    ErrorKind.GENERIC,
})


class GatewayError(Exception):
    """Error raised by adapters, the router and configuration checks.

    Attributes:
        kind: The taxonomy kind.
        provider: Provider name the error originated from, if any.
        retry_after_seconds: Retry hint for RATE_LIMITED; None when the
            provider gave no hint.
        max_tokens: Advertised context limit for CONTEXT_LENGTH_EXCEEDED.
        original_message: Provider-native message for GENERIC errors.
        status_code: HTTP status code, when the error came from a response.
        timeout: True when a SERVER_ERROR was caused by a deadline.
        capability: The missing capability for CAPABILITY_UNSUPPORTED.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        provider: Optional[str] = None,
        retry_after_seconds: Optional[float] = None,
        max_tokens: Optional[int] = None,
        original_message: Optional[str] = None,
        status_code: Optional[int] = None,
        timeout: bool = False,
        capability: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.provider = provider
        self.retry_after_seconds = retry_after_seconds
        self.max_tokens = max_tokens
        self.original_message = original_message
        self.status_code = status_code
        self.timeout = timeout
        self.capability = capability

    def __repr__(self) -> str:
        return f"GatewayError(kind={self.kind.value!r}, provider={self.provider!r}, message={self.message!r})"

    @property
    def failover_eligible(self) -> bool:
        """Return True if the router may retry this call on the fallback."""
        return self.kind in FAILOVER_KINDS

    @classmethod
    def provider_unavailable(cls, provider: str) -> "GatewayError":
        return cls(
            ErrorKind.PROVIDER_UNAVAILABLE,
            f"LLM provider '{provider}' is not available (check API key)",
            provider=provider,
        )

    @classmethod
    def capability_unsupported(cls, provider: str, capability: str) -> "GatewayError":
        return cls(
            ErrorKind.CAPABILITY_UNSUPPORTED,
            f"Provider '{provider}' does not support '{capability}'",
            provider=provider,
            capability=capability,
        )

    @classmethod
    def rate_limited(
        cls,
        provider: str,
        retry_after_seconds: Optional[float] = None,
    ) -> "GatewayError":
        suffix = f" - retry after {retry_after_seconds:g}s" if retry_after_seconds is not None else ""
        return cls(
            ErrorKind.RATE_LIMITED,
            f"Rate limit exceeded for provider '{provider}'{suffix}",
            provider=provider,
            retry_after_seconds=retry_after_seconds,
            status_code=429,
        )

    @classmethod
    def context_length_exceeded(
        cls,
        provider: str,
        max_tokens: Optional[int],
    ) -> "GatewayError":
        limit = f" ({max_tokens} tokens)" if max_tokens is not None else ""
        return cls(
            ErrorKind.CONTEXT_LENGTH_EXCEEDED,
            f"Context length exceeds maximum{limit} for provider '{provider}'",
            provider=provider,
            max_tokens=max_tokens,
            status_code=400,
        )

    @classmethod
    def authentication_failed(cls, provider: str, status_code: Optional[int] = None) -> "GatewayError":
        return cls(
            ErrorKind.AUTHENTICATION_FAILED,
            f"Provider '{provider}' authentication failed - check API key",
            provider=provider,
            status_code=status_code,
        )

    @classmethod
    def server_error(
        cls,
        provider: str,
        detail: str = "",
        status_code: Optional[int] = None,
    ) -> "GatewayError":
        message = f"Provider '{provider}' server error"
        if detail:
            message = f"{message}: {detail}"
        return cls(
            ErrorKind.SERVER_ERROR,
            message,
            provider=provider,
            status_code=status_code,
        )

    @classmethod
    def deadline_exceeded(cls, provider: str, timeout: Optional[float]) -> "GatewayError":
        return cls(
            ErrorKind.SERVER_ERROR,
            f"Provider '{provider}' timed out after {timeout}s",
            provider=provider,
            timeout=True,
        )

    @classmethod
    def generic(
        cls,
        provider: str,
        original_message: str,
        status_code: Optional[int] = None,
    ) -> "GatewayError":
        return cls(
            ErrorKind.GENERIC,
            original_message or f"Unknown {provider} error",
            provider=provider,
            original_message=original_message,
            status_code=status_code,
        )

    @classmethod
    def invalid_request(cls, message: str, provider: Optional[str] = None) -> "GatewayError":
        return cls(ErrorKind.INVALID_REQUEST, message, provider=provider)

    @classmethod
    def circuit_open(cls, provider: str) -> "GatewayError":
        return cls(
            ErrorKind.CIRCUIT_OPEN,
            f"Circuit is open for provider '{provider}'",
            provider=provider,
        )

    @classmethod
    def no_provider_configured(cls) -> "GatewayError":
        return cls(
            ErrorKind.NO_PROVIDER_CONFIGURED,
            "No LLM providers configured - check API keys",
        )
