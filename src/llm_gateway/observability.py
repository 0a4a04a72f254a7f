"""Observability sink protocol for the LLM gateway.

The tracer records runs through an ``ObservabilitySink``. By default the
no-op sink is used, which records nothing.

Usage (default - no tracing):
    from llm_gateway.observability import NoOpSink
    sink = NoOpSink()

Usage (LangSmith):
    from llm_gateway.observability import LangSmithSink

    sink = LangSmithSink(api_key="ls-...")
    tracer = Tracer(sink=sink, project="compilar-v0.5")

Usage (custom implementation):
    class MySink:
        def is_enabled(self) -> bool: return True
        async def create_run(self, run): return run["id"]
        async def update_run(self, run_id, patch): ...
"""

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_LANGSMITH_ENDPOINT = "https://api.smith.langchain.com"


@runtime_checkable
class ObservabilitySink(Protocol):
    """Protocol defining the observability sink interface.

    Implementations must provide:
    - is_enabled(): Check if runs should be recorded
    - create_run(): Record the start of a run and return its id
    - update_run(): Record the outcome of a run

    Any method may raise; the tracer treats every sink failure as
    non-fatal.
    """

    def is_enabled(self) -> bool:
        ...

    async def create_run(self, run: Dict[str, Any]) -> str:
        """Record a run-start descriptor.

        Args:
            run: Run descriptor with ``id``, ``name``, ``run_type``,
                ``inputs``, ``extra`` and ``start_time``.

        Returns:
            The run id to use for ``update_run``.
        """
        ...

    async def update_run(self, run_id: str, patch: Dict[str, Any]) -> None:
        ...


class NoOpSink:
    """Default sink that records nothing."""

    def is_enabled(self) -> bool:
        """Always returns False - tracing is disabled."""
        return False

    async def create_run(self, run: Dict[str, Any]) -> str:
        return run.get("id", "")

    async def update_run(self, run_id: str, patch: Dict[str, Any]) -> None:
        pass


class LangSmithSink:
    """Sink that posts runs to the LangSmith REST API.

    Requests fail loudly (``httpx.HTTPError``); the tracer catches and logs
    them so the traced call is unaffected.
    """

    def __init__(
        self,
        api_key: Optional[str],
        endpoint: str = DEFAULT_LANGSMITH_ENDPOINT,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the sink.

        Args:
            api_key: LangSmith API key. The sink is disabled without one.
            endpoint: LangSmith API base URL.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport, used for testing.
        """
        self.api_key = (api_key or "").strip()
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def is_enabled(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "Content-Type": "application/json",
        }

    async def create_run(self, run: Dict[str, Any]) -> str:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self.endpoint}/runs", json=run, headers=self._headers()
            )
            response.raise_for_status()
        logger.debug(f"Created LangSmith run {run.get('id')}")
        return run["id"]

    async def update_run(self, run_id: str, patch: Dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.patch(
                f"{self.endpoint}/runs/{run_id}", json=patch, headers=self._headers()
            )
            response.raise_for_status()
