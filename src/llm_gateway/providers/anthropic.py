"""Anthropic provider adapter.

Talks to the Anthropic Messages API over httpx. Anthropic offers chat and
streaming but no embedding models, so ``get_model("embed")`` and ``embed``
raise CAPABILITY_UNSUPPORTED.

Message translation rules:
- All system messages are joined into one top-level ``system`` directive.
- The turn sequence must start with a user message; a placeholder user
  turn is inserted when the caller's first turn is from the assistant.
"""

import re
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from ..errors import ErrorKind, GatewayError
from ..types import ChatOptions, ChatResponse, Message, TaskType, UsageInfo
from .base import BaseProvider, ProviderCapabilities, iter_sse_data

ANTHROPIC_API_URL = "https://api.anthropic.com/v1"
ANTHROPIC_API_VERSION = "2023-06-01"

DEFAULT_CHAT_MODEL = "claude-3-5-sonnet-20241022"

PLACEHOLDER_USER_CONTENT = "..."
SYSTEM_SEPARATOR = "\n\n"


class AnthropicProvider(BaseProvider):
    """Adapter for Anthropic Claude models."""

    name = "anthropic"
    default_base_url = ANTHROPIC_API_URL
    capabilities = ProviderCapabilities(
        supports_chat=True,
        supports_streaming=True,
        supports_embeddings=False,
    )
    default_models = {TaskType.CHAT: DEFAULT_CHAT_MODEL}
    context_length_patterns = (
        re.compile(r"maximum context length is (\d+)"),
        re.compile(r"prompt is too long: \d+ tokens > (\d+) maximum"),
    )
    context_length_markers = ("maximum context length", "prompt is too long")
    stream_error_kinds = {
        "rate_limit_error": ErrorKind.RATE_LIMITED,
        "overloaded_error": ErrorKind.SERVER_ERROR,
        "api_error": ErrorKind.SERVER_ERROR,
        "authentication_error": ErrorKind.AUTHENTICATION_FAILED,
        "permission_error": ErrorKind.AUTHENTICATION_FAILED,
    }
    chars_per_token = 3.75

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "Content-Type": "application/json",
        }

    def convert_messages(
        self, messages: List[Message]
    ) -> Tuple[Optional[str], List[Dict[str, str]]]:
        """Split canonical messages into a system directive and turns."""
        system: Optional[str] = None
        turns: List[Dict[str, str]] = []

        for msg in messages:
            if msg.role == "system":
                system = f"{system}{SYSTEM_SEPARATOR}{msg.content}" if system else msg.content
            else:
                turns.append({
                    "role": "user" if msg.role == "user" else "assistant",
                    "content": msg.content,
                })

        if turns and turns[0]["role"] != "user":
            turns.insert(0, {"role": "user", "content": PLACEHOLDER_USER_CONTENT})

        return system, turns

    def build_chat_payload(
        self,
        messages: List[Message],
        options: ChatOptions,
        stream: bool = False,
    ) -> Dict[str, Any]:
        """Build the ``/messages`` request body."""
        system, turns = self.convert_messages(messages)
        if not turns:
            raise GatewayError.invalid_request(
                "Anthropic requires at least one user or assistant message",
                provider=self.name,
            )

        payload: Dict[str, Any] = {
            "model": options.model,
            "messages": turns,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
        }

        if system:
            payload["system"] = system

        stop = options.stop_sequences()
        if stop:
            payload["stop_sequences"] = stop

        if stream:
            payload["stream"] = True

        return payload

    async def _complete(self, messages: List[Message], options: ChatOptions) -> ChatResponse:
        payload = self.build_chat_payload(messages, options)

        async with self._client(options.timeout) as client:
            response = await client.post(
                self._url("/messages"), headers=self._headers(), json=payload
            )
            await self._raise_for_status(response)
            data = response.json()

        text_blocks = [
            block.get("text", "")
            for block in data.get("content") or []
            if block.get("type") == "text"
        ]
        if not text_blocks:
            raise GatewayError.generic(self.name, "No text response from Anthropic")
        content = "".join(text_blocks)

        usage = data.get("usage") or {}
        input_tokens = usage.get("input_tokens")
        if input_tokens is None:
            input_tokens = self.estimate_message_tokens(messages)
        output_tokens = usage.get("output_tokens")
        if output_tokens is None:
            output_tokens = self.estimate_tokens(content)

        return ChatResponse(
            content=content,
            model=data.get("model") or options.model,
            usage=UsageInfo.from_counts(input_tokens, output_tokens),
            finish_reason=data.get("stop_reason") or "end_turn",
        )

    async def _stream_chunks(
        self, messages: List[Message], options: ChatOptions
    ) -> AsyncIterator[str]:
        payload = self.build_chat_payload(messages, options, stream=True)

        async with self._client(options.timeout) as client:
            async with client.stream(
                "POST", self._url("/messages"), headers=self._headers(), json=payload
            ) as response:
                await self._raise_for_status(response)

                async for _event, data in iter_sse_data(response):
                    event = self._decode_event(data)
                    event_type = event.get("type")

                    if event_type == "error":
                        raise self.map_stream_error(event.get("error") or {})

                    if event_type == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield delta["text"]
                    elif event_type == "message_stop":
                        break
