"""OpenAI provider adapter.

Talks to the OpenAI REST API directly over httpx:
- ``/chat/completions`` for chat and streaming chat (SSE)
- ``/embeddings`` for embedding vectors

OpenAI is the capability-complete provider: it supports chat, streaming
and embeddings.
"""

import re
from typing import Any, AsyncIterator, Dict, List

from ..errors import ErrorKind, GatewayError
from ..types import (
    ChatOptions,
    ChatResponse,
    EmbedOptions,
    EmbedResponse,
    EmbedUsage,
    Message,
    TaskType,
    UsageInfo,
)
from .base import BaseProvider, ProviderCapabilities, iter_sse_data

OPENAI_API_URL = "https://api.openai.com/v1"

DEFAULT_CHAT_MODEL = "gpt-4-turbo-preview"
DEFAULT_EMBED_MODEL = "text-embedding-3-small"


class OpenAIProvider(BaseProvider):
    """Adapter for OpenAI chat and embedding models."""

    name = "openai"
    default_base_url = OPENAI_API_URL
    capabilities = ProviderCapabilities(
        supports_chat=True,
        supports_streaming=True,
        supports_embeddings=True,
    )
    default_models = {
        TaskType.CHAT: DEFAULT_CHAT_MODEL,
        TaskType.EMBED: DEFAULT_EMBED_MODEL,
    }
    context_length_patterns = (re.compile(r"maximum context length is (\d+)"),)
    context_length_markers = ("maximum context length",)
    stream_error_kinds = {
        "server_error": ErrorKind.SERVER_ERROR,
        "rate_limit_error": ErrorKind.RATE_LIMITED,
    }
    chars_per_token = 3.5

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def build_chat_payload(
        self,
        messages: List[Message],
        options: ChatOptions,
        stream: bool = False,
    ) -> Dict[str, Any]:
        """Build the ``/chat/completions`` request body."""
        payload: Dict[str, Any] = {
            "model": options.model,
            "messages": [msg.to_dict() for msg in messages],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "top_p": options.top_p,
            "frequency_penalty": options.frequency_penalty,
            "presence_penalty": options.presence_penalty,
        }

        stop = options.stop_sequences()
        if stop:
            payload["stop"] = stop

        if stream:
            payload["stream"] = True

        return payload

    async def _complete(self, messages: List[Message], options: ChatOptions) -> ChatResponse:
        payload = self.build_chat_payload(messages, options)

        async with self._client(options.timeout) as client:
            response = await client.post(
                self._url("/chat/completions"), headers=self._headers(), json=payload
            )
            await self._raise_for_status(response)
            data = response.json()

        choices = data.get("choices") or []
        if not choices or not choices[0].get("message"):
            raise GatewayError.generic(self.name, "No response from OpenAI")

        choice = choices[0]
        content = choice["message"].get("content") or ""
        usage = data.get("usage") or {}

        prompt_tokens = usage.get("prompt_tokens")
        if prompt_tokens is None:
            prompt_tokens = self.estimate_message_tokens(messages)
        completion_tokens = usage.get("completion_tokens")
        if completion_tokens is None:
            completion_tokens = self.estimate_tokens(content)

        return ChatResponse(
            content=content,
            model=data.get("model") or options.model,
            usage=UsageInfo.from_counts(prompt_tokens, completion_tokens),
            finish_reason=choice.get("finish_reason") or "stop",
        )

    async def _stream_chunks(
        self, messages: List[Message], options: ChatOptions
    ) -> AsyncIterator[str]:
        payload = self.build_chat_payload(messages, options, stream=True)

        async with self._client(options.timeout) as client:
            async with client.stream(
                "POST", self._url("/chat/completions"), headers=self._headers(), json=payload
            ) as response:
                await self._raise_for_status(response)

                async for _event, data in iter_sse_data(response):
                    if data == "[DONE]":
                        break

                    event = self._decode_event(data)
                    if event.get("error"):
                        raise self.map_stream_error(event["error"])

                    choices = event.get("choices") or []
                    if not choices:
                        continue
                    delta = (choices[0].get("delta") or {}).get("content")
                    if delta:
                        yield delta

    async def _embed(self, text: str, options: EmbedOptions) -> EmbedResponse:
        payload: Dict[str, Any] = {
            "model": options.model,
            "input": text,
            "dimensions": options.dimensions,
        }

        async with self._client(options.timeout) as client:
            response = await client.post(
                self._url("/embeddings"), headers=self._headers(), json=payload
            )
            await self._raise_for_status(response)
            data = response.json()

        items = data.get("data") or []
        embedding = items[0].get("embedding") if items else None
        if not embedding:
            raise GatewayError.generic(self.name, "No embedding returned from OpenAI")

        usage = data.get("usage") or {}
        total_tokens = usage.get("total_tokens")
        if total_tokens is None:
            total_tokens = self.estimate_tokens(text)

        return EmbedResponse(
            embedding=[float(value) for value in embedding],
            model=data.get("model") or options.model,
            usage=EmbedUsage(total_tokens=total_tokens),
        )
