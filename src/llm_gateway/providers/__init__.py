"""Provider adapters for the LLM gateway.

Each adapter wraps one external LLM service behind the ``BaseProvider``
contract:

- ``OpenAIProvider``: chat, streaming and embeddings
- ``AnthropicProvider``: chat and streaming (no embeddings)
"""

from .base import BaseProvider, ProviderCapabilities
from .anthropic import AnthropicProvider
from .openai import OpenAIProvider

__all__ = [
    "BaseProvider",
    "ProviderCapabilities",
    "AnthropicProvider",
    "OpenAIProvider",
]
