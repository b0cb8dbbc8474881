"""LLM provider interfaces."""

from .provider import (
    ConsoleEchoProvider,
    LLMProvider,
    OllamaProvider,
    PromptContext,
    ProviderError,
    StaticResponseProvider,
    call_provider,
)

__all__ = [
    "LLMProvider",
    "PromptContext",
    "ProviderError",
    "ConsoleEchoProvider",
    "StaticResponseProvider",
    "OllamaProvider",
    "call_provider",
]
