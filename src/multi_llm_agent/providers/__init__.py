"""LLM Provider implementations

This package contains one completion adapter per backend kind behind a common interface.
"""

from .base import Completion, LLMProvider, ToolCallRequest
from .factory import PROVIDER_CLASSES, create_provider
from .gemini import GeminiProvider
from .ollama import OllamaProvider
from .openai import OpenAIProvider

__all__ = [
    "Completion",
    "LLMProvider",
    "ToolCallRequest",
    "PROVIDER_CLASSES",
    "create_provider",
    "GeminiProvider",
    "OllamaProvider",
    "OpenAIProvider",
]
