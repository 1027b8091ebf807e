"""
Adapter implementations for individual LLM providers.
"""

from .gemini import GeminiAdapter, GeminiConfig  # noqa: F401
from .openrouter import OpenRouterAdapter, OpenRouterConfig  # noqa: F401
