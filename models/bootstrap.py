"""
Helper utilities to assemble a generation gateway from `config.py` values.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

import httpx

import config
from models.adapters.gemini import GeminiAdapter, GeminiConfig
from models.adapters.openrouter import OpenRouterAdapter, OpenRouterConfig
from models.gateway import GatewayConfig, GenerationGateway
from models.registry import ProviderRegistry


def build_default_registry(
    settings: Optional[Mapping[str, Any]] = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry:
    """
    Return a registry with factories for every provider that has an API key.

    Factories run lazily, so a misconfigured provider only fails when it is
    first used and never blocks the other one.
    """
    settings = settings or config.GENERATION_SETTINGS
    sampling = {
        "timeout": float(settings.get("timeout_seconds", 60.0)),
        "temperature": float(settings.get("temperature", 0.8)),
        "max_output_tokens": int(settings.get("max_output_tokens", 8192)),
    }
    registry = ProviderRegistry()
    if config.GEMINI_API_KEY:
        registry.register_factory(
            "gemini",
            lambda: GeminiAdapter(
                GeminiConfig(api_key=config.GEMINI_API_KEY, model=config.GEMINI_MODEL, **sampling),
                transport=transport,
            ),
        )
    if config.OPENROUTER_API_KEY:
        registry.register_factory(
            "openrouter",
            lambda: OpenRouterAdapter(
                OpenRouterConfig(
                    api_key=config.OPENROUTER_API_KEY,
                    model=config.OPENROUTER_MODEL,
                    base_url=config.OPENROUTER_BASE_URL,
                    referer=config.OPENROUTER_REFERER,
                    title=config.OPENROUTER_TITLE,
                    structured_outputs=bool(settings.get("structured_outputs", True)),
                    **sampling,
                ),
                transport=transport,
            ),
        )
    return registry


def build_default_gateway(
    settings: Optional[Mapping[str, Any]] = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GenerationGateway:
    """Return a gateway wired to the providers configured in the environment."""
    settings = dict(settings or config.GENERATION_SETTINGS)
    settings.setdefault(
        "models", {"gemini": config.GEMINI_MODEL, "openrouter": config.OPENROUTER_MODEL}
    )
    registry = build_default_registry(settings, transport=transport)
    return GenerationGateway(registry, GatewayConfig.from_settings(settings))
