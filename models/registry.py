"""
Provider registry that lazily constructs one adapter per provider.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable

from models.adapters.base import BaseProviderAdapter
from models.errors import GenerationError, GenerationErrorKind, ProviderError
from models.singleflight import SingleFlight

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[], BaseProviderAdapter]


class ProviderRegistry:
    """
    Holds adapter factories keyed by provider name.

    Adapters are built on first use. Concurrent first callers share a single
    construction, and a construction that fails is not remembered, so the next
    caller tries again.
    """

    def __init__(self) -> None:
        self._factories: Dict[str, AdapterFactory] = {}
        self._adapters: Dict[str, BaseProviderAdapter] = {}
        self._init_flight: SingleFlight[BaseProviderAdapter] = SingleFlight()

    def register_factory(self, provider: str, factory: AdapterFactory, *, overwrite: bool = False) -> None:
        """Register a zero-argument callable that builds the adapter for `provider`."""
        if not overwrite and provider in self._factories:
            raise KeyError(f"Adapter factory already registered for provider '{provider}'")
        self._factories[provider] = factory
        self._adapters.pop(provider, None)

    def is_configured(self, provider: str) -> bool:
        return provider in self._factories

    def list(self) -> Iterable[str]:
        """Return registered provider names."""
        return self._factories.keys()

    def initialized(self) -> Iterable[str]:
        return self._adapters.keys()

    async def acquire(self, provider: str) -> BaseProviderAdapter:
        """Return the adapter for `provider`, constructing it on first use."""
        adapter = self._adapters.get(provider)
        if adapter is not None:
            return adapter
        if provider not in self._factories:
            raise ProviderError(
                f"Provider '{provider}' is not configured",
                kind=GenerationErrorKind.CONFIG,
                provider=provider,
            )
        return await self._init_flight.run(provider, lambda: self._construct(provider))

    async def _construct(self, provider: str) -> BaseProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is not None:
            return adapter
        try:
            adapter = self._factories[provider]()
        except Exception as exc:
            if isinstance(exc, GenerationError):
                logger.error("Failed to initialise %s provider: %s", provider, exc)
            else:
                logger.exception("Failed to initialise %s provider", provider)
            raise ProviderError(
                f"Failed to initialise {provider} provider: {exc}",
                kind=GenerationErrorKind.INITIALIZATION,
                provider=provider,
            ) from exc
        self._adapters[provider] = adapter
        logger.info("Initialised %s provider (model=%s)", provider, adapter.model)
        return adapter

    async def aclose(self) -> None:
        """Close every constructed adapter and forget it."""
        adapters = list(self._adapters.values())
        self._adapters.clear()
        for adapter in adapters:
            await adapter.aclose()
