"""
Generation gateway: provider routing, response caching and cross-provider fallback.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Mapping, Optional

from models.cache import BoundedTTLCache
from models.errors import ConfigError, GenerationError, ParseError, ProviderError, SchemaError
from models.fingerprint import fingerprint
from models.registry import ProviderRegistry
from models.schema_translation import validate_schema
from models.schemas import PROVIDERS, GenerationRequest, GenerationResult, ProviderName
from models.singleflight import SingleFlight
from models.utils import new_request_id

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GatewayConfig:
    """Routing and cache settings for `GenerationGateway`."""

    default_provider: ProviderName = "gemini"
    hybrid_routing: bool = True
    cache_capacity: int = 100
    cache_ttl_seconds: float = 300.0
    sweep_interval_seconds: float = 60.0
    models: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.default_provider not in PROVIDERS:
            raise ConfigError(f"Unknown provider: {self.default_provider}")
        if not isinstance(self.cache_capacity, int) or self.cache_capacity < 1:
            raise ConfigError(f"Invalid cache capacity: {self.cache_capacity}")
        for name in ("cache_ttl_seconds", "sweep_interval_seconds"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise ConfigError(f"Invalid {name}: {value}")

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "GatewayConfig":
        return cls(
            default_provider=settings.get("provider", "gemini"),
            hybrid_routing=bool(settings.get("hybrid_routing", True)),
            cache_capacity=int(settings.get("cache_capacity", 100)),
            cache_ttl_seconds=float(settings.get("cache_ttl_seconds", 300.0)),
            sweep_interval_seconds=float(settings.get("cache_sweep_interval_seconds", 60.0)),
            models=dict(settings.get("models") or {}),
        )


class GenerationGateway:
    """
    Single entry point for structured-output generation.

    Identical requests (after fingerprint normalisation) are answered from a
    bounded TTL cache; concurrent identical misses share one upstream call.
    When hybrid routing is on and the assigned provider fails, the request is
    replayed against the other configured provider. The gateway never retries
    on its own: rate-limit failures surface with `is_rate_limit` set so callers
    can back off.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config: GatewayConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.config = config or GatewayConfig()
        self._cache: BoundedTTLCache[GenerationResult] = BoundedTTLCache(
            self.config.cache_capacity, self.config.cache_ttl_seconds, clock=clock
        )
        self._flight: SingleFlight[GenerationResult] = SingleFlight()
        self._sweeper: Optional[asyncio.Task] = None
        self._stats = self._empty_stats()

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        if not request.prompt or not request.prompt.strip():
            raise SchemaError("Prompt is required")
        validate_schema(request.schema)

        provider = request.provider or self.config.default_provider
        if provider not in PROVIDERS:
            raise ConfigError(f"Unknown provider: {provider}")

        if request.bypass_cache:
            self._stats["misses"] += 1
            return await self._execute(request, provider)

        key = fingerprint(request, provider=provider, model=request.model or self.config.models.get(provider))
        cached = self._cache.get(key)
        if cached is not None:
            self._stats["hits"] += 1
            logger.debug("Cache hit for %s (%s)", request.label or "request", key[:12])
            return replace(cached, request_id=new_request_id(), cached=True)

        self._stats["misses"] += 1
        return await self._flight.run(key, lambda: self._execute_and_store(key, request, provider))

    async def _execute_and_store(
        self, key: str, request: GenerationRequest, provider: ProviderName
    ) -> GenerationResult:
        result = await self._execute(request, provider)
        self._cache.set(key, result)
        return result

    async def _execute(self, request: GenerationRequest, provider: ProviderName) -> GenerationResult:
        try:
            return await self._call(provider, request)
        except (ProviderError, ParseError) as primary:
            fallback = self._fallback_for(provider)
            if fallback is None:
                self._stats["errors"] += 1
                raise
            logger.warning(
                "%s failed for %s (%s); falling back to %s",
                provider,
                request.label or "request",
                primary,
                fallback,
            )
            try:
                result = await self._call(fallback, replace(request, model=None))
            except GenerationError as exc:
                logger.error("Fallback provider %s also failed: %s", fallback, exc)
                self._stats["errors"] += 1
                raise primary
            self._stats["fallbacks"] += 1
            logger.info("Fallback to %s succeeded for %s", fallback, request.label or "request")
            return result
        except GenerationError:
            self._stats["errors"] += 1
            raise

    async def _call(self, provider: ProviderName, request: GenerationRequest) -> GenerationResult:
        adapter = await self.registry.acquire(provider)
        return await adapter.generate(request)

    def _fallback_for(self, provider: ProviderName) -> Optional[ProviderName]:
        if not self.config.hybrid_routing:
            return None
        for candidate in PROVIDERS:
            if candidate != provider and self.registry.is_configured(candidate):
                return candidate
        return None

    def sweep(self) -> int:
        """Purge TTL-expired cache entries regardless of access pattern."""
        return self._cache.purge_expired()

    def start_sweeper(self) -> asyncio.Task:
        """Start the periodic cache sweep on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
        return self._sweeper

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)

    def stats(self) -> Dict[str, int]:
        return {
            **self._stats,
            "cache_size": len(self._cache),
            "in_flight": len(self._flight),
        }

    def reset(self) -> None:
        """Drop cached results and zero the counters."""
        self._cache.clear()
        self._stats = self._empty_stats()

    async def aclose(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        await self.registry.aclose()

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {"hits": 0, "misses": 0, "fallbacks": 0, "errors": 0}
