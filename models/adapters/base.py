"""
Abstract base class for structured-output provider adapters.
"""

from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple

import httpx

from models.errors import ConfigError, GenerationError, classify_exception
from models.schemas import GenerationRequest, GenerationResult, ProviderName
from models.utils import new_request_id

logger = logging.getLogger(__name__)


class BaseProviderAdapter(ABC):
    """Common behaviour for language-model provider adapters."""

    provider: ProviderName

    def __init__(
        self,
        provider: ProviderName,
        *,
        model: str,
        timeout: float,
        temperature: float,
        max_output_tokens: int,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Async entry point used by the gateway.

        Subclasses override `_build_payload`, `_invoke_model` and
        `_parse_response`; any non-taxonomy exception is classified here.
        """
        model = request.model or self.model
        payload = self._build_payload(request, model)
        started = time.monotonic()
        try:
            raw_output = await self._invoke_model(payload, request, model)
            text, finish_reason = self._parse_response(raw_output, request)
        except GenerationError as exc:
            if exc.provider is None:
                exc.provider = self.provider
            raise
        except Exception as exc:
            raise classify_exception(exc, provider=self.provider) from exc
        latency_ms = (time.monotonic() - started) * 1000
        if request.label:
            logger.debug("%s completed via %s/%s in %.0fms", request.label, self.provider, model, latency_ms)
        return GenerationResult(
            text=text,
            finish_reason=finish_reason,
            provider=self.provider,
            request_id=new_request_id(),
            model=model,
            latency_ms=latency_ms,
        )

    def _temperature(self, request: GenerationRequest) -> float:
        return self.temperature if request.temperature is None else request.temperature

    def _max_tokens(self, request: GenerationRequest) -> int:
        return request.max_output_tokens or self.max_output_tokens

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    @abstractmethod
    def _build_payload(self, request: GenerationRequest, model: str) -> Dict[str, Any]:
        """Return the provider-specific request body."""

    @abstractmethod
    async def _invoke_model(
        self, payload: Dict[str, Any], request: GenerationRequest, model: str
    ) -> Dict[str, Any]:
        """Call the backing provider and return its decoded JSON envelope."""

    @abstractmethod
    def _parse_response(
        self, raw_output: Dict[str, Any], request: GenerationRequest
    ) -> Tuple[str, str]:
        """Return `(json_text, finish_reason)` from the provider envelope."""

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def validate_sampling_settings(
    timeout: float, temperature: float, max_output_tokens: int, *, provider: str
) -> None:
    """Raise ConfigError for unusable timeout, temperature or token budget values."""
    if not math.isfinite(timeout) or timeout <= 0:
        raise ConfigError(f"Invalid {provider} timeout: {timeout}", provider=provider)
    if not math.isfinite(temperature) or not 0 <= temperature <= 2:
        raise ConfigError(f"Invalid {provider} temperature: {temperature}", provider=provider)
    if not isinstance(max_output_tokens, int) or max_output_tokens <= 0:
        raise ConfigError(f"Invalid {provider} max_output_tokens: {max_output_tokens}", provider=provider)
