"""
Error taxonomy shared by the generation gateway and its callers.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import httpx

_RATE_LIMIT_MARKERS = ("429", "rate limit", "quota", "resource exhausted")


class GenerationErrorKind(str, Enum):
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    UPSTREAM = "upstream"
    NO_ENDPOINTS = "no_endpoints"
    INITIALIZATION = "initialization"
    SCHEMA = "schema"
    PARSE = "parse"
    VALIDATION = "validation"
    CONFIG = "config"


class GenerationError(RuntimeError):
    """Base error raised by the generation gateway and provider adapters."""

    default_kind = GenerationErrorKind.UPSTREAM

    def __init__(
        self,
        message: str,
        *,
        kind: GenerationErrorKind | None = None,
        provider: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind or self.default_kind
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after
        self.payload = payload or {}

    @property
    def is_rate_limit(self) -> bool:
        return self.kind is GenerationErrorKind.RATE_LIMIT


class ProviderError(GenerationError):
    """Transport, auth, quota or upstream failure of a provider call."""


class SchemaError(GenerationError):
    default_kind = GenerationErrorKind.SCHEMA


class ParseError(GenerationError):
    default_kind = GenerationErrorKind.PARSE


class ValidationError(GenerationError):
    """Well-formed JSON that fails domain validation."""

    default_kind = GenerationErrorKind.VALIDATION

    def __init__(self, message: str, *, problems: Sequence[str] = (), **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.problems: List[str] = list(problems)


class ConfigError(GenerationError, ValueError):
    default_kind = GenerationErrorKind.CONFIG


def is_rate_limit_message(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


def is_rate_limit_error(exc: BaseException) -> bool:
    """Return True when the exception represents quota exhaustion or HTTP 429."""
    if isinstance(exc, GenerationError):
        return exc.is_rate_limit or is_rate_limit_message(str(exc))
    return is_rate_limit_message(str(exc))


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def classify_exception(exc: BaseException, *, provider: str | None = None) -> GenerationError:
    """Map arbitrary exceptions raised during a provider call onto the taxonomy."""
    if isinstance(exc, GenerationError):
        if exc.provider is None:
            exc.provider = provider
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(
            f"{provider or 'provider'} request timed out: {exc}",
            kind=GenerationErrorKind.TIMEOUT,
            provider=provider,
        )
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        status = response.status_code
        body = response.text[:200] if response is not None else ""
        message = f"{provider or 'provider'} API error ({status}): {body}"
        if status == 429 or is_rate_limit_message(body):
            return ProviderError(
                message,
                kind=GenerationErrorKind.RATE_LIMIT,
                provider=provider,
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        kind = GenerationErrorKind.AUTH if status in (401, 403) else GenerationErrorKind.UPSTREAM
        return ProviderError(message, kind=kind, provider=provider, status_code=status)
    if isinstance(exc, httpx.TransportError):
        return ProviderError(
            f"{provider or 'provider'} network error: {exc}",
            kind=GenerationErrorKind.TRANSPORT,
            provider=provider,
        )
    kind = GenerationErrorKind.RATE_LIMIT if is_rate_limit_message(str(exc)) else GenerationErrorKind.UPSTREAM
    return ProviderError(str(exc) or exc.__class__.__name__, kind=kind, provider=provider)
