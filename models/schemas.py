"""
Shared data structures for structured generation requests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional


ProviderName = Literal["gemini", "openrouter"]
PROVIDERS: tuple[ProviderName, ...] = ("gemini", "openrouter")


@dataclass(slots=True, frozen=True)
class GenerationRequest:
    """Immutable payload describing one structured-output call."""

    prompt: str
    schema: Dict[str, Any]
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    provider: Optional[ProviderName] = None
    model: Optional[str] = None
    bypass_cache: bool = False
    label: Optional[str] = None


@dataclass(slots=True, frozen=True)
class GenerationResult:
    """Validated JSON text returned by a provider."""

    text: str
    finish_reason: str
    provider: ProviderName
    request_id: str
    model: Optional[str] = None
    cached: bool = False
    latency_ms: float = 0.0
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
