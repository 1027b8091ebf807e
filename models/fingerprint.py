"""
Cache-key fingerprinting for generation requests.

Prompts embed volatile values (timestamps, cycle counters, long float tails)
that change on every cycle without changing the question being asked. These are
masked before hashing so functionally identical requests share a cache entry.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

from models.schemas import GenerationRequest

_ISO_TIMESTAMP = re.compile(
    r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?"
)
# epoch seconds or millis, only when labelled like a time field (ts=, server_time:, "openTime": ...)
_EPOCH_FIELD = re.compile(
    r'(\b(?:ts|date|[a-z_]*(?:time|stamp)[a-z_]*|[a-z_]*_(?:at|ts|date))"?\s*[:=]\s*"?)1\d{9}(?:\d{3})?(?![\d.])',
    re.IGNORECASE,
)
_COUNTER_IDS = re.compile(r"\b(cycle|req|request|run)_\d+(?:_[0-9a-z]+)?\b", re.IGNORECASE)
_VOLATILE_KEYS = re.compile(
    r'("(?:timestamp|generated_at|fetched_at|updated_at|created_at|cycle|cycle_id|request_id|sequence|counter)"\s*:\s*)'
    r'("[^"]*"|-?\d+(?:\.\d+)?)',
    re.IGNORECASE,
)
_LONG_FLOAT = re.compile(r"-?\d+\.\d{5,}")


def _round_float(match: re.Match) -> str:
    text = f"{round(float(match.group(0)), 4):.4f}".rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


def normalize_prompt(prompt: str) -> str:
    """Mask high-entropy fragments and round floats beyond four decimals."""
    text = _VOLATILE_KEYS.sub(r"\g<1>0", prompt)
    text = _ISO_TIMESTAMP.sub("<ts>", text)
    text = _EPOCH_FIELD.sub(r"\g<1><ts>", text)
    text = _COUNTER_IDS.sub(lambda m: f"{m.group(1).lower()}_<n>", text)
    text = _LONG_FLOAT.sub(_round_float, text)
    return text.strip()


def _normalize_value(value: Any) -> Any:
    if isinstance(value, float):
        return round(value, 4)
    if isinstance(value, dict):
        return {str(key): _normalize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_value(item) for item in value]
    return value


def fingerprint(request: GenerationRequest, *, provider: str, model: str | None) -> str:
    """Return a stable sha256 digest for the request as it will be executed."""
    material = {
        "prompt": normalize_prompt(request.prompt),
        "schema": _normalize_value(request.schema),
        "temperature": _normalize_value(request.temperature),
        "max_output_tokens": request.max_output_tokens,
        "provider": provider,
        "model": model,
    }
    encoded = json.dumps(material, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
