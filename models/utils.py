"""
Utility helpers used across the generation gateway.
"""

from __future__ import annotations

import math
import secrets
import string
import time

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_request_id() -> str:
    """Return a correlation id of the form `req_<epoch-ms>_<6 chars>`."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"req_{int(time.time() * 1000)}_{suffix}"


def clamp(value: float, minimum: float, maximum: float) -> float:
    """Clamp a value within [minimum, maximum]; NaN collapses to the minimum."""
    if math.isnan(value):
        return minimum
    return max(minimum, min(maximum, value))


def as_finite_float(value: object) -> float | None:
    """Coerce numbers and numeric strings to float; anything else is None."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None
