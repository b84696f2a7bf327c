"""Small helpers shared by the radar pipeline."""

from __future__ import annotations

import math
import time
from datetime import datetime
from typing import Any, Mapping


def now_ts() -> float:
    """Return the current timestamp as a float."""

    return time.time()


def clamp(value: float, minimum: float, maximum: float) -> float:
    """Return ``value`` bounded by ``minimum`` and ``maximum``."""

    return max(minimum, min(maximum, value))


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if math.isnan(float(value)) or math.isinf(float(value)):
            return None
        return float(value)
    if isinstance(value, str):
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return None
        if math.isnan(numeric) or math.isinf(numeric):
            return None
        return numeric
    if isinstance(value, Mapping):
        for key in ("usd", "value", "amount", "price"):
            if key in value:
                return coerce_float(value.get(key))
    return None


def coerce_int(value: Any) -> int | None:
    numeric = coerce_float(value)
    if numeric is None:
        return None
    return int(numeric)


def parse_timestamp_ms(value: Any) -> int | None:
    """Normalise seconds, milliseconds or ISO-8601 strings to epoch millis."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts <= 0:
            return None
        if ts < 1e12:
            ts *= 1000.0
        return int(ts)
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            numeric = float(raw)
        except (TypeError, ValueError):
            numeric = None
        if numeric is not None:
            return parse_timestamp_ms(numeric)
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        return int(parsed.timestamp() * 1000)
    return None


def first_present(*values: Any) -> Any:
    """Return the first value that is neither ``None`` nor an empty string."""

    for value in values:
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def chunked(items: list[Any], size: int) -> list[list[Any]]:
    if size <= 0:
        return [list(items)] if items else []
    return [items[i : i + size] for i in range(0, len(items), size)]


__all__ = [
    "now_ts",
    "clamp",
    "coerce_float",
    "coerce_int",
    "parse_timestamp_ms",
    "first_present",
    "chunked",
]
