"""Exponential backoff policy shared by the health monitor and retry queue."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """``delay(n) = min(base * multiplier ** (n - 1), cap)`` for ``n >= 1``."""

    base: float
    multiplier: float = 2.0
    cap: float | None = None

    def delay(self, attempts: int) -> float:
        if attempts <= 0:
            return 0.0
        # Avoid float overflow for very large attempt counts.
        exponent = min(attempts - 1, 64)
        value = self.base * (self.multiplier**exponent)
        if self.cap is not None:
            value = min(value, self.cap)
        return max(0.0, value)

    def ready(self, attempts: int, last_at: float, now: float) -> bool:
        """Return ``True`` once ``delay(attempts)`` has elapsed since ``last_at``."""

        return now - last_at >= self.delay(attempts)


# Source health: 30s, 60s, 120s, 240s, then 5 minutes.
HEALTH_BACKOFF = BackoffPolicy(base=30.0, multiplier=2.0, cap=300.0)
# Verification retries: 60s doubling up to an hour.
RETRY_BACKOFF = BackoffPolicy(base=60.0, multiplier=2.0, cap=3600.0)


__all__ = ["BackoffPolicy", "HEALTH_BACKOFF", "RETRY_BACKOFF"]
