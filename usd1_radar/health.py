"""Per-source health tracking with exponential auto-recovery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable

from . import utils
from .backoff import HEALTH_BACKOFF, BackoffPolicy

logger = logging.getLogger(__name__)

SOURCE_ONCHAIN = "onchain"
SOURCE_DEXSCREENER = "dexscreener"
SOURCE_GECKOTERMINAL = "geckoterminal"
SOURCE_RAYDIUM = "raydium"
SOURCE_HELIUS = "helius"

DEFAULT_SOURCES: tuple[str, ...] = (
    SOURCE_ONCHAIN,
    SOURCE_DEXSCREENER,
    SOURCE_GECKOTERMINAL,
    SOURCE_RAYDIUM,
    SOURCE_HELIUS,
)


@dataclass(slots=True)
class ApiHealthState:
    healthy: bool = True
    last_error_at: float = 0.0
    error_count: int = 0


class ApiHealthMonitor:
    """Circuit breaker keyed by external source name.

    ``is_healthy`` performs a half-open retry once the backoff window has
    elapsed: the source is flipped back to healthy but its error count is
    kept, so a further failure waits twice as long.
    """

    def __init__(
        self,
        sources: Iterable[str] = DEFAULT_SOURCES,
        *,
        policy: BackoffPolicy = HEALTH_BACKOFF,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._policy = policy
        self._clock = clock
        self._states: Dict[str, ApiHealthState] = {
            name: ApiHealthState() for name in sources
        }

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return utils.now_ts()

    def _state(self, source: str) -> ApiHealthState:
        state = self._states.get(source)
        if state is None:
            state = ApiHealthState()
            self._states[source] = state
        return state

    def mark_error(self, source: str, error: BaseException | str | None = None) -> None:
        state = self._state(source)
        state.healthy = False
        state.last_error_at = self._now()
        state.error_count += 1
        logger.warning(
            "%s marked unhealthy (errors=%d, backoff=%.0fs): %s",
            source,
            state.error_count,
            self._policy.delay(state.error_count),
            error if error is not None else "unknown error",
        )

    def reset_health(self, source: str) -> None:
        state = self._state(source)
        if not state.healthy or state.error_count:
            logger.debug("%s recovered after %d errors", source, state.error_count)
        state.healthy = True
        state.error_count = 0

    def is_healthy(self, source: str) -> bool:
        state = self._state(source)
        if state.healthy:
            return True
        if self._policy.ready(state.error_count, state.last_error_at, self._now()):
            state.healthy = True
            logger.info("%s backoff elapsed; allowing retry", source)
            return True
        return False

    def backoff_remaining(self, source: str) -> float:
        state = self._state(source)
        if state.healthy:
            return 0.0
        elapsed = self._now() - state.last_error_at
        return max(0.0, self._policy.delay(state.error_count) - elapsed)

    def state(self, source: str) -> ApiHealthState:
        current = self._state(source)
        return ApiHealthState(current.healthy, current.last_error_at, current.error_count)

    def sources(self) -> list[str]:
        return list(self._states)

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        """Return ``{source: {healthy, errorCount, lastErrorAt}}`` for reporting."""

        return {
            name: {
                "healthy": state.healthy,
                "errorCount": state.error_count,
                "lastErrorAt": state.last_error_at or None,
            }
            for name, state in self._states.items()
        }


__all__ = [
    "ApiHealthMonitor",
    "ApiHealthState",
    "DEFAULT_SOURCES",
    "SOURCE_ONCHAIN",
    "SOURCE_DEXSCREENER",
    "SOURCE_GECKOTERMINAL",
    "SOURCE_RAYDIUM",
    "SOURCE_HELIUS",
]
