"""Stale-while-revalidate cache for the assembled token list."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from . import utils
from .models import EMPTY_SNAPSHOT, CacheSnapshot, EnrichedToken

logger = logging.getLogger(__name__)

DEFAULT_FRESH_TTL = 15.0
DEFAULT_STALE_TTL = 45.0

STATE_FRESH = "fresh"
STATE_STALE = "stale"
STATE_EXPIRED = "expired"

Loader = Callable[[], Awaitable[Sequence[EnrichedToken]]]


@dataclass(frozen=True, slots=True)
class CacheRead:
    snapshot: CacheSnapshot
    cached: bool
    stale: bool
    error: Optional[str] = None


class SWRCache:
    """Serve snapshots by age.

    * fresh (< ``fresh_ttl``): returned as is;
    * stale (< ``stale_ttl``): returned immediately while one background
      refresh runs;
    * expired or empty: the caller awaits the refresh and falls back to the
      previous snapshot if it fails.

    The snapshot reference is only ever replaced, never mutated.
    """

    def __init__(
        self,
        loader: Loader,
        *,
        fresh_ttl: float = DEFAULT_FRESH_TTL,
        stale_ttl: float = DEFAULT_STALE_TTL,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if stale_ttl < fresh_ttl:
            raise ValueError("stale_ttl must be >= fresh_ttl")
        self._loader = loader
        self._fresh_ttl = fresh_ttl
        self._stale_ttl = stale_ttl
        self._clock = clock
        self._snapshot: CacheSnapshot | None = None
        self._inflight: asyncio.Task[CacheSnapshot] | None = None
        self._refreshes = 0

    def _now(self) -> float:
        return self._clock() if self._clock is not None else utils.now_ts()

    @property
    def snapshot(self) -> CacheSnapshot | None:
        return self._snapshot

    @property
    def refresh_count(self) -> int:
        return self._refreshes

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def state(self) -> str:
        snapshot = self._snapshot
        if snapshot is None:
            return STATE_EXPIRED
        age = self._now() - snapshot.timestamp
        if age < self._fresh_ttl:
            return STATE_FRESH
        if age < self._stale_ttl:
            return STATE_STALE
        return STATE_EXPIRED

    async def get(self, force_refresh: bool = False) -> CacheRead:
        snapshot = self._snapshot
        state = STATE_EXPIRED if force_refresh else self.state()
        if state == STATE_FRESH and snapshot is not None:
            return CacheRead(snapshot, cached=True, stale=False)
        if state == STATE_STALE and snapshot is not None:
            self._start_refresh()
            return CacheRead(snapshot, cached=True, stale=True)

        task = self._start_refresh()
        try:
            fresh = await asyncio.shield(task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            previous = self._snapshot
            if previous is not None:
                logger.warning("Refresh failed; serving snapshot from %.0f: %s", previous.timestamp, exc)
                return CacheRead(previous, cached=True, stale=True, error=str(exc))
            logger.error("Refresh failed and no snapshot exists: %s", exc)
            return CacheRead(EMPTY_SNAPSHOT, cached=False, stale=False, error=str(exc))
        return CacheRead(fresh, cached=False, stale=False)

    def _start_refresh(self) -> asyncio.Task[CacheSnapshot]:
        task = self._inflight
        if task is not None and not task.done():
            return task
        task = asyncio.ensure_future(self._refresh())
        task.add_done_callback(self._on_refresh_done)
        self._inflight = task
        return task

    async def _refresh(self) -> CacheSnapshot:
        self._refreshes += 1
        data = await self._loader()
        snapshot = CacheSnapshot(data=tuple(data), timestamp=self._now())
        self._snapshot = snapshot
        logger.debug("Cache refreshed with %d tokens", len(snapshot.data))
        return snapshot

    @staticmethod
    def _on_refresh_done(task: asyncio.Task[CacheSnapshot]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background refresh failed: %s", exc)

    def clear(self) -> None:
        self._snapshot = None

    async def aclose(self) -> None:
        task = self._inflight
        self._inflight = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


__all__ = [
    "CacheRead",
    "SWRCache",
    "DEFAULT_FRESH_TTL",
    "DEFAULT_STALE_TTL",
    "STATE_FRESH",
    "STATE_STALE",
    "STATE_EXPIRED",
]
