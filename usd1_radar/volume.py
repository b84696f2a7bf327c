"""Hourly volume snapshots and per-day aggregates kept in the KV store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping, Sequence

import orjson

from . import utils
from .constants import VOLUME_DAILY_PREFIX, VOLUME_SNAPSHOTS_KEY
from .kv import KeyValueStore
from .models import EnrichedToken
from .providers.geckoterminal import Candle

logger = logging.getLogger(__name__)

HOUR_MS = 3_600_000
DAY_MS = 24 * HOUR_MS
MAX_SNAPSHOTS = 720  # 30 days of hourly points
DAILY_TTL = 400 * 24 * 3600.0


@dataclass(frozen=True, slots=True)
class VolumeSnapshot:
    timestamp: int
    total_volume_24h: float
    total_liquidity: float
    pool_count: int


@dataclass(frozen=True, slots=True)
class DailyVolume:
    date: str
    volume_24h: float
    liquidity: float
    pool_count: int
    samples: int


@dataclass(frozen=True, slots=True)
class VolumePoint:
    timestamp: int
    volume: float
    pools: int


def iso_date(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).date().isoformat()


def snapshot_from_tokens(tokens: Sequence[EnrichedToken], now_ms: int) -> VolumeSnapshot:
    return VolumeSnapshot(
        timestamp=(now_ms // HOUR_MS) * HOUR_MS,
        total_volume_24h=sum(t.volume24h for t in tokens),
        total_liquidity=sum(t.liquidity for t in tokens),
        pool_count=len(tokens),
    )


def aggregate_ohlcv(candles_by_pool: Mapping[str, Sequence[Candle]]) -> list[VolumePoint]:
    """Sum candle volume per timestamp across pools, oldest first."""

    totals: dict[int, list[float]] = {}
    for candles in candles_by_pool.values():
        for candle in candles:
            bucket = totals.setdefault(candle.timestamp, [0.0, 0])
            bucket[0] += candle.volume
            bucket[1] += 1
    return [
        VolumePoint(timestamp=ts, volume=vol, pools=int(count))
        for ts, (vol, count) in sorted(totals.items())
    ]


class VolumeStore:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        max_snapshots: int = MAX_SNAPSHOTS,
    ) -> None:
        self._kv = kv
        self._max_snapshots = max(1, max_snapshots)
        self._lock = asyncio.Lock()

    async def _load_snapshots(self) -> list[VolumeSnapshot]:
        raw = await self._kv.get(VOLUME_SNAPSHOTS_KEY)
        if not raw:
            return []
        try:
            rows = orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning("Discarding malformed volume snapshots")
            return []
        snapshots: list[VolumeSnapshot] = []
        for row in rows if isinstance(rows, list) else []:
            try:
                snapshots.append(VolumeSnapshot(**row))
            except TypeError:
                continue
        return snapshots

    async def save_snapshot(self, snapshot: VolumeSnapshot) -> None:
        """Store ``snapshot``; a later snapshot in the same hour replaces it."""

        async with self._lock:
            existing = {s.timestamp: s for s in await self._load_snapshots()}
            existing[snapshot.timestamp] = snapshot
            ordered = sorted(existing.values(), key=lambda s: s.timestamp)[-self._max_snapshots :]
            await self._kv.set(
                VOLUME_SNAPSHOTS_KEY,
                orjson.dumps([asdict(s) for s in ordered]).decode(),
            )
            await self._update_daily(snapshot)

    async def _update_daily(self, snapshot: VolumeSnapshot) -> None:
        date = iso_date(snapshot.timestamp)
        current = await self.daily(date)
        if current is None:
            updated = DailyVolume(
                date=date,
                volume_24h=snapshot.total_volume_24h,
                liquidity=snapshot.total_liquidity,
                pool_count=snapshot.pool_count,
                samples=1,
            )
        else:
            updated = DailyVolume(
                date=date,
                volume_24h=max(current.volume_24h, snapshot.total_volume_24h),
                liquidity=snapshot.total_liquidity,
                pool_count=max(current.pool_count, snapshot.pool_count),
                samples=current.samples + 1,
            )
        await self._kv.set(
            f"{VOLUME_DAILY_PREFIX}{date}",
            orjson.dumps(asdict(updated)).decode(),
            ttl=DAILY_TTL,
        )

    async def record(
        self, tokens: Sequence[EnrichedToken], now_ms: int | None = None
    ) -> VolumeSnapshot:
        now = int(utils.now_ts() * 1000) if now_ms is None else now_ms
        snapshot = snapshot_from_tokens(tokens, now)
        await self.save_snapshot(snapshot)
        return snapshot

    async def snapshots(self, from_ms: int, to_ms: int | None = None) -> list[VolumeSnapshot]:
        upper = to_ms if to_ms is not None else int(utils.now_ts() * 1000)
        return [s for s in await self._load_snapshots() if from_ms <= s.timestamp <= upper]

    async def daily(self, date: str) -> DailyVolume | None:
        raw = await self._kv.get(f"{VOLUME_DAILY_PREFIX}{date}")
        if not raw:
            return None
        try:
            return DailyVolume(**orjson.loads(raw))
        except (orjson.JSONDecodeError, TypeError):
            logger.warning("Discarding malformed daily volume for %s", date)
            return None

    async def daily_range(self, days: int = 30, *, today: str | None = None) -> list[DailyVolume]:
        end = (
            datetime.fromisoformat(today).date()
            if today
            else datetime.now(timezone.utc).date()
        )
        wanted = {(end - timedelta(days=offset)).isoformat() for offset in range(max(1, days))}
        results: list[DailyVolume] = []
        for key, raw in await self._kv.scan_prefix(VOLUME_DAILY_PREFIX):
            date = key[len(VOLUME_DAILY_PREFIX) :]
            if date not in wanted:
                continue
            try:
                results.append(DailyVolume(**orjson.loads(raw)))
            except (orjson.JSONDecodeError, TypeError):
                continue
        return sorted(results, key=lambda d: d.date)


__all__ = [
    "DAY_MS",
    "HOUR_MS",
    "DailyVolume",
    "VolumePoint",
    "VolumeSnapshot",
    "VolumeStore",
    "aggregate_ohlcv",
    "iso_date",
    "snapshot_from_tokens",
]
