"""Token service: the exposed entry point tying the pipeline together."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, Mapping, Optional

from . import http, utils
from .assembler import assemble_tokens
from .cache import SWRCache
from .config import RadarSettings, load_settings
from .errors import SourceUnavailable
from .health import (
    SOURCE_DEXSCREENER,
    SOURCE_GECKOTERMINAL,
    SOURCE_RAYDIUM,
    ApiHealthMonitor,
)
from .kv import KeyValueStore, RedisKeyValueStore, create_store
from .models import EnrichedToken, SourceMarketRecord, TokensResult
from .pool_discovery import PoolDiscovery
from .providers import DexScreenerFetcher, GeckoTerminalFetcher, HeliusClient, RaydiumFetcher
from .rpc import RpcManager, build_endpoints
from .verification import RetrySummary, VerificationEngine
from .volume import DAY_MS, VolumeStore, aggregate_ohlcv, iso_date

logger = logging.getLogger(__name__)

DEFAULT_MAX_NEW = 30


class TokenService:
    """Discover, verify, enrich and cache USD1-paired BonkFun tokens.

    All collaborators are injected; :meth:`from_settings` builds the
    production wiring. Call :meth:`start` before serving and :meth:`stop` at
    shutdown.
    """

    def __init__(
        self,
        *,
        health: ApiHealthMonitor,
        discovery: PoolDiscovery,
        engine: VerificationEngine,
        dexscreener: DexScreenerFetcher,
        geckoterminal: GeckoTerminalFetcher,
        raydium: RaydiumFetcher,
        kv: KeyValueStore,
        volume: VolumeStore | None = None,
        rpc: RpcManager | None = None,
        fresh_ttl: float = 15.0,
        stale_ttl: float = 45.0,
        max_new_per_run: int = DEFAULT_MAX_NEW,
        min_liquidity: float = 100.0,
        max_fdv_ratio: float = 100.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.health = health
        self.discovery = discovery
        self.engine = engine
        self.dexscreener = dexscreener
        self.geckoterminal = geckoterminal
        self.raydium = raydium
        self.kv = kv
        self.volume = volume
        self.rpc = rpc
        self._max_new = max_new_per_run
        self._min_liquidity = min_liquidity
        self._max_fdv_ratio = max_fdv_ratio
        self._clock = clock
        self.cache = SWRCache(
            self._refresh, fresh_ttl=fresh_ttl, stale_ttl=stale_ttl, clock=clock
        )
        self._started = False

    @classmethod
    def from_settings(cls, settings: RadarSettings | None = None) -> "TokenService":
        settings = settings or load_settings()
        health = ApiHealthMonitor()
        endpoints = build_endpoints(
            helius_api_key=settings.helius_api_key,
            alchemy_api_key=settings.alchemy_api_key,
            chainstack_api_key=settings.chainstack_api_key,
            quicknode_url=settings.quicknode_url,
            public_url=settings.solana_rpc_url,
        )
        # Endpoint health is tracked apart from the data-source health map.
        rpc = RpcManager(endpoints)
        timeout = settings.http_timeout
        raydium = RaydiumFetcher(health, timeout=timeout)
        kv = create_store(settings.redis_url)
        helius = HeliusClient(health, settings.helius_api_key, timeout=timeout)
        if not helius.configured:
            logger.warning("HELIUS_API_KEY not set; new mints will stay unverified")
        engine = VerificationEngine(
            helius,
            kv,
            tx_window=settings.verify_tx_window,
            call_delay=settings.verify_delay,
        )
        return cls(
            health=health,
            discovery=PoolDiscovery(
                health, rpc=rpc, raydium=raydium, cache_ttl=settings.pool_cache_ttl
            ),
            engine=engine,
            dexscreener=DexScreenerFetcher(health, timeout=timeout),
            geckoterminal=GeckoTerminalFetcher(health, timeout=timeout),
            raydium=raydium,
            kv=kv,
            volume=VolumeStore(kv) if settings.record_volume else None,
            rpc=rpc,
            fresh_ttl=settings.fresh_ttl,
            stale_ttl=settings.stale_ttl,
            max_new_per_run=settings.max_new_per_run,
            min_liquidity=settings.min_liquidity,
            max_fdv_ratio=settings.max_fdv_ratio,
        )

    def _now(self) -> float:
        return self._clock() if self._clock is not None else utils.now_ts()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        await self.engine.load()
        self._started = True

    async def stop(self) -> None:
        await self.cache.aclose()
        await self.engine.aclose()
        if self.rpc is not None:
            await self.rpc.aclose()
        await http.close_session()
        if isinstance(self.kv, RedisKeyValueStore):
            await self.kv.close()
        self._started = False

    async def __aenter__(self) -> "TokenService":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Refresh pipeline
    # ------------------------------------------------------------------

    async def _refresh(self) -> list[EnrichedToken]:
        if not self.engine.loaded:
            await self.engine.load()
        pools = await self.discovery.discover()
        # Reads never wait on Helius; unseen mints are verified in the
        # background and show up on a later refresh.
        verified = self.engine.verified_mints()
        self.engine.start_sweep(pools, max_new=self._max_new)
        if not verified:
            logger.info("No verified mints yet; token list is empty")
            return []

        results = await asyncio.gather(
            self._dexscreener_records(verified),
            self.geckoterminal.fetch_pools(),
            self.raydium.fetch_market(),
            return_exceptions=True,
        )
        sources: Dict[str, Mapping[str, SourceMarketRecord]] = {}
        failures = 0
        for name, result in zip(
            (SOURCE_DEXSCREENER, SOURCE_GECKOTERMINAL, SOURCE_RAYDIUM), results
        ):
            if isinstance(result, BaseException):
                failures += 1
                logger.warning("%s enrichment failed: %s", name, result)
                continue
            sources[name] = result
        if failures == len(results):
            raise SourceUnavailable("every market data source failed")

        now_ms = int(self._now() * 1000)
        tokens = assemble_tokens(
            verified,
            sources,
            pools,
            now_ms=now_ms,
            min_liquidity=self._min_liquidity,
            max_ratio=self._max_fdv_ratio,
        )
        logger.info(
            "Refreshed %d tokens from %d verified mints (%s)",
            len(tokens),
            len(verified),
            ", ".join(f"{name}={len(records)}" for name, records in sources.items()),
        )
        await self._record_volume(tokens, now_ms)
        return tokens

    async def _dexscreener_records(self, verified: set[str]) -> Dict[str, SourceMarketRecord]:
        """Batch lookup of verified mints, gaps filled from the USD1 pair listing."""

        batch, listing = await asyncio.gather(
            self.dexscreener.fetch_tokens(verified),
            self.dexscreener.fetch_usd1_pairs(),
            return_exceptions=True,
        )
        if isinstance(batch, BaseException) and isinstance(listing, BaseException):
            raise batch
        records: Dict[str, SourceMarketRecord] = {}
        if isinstance(listing, BaseException):
            logger.warning("dexscreener USD1 pair listing failed: %s", listing)
        else:
            records.update((mint, rec) for mint, rec in listing.items() if mint in verified)
        if isinstance(batch, BaseException):
            logger.warning("dexscreener token lookup failed: %s", batch)
        else:
            records.update(batch)
        return records

    async def _record_volume(self, tokens: list[EnrichedToken], now_ms: int) -> None:
        if self.volume is None or not tokens:
            return
        try:
            await self.volume.record(tokens, now_ms)
        except Exception as exc:
            logger.warning("Could not record volume snapshot: %s", exc)

    # ------------------------------------------------------------------
    # Exposed operations
    # ------------------------------------------------------------------

    def _health_flags(self) -> Dict[str, bool]:
        return {name: self.health.state(name).healthy for name in self.health.sources()}

    async def get_tokens(self, force_refresh: bool = False) -> TokensResult:
        read = await self.cache.get(force_refresh=force_refresh)
        return TokensResult(
            tokens=read.snapshot.data,
            cached=read.cached,
            stale=read.stale,
            timestamp=read.snapshot.timestamp,
            health=self._health_flags(),
            error=read.error,
        )

    def get_health_status(self) -> Dict[str, Dict[str, object]]:
        return {
            name: {"healthy": state["healthy"], "errorCount": state["errorCount"]}
            for name, state in self.health.snapshot().items()
        }

    async def run_discovery(self, max_new: Optional[int] = DEFAULT_MAX_NEW) -> Dict[str, Any]:
        """Scheduled sweep: discover pools, verify new mints, then retry."""

        pools = await self.discovery.discover(force=True)
        verified = await self.engine.verify_pools(pools, max_new=max_new)
        retry = await self.engine.process_retry_queue()
        sweep = self.engine.last_sweep
        return {
            "pools": len(pools),
            "verified": len(verified),
            "sweep": asdict(sweep) if sweep is not None else None,
            "retry": asdict(retry),
        }

    async def volume_history(self, days: int = 30, *, ohlcv: bool = False) -> Dict[str, Any]:
        """Stored daily aggregates and hourly snapshots covering the last ``days`` days.

        With ``ohlcv`` the GeckoTerminal daily candles of the current tokens'
        pairs are summed per day as well.
        """

        days = max(1, days)
        now_ms = int(self._now() * 1000)
        since_ms = now_ms - days * DAY_MS
        history: Dict[str, Any] = {"daily": [], "snapshots": []}
        if self.volume is not None:
            daily = await self.volume.daily_range(days, today=iso_date(now_ms))
            snapshots = await self.volume.snapshots(since_ms, now_ms)
            history["daily"] = [asdict(d) for d in daily]
            history["snapshots"] = [asdict(s) for s in snapshots]
        if ohlcv:
            tokens = (await self.get_tokens()).tokens
            pools = [t.pair_address for t in tokens if t.pair_address]
            candles = await self.geckoterminal.fetch_ohlcv_many(pools)
            history["ohlcv"] = [
                asdict(point) for point in aggregate_ohlcv(candles) if point.timestamp >= since_ms
            ]
        return history

    async def process_retry_queue(self) -> RetrySummary:
        return await self.engine.process_retry_queue()

    def stats(self) -> Dict[str, Any]:
        return {
            "cache": {
                "state": self.cache.state(),
                "refreshes": self.cache.refresh_count,
                "refreshing": self.cache.refreshing,
            },
            "pools": {
                "cached": len(self.discovery.cached_pools),
                "age": self.discovery.cache_age(),
            },
            "verification": self.engine.stats(),
            "rpc": self.rpc.stats() if self.rpc is not None else {},
        }


__all__ = ["TokenService", "DEFAULT_MAX_NEW"]
