"""Discovery of token/USD1 pools from on-chain accounts and the Raydium API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Optional

from solders.pubkey import Pubkey

from . import utils
from .constants import (
    CPMM_OPEN_TIME_OFFSET,
    CPMM_POOL_SIZE,
    CPMM_TOKEN_MINT_0_OFFSET,
    CPMM_TOKEN_MINT_1_OFFSET,
    RAYDIUM_CPMM_PROGRAM,
    USD1_MINT,
    is_excluded_token,
)
from .health import SOURCE_ONCHAIN, ApiHealthMonitor
from .models import PoolCandidate
from .providers.raydium import RaydiumFetcher
from .rpc import ProgramAccount, RpcManager

logger = logging.getLogger(__name__)

DEFAULT_POOL_CACHE_TTL = 300.0

# open_time values outside this millisecond window are uninitialised or garbage.
_OPEN_TIME_MIN_MS = 1_600_000_000_000
_OPEN_TIME_MAX_MS = 2_000_000_000_000


def _read_pubkey(data: bytes, offset: int) -> str:
    return str(Pubkey.from_bytes(data[offset : offset + 32]))


def _read_open_time(data: bytes) -> int | None:
    raw = data[CPMM_OPEN_TIME_OFFSET : CPMM_OPEN_TIME_OFFSET + 8]
    if len(raw) < 8:
        return None
    millis = int.from_bytes(raw, "little") * 1000
    if _OPEN_TIME_MIN_MS < millis < _OPEN_TIME_MAX_MS:
        return millis
    return None


def parse_cpmm_pool(account: ProgramAccount) -> PoolCandidate | None:
    """Decode a Raydium CPMM pool account into a candidate, or ``None``.

    Returns ``None`` for accounts of the wrong size or pools that do not pair
    against USD1.
    """

    data = account.data
    if len(data) < CPMM_POOL_SIZE:
        return None
    mint0 = _read_pubkey(data, CPMM_TOKEN_MINT_0_OFFSET)
    mint1 = _read_pubkey(data, CPMM_TOKEN_MINT_1_OFFSET)
    if mint0 == USD1_MINT and mint1 != USD1_MINT:
        token = mint1
    elif mint1 == USD1_MINT and mint0 != USD1_MINT:
        token = mint0
    else:
        return None
    return PoolCandidate(
        token_mint=token,
        paired_mint=USD1_MINT,
        pool_address=account.pubkey,
        pool_type="cpmm",
        source=SOURCE_ONCHAIN,
        open_time=_read_open_time(data),
    )


def dedup_candidates(candidates: Iterable[PoolCandidate]) -> list[PoolCandidate]:
    """Keep the highest-liquidity candidate per token mint (first seen wins ties)."""

    best: dict[str, PoolCandidate] = {}
    for candidate in candidates:
        current = best.get(candidate.token_mint)
        if current is None or candidate.liquidity_usd > current.liquidity_usd:
            best[candidate.token_mint] = candidate
    return list(best.values())


def exclude_majors(candidates: Iterable[PoolCandidate]) -> list[PoolCandidate]:
    return [c for c in candidates if not is_excluded_token(c.symbol, c.name)]


def merge_sources(
    onchain: Iterable[PoolCandidate], rest: Iterable[PoolCandidate]
) -> list[PoolCandidate]:
    """Union both paths; REST metadata enriches the matching on-chain pool."""

    by_pool: dict[str, PoolCandidate] = {}
    for candidate in onchain:
        by_pool[candidate.pool_address] = candidate
    for candidate in rest:
        existing = by_pool.get(candidate.pool_address)
        if existing is not None and candidate.open_time is None and existing.open_time:
            candidate = replace(candidate, open_time=existing.open_time)
        by_pool[candidate.pool_address] = candidate
    return list(by_pool.values())


@dataclass(frozen=True, slots=True)
class _PoolCache:
    pools: tuple[PoolCandidate, ...]
    timestamp: float


class PoolDiscovery:
    """Produce the deduplicated set of token/USD1 pools.

    Results are cached for ``cache_ttl`` seconds. ``discover`` never raises:
    an on-chain failure serves the previous cache if there is one, otherwise
    whatever the REST listing produced.
    """

    def __init__(
        self,
        health: ApiHealthMonitor,
        *,
        rpc: RpcManager | None = None,
        raydium: RaydiumFetcher | None = None,
        cache_ttl: float = DEFAULT_POOL_CACHE_TTL,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._health = health
        self._rpc = rpc
        self._raydium = raydium
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._cache: Optional[_PoolCache] = None
        self._inflight: asyncio.Task[list[PoolCandidate]] | None = None

    def _now(self) -> float:
        return self._clock() if self._clock is not None else utils.now_ts()

    @property
    def cached_pools(self) -> list[PoolCandidate]:
        return list(self._cache.pools) if self._cache else []

    def cache_age(self) -> float | None:
        if self._cache is None:
            return None
        return self._now() - self._cache.timestamp

    async def discover(self, force: bool = False) -> list[PoolCandidate]:
        cache = self._cache
        if not force and cache is not None and self._now() - cache.timestamp < self._cache_ttl:
            return list(cache.pools)
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._discover())
        return list(await asyncio.shield(self._inflight))

    async def _discover(self) -> list[PoolCandidate]:
        onchain_task = asyncio.ensure_future(self._scan_onchain())
        rest_task = asyncio.ensure_future(self._fetch_rest())
        onchain, rest = await asyncio.gather(onchain_task, rest_task)

        if onchain is None and self._cache is not None:
            logger.warning(
                "On-chain pool scan unavailable; serving cached pools (%d)",
                len(self._cache.pools),
            )
            return list(self._cache.pools)

        merged = merge_sources(onchain or [], rest)
        pools = dedup_candidates(exclude_majors(merged))
        pools.sort(key=lambda c: c.liquidity_usd, reverse=True)
        if onchain is None and not pools:
            logger.warning("Pool discovery produced no candidates and no cache exists")
            return []
        self._cache = _PoolCache(tuple(pools), self._now())
        logger.info(
            "Discovered %d USD1 pools (onchain=%s, rest=%d)",
            len(pools),
            "n/a" if onchain is None else len(onchain),
            len(rest),
        )
        return pools

    async def _scan_onchain(self) -> list[PoolCandidate] | None:
        """Both CPMM mint slots filtered on USD1; ``None`` on failure."""

        if self._rpc is None:
            return []
        if not self._health.is_healthy(SOURCE_ONCHAIN):
            logger.debug("Skipping on-chain pool scan; source in backoff")
            return None
        try:
            results = await asyncio.gather(
                *(
                    self._rpc.get_program_accounts(
                        RAYDIUM_CPMM_PROGRAM,
                        data_size=CPMM_POOL_SIZE,
                        memcmp=[(offset, USD1_MINT)],
                    )
                    for offset in (CPMM_TOKEN_MINT_0_OFFSET, CPMM_TOKEN_MINT_1_OFFSET)
                )
            )
        except Exception as exc:
            self._health.mark_error(SOURCE_ONCHAIN, exc)
            return None
        self._health.reset_health(SOURCE_ONCHAIN)
        candidates: list[PoolCandidate] = []
        for accounts in results:
            for account in accounts:
                candidate = parse_cpmm_pool(account)
                if candidate is not None:
                    candidates.append(candidate)
        logger.debug("On-chain scan found %d CPMM pools", len(candidates))
        return candidates

    async def _fetch_rest(self) -> list[PoolCandidate]:
        if self._raydium is None or not self._raydium.healthy:
            return []
        try:
            return await self._raydium.fetch_pool_candidates()
        except Exception as exc:
            logger.warning("Raydium pool listing failed: %s", exc)
            return []


__all__ = [
    "PoolDiscovery",
    "dedup_candidates",
    "exclude_majors",
    "merge_sources",
    "parse_cpmm_pool",
]
