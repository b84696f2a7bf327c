"""Merge per-provider market records into canonical ``EnrichedToken`` rows."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional, Sequence

from . import utils
from .constants import is_excluded_token
from .health import SOURCE_DEXSCREENER, SOURCE_GECKOTERMINAL, SOURCE_RAYDIUM
from .models import EnrichedToken, PoolCandidate, SourceMarketRecord
from .safety import SafetyInputs, score_token

logger = logging.getLogger(__name__)

PROVIDER_PRIORITY: tuple[str, ...] = (
    SOURCE_DEXSCREENER,
    SOURCE_GECKOTERMINAL,
    SOURCE_RAYDIUM,
)

MIN_LIQUIDITY_USD = 100.0
MAX_FDV_LIQUIDITY_RATIO = 100.0
# Used to estimate market cap when no provider reports an FDV.
FALLBACK_SUPPLY = 1_000_000_000


def pool_record(candidate: PoolCandidate) -> SourceMarketRecord:
    return SourceMarketRecord(
        mint=candidate.token_mint,
        source=candidate.source,
        symbol=candidate.symbol,
        name=candidate.name,
        liquidity_usd=candidate.liquidity_usd or None,
        volume_24h=candidate.volume_24h_usd or None,
        created_at=candidate.open_time,
        pair_address=candidate.pool_address,
        dex_id=f"raydium-{candidate.pool_type}",
    )


def _pick(records: Sequence[SourceMarketRecord], field: str) -> Any:
    return utils.first_present(*(getattr(r, field) for r in records))


def _pick_record(
    records: Sequence[SourceMarketRecord], field: str
) -> Optional[SourceMarketRecord]:
    for record in records:
        if utils.first_present(getattr(record, field)) is not None:
            return record
    return None


def build_token(
    mint: str,
    records: Sequence[SourceMarketRecord],
    *,
    now_ms: int,
    min_liquidity: float = MIN_LIQUIDITY_USD,
    max_ratio: float = MAX_FDV_LIQUIDITY_RATIO,
) -> EnrichedToken | None:
    """Build one token from ``records`` (highest priority first) or reject it."""

    if not records:
        return None
    symbol = _pick(records, "symbol")
    name = _pick(records, "name")
    if is_excluded_token(symbol, name):
        return None

    price_record = _pick_record(records, "price_usd")
    price = price_record.price_usd if price_record else None
    if price is None or price <= 0:
        return None

    liquidity = _pick(records, "liquidity_usd") or 0.0
    if liquidity < min_liquidity:
        return None
    fdv = _pick(records, "fdv_usd")
    mcap = fdv if fdv else price * FALLBACK_SUPPLY
    if liquidity > 0 and mcap / liquidity > max_ratio:
        return None

    txn_record = next(
        (r for r in records if r.buys_24h is not None or r.sells_24h is not None), None
    )
    buys = (txn_record.buys_24h or 0) if txn_record else 0
    sells = (txn_record.sells_24h or 0) if txn_record else 0
    volume = _pick(records, "volume_24h") or 0.0
    created_at = _pick(records, "created_at")
    age_hours = (now_ms - created_at) / 3_600_000 if created_at else None
    socials = next((r.socials for r in records if r.socials), ())

    safety = score_token(
        SafetyInputs(
            liquidity=liquidity,
            mcap=mcap,
            volume24h=volume,
            txns24h=buys + sells,
            buys24h=buys,
            sells24h=sells,
            age_hours=age_hours,
            has_socials=bool(socials),
        )
    )
    return EnrichedToken(
        mint=mint,
        name=name or "Unknown",
        symbol=symbol or "???",
        price=price,
        liquidity=liquidity,
        mcap=mcap,
        volume24h=volume,
        change24h=_pick(records, "change_24h") or 0.0,
        change1h=_pick(records, "change_1h") or 0.0,
        txns24h=buys + sells,
        buys24h=buys,
        sells24h=sells,
        created_at=created_at,
        socials=socials,
        safety_score=safety.score,
        safety_level=safety.level,
        safety_warnings=safety.warnings,
        discovery_source=price_record.source,
        pair_address=_pick(records, "pair_address"),
        dex_id=_pick(records, "dex_id"),
        url=_pick(records, "url") or f"https://dexscreener.com/solana/{mint}",
        image_url=_pick(records, "image_url"),
    )


def assemble_tokens(
    verified: Iterable[str],
    sources: Mapping[str, Mapping[str, SourceMarketRecord]],
    pools: Iterable[PoolCandidate] = (),
    *,
    now_ms: int | None = None,
    min_liquidity: float = MIN_LIQUIDITY_USD,
    max_ratio: float = MAX_FDV_LIQUIDITY_RATIO,
) -> list[EnrichedToken]:
    """Merge provider records for each verified mint, sorted by mcap descending.

    Pure: the inputs are not modified and no I/O is performed.
    """

    now = int(utils.now_ts() * 1000) if now_ms is None else now_ms
    by_pool = {pool.token_mint: pool for pool in pools}
    tokens: list[EnrichedToken] = []
    rejected = 0
    for mint in dict.fromkeys(verified):
        records = [
            sources[name][mint]
            for name in PROVIDER_PRIORITY
            if name in sources and mint in sources[name]
        ]
        if mint in by_pool:
            records.append(pool_record(by_pool[mint]))
        token = build_token(
            mint,
            records,
            now_ms=now,
            min_liquidity=min_liquidity,
            max_ratio=max_ratio,
        )
        if token is None:
            rejected += 1
            continue
        tokens.append(token)
    tokens.sort(key=lambda t: t.mcap, reverse=True)
    logger.debug("Assembled %d tokens (%d rejected)", len(tokens), rejected)
    return tokens


__all__ = [
    "PROVIDER_PRIORITY",
    "MIN_LIQUIDITY_USD",
    "MAX_FDV_LIQUIDITY_RATIO",
    "assemble_tokens",
    "build_token",
    "pool_record",
]
