"""GeckoTerminal adapter: USD1 pool pages and per-pool OHLCV candles."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from ..constants import USD1_MINT
from ..errors import MalformedResponse
from ..health import SOURCE_GECKOTERMINAL
from ..models import SourceMarketRecord
from ..utils import coerce_float, coerce_int, parse_timestamp_ms
from .base import ProviderFetcher

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://api.geckoterminal.com/api/v2"
_BASE_URL = (os.getenv("GECKOTERMINAL_BASE_URL") or _DEFAULT_BASE_URL).rstrip("/")

MAX_PAGES = 5
OHLCV_TIMEFRAMES = frozenset({"minute", "hour", "day"})


@dataclass(frozen=True, slots=True)
class GeckoTokenDTO:
    id: str
    address: str
    symbol: str
    name: str
    image_url: Optional[str]


@dataclass(frozen=True, slots=True)
class GeckoPoolDTO:
    """Typed view of one pool entry plus its resolved tokens."""

    address: str
    base: GeckoTokenDTO
    quote: GeckoTokenDTO
    reserve_usd: Optional[float]
    volume_h24: Optional[float]
    base_price_usd: Optional[float]
    quote_price_usd: Optional[float]
    change_h24: Optional[float]
    change_h1: Optional[float]
    buys_h24: Optional[int]
    sells_h24: Optional[int]
    fdv_usd: Optional[float]
    created_at: Optional[int]

    @classmethod
    def from_payload(
        cls, pool: Mapping[str, Any], tokens: Mapping[str, GeckoTokenDTO]
    ) -> "GeckoPoolDTO":
        attrs = pool.get("attributes")
        rels = pool.get("relationships")
        if not isinstance(attrs, Mapping) or not isinstance(rels, Mapping):
            raise MalformedResponse("geckoterminal pool without attributes/relationships")
        base = tokens.get(_relationship_id(rels, "base_token") or "")
        quote = tokens.get(_relationship_id(rels, "quote_token") or "")
        if base is None or quote is None:
            raise MalformedResponse("geckoterminal pool token not in 'included'")
        volume = attrs.get("volume_usd") if isinstance(attrs.get("volume_usd"), Mapping) else {}
        change = (
            attrs.get("price_change_percentage")
            if isinstance(attrs.get("price_change_percentage"), Mapping)
            else {}
        )
        txns = attrs.get("transactions") if isinstance(attrs.get("transactions"), Mapping) else {}
        h24 = txns.get("h24") if isinstance(txns.get("h24"), Mapping) else {}
        return cls(
            address=str(attrs.get("address") or ""),
            base=base,
            quote=quote,
            reserve_usd=coerce_float(attrs.get("reserve_in_usd")),
            volume_h24=coerce_float(volume.get("h24")),
            base_price_usd=coerce_float(attrs.get("base_token_price_usd")),
            quote_price_usd=coerce_float(attrs.get("quote_token_price_usd")),
            change_h24=coerce_float(change.get("h24")),
            change_h1=coerce_float(change.get("h1")),
            buys_h24=coerce_int(h24.get("buys")),
            sells_h24=coerce_int(h24.get("sells")),
            fdv_usd=coerce_float(attrs.get("fdv_usd")),
            created_at=parse_timestamp_ms(attrs.get("pool_created_at")),
        )


def _relationship_id(rels: Mapping[str, Any], name: str) -> str | None:
    rel = rels.get(name)
    if isinstance(rel, Mapping):
        data = rel.get("data")
        if isinstance(data, Mapping) and isinstance(data.get("id"), str):
            return data["id"]
    return None


def _token_lookup(included: Any) -> Dict[str, GeckoTokenDTO]:
    lookup: Dict[str, GeckoTokenDTO] = {}
    if not isinstance(included, list):
        return lookup
    for item in included:
        if not isinstance(item, Mapping) or item.get("type") != "token":
            continue
        attrs = item.get("attributes") if isinstance(item.get("attributes"), Mapping) else {}
        address = attrs.get("address")
        if not isinstance(item.get("id"), str) or not isinstance(address, str):
            continue
        lookup[item["id"]] = GeckoTokenDTO(
            id=item["id"],
            address=address,
            symbol=str(attrs.get("symbol") or ""),
            name=str(attrs.get("name") or ""),
            image_url=attrs.get("image_url") if isinstance(attrs.get("image_url"), str) else None,
        )
    return lookup


def parse_pools_page(payload: Any) -> list[GeckoPoolDTO]:
    if not isinstance(payload, Mapping):
        raise MalformedResponse("geckoterminal page is not an object")
    data = payload.get("data")
    if data is None:
        return []
    if not isinstance(data, list):
        raise MalformedResponse("geckoterminal 'data' is not a list")
    tokens = _token_lookup(payload.get("included"))
    pools: list[GeckoPoolDTO] = []
    for raw in data:
        if not isinstance(raw, Mapping):
            continue
        try:
            pools.append(GeckoPoolDTO.from_payload(raw, tokens))
        except MalformedResponse as exc:
            logger.debug("Skipping geckoterminal pool: %s", exc)
    return pools


def to_market_record(dto: GeckoPoolDTO) -> SourceMarketRecord | None:
    """Return the record for the non-USD1 side, or ``None`` for foreign pools."""

    if dto.base.address == USD1_MINT:
        token, price = dto.quote, dto.quote_price_usd
    elif dto.quote.address == USD1_MINT:
        token, price = dto.base, dto.base_price_usd
    else:
        return None
    return SourceMarketRecord(
        mint=token.address,
        source=SOURCE_GECKOTERMINAL,
        symbol=token.symbol or None,
        name=token.name or None,
        price_usd=price,
        liquidity_usd=dto.reserve_usd,
        fdv_usd=dto.fdv_usd,
        volume_24h=dto.volume_h24,
        change_24h=dto.change_h24,
        change_1h=dto.change_h1,
        buys_24h=dto.buys_h24,
        sells_24h=dto.sells_h24,
        created_at=dto.created_at,
        pair_address=dto.address or None,
        dex_id="geckoterminal",
        image_url=token.image_url,
    )


@dataclass(frozen=True, slots=True)
class Candle:
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float


def parse_ohlcv(payload: Any) -> list[Candle]:
    if not isinstance(payload, Mapping):
        raise MalformedResponse("geckoterminal ohlcv payload is not an object")
    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else {}
    attrs = data.get("attributes") if isinstance(data.get("attributes"), Mapping) else {}
    rows = attrs.get("ohlcv_list") or []
    candles: list[Candle] = []
    for row in rows:
        if not isinstance(row, Sequence) or len(row) < 6:
            continue
        ts = parse_timestamp_ms(row[0])
        if ts is None:
            continue
        values = [coerce_float(v) or 0.0 for v in row[1:6]]
        candles.append(Candle(ts, *values))
    return candles


class GeckoTerminalFetcher(ProviderFetcher):
    source = SOURCE_GECKOTERMINAL

    def __init__(
        self,
        health,
        *,
        fetch=None,
        timeout: float | None = 6.0,
        base_url: str = _BASE_URL,
        max_pages: int = MAX_PAGES,
    ) -> None:
        super().__init__(health, fetch=fetch, timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._max_pages = max(1, max_pages)

    def _pools_url(self, page: int) -> str:
        return (
            f"{self._base_url}/networks/solana/tokens/{USD1_MINT}/pools"
            f"?page={page}&include=base_token,quote_token"
        )

    async def fetch_pools(self) -> Dict[str, SourceMarketRecord]:
        """Fetch USD1 pool pages in parallel; best record per mint by 24h volume.

        Raises ``SourceUnavailable`` when no page could be read.
        """

        self._ensure_healthy()

        async def _page(page: int) -> list[GeckoPoolDTO]:
            return parse_pools_page(await self._get(self._pools_url(page)))

        results = await asyncio.gather(
            *(_page(page) for page in range(1, self._max_pages + 1)),
            return_exceptions=True,
        )
        records: Dict[str, SourceMarketRecord] = {}
        errors: list[BaseException] = []
        for page, result in enumerate(results, start=1):
            if isinstance(result, BaseException):
                self._log_failure(f"page {page}", result)
                errors.append(result)
                continue
            for dto in result:
                record = to_market_record(dto)
                if record is None:
                    continue
                existing = records.get(record.mint)
                if existing is None or (record.volume_24h or 0.0) > (existing.volume_24h or 0.0):
                    records[record.mint] = record
        if len(errors) == len(results):
            raise self._all_failed("pages", errors) from errors[-1]
        return records

    async def fetch_ohlcv(
        self,
        pool_address: str,
        *,
        timeframe: str = "day",
        aggregate: int = 1,
        limit: int = 1000,
    ) -> list[Candle]:
        if timeframe not in OHLCV_TIMEFRAMES:
            raise ValueError(f"unsupported timeframe {timeframe!r}")
        url = (
            f"{self._base_url}/networks/solana/pools/{pool_address}/ohlcv/{timeframe}"
            f"?aggregate={aggregate}&limit={limit}"
        )
        return parse_ohlcv(await self._get(url))

    async def fetch_ohlcv_many(
        self, pool_addresses: Iterable[str], *, timeframe: str = "day", batch_size: int = 5
    ) -> Dict[str, list[Candle]]:
        """Candles for several pools, a few at a time; failed pools are omitted."""

        pools = list(dict.fromkeys(pool_addresses))
        candles: Dict[str, list[Candle]] = {}
        for start in range(0, len(pools), max(1, batch_size)):
            if not self.healthy:
                break
            batch = pools[start : start + max(1, batch_size)]
            results = await asyncio.gather(
                *(self.fetch_ohlcv(pool, timeframe=timeframe) for pool in batch),
                return_exceptions=True,
            )
            for pool, result in zip(batch, results):
                if isinstance(result, BaseException):
                    self._log_failure(f"ohlcv {pool}", result)
                    continue
                candles[pool] = result
        return candles


__all__ = [
    "Candle",
    "GeckoPoolDTO",
    "GeckoTerminalFetcher",
    "parse_ohlcv",
    "parse_pools_page",
    "to_market_record",
]
