"""Raydium v3 public API adapter: paginated USD1 pool listing."""

from __future__ import annotations

import asyncio
import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from cachetools import TTLCache

from ..constants import USD1_MINT, is_excluded_token
from ..errors import MalformedResponse, RadarError, SourceUnavailable
from ..health import SOURCE_RAYDIUM
from ..models import PoolCandidate, SourceMarketRecord
from ..utils import coerce_float, coerce_int, parse_timestamp_ms
from .base import ProviderFetcher

logger = logging.getLogger(__name__)

_DEFAULT_URL = "https://api-v3.raydium.io"
_BASE_URL = (os.getenv("RAYDIUM_API_URL") or _DEFAULT_URL).rstrip("/")

PAGE_SIZE = 500
MAX_PAGES = 5
# Discovery and enrichment both read the listing within one refresh cycle.
LISTING_REUSE_TTL = 30.0


@dataclass(frozen=True, slots=True)
class RaydiumMintDTO:
    address: str
    symbol: str
    name: str
    logo_uri: Optional[str]
    decimals: Optional[int]

    @classmethod
    def from_payload(cls, raw: Any) -> "RaydiumMintDTO":
        if not isinstance(raw, Mapping) or not isinstance(raw.get("address"), str):
            raise MalformedResponse("raydium mint without address")
        logo = raw.get("logoURI")
        return cls(
            address=raw["address"],
            symbol=str(raw.get("symbol") or ""),
            name=str(raw.get("name") or ""),
            logo_uri=logo if isinstance(logo, str) and logo else None,
            decimals=coerce_int(raw.get("decimals")),
        )


@dataclass(frozen=True, slots=True)
class RaydiumPoolDTO:
    """Typed view of one entry of ``/pools/info/mint``."""

    id: str
    pool_type: str
    mint_a: RaydiumMintDTO
    mint_b: RaydiumMintDTO
    tvl: Optional[float]
    price: Optional[float]
    volume_day: Optional[float]
    change_day: Optional[float]
    open_time: Optional[int]

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> "RaydiumPoolDTO":
        pool_id = raw.get("id")
        if not isinstance(pool_id, str) or not pool_id:
            raise MalformedResponse("raydium pool without id")
        day = raw.get("day") if isinstance(raw.get("day"), Mapping) else {}
        return cls(
            id=pool_id,
            pool_type=str(raw.get("type") or "unknown"),
            mint_a=RaydiumMintDTO.from_payload(raw.get("mintA")),
            mint_b=RaydiumMintDTO.from_payload(raw.get("mintB")),
            tvl=coerce_float(raw.get("tvl")),
            price=coerce_float(raw.get("price")),
            volume_day=coerce_float(day.get("volume")),
            change_day=coerce_float(day.get("priceChange")),
            open_time=parse_timestamp_ms(raw.get("openTime")),
        )

    def token_side(self) -> tuple[RaydiumMintDTO, Optional[float]] | None:
        """Return ``(token, token_price_usd)`` for the non-USD1 mint.

        Raydium's ``price`` is mintB per mintA, so with USD1 as mintB it is the
        token's USD price and with USD1 as mintA it must be inverted.
        """

        if self.mint_b.address == USD1_MINT:
            return self.mint_a, self.price
        if self.mint_a.address == USD1_MINT:
            price = 1.0 / self.price if self.price else None
            return self.mint_b, price
        return None


@dataclass(frozen=True, slots=True)
class RaydiumPage:
    count: int
    pools: list[RaydiumPoolDTO]


def parse_page(payload: Any) -> RaydiumPage:
    if not isinstance(payload, Mapping):
        raise MalformedResponse("raydium payload is not an object")
    if payload.get("success") is False:
        raise MalformedResponse(f"raydium reported failure: {payload.get('msg') or 'unknown'}")
    data = payload.get("data")
    if not isinstance(data, Mapping):
        raise MalformedResponse("raydium payload missing 'data'")
    rows = data.get("data") or []
    if not isinstance(rows, list):
        raise MalformedResponse("raydium 'data.data' is not a list")
    pools: list[RaydiumPoolDTO] = []
    for raw in rows:
        if not isinstance(raw, Mapping):
            continue
        try:
            pools.append(RaydiumPoolDTO.from_payload(raw))
        except MalformedResponse as exc:
            logger.debug("Skipping raydium pool: %s", exc)
    return RaydiumPage(count=coerce_int(data.get("count")) or len(pools), pools=pools)


def to_pool_candidate(dto: RaydiumPoolDTO) -> PoolCandidate | None:
    side = dto.token_side()
    if side is None:
        return None
    token, _ = side
    return PoolCandidate(
        token_mint=token.address,
        paired_mint=USD1_MINT,
        pool_address=dto.id,
        pool_type=dto.pool_type,
        source=SOURCE_RAYDIUM,
        liquidity_usd=dto.tvl or 0.0,
        volume_24h_usd=dto.volume_day or 0.0,
        symbol=token.symbol or None,
        name=token.name or None,
        open_time=dto.open_time,
    )


def to_market_record(dto: RaydiumPoolDTO) -> SourceMarketRecord | None:
    side = dto.token_side()
    if side is None:
        return None
    token, price = side
    return SourceMarketRecord(
        mint=token.address,
        source=SOURCE_RAYDIUM,
        symbol=token.symbol or None,
        name=token.name or None,
        price_usd=price,
        liquidity_usd=dto.tvl,
        volume_24h=dto.volume_day,
        change_24h=dto.change_day,
        created_at=dto.open_time,
        pair_address=dto.id,
        dex_id=f"raydium-{dto.pool_type.lower()}",
        image_url=token.logo_uri,
    )


class RaydiumFetcher(ProviderFetcher):
    source = SOURCE_RAYDIUM

    def __init__(
        self,
        health,
        *,
        fetch=None,
        timeout: float | None = 10.0,
        base_url: str = _BASE_URL,
        page_size: int = PAGE_SIZE,
        max_pages: int = MAX_PAGES,
        reuse_ttl: float = LISTING_REUSE_TTL,
    ) -> None:
        super().__init__(health, fetch=fetch, timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._page_size = max(1, page_size)
        self._max_pages = max(1, max_pages)
        self._listing: TTLCache | None = (
            TTLCache(maxsize=1, ttl=reuse_ttl) if reuse_ttl > 0 else None
        )

    def _page_url(self, page: int) -> str:
        return (
            f"{self._base_url}/pools/info/mint?mint1={USD1_MINT}&poolType=all"
            f"&poolSortField=liquidity&sortType=desc&pageSize={self._page_size}&page={page}"
        )

    async def fetch_pool_pages(self) -> list[RaydiumPoolDTO]:
        """Page 1 first, then the remaining pages (capped) in parallel.

        A failure on page 1 propagates; later page failures are logged and
        skipped.
        """

        if self._listing is not None and "pools" in self._listing:
            return list(self._listing["pools"])
        first = parse_page(await self._get(self._page_url(1)))
        total_pages = min(self._max_pages, max(1, math.ceil(first.count / self._page_size)))
        pools = list(first.pools)
        if total_pages > 1:
            results = await asyncio.gather(
                *(self._fetch_page(page) for page in range(2, total_pages + 1)),
                return_exceptions=True,
            )
            for page, result in enumerate(results, start=2):
                if isinstance(result, BaseException):
                    self._log_failure(f"page {page}", result)
                    continue
                pools.extend(result.pools)
        logger.debug("raydium returned %d USD1 pools over %d page(s)", len(pools), total_pages)
        if self._listing is not None:
            self._listing["pools"] = list(pools)
        return pools

    async def _fetch_page(self, page: int) -> RaydiumPage:
        return parse_page(await self._get(self._page_url(page)))

    async def fetch_pool_candidates(self) -> list[PoolCandidate]:
        candidates: list[PoolCandidate] = []
        for dto in await self.fetch_pool_pages():
            candidate = to_pool_candidate(dto)
            if candidate is None or is_excluded_token(candidate.symbol, candidate.name):
                continue
            candidates.append(candidate)
        return candidates

    async def fetch_market(self) -> Dict[str, SourceMarketRecord]:
        """Market records from the pool listing; an unreadable listing raises."""

        try:
            pools = await self.fetch_pool_pages()
        except SourceUnavailable:
            raise
        except RadarError as exc:
            raise SourceUnavailable(f"raydium pool listing failed: {exc}") from exc
        records: Dict[str, SourceMarketRecord] = {}
        for dto in pools:
            record = to_market_record(dto)
            if record is None:
                continue
            existing = records.get(record.mint)
            if existing is None or (record.volume_24h or 0.0) > (existing.volume_24h or 0.0):
                records[record.mint] = record
        return records


__all__ = [
    "RaydiumFetcher",
    "RaydiumPoolDTO",
    "parse_page",
    "to_market_record",
    "to_pool_candidate",
]
