"""Dexscreener REST adapter: batched multi-mint lookups and the USD1 pair list."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from ..constants import USD1_MINT
from ..errors import MalformedResponse
from ..health import SOURCE_DEXSCREENER
from ..models import SocialLink, SourceMarketRecord
from ..utils import chunked, coerce_float, coerce_int, parse_timestamp_ms
from .base import ProviderFetcher

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://api.dexscreener.com"
_BASE_URL = (os.getenv("DEXSCREENER_BASE_URL") or _DEFAULT_BASE_URL).rstrip("/")

BATCH_SIZE = 30
BATCH_DELAY = 0.2


@dataclass(frozen=True, slots=True)
class DexPairDTO:
    """Typed view of one Dexscreener pair object."""

    chain_id: str
    pair_address: str
    dex_id: str
    url: str
    base_address: str
    base_symbol: str
    base_name: str
    quote_address: str
    quote_symbol: str
    quote_name: str
    price_usd: Optional[float]
    price_native: Optional[float]
    liquidity_usd: Optional[float]
    fdv: Optional[float]
    volume_h24: Optional[float]
    change_h24: Optional[float]
    change_h1: Optional[float]
    buys_h24: Optional[int]
    sells_h24: Optional[int]
    pair_created_at: Optional[int]
    image_url: Optional[str]
    socials: tuple[SocialLink, ...]

    @classmethod
    def from_payload(cls, pair: Mapping[str, Any]) -> "DexPairDTO":
        base = pair.get("baseToken")
        quote = pair.get("quoteToken")
        if not isinstance(base, Mapping) or not isinstance(quote, Mapping):
            raise MalformedResponse("dexscreener pair missing baseToken/quoteToken")
        base_address = base.get("address")
        quote_address = quote.get("address")
        if not isinstance(base_address, str) or not isinstance(quote_address, str):
            raise MalformedResponse("dexscreener pair token without address")
        liquidity = pair.get("liquidity") if isinstance(pair.get("liquidity"), Mapping) else {}
        volume = pair.get("volume") if isinstance(pair.get("volume"), Mapping) else {}
        change = pair.get("priceChange") if isinstance(pair.get("priceChange"), Mapping) else {}
        txns = pair.get("txns") if isinstance(pair.get("txns"), Mapping) else {}
        h24 = txns.get("h24") if isinstance(txns.get("h24"), Mapping) else {}
        info = pair.get("info") if isinstance(pair.get("info"), Mapping) else {}
        return cls(
            chain_id=str(pair.get("chainId") or ""),
            pair_address=str(pair.get("pairAddress") or ""),
            dex_id=str(pair.get("dexId") or ""),
            url=str(pair.get("url") or ""),
            base_address=base_address,
            base_symbol=str(base.get("symbol") or ""),
            base_name=str(base.get("name") or ""),
            quote_address=quote_address,
            quote_symbol=str(quote.get("symbol") or ""),
            quote_name=str(quote.get("name") or ""),
            price_usd=coerce_float(pair.get("priceUsd")),
            price_native=coerce_float(pair.get("priceNative")),
            liquidity_usd=coerce_float(liquidity.get("usd")),
            fdv=coerce_float(pair.get("fdv")),
            volume_h24=coerce_float(volume.get("h24")),
            change_h24=coerce_float(change.get("h24")),
            change_h1=coerce_float(change.get("h1")),
            buys_h24=coerce_int(h24.get("buys")),
            sells_h24=coerce_int(h24.get("sells")),
            pair_created_at=parse_timestamp_ms(pair.get("pairCreatedAt")),
            image_url=info.get("imageUrl") if isinstance(info.get("imageUrl"), str) else None,
            socials=_extract_socials(info),
        )


def _extract_socials(info: Mapping[str, Any]) -> tuple[SocialLink, ...]:
    links: list[SocialLink] = []
    for entry in info.get("socials") or ():
        if isinstance(entry, Mapping) and isinstance(entry.get("url"), str):
            links.append(SocialLink(kind=str(entry.get("type") or "social"), url=entry["url"]))
    for entry in info.get("websites") or ():
        if isinstance(entry, Mapping) and isinstance(entry.get("url"), str):
            links.append(SocialLink(kind="website", url=entry["url"]))
    return tuple(links)


def _extract_pairs(payload: Any) -> Sequence[Mapping[str, Any]]:
    if isinstance(payload, Mapping):
        pairs = payload.get("pairs")
        if pairs is None:
            return []
        if not isinstance(pairs, list):
            raise MalformedResponse("dexscreener 'pairs' is not a list")
        return [pair for pair in pairs if isinstance(pair, Mapping)]
    if isinstance(payload, list):
        return [pair for pair in payload if isinstance(pair, Mapping)]
    raise MalformedResponse(f"unexpected dexscreener payload type {type(payload).__name__}")


def to_market_record(dto: DexPairDTO, mint: str) -> SourceMarketRecord | None:
    """Map ``dto`` to a record for ``mint`` (either side of the pair)."""

    if mint == dto.base_address:
        symbol, name, price = dto.base_symbol, dto.base_name, dto.price_usd
    elif mint == dto.quote_address:
        symbol, name = dto.quote_symbol, dto.quote_name
        # priceUsd/priceNative describe the base token; invert for the quote side.
        if dto.price_usd and dto.price_native:
            price = dto.price_usd / dto.price_native
        else:
            price = None
    else:
        return None
    return SourceMarketRecord(
        mint=mint,
        source=SOURCE_DEXSCREENER,
        symbol=symbol or None,
        name=name or None,
        price_usd=price,
        liquidity_usd=dto.liquidity_usd,
        fdv_usd=dto.fdv,
        volume_24h=dto.volume_h24,
        change_24h=dto.change_h24,
        change_1h=dto.change_h1,
        buys_24h=dto.buys_h24,
        sells_24h=dto.sells_h24,
        created_at=dto.pair_created_at,
        socials=dto.socials,
        pair_address=dto.pair_address or None,
        dex_id=dto.dex_id or None,
        url=dto.url or None,
        image_url=dto.image_url,
    )


def _keep_best(
    target: Dict[str, SourceMarketRecord], record: SourceMarketRecord
) -> None:
    existing = target.get(record.mint)
    if existing is None or (record.volume_24h or 0.0) > (existing.volume_24h or 0.0):
        target[record.mint] = record


def _collect(
    pairs: Iterable[Mapping[str, Any]],
    wanted: set[str] | None,
    target: Dict[str, SourceMarketRecord],
) -> None:
    for raw in pairs:
        try:
            dto = DexPairDTO.from_payload(raw)
        except MalformedResponse as exc:
            logger.debug("Skipping dexscreener pair: %s", exc)
            continue
        if dto.chain_id and dto.chain_id != "solana":
            continue
        for mint in (dto.base_address, dto.quote_address):
            if mint == USD1_MINT:
                continue
            if wanted is not None and mint not in wanted:
                continue
            record = to_market_record(dto, mint)
            if record is not None:
                _keep_best(target, record)


class DexScreenerFetcher(ProviderFetcher):
    """Batched Dexscreener lookups, best pair per mint by 24h volume."""

    source = SOURCE_DEXSCREENER

    def __init__(
        self,
        health,
        *,
        fetch=None,
        timeout: float | None = 8.0,
        base_url: str = _BASE_URL,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY,
    ) -> None:
        super().__init__(health, fetch=fetch, timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._batch_size = max(1, batch_size)
        self._batch_delay = max(0.0, batch_delay)

    async def fetch_tokens(self, mints: Iterable[str]) -> Dict[str, SourceMarketRecord]:
        """Best pair per requested mint.

        Failed batches are logged and skipped; when every batch fails (or the
        source is backing off) ``SourceUnavailable`` is raised instead.
        """

        unique = [m for m in dict.fromkeys(mints) if m and m != USD1_MINT]
        if not unique:
            return {}
        self._ensure_healthy()
        wanted = set(unique)
        batches = chunked(unique, self._batch_size)

        async def _worker(index: int, batch: list[str]) -> Sequence[Mapping[str, Any]]:
            if index and self._batch_delay:
                await asyncio.sleep(index * self._batch_delay)
            payload = await self._get(f"{self._base_url}/latest/dex/tokens/{','.join(batch)}")
            return _extract_pairs(payload)

        results = await asyncio.gather(
            *(_worker(i, batch) for i, batch in enumerate(batches)),
            return_exceptions=True,
        )
        records: Dict[str, SourceMarketRecord] = {}
        errors: list[BaseException] = []
        for index, result in enumerate(results):
            if isinstance(result, BaseException):
                self._log_failure(f"batch {index + 1}/{len(batches)}", result)
                errors.append(result)
                continue
            _collect(result, wanted, records)
        if len(errors) == len(batches):
            raise self._all_failed("batches", errors) from errors[-1]
        logger.debug("dexscreener resolved %d/%d mints", len(records), len(unique))
        return records

    async def fetch_usd1_pairs(self) -> Dict[str, SourceMarketRecord]:
        """Return every token Dexscreener lists against USD1. Failures propagate."""

        payload = await self._get(f"{self._base_url}/token-pairs/v1/solana/{USD1_MINT}")
        pairs = _extract_pairs(payload)
        records: Dict[str, SourceMarketRecord] = {}
        _collect(pairs, None, records)
        return records


__all__ = ["DexPairDTO", "DexScreenerFetcher", "to_market_record"]
