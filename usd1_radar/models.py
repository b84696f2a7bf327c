"""Canonical records flowing through discovery, verification and enrichment."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True, slots=True)
class PoolCandidate:
    """A token/USD1 pool produced by pool discovery."""

    token_mint: str
    paired_mint: str
    pool_address: str
    pool_type: str
    source: str
    liquidity_usd: float = 0.0
    volume_24h_usd: float = 0.0
    symbol: Optional[str] = None
    name: Optional[str] = None
    open_time: Optional[int] = None


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class VerificationSource(str, Enum):
    POOL_HISTORY = "pool-history"
    MINT_HISTORY = "mint-history"
    DURABLE_CACHE = "kv-cache"


@dataclass(frozen=True, slots=True)
class VerificationRecord:
    mint: str
    is_bonkfun: bool
    confidence: Confidence
    source: VerificationSource
    verified_at: float


@dataclass(slots=True)
class PendingRetryEntry:
    """A mint whose last verification attempt was inconclusive."""

    mint: str
    pool_address: Optional[str]
    attempts: int
    last_attempt_at: float
    reason: str


@dataclass(frozen=True, slots=True)
class SocialLink:
    kind: str
    url: str


@dataclass(frozen=True, slots=True)
class SourceMarketRecord:
    """One provider's market view of a token for the current cycle."""

    mint: str
    source: str
    symbol: Optional[str] = None
    name: Optional[str] = None
    price_usd: Optional[float] = None
    liquidity_usd: Optional[float] = None
    fdv_usd: Optional[float] = None
    volume_24h: Optional[float] = None
    change_24h: Optional[float] = None
    change_1h: Optional[float] = None
    buys_24h: Optional[int] = None
    sells_24h: Optional[int] = None
    created_at: Optional[int] = None
    socials: Tuple[SocialLink, ...] = ()
    pair_address: Optional[str] = None
    dex_id: Optional[str] = None
    url: Optional[str] = None
    image_url: Optional[str] = None


@dataclass(frozen=True, slots=True)
class EnrichedToken:
    """Canonical output record. Rebuilt every refresh, never mutated."""

    mint: str
    name: str
    symbol: str
    price: float
    liquidity: float
    mcap: float
    volume24h: float
    change24h: float
    change1h: float
    txns24h: int
    buys24h: int
    sells24h: int
    created_at: Optional[int]
    socials: Tuple[SocialLink, ...]
    safety_score: int
    safety_level: str
    safety_warnings: Tuple[str, ...]
    discovery_source: str
    pair_address: Optional[str] = None
    dex_id: Optional[str] = None
    url: Optional[str] = None
    image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mint": self.mint,
            "name": self.name,
            "symbol": self.symbol,
            "price": self.price,
            "liquidity": self.liquidity,
            "mcap": self.mcap,
            "volume24h": self.volume24h,
            "change24h": self.change24h,
            "change1h": self.change1h,
            "txns24h": self.txns24h,
            "buys24h": self.buys24h,
            "sells24h": self.sells24h,
            "createdAt": self.created_at,
            "socials": [{"type": s.kind, "url": s.url} for s in self.socials],
            "safetyScore": self.safety_score,
            "safetyLevel": self.safety_level,
            "safetyWarnings": list(self.safety_warnings),
            "discoverySource": self.discovery_source,
            "pairAddress": self.pair_address,
            "dexId": self.dex_id,
            "url": self.url,
            "imageUrl": self.image_url,
        }


@dataclass(frozen=True, slots=True)
class CacheSnapshot:
    data: Tuple[EnrichedToken, ...]
    timestamp: float


EMPTY_SNAPSHOT = CacheSnapshot(data=(), timestamp=0.0)


@dataclass(frozen=True, slots=True)
class TokensResult:
    tokens: Tuple[EnrichedToken, ...]
    cached: bool
    stale: bool
    timestamp: float
    health: Dict[str, bool] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "tokens": [token.to_dict() for token in self.tokens],
            "cached": self.cached,
            "stale": self.stale,
            "timestamp": self.timestamp,
            "health": dict(self.health),
        }
        if self.error:
            payload["error"] = self.error
        return payload


__all__ = [
    "PoolCandidate",
    "Confidence",
    "VerificationSource",
    "VerificationRecord",
    "PendingRetryEntry",
    "SocialLink",
    "SourceMarketRecord",
    "EnrichedToken",
    "CacheSnapshot",
    "EMPTY_SNAPSHOT",
    "TokensResult",
]
