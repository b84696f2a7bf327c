"""Market-data and provenance adapters."""

from __future__ import annotations

from .dexscreener import DexScreenerFetcher
from .geckoterminal import GeckoTerminalFetcher
from .helius import HeliusClient
from .raydium import RaydiumFetcher

__all__ = [
    "DexScreenerFetcher",
    "GeckoTerminalFetcher",
    "HeliusClient",
    "RaydiumFetcher",
]
