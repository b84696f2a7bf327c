"""Discovery and verification of BonkFun tokens paired against USD1 on Solana."""

from __future__ import annotations

from .config import RadarSettings, load_settings
from .models import EnrichedToken, TokensResult
from .service import TokenService

__version__ = "0.1.0"

__all__ = [
    "EnrichedToken",
    "RadarSettings",
    "TokenService",
    "TokensResult",
    "load_settings",
    "__version__",
]
