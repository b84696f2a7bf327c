"""On-chain identifiers and filter constants shared across the pipeline."""

from __future__ import annotations

USD1_MINT = "USD1ttGY1N17NEEHLmELoaybftRBUSErhqYiQzvEmuB"

# BonkFun launch and graduation programs.
LAUNCHLAB_PROGRAM = "LanMV9sAd7wArD4vJFi2qDdfnVhFxYSUg6eADduJ3uj"
PLATFORM_CONFIG = "FfYek5vEz23cMkWsdJwG2oa6EphsvXSHrGpdALN4g6W1"
GRADUATE_PROGRAM = "boop8hVGQGqehUK2iVEMEnMrL5RbjywRzHKBmBE7ry4"

RAYDIUM_CPMM_PROGRAM = "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C"
RAYDIUM_AMM_V4_PROGRAM = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"

BONKFUN_PROGRAMS: frozenset[str] = frozenset({LAUNCHLAB_PROGRAM, GRADUATE_PROGRAM})
BONKFUN_ACCOUNTS: frozenset[str] = BONKFUN_PROGRAMS | {PLATFORM_CONFIG}

# Raydium CPMM pool account layout (Anchor discriminator occupies bytes 0..8).
CPMM_POOL_SIZE = 637
CPMM_AMM_CONFIG_OFFSET = 8
CPMM_POOL_CREATOR_OFFSET = 40
CPMM_TOKEN_MINT_0_OFFSET = 72
CPMM_TOKEN_MINT_1_OFFSET = 104
CPMM_TOKEN_VAULT_0_OFFSET = 136
CPMM_TOKEN_VAULT_1_OFFSET = 168
CPMM_LP_MINT_OFFSET = 200
CPMM_OPEN_TIME_OFFSET = 272

EXCLUDED_SYMBOLS: tuple[str, ...] = (
    "WLFI",
    "USD1",
    "USDC",
    "USDT",
    "SOL",
    "WSOL",
    "RAY",
    "FREYA",
    "REAL",
    "AOL",
)

VERIFIED_TOKENS_KEY = "bonkfun:verified_tokens"
VOLUME_SNAPSHOTS_KEY = "volume:snapshots"
VOLUME_DAILY_PREFIX = "volume:daily:"


def is_excluded_token(symbol: str | None, name: str | None = None) -> bool:
    """Return ``True`` when ``symbol``/``name`` match the major-asset denylist.

    A symbol is excluded when it equals or contains a denylisted symbol; a
    name only when it equals one.
    """

    sym = (symbol or "").strip().upper()
    nm = (name or "").strip().upper()
    for excluded in EXCLUDED_SYMBOLS:
        if sym and (sym == excluded or excluded in sym):
            return True
        if nm and nm == excluded:
            return True
    return False


__all__ = [
    "USD1_MINT",
    "LAUNCHLAB_PROGRAM",
    "PLATFORM_CONFIG",
    "GRADUATE_PROGRAM",
    "RAYDIUM_CPMM_PROGRAM",
    "RAYDIUM_AMM_V4_PROGRAM",
    "BONKFUN_PROGRAMS",
    "BONKFUN_ACCOUNTS",
    "CPMM_POOL_SIZE",
    "EXCLUDED_SYMBOLS",
    "VERIFIED_TOKENS_KEY",
    "VOLUME_SNAPSHOTS_KEY",
    "VOLUME_DAILY_PREFIX",
    "is_excluded_token",
]
