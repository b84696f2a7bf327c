"""Environment-driven settings validated with pydantic."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)


def _env_str(env: Mapping[str, str], name: str) -> Optional[str]:
    raw = env.get(name)
    if raw is None:
        return None
    value = raw.strip()
    return value or None


def _env_flag(env: Mapping[str, str], name: str) -> Optional[bool]:
    raw = _env_str(env, name)
    if raw is None:
        return None
    return raw.lower() in {"1", "true", "yes", "on"}


# Settings field -> environment variable.
_ENV_MAP: Dict[str, str] = {
    "helius_api_key": "HELIUS_API_KEY",
    "alchemy_api_key": "ALCHEMY_API_KEY",
    "chainstack_api_key": "CHAINSTACK_API_KEY",
    "quicknode_url": "QUICKNODE_URL",
    "solana_rpc_url": "SOLANA_RPC_URL",
    "redis_url": "REDIS_URL",
    "http_timeout": "RADAR_HTTP_TIMEOUT",
    "pool_cache_ttl": "RADAR_POOL_CACHE_TTL",
    "fresh_ttl": "RADAR_FRESH_TTL",
    "stale_ttl": "RADAR_STALE_TTL",
    "verify_delay": "RADAR_VERIFY_DELAY",
    "verify_tx_window": "RADAR_VERIFY_TX_WINDOW",
    "max_new_per_run": "RADAR_MAX_NEW_PER_RUN",
    "min_liquidity": "RADAR_MIN_LIQUIDITY",
    "max_fdv_ratio": "RADAR_MAX_FDV_RATIO",
    "log_level": "RADAR_LOG_LEVEL",
}

_FLAG_MAP: Dict[str, str] = {
    "log_json": "RADAR_LOG_JSON",
    "record_volume": "RADAR_RECORD_VOLUME",
}


class RadarSettings(BaseModel):
    """Runtime settings for the token pipeline."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    helius_api_key: Optional[str] = None
    alchemy_api_key: Optional[str] = None
    chainstack_api_key: Optional[str] = None
    quicknode_url: Optional[str] = None
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    redis_url: Optional[str] = None

    http_timeout: float = Field(default=8.0, gt=0, le=60)
    pool_cache_ttl: float = Field(default=300.0, ge=0)
    fresh_ttl: float = Field(default=15.0, ge=0)
    stale_ttl: float = Field(default=45.0, ge=0)
    verify_delay: float = Field(default=0.5, ge=0)
    verify_tx_window: int = Field(default=10, ge=1, le=100)
    max_new_per_run: int = Field(default=30, ge=0)
    min_liquidity: float = Field(default=100.0, ge=0)
    max_fdv_ratio: float = Field(default=100.0, gt=0)

    log_level: str = "INFO"
    log_json: bool = False
    record_volume: bool = True

    @field_validator("log_level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level

    @field_validator("solana_rpc_url", "quicknode_url", "redis_url")
    @classmethod
    def _url_scheme(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if "://" not in value:
            raise ValueError(f"expected a URL, got {value!r}")
        return value

    @model_validator(mode="after")
    def _stale_after_fresh(self) -> "RadarSettings":
        if self.stale_ttl < self.fresh_ttl:
            raise ValueError("RADAR_STALE_TTL must be >= RADAR_FRESH_TTL")
        return self


def _collect(env: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for field, var in _ENV_MAP.items():
        raw = _env_str(env, var)
        if raw is not None:
            values[field] = raw
    for field, var in _FLAG_MAP.items():
        flag = _env_flag(env, var)
        if flag is not None:
            values[field] = flag
    return values


def load_settings(env: Mapping[str, str] | None = None, **overrides: Any) -> RadarSettings:
    """Build settings from ``env`` (default ``os.environ``) plus ``overrides``.

    Fields that fail validation are dropped back to their defaults with a
    warning rather than aborting start-up.
    """

    values = _collect(os.environ if env is None else env)
    values.update(overrides)
    try:
        return RadarSettings(**values)
    except ValidationError as exc:
        bad = {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
        for field in sorted(bad):
            logger.warning("Invalid setting %s=%r; using default", field, values.get(field))
        cleaned = {k: v for k, v in values.items() if k not in bad}
        if not bad:
            # Cross-field failure: fall back to the default TTL pair.
            cleaned.pop("fresh_ttl", None)
            cleaned.pop("stale_ttl", None)
            logger.warning("Invalid cache TTLs; using defaults: %s", exc.errors()[0].get("msg"))
        return RadarSettings(**cleaned)


__all__ = ["RadarSettings", "load_settings"]
