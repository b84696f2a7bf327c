"""Heuristic 0-100 safety score for a token's market profile."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .utils import clamp

SAFE_THRESHOLD = 70
CAUTION_THRESHOLD = 40

LEVEL_SAFE = "safe"
LEVEL_CAUTION = "caution"
LEVEL_RISKY = "risky"


@dataclass(frozen=True, slots=True)
class SafetyInputs:
    liquidity: float
    mcap: float
    volume24h: float
    txns24h: int
    buys24h: int
    sells24h: int
    age_hours: Optional[float]
    has_socials: bool


@dataclass(frozen=True, slots=True)
class SafetyResult:
    score: int
    level: str
    warnings: tuple[str, ...]


def safety_level(score: int) -> str:
    if score >= SAFE_THRESHOLD:
        return LEVEL_SAFE
    if score >= CAUTION_THRESHOLD:
        return LEVEL_CAUTION
    return LEVEL_RISKY


def score_token(inputs: SafetyInputs) -> SafetyResult:
    score = 0
    warnings: list[str] = []

    # Penalties.
    if inputs.mcap > 0 and inputs.liquidity > inputs.mcap * 10:
        score -= 15
        warnings.append("Suspicious liquidity ratio")
    if inputs.txns24h > 0 and inputs.volume24h / inputs.txns24h < 0.5:
        score -= 10
        warnings.append("Abnormal transaction pattern")

    if inputs.liquidity >= 50_000:
        score += 30
    elif inputs.liquidity >= 10_000:
        score += 20
    elif inputs.liquidity >= 5_000:
        score += 10
    else:
        warnings.append("Low liquidity")

    ratio = inputs.liquidity / inputs.mcap * 100 if inputs.mcap > 0 else 0.0
    if ratio >= 10:
        score += 20
    elif ratio >= 5:
        score += 15
    elif ratio >= 2:
        score += 10
    else:
        warnings.append("Low liq/mcap ratio")

    if inputs.txns24h >= 100:
        score += 20
    elif inputs.txns24h >= 50:
        score += 15
    elif inputs.txns24h >= 20:
        score += 10
    elif inputs.txns24h < 10:
        warnings.append("Low trading activity")

    total = inputs.buys24h + inputs.sells24h
    if total > 0:
        buy_ratio = inputs.buys24h / total
        if 0.35 <= buy_ratio <= 0.65:
            score += 15
        elif 0.25 <= buy_ratio <= 0.75:
            score += 10
        else:
            warnings.append("Unbalanced buy/sell")

    if inputs.age_hours is None:
        warnings.append("Unknown age")
    elif inputs.age_hours >= 72:
        score += 10
    elif inputs.age_hours >= 24:
        score += 7
    elif inputs.age_hours >= 6:
        score += 4
    else:
        warnings.append("Very new token")

    if inputs.has_socials:
        score += 5

    final = int(clamp(score, 0, 100))
    return SafetyResult(score=final, level=safety_level(final), warnings=tuple(warnings))


__all__ = [
    "SafetyInputs",
    "SafetyResult",
    "safety_level",
    "score_token",
    "LEVEL_SAFE",
    "LEVEL_CAUTION",
    "LEVEL_RISKY",
]
