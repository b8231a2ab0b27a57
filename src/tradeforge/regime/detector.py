"""
Market regime detection.

Classifies the current trend state from ADX strength and EMA(20/50/200)
alignment so that entries are only taken in trending conditions:
- TRENDING_UP / TRENDING_DOWN: aligned EMAs with a usable ADX
- RANGING: weak trend, tight range
- CHOPPY: weak trend with a wide range, or strong ADX without alignment
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from tradeforge.indicators.technical import adx, ema
from tradeforge.market import Candle, closes, highs, lows

logger = logging.getLogger(__name__)


class MarketRegime(Enum):
    TRENDING_UP = "TRENDING_UP"
    TRENDING_DOWN = "TRENDING_DOWN"
    RANGING = "RANGING"
    CHOPPY = "CHOPPY"
    UNKNOWN = "UNKNOWN"


@dataclass(slots=True)
class RegimeConfig:
    """Thresholds for regime classification."""

    ema_fast: int = 20
    ema_mid: int = 50
    ema_slow: int = 200
    adx_period: int = 14

    # ADX bands
    adx_weak: float = 20.0
    adx_ideal: float = 25.0
    adx_exhaustion: float = 50.0

    # (max high - min low) / price over range_lookback candles
    range_lookback: int = 20
    range_threshold: float = 0.10

    # Confidence adjustments for aligned trends
    weak_bonus: float = 5.0
    ideal_bonus: float = 15.0
    exhaustion_bonus: float = 10.0


@dataclass(frozen=True, slots=True)
class RegimeClassification:
    regime: MarketRegime
    should_trade: bool
    confidence_delta: float
    adx: float
    reason: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "regime": self.regime.value,
            "should_trade": self.should_trade,
            "confidence_delta": self.confidence_delta,
            "adx": self.adx,
            "reason": self.reason,
        }


def range_width(candles: Sequence[Candle], lookback: int) -> float:
    window = candles[-lookback:]
    if not window:
        return 0.0
    price = window[-1].close
    if price <= 0:
        return 0.0
    return (max(c.high for c in window) - min(c.low for c in window)) / price


def ema_alignment(price: float, fast: float, mid: float, slow: float) -> int:
    """1 for bullish stack, -1 for bearish stack, 0 otherwise."""
    if price > fast > mid > slow:
        return 1
    if price < fast < mid < slow:
        return -1
    return 0


def classify(adx_value: float, alignment: int, width: float, config: RegimeConfig) -> RegimeClassification:
    trending = MarketRegime.TRENDING_UP if alignment > 0 else MarketRegime.TRENDING_DOWN

    if adx_value < config.adx_weak:
        if width <= config.range_threshold:
            return RegimeClassification(MarketRegime.RANGING, False, 0.0, adx_value, "Weak trend, tight range")
        return RegimeClassification(MarketRegime.CHOPPY, False, 0.0, adx_value, "Weak trend, wide range")

    if adx_value < config.adx_ideal:
        if alignment:
            return RegimeClassification(trending, True, config.weak_bonus, adx_value, "Weak but aligned trend")
        return RegimeClassification(MarketRegime.RANGING, False, 0.0, adx_value, "Weak trend, EMAs not aligned")

    if adx_value <= config.adx_exhaustion:
        if alignment:
            return RegimeClassification(trending, True, config.ideal_bonus, adx_value, "Ideal trend strength")
        return RegimeClassification(MarketRegime.CHOPPY, False, 0.0, adx_value, "Trend transition, EMAs not aligned")

    if alignment:
        return RegimeClassification(trending, True, config.exhaustion_bonus, adx_value, "Strong trend, watch for exhaustion")
    return RegimeClassification(MarketRegime.CHOPPY, False, 0.0, adx_value, "Extreme ADX without alignment")


def detect_regime(candles: Sequence[Candle], config: RegimeConfig | None = None) -> RegimeClassification:
    cfg = config or RegimeConfig()
    if len(candles) < cfg.ema_slow:
        return RegimeClassification(MarketRegime.UNKNOWN, False, 0.0, 0.0, "Insufficient history")

    close = closes(candles)
    price = close[-1]
    adx_value = adx(highs(candles), lows(candles), close, cfg.adx_period)
    alignment = ema_alignment(
        price,
        ema(close, cfg.ema_fast),
        ema(close, cfg.ema_mid),
        ema(close, cfg.ema_slow),
    )
    result = classify(adx_value, alignment, range_width(candles, cfg.range_lookback), cfg)
    logger.debug("Regime %s (adx=%.1f, alignment=%d)", result.regime.value, adx_value, alignment)
    return result
