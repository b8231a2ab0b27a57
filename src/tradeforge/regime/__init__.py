"""
Market regime detection.

Usage:
    from tradeforge.regime import detect_regime, MarketRegime

    classification = detect_regime(candles)
    if classification.should_trade:
        ...
"""

from .detector import (
    MarketRegime,
    RegimeClassification,
    RegimeConfig,
    classify,
    detect_regime,
    ema_alignment,
    range_width,
)

__all__ = [
    "MarketRegime",
    "RegimeClassification",
    "RegimeConfig",
    "classify",
    "detect_regime",
    "ema_alignment",
    "range_width",
]
