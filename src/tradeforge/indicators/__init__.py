from __future__ import annotations

from .technical import (
    IndicatorSnapshot,
    MACDResult,
    adx,
    atr,
    compute_snapshot,
    ema,
    ema_series,
    macd,
    rsi,
    sma,
    true_range,
    volume_ratio,
)

__all__ = [
    "IndicatorSnapshot",
    "MACDResult",
    "adx",
    "atr",
    "compute_snapshot",
    "ema",
    "ema_series",
    "macd",
    "rsi",
    "sma",
    "true_range",
    "volume_ratio",
]
