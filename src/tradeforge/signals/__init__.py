from __future__ import annotations

from .aggregator import (
    EntryConfirmation,
    SignalAction,
    SignalAggregator,
    SignalDecision,
    TimeframeSignal,
    Trend,
    build_consensus,
    classify_trend,
    evaluate_timeframe,
    market_bias,
)

__all__ = [
    "EntryConfirmation",
    "SignalAction",
    "SignalAggregator",
    "SignalDecision",
    "TimeframeSignal",
    "Trend",
    "build_consensus",
    "classify_trend",
    "evaluate_timeframe",
    "market_bias",
]
