from __future__ import annotations

from .calculator import (
    INFINITY,
    MetricsReport,
    SegmentStats,
    calculate_metrics,
    compare_metrics,
    max_drawdown_pct,
    profit_factor,
    regime_breakdown,
    sharpe_ratio,
)

__all__ = [
    "INFINITY",
    "MetricsReport",
    "SegmentStats",
    "calculate_metrics",
    "compare_metrics",
    "max_drawdown_pct",
    "profit_factor",
    "regime_breakdown",
    "sharpe_ratio",
]
