from __future__ import annotations

from .simulator import (
    BacktestConfig,
    BacktestResult,
    BacktestSimulator,
    EquityPoint,
    SignalSource,
    run_backtest,
)

__all__ = [
    "BacktestConfig",
    "BacktestResult",
    "BacktestSimulator",
    "EquityPoint",
    "SignalSource",
    "run_backtest",
]
