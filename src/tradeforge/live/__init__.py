from __future__ import annotations

from .base import CandleSource, ExchangeClient, OrderResult
from .engine import CycleResult, LiveConfig, PositionMonitor, TradingEngine
from .journal import SessionJournal

__all__ = [
    "CandleSource",
    "CycleResult",
    "ExchangeClient",
    "LiveConfig",
    "OrderResult",
    "PositionMonitor",
    "SessionJournal",
    "TradingEngine",
]
