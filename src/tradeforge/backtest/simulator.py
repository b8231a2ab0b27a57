from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol, Sequence

import pandas as pd

from tradeforge.market import Candle
from tradeforge.position.lifecycle import (
    ExitConfig,
    ExitReason,
    PositionBook,
    PositionLifecycle,
    PositionSide,
    Trade,
)
from tradeforge.risk.governor import RiskGovernor
from tradeforge.signals.aggregator import SignalAggregator, SignalDecision
from tradeforge.strategy.profiles import StrategyProfile

logger = logging.getLogger(__name__)


class SignalSource(Protocol):
    """Produces a decision from the candles up to and including ``index``."""

    def __call__(self, candles: Sequence[Candle], index: int) -> SignalDecision:
        ...


@dataclass(slots=True)
class BacktestConfig:
    symbol: str = "BTCUSDT"
    initial_capital: float = 10_000.0
    position_size_percent: float = 10.0
    leverage: float = 10.0
    min_confidence: float = 65.0
    warmup_candles: int = 200

    def __post_init__(self) -> None:
        if self.initial_capital <= 0:
            raise ValueError("initial_capital must be positive")
        if not 0 < self.position_size_percent <= 100:
            raise ValueError("position_size_percent must be in (0, 100]")
        if self.leverage < 1:
            raise ValueError("leverage must be >= 1")
        if self.warmup_candles < 0:
            raise ValueError("warmup_candles must be >= 0")


@dataclass(frozen=True, slots=True)
class EquityPoint:
    timestamp: int
    equity: float


@dataclass(slots=True)
class BacktestResult:
    """Output of a replay: closed trades plus one equity sample per step."""

    initial_capital: float
    final_capital: float
    trades: list[Trade] = field(default_factory=list)
    equity_curve: list[EquityPoint] = field(default_factory=list)
    blocked_entries: int = 0

    @property
    def total_return_pct(self) -> float:
        return (self.final_capital - self.initial_capital) / self.initial_capital * 100.0

    def equity_series(self) -> pd.Series:
        index = pd.to_datetime([p.timestamp for p in self.equity_curve], unit="ms", utc=True)
        return pd.Series([p.equity for p in self.equity_curve], index=index, name="equity", dtype=float)

    def trades_frame(self) -> pd.DataFrame:
        return pd.DataFrame([trade.to_dict() for trade in self.trades])


class BacktestSimulator:
    """
    Candle-by-candle replay.

    Each step updates the open position first, then, when flat, asks the
    signal source for a decision and enters at the candle close. Nothing in
    the loop reads the wall clock, so identical inputs replay identically.
    """

    def __init__(
        self,
        config: BacktestConfig,
        signal_source: SignalSource,
        exit_config: ExitConfig | None = None,
        governor: RiskGovernor | None = None,
    ) -> None:
        self.config = config
        self.signal_source = signal_source
        self.exit_config = exit_config or ExitConfig()
        self.governor = governor

    def run(self, candles: Sequence[Candle]) -> BacktestResult:
        cfg = self.config
        book = PositionBook(self.exit_config)
        result = BacktestResult(initial_capital=cfg.initial_capital, final_capital=cfg.initial_capital)
        capital = cfg.initial_capital
        logger.info(
            "Backtest %s: %d candles, capital=%.2f, size=%.1f%%, leverage=%gx, min_conf=%.0f",
            cfg.symbol,
            len(candles),
            capital,
            cfg.position_size_percent,
            cfg.leverage,
            cfg.min_confidence,
        )

        for index in range(cfg.warmup_candles, len(candles)):
            candle = candles[index]
            lifecycle = book.get(cfg.symbol)
            if lifecycle is not None:
                trade = lifecycle.update(candle)
                if trade is not None:
                    capital += trade.dollar_pnl
                    self._book_trade(result, book, trade, candle)
                    lifecycle = None

            if lifecycle is None and capital > 0:
                decision = self.signal_source(candles, index)
                if decision.is_actionable and decision.confidence >= cfg.min_confidence:
                    lifecycle = self._enter(book, decision, candle, capital, result)

            unrealized = lifecycle.unrealized_pnl(candle.close) if lifecycle is not None else 0.0
            result.equity_curve.append(EquityPoint(candle.timestamp, capital + unrealized))

        lifecycle = book.get(cfg.symbol)
        if lifecycle is not None and candles:
            last = candles[-1]
            trade = lifecycle.close(last.close, ExitReason.END_OF_BACKTEST, last.timestamp)
            capital += trade.dollar_pnl
            self._book_trade(result, book, trade, last)

        result.final_capital = capital
        logger.info(
            "Backtest complete: %d trades, final capital %.2f (%.2f%%)",
            len(result.trades),
            capital,
            result.total_return_pct,
        )
        return result

    def _enter(
        self,
        book: PositionBook,
        decision: SignalDecision,
        candle: Candle,
        capital: float,
        result: BacktestResult,
    ) -> PositionLifecycle | None:
        cfg = self.config
        price = candle.close
        margin = capital * cfg.position_size_percent / 100.0
        quantity = margin * cfg.leverage / price
        if self.governor is not None:
            checks = self.governor.run_pre_trade_checks(quantity, price, capital, cfg.leverage, today=candle.utc_date)
            if not checks.allowed:
                result.blocked_entries += 1
                return None
            self.governor.register_open(today=candle.utc_date)
        return book.open(
            cfg.symbol,
            PositionSide.from_action(decision.action.value),
            price,
            quantity,
            cfg.leverage,
            margin,
            candle.timestamp,
            atr=decision.atr,
            confidence=decision.confidence,
            regime_tag=decision.regime,
        )

    def _book_trade(self, result: BacktestResult, book: PositionBook, trade: Trade, candle: Candle) -> None:
        result.trades.append(trade)
        book.release(trade.symbol)
        if self.governor is not None:
            self.governor.record_trade(trade.dollar_pnl, today=candle.utc_date)


def run_backtest(
    candles: Sequence[Candle],
    profile: StrategyProfile,
    config: BacktestConfig | None = None,
    governor: RiskGovernor | None = None,
) -> BacktestResult:
    """Replay ``candles`` with the shared aggregator configured by ``profile``."""
    cfg = config or BacktestConfig(
        symbol=profile.symbol,
        position_size_percent=profile.position_size_percent,
        leverage=profile.leverage,
        min_confidence=profile.min_confidence,
        warmup_candles=max(200, profile.warmup_candles),
    )
    simulator = BacktestSimulator(cfg, SignalAggregator(profile), profile.exit, governor)
    return simulator.run(candles)
