from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

import numpy as np

from tradeforge.position.lifecycle import ExitReason, PositionSide, Trade

INFINITY = "Infinity"
TRADING_DAYS = 250


@dataclass(frozen=True, slots=True)
class SegmentStats:
    count: int = 0
    wins: int = 0
    win_rate: float = 0.0
    avg_profit: float = 0.0
    total_pnl: float = 0.0

    def to_dict(self) -> dict[str, float | int]:
        return {
            "count": self.count,
            "wins": self.wins,
            "win_rate": self.win_rate,
            "avg_profit": self.avg_profit,
            "total_pnl": self.total_pnl,
        }


@dataclass(frozen=True, slots=True)
class MetricsReport:
    total_trades: int
    wins: int
    losses: int
    win_rate: float
    avg_win: float
    avg_loss: float
    avg_trade: float
    best_trade: float
    worst_trade: float
    total_pnl: float
    total_return_pct: float
    initial_capital: float
    final_capital: float
    max_drawdown: float
    sharpe_ratio: float
    profit_factor: float | str
    exit_reasons: dict[str, int] = field(default_factory=dict)
    long_stats: SegmentStats = field(default_factory=SegmentStats)
    short_stats: SegmentStats = field(default_factory=SegmentStats)
    regime_stats: dict[str, SegmentStats] = field(default_factory=dict)

    @property
    def stop_loss_hits(self) -> int:
        return self.exit_reasons.get(ExitReason.STOP_LOSS.value, 0)

    @property
    def take_profit_hits(self) -> int:
        return self.exit_reasons.get(ExitReason.TAKE_PROFIT.value, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": self.win_rate,
            "avg_win": self.avg_win,
            "avg_loss": self.avg_loss,
            "avg_trade": self.avg_trade,
            "best_trade": self.best_trade,
            "worst_trade": self.worst_trade,
            "total_pnl": self.total_pnl,
            "total_return_pct": self.total_return_pct,
            "initial_capital": self.initial_capital,
            "final_capital": self.final_capital,
            "max_drawdown": self.max_drawdown,
            "sharpe_ratio": self.sharpe_ratio,
            "profit_factor": self.profit_factor,
            "stop_loss_hits": self.stop_loss_hits,
            "take_profit_hits": self.take_profit_hits,
            "exit_reasons": dict(self.exit_reasons),
            "long": self.long_stats.to_dict(),
            "short": self.short_stats.to_dict(),
            "regimes": {name: stats.to_dict() for name, stats in self.regime_stats.items()},
        }


def _equity_values(equity_curve: Iterable[Any]) -> np.ndarray:
    values = [getattr(point, "equity", point) for point in equity_curve]
    return np.asarray(values, dtype=float)


def max_drawdown_pct(equity_curve: Iterable[Any]) -> float:
    """
    Largest peak-to-trough decline in percent.

    Accepts plain floats or objects with an ``equity`` attribute.
    """

    values = _equity_values(equity_curve)
    if values.size == 0:
        return 0.0
    peaks = np.maximum.accumulate(values)
    with np.errstate(divide="ignore", invalid="ignore"):
        drawdowns = np.where(peaks > 0, (peaks - values) / peaks, 0.0)
    return float(drawdowns.max() * 100.0)


def sharpe_ratio(returns: Sequence[float]) -> float:
    """mean / population std of per-trade returns, scaled by sqrt(250 / n)."""
    arr = np.asarray(list(returns), dtype=float)
    if arr.size < 2:
        return 0.0
    std = float(arr.std(ddof=0))
    if std == 0.0 or not math.isfinite(std):
        return 0.0
    return float(arr.mean() / std * math.sqrt(TRADING_DAYS / arr.size))


def profit_factor(dollar_pnls: Sequence[float]) -> float | str:
    gross_profit = sum(p for p in dollar_pnls if p > 0)
    gross_loss = abs(sum(p for p in dollar_pnls if p < 0))
    if gross_loss == 0:
        return INFINITY if gross_profit > 0 else 0.0
    return gross_profit / gross_loss


def segment_stats(trades: Sequence[Trade]) -> SegmentStats:
    if not trades:
        return SegmentStats()
    wins = sum(1 for t in trades if t.win)
    total = sum(t.dollar_pnl for t in trades)
    return SegmentStats(
        count=len(trades),
        wins=wins,
        win_rate=wins / len(trades) * 100.0,
        avg_profit=total / len(trades),
        total_pnl=total,
    )


def regime_breakdown(trades: Sequence[Trade]) -> dict[str, SegmentStats]:
    grouped: dict[str, list[Trade]] = {}
    for trade in trades:
        grouped.setdefault(trade.regime_tag or "UNKNOWN", []).append(trade)
    return {regime: segment_stats(group) for regime, group in sorted(grouped.items())}


def calculate_metrics(
    trades: Sequence[Trade],
    equity_curve: Iterable[Any] = (),
    initial_capital: float = 10_000.0,
) -> MetricsReport:
    """Summarize a trade ledger and its equity curve."""
    dollars = [t.dollar_pnl for t in trades]
    winners = [t.dollar_pnl for t in trades if t.win]
    losers = [t.dollar_pnl for t in trades if not t.win]
    total_pnl = float(sum(dollars))
    exit_reasons: dict[str, int] = {}
    for trade in trades:
        exit_reasons[trade.exit_reason.value] = exit_reasons.get(trade.exit_reason.value, 0) + 1

    return MetricsReport(
        total_trades=len(trades),
        wins=len(winners),
        losses=len(losers),
        win_rate=len(winners) / len(trades) * 100.0 if trades else 0.0,
        avg_win=float(np.mean(winners)) if winners else 0.0,
        avg_loss=float(np.mean(losers)) if losers else 0.0,
        avg_trade=float(np.mean(dollars)) if dollars else 0.0,
        best_trade=max(dollars) if dollars else 0.0,
        worst_trade=min(dollars) if dollars else 0.0,
        total_pnl=total_pnl,
        total_return_pct=total_pnl / initial_capital * 100.0 if initial_capital else 0.0,
        initial_capital=initial_capital,
        final_capital=initial_capital + total_pnl,
        max_drawdown=max_drawdown_pct(equity_curve),
        sharpe_ratio=sharpe_ratio([t.pnl for t in trades]),
        profit_factor=profit_factor(dollars),
        exit_reasons=exit_reasons,
        long_stats=segment_stats([t for t in trades if t.side is PositionSide.LONG]),
        short_stats=segment_stats([t for t in trades if t.side is PositionSide.SHORT]),
        regime_stats=regime_breakdown(trades),
    )


def _as_number(value: float | str) -> float:
    return math.inf if value == INFINITY else float(value)


def compare_metrics(baseline: MetricsReport, candidate: MetricsReport) -> dict[str, float]:
    """Candidate minus baseline for the headline figures."""
    return {
        "win_rate": candidate.win_rate - baseline.win_rate,
        "total_pnl": candidate.total_pnl - baseline.total_pnl,
        "total_return_pct": candidate.total_return_pct - baseline.total_return_pct,
        "max_drawdown": candidate.max_drawdown - baseline.max_drawdown,
        "sharpe_ratio": candidate.sharpe_ratio - baseline.sharpe_ratio,
        "profit_factor": _as_number(candidate.profit_factor) - _as_number(baseline.profit_factor),
        "total_trades": float(candidate.total_trades - baseline.total_trades),
    }
