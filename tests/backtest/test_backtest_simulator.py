from __future__ import annotations

from datetime import datetime, timezone

import numpy as np
import pytest

from tradeforge.backtest.simulator import BacktestConfig, BacktestSimulator, run_backtest
from tradeforge.market import Candle
from tradeforge.position.lifecycle import ExitConfig, ExitReason
from tradeforge.risk.governor import RiskConfig, RiskGovernor
from tradeforge.signals.aggregator import SignalAction, SignalDecision, hold
from tradeforge.strategy.profiles import get_profile

NOON = int(datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc).timestamp() * 1000)


class ScriptedSignals:
    """Returns BUY at the scripted indices, HOLD otherwise."""

    def __init__(self, buy_at=(), always: bool = False, confidence: float = 80.0) -> None:
        self.buy_at = set(buy_at)
        self.always = always
        self.confidence = confidence
        self.calls: list[int] = []

    def __call__(self, candles, index):
        self.calls.append(index)
        if self.always or index in self.buy_at:
            return SignalDecision(SignalAction.BUY, self.confidence, "scripted")
        return hold("flat")


def _bar(i: int, close: float, high: float | None = None, low: float | None = None) -> Candle:
    return Candle(NOON + i * 60_000, close, high if high is not None else close + 0.2, low if low is not None else close - 0.2, close, 10.0)


def _config(**overrides) -> BacktestConfig:
    params = dict(initial_capital=10_000.0, position_size_percent=10.0, leverage=10.0, min_confidence=65.0, warmup_candles=0)
    params.update(overrides)
    return BacktestConfig(**params)


def test_take_profit_trade_adds_leveraged_dollars() -> None:
    candles = [_bar(0, 100.0), _bar(1, 102.0, high=102.5, low=100.5), _bar(2, 101.0)]
    simulator = BacktestSimulator(_config(), ScriptedSignals(buy_at={0}), ExitConfig(stop_loss_pct=0.01, take_profit_pct=0.02))

    result = simulator.run(candles)

    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.exit_reason is ExitReason.TAKE_PROFIT
    assert trade.exit_price == pytest.approx(102.0)
    assert trade.dollar_pnl == pytest.approx(200.0)
    assert result.final_capital == pytest.approx(10_200.0)
    assert result.total_return_pct == pytest.approx(2.0)
    assert [p.equity for p in result.equity_curve] == pytest.approx([10_000.0, 10_200.0, 10_200.0])


def test_no_signals_keeps_equity_flat() -> None:
    candles = [_bar(i, 100.0 + i * 0.1) for i in range(20)]
    result = BacktestSimulator(_config(), ScriptedSignals()).run(candles)
    assert result.trades == []
    assert result.final_capital == 10_000.0
    assert all(point.equity == 10_000.0 for point in result.equity_curve)
    assert len(result.equity_curve) == 20


def test_low_confidence_decisions_are_ignored() -> None:
    candles = [_bar(i, 100.0) for i in range(5)]
    result = BacktestSimulator(_config(min_confidence=90.0), ScriptedSignals(always=True, confidence=80.0)).run(candles)
    assert result.trades == []


def test_open_position_closes_at_end_of_data() -> None:
    candles = [_bar(0, 100.0), _bar(1, 100.5), _bar(2, 101.0)]
    result = BacktestSimulator(_config(), ScriptedSignals(buy_at={0})).run(candles)
    trade = result.trades[-1]
    assert trade.exit_reason is ExitReason.END_OF_BACKTEST
    assert trade.exit_price == 101.0
    assert result.final_capital == pytest.approx(10_100.0)


def test_warmup_candles_are_skipped() -> None:
    candles = [_bar(i, 100.0) for i in range(10)]
    source = ScriptedSignals()
    BacktestSimulator(_config(warmup_candles=4), source).run(candles)
    assert source.calls[0] == 4


def test_positions_never_overlap() -> None:
    closes = [100.0, 101.5, 99.0, 100.0, 101.5, 98.5, 100.0, 102.0, 100.0, 99.0]
    candles = [_bar(i, c, high=c + 0.8, low=c - 0.8) for i, c in enumerate(closes)]
    exit_config = ExitConfig(stop_loss_pct=0.01, take_profit_pct=0.01)
    result = BacktestSimulator(_config(), ScriptedSignals(always=True), exit_config).run(candles)

    assert len(result.trades) >= 2
    for previous, current in zip(result.trades, result.trades[1:]):
        assert current.entry_time >= previous.exit_time
    assert result.final_capital == pytest.approx(10_000.0 + sum(t.dollar_pnl for t in result.trades))


def test_governor_caps_daily_entries() -> None:
    closes = [100.0, 101.5, 100.0, 101.5, 100.0, 101.5]
    candles = [_bar(i, c, high=c + 0.8, low=c - 0.8) for i, c in enumerate(closes)]
    governor = RiskGovernor(RiskConfig(max_daily_trades=1))
    exit_config = ExitConfig(stop_loss_pct=0.01, take_profit_pct=0.01)

    result = BacktestSimulator(_config(), ScriptedSignals(always=True), exit_config, governor).run(candles)

    assert len(result.trades) == 1
    assert result.blocked_entries > 0
    assert governor.state.daily_trade_count == 1


def test_result_frames() -> None:
    candles = [_bar(0, 100.0), _bar(1, 102.0, high=102.5, low=100.5)]
    result = BacktestSimulator(_config(), ScriptedSignals(buy_at={0}), ExitConfig(take_profit_pct=0.02)).run(candles)
    series = result.equity_series()
    assert len(series) == 2
    assert str(series.index.tz) == "UTC"
    frame = result.trades_frame()
    assert list(frame["exit_reason"]) == ["TAKE_PROFIT"]


def test_replay_is_deterministic() -> None:
    rng = np.random.default_rng(11)
    close = 100 + np.cumsum(rng.normal(0, 0.2, 420))
    candles = [
        Candle(NOON + i * 60_000, float(c), float(c) + 0.15, float(c) - 0.15, float(c), float(100 + rng.integers(0, 40)))
        for i, c in enumerate(close)
    ]
    profile = get_profile("scalper")

    first = run_backtest(candles, profile)
    second = run_backtest(candles, get_profile("scalper"))

    assert first.trades == second.trades
    assert [p.equity for p in first.equity_curve] == [p.equity for p in second.equity_curve]
    assert len(first.equity_curve) == len(candles) - max(200, profile.warmup_candles)


def test_config_validation() -> None:
    with pytest.raises(ValueError):
        BacktestConfig(initial_capital=0)
    with pytest.raises(ValueError):
        BacktestConfig(leverage=0.5)
