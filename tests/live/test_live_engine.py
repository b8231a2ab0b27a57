from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone

import pytest

from tradeforge.live.base import OrderResult
from tradeforge.live.engine import LiveConfig, PositionMonitor, TradingEngine
from tradeforge.live.journal import SessionJournal
from tradeforge.market import Candle
from tradeforge.position.lifecycle import ExitConfig, ExitReason, PositionLifecycle, PositionSide
from tradeforge.risk.governor import RiskConfig, RiskGovernor
from tradeforge.signals.aggregator import SignalAction, SignalDecision, hold
from tradeforge.strategy.profiles import get_profile

DAY = date(2024, 3, 5)
NOON = int(datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc).timestamp() * 1000)
QUIET = Candle(NOON, 100.0, 100.2, 99.8, 100.0, 10.0)
RALLY = Candle(NOON + 60_000, 100.0, 101.5, 99.9, 101.2, 10.0)


class FakeExchange:
    def __init__(self, balance: float = 10_000.0, fail_balance: bool = False, close_failures: int = 0) -> None:
        self.balance = balance
        self.fail_balance = fail_balance
        self.close_failures = close_failures
        self.orders: list[tuple] = []
        self.protective: list[tuple] = []
        self.closed: list[tuple] = []

    async def get_balance(self) -> float:
        if self.fail_balance:
            raise ConnectionError("exchange unreachable")
        return self.balance

    async def place_market_order(self, symbol, side, quantity, leverage):
        self.orders.append((symbol, side, quantity, leverage))
        return OrderResult(f"o{len(self.orders)}", "FILLED", symbol, side, quantity, 100.0)

    async def place_protective_orders(self, symbol, side, quantity, stop_loss, take_profit):
        self.protective.append((symbol, side, quantity, stop_loss, take_profit))

    async def close_position(self, symbol, side, quantity):
        if self.close_failures:
            self.close_failures -= 1
            raise ConnectionError("close rejected")
        self.closed.append((symbol, side, quantity))
        return OrderResult("c1", "FILLED", symbol, side, quantity, 101.0)


class FakeCandles:
    """History for signal frames; ``latest`` answers single-candle polls."""

    def __init__(self, latest: list[Candle] | None = None, errors: int = 0, count: int = 60) -> None:
        self.history = [Candle(NOON - (count - i) * 60_000, 100.0, 100.2, 99.8, 100.0, 10.0) for i in range(count)]
        self.latest = latest or [QUIET]
        self.errors = errors
        self.polls = 0
        self.limits: list[int] = []

    async def fetch_candles(self, symbol, interval, limit):
        if limit == 1:
            self.polls += 1
            if self.errors:
                self.errors -= 1
                raise TimeoutError("candle feed timeout")
            return list(self.latest)
        self.limits.append(limit)
        return list(self.history[-limit:])


class StubAggregator:
    def __init__(self, decision: SignalDecision) -> None:
        self.decision = decision
        self.frames = None

    def evaluate(self, frames):
        self.frames = frames
        return self.decision


async def _wait_until(predicate, attempts: int = 100) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


def _buy(confidence: float = 80.0) -> SignalDecision:
    return SignalDecision(SignalAction.BUY, confidence, "stub buy")


def _engine(tmp_path, exchange=None, candles=None, decision=None, governor=None):
    journal = SessionJournal(tmp_path, "session_test")
    engine = TradingEngine(
        get_profile("scalper"),
        exchange or FakeExchange(),
        candles or FakeCandles(),
        governor=governor or RiskGovernor(RiskConfig(), clock=lambda: DAY),
        journal=journal,
        config=LiveConfig(poll_interval=0.01),
    )
    engine.aggregator = StubAggregator(decision or _buy())
    return engine


@pytest.mark.asyncio
async def test_cycle_opens_position_then_reports_active(tmp_path) -> None:
    exchange = FakeExchange()
    engine = _engine(tmp_path, exchange=exchange)

    result = await engine.run_cycle(DAY)

    assert result.success is True
    assert result.message.startswith("Opened LONG")
    # 6% of 10k at 20x on a 100 price
    assert exchange.orders == [("BTCUSDT", "BUY", 120.0, 20.0)]
    _, side, _, stop_loss, take_profit = exchange.protective[0]
    assert side == "BUY"
    assert stop_loss == pytest.approx(99.5)
    assert take_profit == pytest.approx(101.0)
    assert set(engine.aggregator.frames) == {"1m", "3m", "5m"}

    again = await engine.run_cycle(DAY)
    assert again.message == "Position active"
    assert len(exchange.orders) == 1

    await engine.stop()
    lifecycle = engine.book.get("BTCUSDT")
    assert lifecycle is not None and lifecycle.is_open
    assert engine.governor.state.open_positions == 1


@pytest.mark.asyncio
async def test_monitor_closes_on_take_profit_and_journals(tmp_path) -> None:
    exchange = FakeExchange()
    engine = _engine(tmp_path, exchange=exchange, candles=FakeCandles(latest=[RALLY]))

    await engine.run_cycle(DAY)
    for _ in range(50):
        if "BTCUSDT" not in engine.book:
            break
        await asyncio.sleep(0.01)

    assert "BTCUSDT" not in engine.book
    assert exchange.closed == [("BTCUSDT", "SELL", 120.0)]
    trades = engine.journal.read("trades")
    assert len(trades) == 1
    assert trades[0]["exit_reason"] == "TAKE_PROFIT"
    assert trades[0]["dollar_pnl"] == pytest.approx(120.0)
    assert engine.journal.manifest["trades"] == 1
    state = engine.governor.state
    assert state.daily_pnl == pytest.approx(120.0)
    assert state.open_positions == 0


@pytest.mark.asyncio
async def test_hold_and_low_confidence_skip_entry(tmp_path) -> None:
    engine = _engine(tmp_path, decision=hold("no consensus"))
    result = await engine.run_cycle(DAY)
    assert result.success is True
    assert result.message == "No trade: no consensus"

    engine.aggregator = StubAggregator(_buy(confidence=65.0))
    result = await engine.run_cycle(DAY)
    assert result.message == "No trade: confidence 65 < 70"
    assert len(engine.journal.read("decisions")) == 2


@pytest.mark.asyncio
async def test_collaborator_error_fails_cycle_without_raising(tmp_path) -> None:
    engine = _engine(tmp_path, exchange=FakeExchange(fail_balance=True))
    result = await engine.run_cycle(DAY)
    assert result.success is False
    assert result.message == "Error: exchange unreachable"
    assert "BTCUSDT" not in engine.book
    events = engine.journal.read("events")
    assert events[0]["event"] == "cycle_error"


@pytest.mark.asyncio
async def test_daily_loss_pauses_engine(tmp_path) -> None:
    governor = RiskGovernor(RiskConfig(max_daily_loss=100.0), clock=lambda: DAY)
    governor.record_trade(-150.0, DAY)
    engine = _engine(tmp_path, governor=governor)

    result = await engine.run_cycle(DAY)

    assert result.success is False
    assert "Daily loss limit exceeded" in result.message
    assert governor.paused is True
    assert engine.journal.manifest["paused"] is True

    # a new day clears the loss but the pause holds until resume()
    next_day = await engine.run_cycle(date(2024, 3, 6))
    assert next_day.success is False
    assert next_day.message.startswith("Trading paused: Daily loss limit")

    governor.resume()
    resumed = await engine.run_cycle(date(2024, 3, 6))
    assert resumed.message.startswith("Opened LONG")
    await engine.stop()


@pytest.mark.asyncio
async def test_pre_trade_block_is_reported(tmp_path) -> None:
    governor = RiskGovernor(RiskConfig(max_leverage=10.0), clock=lambda: DAY)
    exchange = FakeExchange()
    engine = _engine(tmp_path, exchange=exchange, governor=governor)
    result = await engine.run_cycle(DAY)
    assert result.success is False
    assert result.message.startswith("Blocked: Leverage 20x")
    assert exchange.orders == []


@pytest.mark.asyncio
async def test_monitor_skips_failed_polls_and_retries_rejected_close(tmp_path) -> None:
    lifecycle = PositionLifecycle("BTCUSDT", ExitConfig(stop_loss_pct=0.01, take_profit_pct=0.01))
    lifecycle.open(PositionSide.LONG, 100.0, 1.0, 10.0, 10.0, NOON)
    candles = FakeCandles(latest=[RALLY], errors=2)
    exchange = FakeExchange(close_failures=1)
    governor = RiskGovernor(clock=lambda: DAY)
    closed = []
    with SessionJournal(tmp_path, "monitor") as journal:
        monitor = PositionMonitor(
            lifecycle,
            exchange,
            candles,
            "1m",
            governor=governor,
            journal=journal,
            poll_interval=0.01,
            on_close=closed.append,
        )
        task = monitor.start()
        await asyncio.wait_for(task, timeout=2.0)

        # the retry resends the close without polling candles again
        assert candles.polls == 3
        assert exchange.closed == [("BTCUSDT", "SELL", 1.0)]
        assert len(closed) == 1
        assert closed[0].exit_reason is ExitReason.TAKE_PROFIT
        assert monitor.pending_close is None
        kinds = [event["event"] for event in journal.read("events")]
        assert kinds.count("monitor_error") == 2
        assert kinds.count("close_order_failed") == 1
        assert len(journal.read("trades")) == 1
    assert governor.state.consecutive_losses == 0
    assert governor.state.daily_pnl == pytest.approx(closed[0].dollar_pnl)


@pytest.mark.asyncio
async def test_rejected_close_keeps_slot_until_exchange_confirms(tmp_path) -> None:
    exchange = FakeExchange(close_failures=10_000)
    engine = _engine(tmp_path, exchange=exchange, candles=FakeCandles(latest=[RALLY]))

    await engine.run_cycle(DAY)
    monitor = engine.monitors["BTCUSDT"]
    await _wait_until(lambda: monitor.pending_close is not None)

    # the exchange still holds the position, so nothing is booked and no second entry goes out
    assert "BTCUSDT" in engine.book
    state = engine.governor.state
    assert state.open_positions == 1
    assert state.daily_pnl == 0.0
    assert engine.journal.read("trades") == []
    again = await engine.run_cycle(DAY)
    assert again.message == "Position active"
    assert len(exchange.orders) == 1

    exchange.close_failures = 0
    await _wait_until(lambda: "BTCUSDT" not in engine.book)

    assert len(exchange.closed) == 1
    assert len(engine.journal.read("trades")) == 1
    assert engine.governor.state.daily_pnl == pytest.approx(120.0)
    assert engine.governor.state.open_positions == 0


@pytest.mark.asyncio
async def test_entry_bar_wick_does_not_stop_out(tmp_path) -> None:
    candles = FakeCandles()
    last = candles.history[-1]
    # the bar the entry is priced from wicks below the 99.5 stop
    entry_bar = Candle(last.timestamp, 100.0, 100.2, 99.4, 100.0, 10.0)
    candles.history[-1] = entry_bar
    candles.latest = [entry_bar]
    exchange = FakeExchange()
    engine = _engine(tmp_path, exchange=exchange, candles=candles)

    result = await engine.run_cycle(DAY)
    assert result.message.startswith("Opened LONG")
    await _wait_until(lambda: candles.polls >= 3)

    assert "BTCUSDT" in engine.book
    assert exchange.closed == []
    assert engine.governor.state.daily_pnl == 0.0

    # the next bar with the same wick is a real stop-out
    candles.latest = [Candle(last.timestamp + 60_000, 100.0, 100.1, 99.4, 99.6, 10.0)]
    await _wait_until(lambda: "BTCUSDT" not in engine.book)

    trade = engine.journal.read("trades")[0]
    assert trade["exit_reason"] == "STOP_LOSS"
    assert trade["exit_price"] == pytest.approx(99.5)
    assert engine.governor.state.daily_pnl == pytest.approx(-60.0)


@pytest.mark.asyncio
async def test_monitor_applies_each_candle_once() -> None:
    lifecycle = PositionLifecycle("BTCUSDT", ExitConfig(stop_loss_pct=0.01, take_profit_pct=0.01))
    lifecycle.open(PositionSide.LONG, 100.0, 1.0, 10.0, 10.0, NOON - 60_000)
    candles = FakeCandles(latest=[QUIET])
    monitor = PositionMonitor(lifecycle, FakeExchange(), candles, "1m")
    calls = []
    original = lifecycle.update

    def counting_update(candle):
        calls.append(candle.timestamp)
        return original(candle)

    lifecycle.update = counting_update  # type: ignore[method-assign]
    for _ in range(3):
        assert await monitor.check_once() is None

    assert candles.polls == 3
    assert calls == [QUIET.timestamp]


@pytest.mark.asyncio
async def test_history_is_sized_from_profile(tmp_path) -> None:
    candles = FakeCandles(count=400)
    engine = TradingEngine(
        get_profile("bitcoin_pro"),
        FakeExchange(),
        candles,
        governor=RiskGovernor(clock=lambda: DAY),
        config=LiveConfig(poll_interval=0.01),
    )

    result = await engine.run_cycle(DAY)

    assert candles.limits == [200]
    assert result.decision is not None
    assert result.decision.timeframes[0].reason != "Insufficient data"
    assert result.message.startswith("No trade")


def test_explicit_history_shorter_than_profile_needs_raises() -> None:
    with pytest.raises(ValueError, match="needs at least 200"):
        TradingEngine(
            get_profile("bitcoin_pro"),
            FakeExchange(),
            FakeCandles(),
            config=LiveConfig(history_bars=100),
        )


def test_reopened_session_restores_losing_streak(tmp_path) -> None:
    with SessionJournal(tmp_path, "session_test") as journal:
        for pnl in (12.0, -3.0, -4.0):
            journal.log_trade({"symbol": "BTCUSDT", "dollar_pnl": pnl})

    engine = _engine(tmp_path)
    assert engine.governor.state.consecutive_losses == 2
    engine.journal.close()


@pytest.mark.asyncio
async def test_close_position_stops_monitor_first(tmp_path) -> None:
    exchange = FakeExchange()
    engine = _engine(tmp_path, exchange=exchange)
    await engine.run_cycle(DAY)

    trade = await engine.close_position(100.5, ExitReason.MANUAL, NOON)

    assert trade is not None
    assert trade.exit_reason is ExitReason.MANUAL
    assert "BTCUSDT" not in engine.book
    assert engine.monitors == {}
    assert await engine.close_position(100.0) is None


def test_journal_manifest_survives_reopen(tmp_path) -> None:
    with SessionJournal(tmp_path, "resume", config={"symbol": "BTCUSDT", "exit": ExitConfig()}) as journal:
        journal.log_trade({"symbol": "BTCUSDT", "exit_reason": ExitReason.STOP_LOSS, "dollar_pnl": -4.0})
        journal.update_manifest({"paused": True, "pause_reason": "manual"})

    reopened = SessionJournal(tmp_path, "resume")
    assert reopened.manifest["trades"] == 1
    assert reopened.manifest["paused"] is True
    assert reopened.manifest["config"]["symbol"] == "BTCUSDT"
    assert reopened.read("trades")[0]["exit_reason"] == "STOP_LOSS"
    assert reopened.read("orders") == []
    reopened.close()
