"""Live trading cycle and per-position monitoring loops."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Callable

from tradeforge.live.base import CandleSource, ExchangeClient, OrderResult
from tradeforge.live.journal import SessionJournal
from tradeforge.position.lifecycle import (
    ExitReason,
    PositionBook,
    PositionLifecycle,
    PositionSide,
    PositionStateError,
    Trade,
)
from tradeforge.risk.governor import RiskGovernor, SafetyAction
from tradeforge.signals.aggregator import SignalAggregator, SignalDecision
from tradeforge.strategy.profiles import StrategyProfile

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LiveConfig:
    poll_interval: float = 10.0  # seconds between position checks
    history_bars: int | None = None  # per timeframe; None sizes it from the profile
    min_confidence: float = 70.0
    quantity_precision: int = 3


@dataclass(frozen=True, slots=True)
class CycleResult:
    success: bool
    message: str
    decision: SignalDecision | None = None
    order: OrderResult | None = None


def _order_side(side: PositionSide, closing: bool = False) -> str:
    opening = "BUY" if side is PositionSide.LONG else "SELL"
    if not closing:
        return opening
    return "SELL" if opening == "BUY" else "BUY"


class PositionMonitor:
    """
    Polls one open position until it closes and the close order is filled.

    The monitor owns its lifecycle exclusively. Only candles that open after
    the entry bar reach the lifecycle, each one once. ``stop`` cancels
    polling and leaves the position open; closing it is up to the caller.
    Collaborator errors are logged and the poll is skipped. A close order
    the exchange rejects stays pending: the slot is kept, nothing is booked
    and the order is retried on every poll until it goes through.
    """

    def __init__(
        self,
        lifecycle: PositionLifecycle,
        exchange: ExchangeClient,
        candles: CandleSource,
        interval: str,
        governor: RiskGovernor | None = None,
        journal: SessionJournal | None = None,
        poll_interval: float = 10.0,
        on_close: Callable[[Trade], None] | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.exchange = exchange
        self.candles = candles
        self.interval = interval
        self.governor = governor
        self.journal = journal
        self.poll_interval = poll_interval
        self.on_close = on_close
        self.pending_close: Trade | None = None
        pos = lifecycle.position
        self._last_applied: int | None = pos.entry_time if pos is not None else None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def settled(self) -> bool:
        return not self.lifecycle.is_open and self.pending_close is None

    def start(self) -> asyncio.Task:
        if self.running:
            raise RuntimeError(f"{self.lifecycle.symbol}: monitor already running")
        self._task = asyncio.create_task(self._run(), name=f"monitor-{self.lifecycle.symbol}")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("%s: monitoring stopped, position left open", self.lifecycle.symbol)

    async def check_once(self) -> Trade | None:
        """Apply the next unseen candle; returns the trade once its close order is filled."""
        if self.pending_close is not None:
            return await self._settle(self.pending_close)
        if not self.lifecycle.is_open:
            return None
        symbol = self.lifecycle.symbol
        latest = await self.candles.fetch_candles(symbol, self.interval, 1)
        if not latest:
            return None
        candle = latest[-1]
        # the entry bar's range predates the fill
        if self._last_applied is not None and candle.timestamp <= self._last_applied:
            return None
        self._last_applied = candle.timestamp
        trade = self.lifecycle.update(candle)
        if trade is None:
            return None
        return await self._settle(trade)

    async def close(self, price: float, reason: ExitReason = ExitReason.MANUAL, timestamp: int = 0) -> Trade:
        trade = self.lifecycle.close(price, reason, timestamp)
        if await self._settle(trade) is None and not self.running:
            self.start()
        return trade

    async def _settle(self, trade: Trade) -> Trade | None:
        try:
            order = await self.exchange.close_position(trade.symbol, _order_side(trade.side, closing=True), trade.quantity)
        except Exception as exc:
            logger.error(f"{trade.symbol}: close order failed, retrying next poll: {exc}")
            if self.journal is not None:
                self.journal.log_event({"event": "close_order_failed", "symbol": trade.symbol, "error": str(exc)})
            self.pending_close = trade
            return None
        self.pending_close = None
        if self.journal is not None:
            self.journal.log_order({"action": "close", **order.to_dict()})
        if self.governor is not None:
            self.governor.record_trade(trade.dollar_pnl)
        if self.journal is not None:
            self.journal.log_trade(trade.to_dict())
        if self.on_close is not None:
            self.on_close(trade)
        return trade

    async def _run(self) -> None:
        while not self.settled:
            try:
                if await self.check_once() is not None:
                    break
            except PositionStateError:
                raise
            except Exception as exc:
                logger.error(f"{self.lifecycle.symbol}: monitor cycle failed: {exc}")
                if self.journal is not None:
                    self.journal.log_event({"event": "monitor_error", "symbol": self.lifecycle.symbol, "error": str(exc)})
            await asyncio.sleep(self.poll_interval)


class TradingEngine:
    """Single-symbol live engine sharing the aggregator and FSM with the backtester."""

    def __init__(
        self,
        profile: StrategyProfile,
        exchange: ExchangeClient,
        candles: CandleSource,
        governor: RiskGovernor | None = None,
        journal: SessionJournal | None = None,
        config: LiveConfig | None = None,
    ) -> None:
        self.profile = profile
        self.exchange = exchange
        self.candles = candles
        self.governor = governor or RiskGovernor()
        self.journal = journal
        self.config = config or LiveConfig()
        required = profile.history_bars
        self.history_bars = self.config.history_bars or required
        if self.history_bars < required:
            raise ValueError(
                f"history_bars={self.history_bars} is too short for {profile.name}: needs at least {required} candles"
            )
        self.aggregator = SignalAggregator(profile, history_bars=self.history_bars)
        self.book = PositionBook(profile.exit)
        self.monitors: dict[str, PositionMonitor] = {}
        if journal is not None:
            # a reopened session keeps its losing streak
            previous = [float(trade["dollar_pnl"]) for trade in journal.read("trades")]
            if previous:
                self.governor.restore_streak(previous)

    @property
    def symbol(self) -> str:
        return self.profile.symbol

    async def run_cycle(self, today: date | None = None) -> CycleResult:
        try:
            return await self._cycle(today)
        except PositionStateError:
            raise
        except Exception as exc:
            logger.error(f"{self.symbol}: trading cycle failed: {exc}")
            if self.journal is not None:
                self.journal.log_event({"event": "cycle_error", "symbol": self.symbol, "error": str(exc)})
            return CycleResult(False, f"Error: {exc}")

    async def _cycle(self, today: date | None) -> CycleResult:
        governor = self.governor
        governor.rollover(today)
        daily = governor.check_daily_loss()
        if daily.action is SafetyAction.BLOCK:
            governor.emergency_stop(daily.reason)
            self._journal_pause()
            return CycleResult(False, daily.reason)
        if governor.paused:
            return CycleResult(False, f"Trading paused: {governor.state.pause_reason}")
        if self.symbol in self.book:
            return CycleResult(True, "Position active")

        frames = {
            tf: await self.candles.fetch_candles(self.symbol, tf, self.history_bars)
            for tf in self.profile.timeframes
        }
        decision = self.aggregator.evaluate(frames)
        if self.journal is not None:
            self.journal.log_decision({"symbol": self.symbol, **decision.to_dict()})
        if not decision.is_actionable:
            return CycleResult(True, f"No trade: {decision.reason}", decision)
        if decision.confidence < self.config.min_confidence:
            return CycleResult(
                True, f"No trade: confidence {decision.confidence:.0f} < {self.config.min_confidence:.0f}", decision
            )

        base = frames[self.profile.base_timeframe]
        price = base[-1].close
        balance = await self.exchange.get_balance()
        if self.journal is not None:
            self.journal.log_equity({"symbol": self.symbol, "balance": balance})
        leverage = self.profile.leverage
        margin = balance * self.profile.position_size_percent / 100.0
        quantity = round(margin * leverage / price, self.config.quantity_precision)
        if quantity <= 0:
            return CycleResult(False, "Position size rounds to zero", decision)

        checks = governor.run_pre_trade_checks(quantity, price, balance, leverage, today)
        if not checks.allowed:
            if governor.paused:
                self._journal_pause()
            return CycleResult(False, f"Blocked: {checks.reason}", decision)

        side = PositionSide.from_action(decision.action.value)
        order = await self.exchange.place_market_order(self.symbol, _order_side(side), quantity, leverage)
        entry = order.avg_price or price
        lifecycle = self.book.open(
            self.symbol,
            side,
            entry,
            quantity,
            leverage,
            quantity * entry / leverage,
            base[-1].timestamp,
            atr=decision.atr,
            confidence=decision.confidence,
            regime_tag=decision.regime,
        )
        governor.register_open(today)
        if self.journal is not None:
            self.journal.log_order({"action": "open", **order.to_dict()})

        pos = lifecycle.position
        assert pos is not None
        try:
            await self.exchange.place_protective_orders(self.symbol, _order_side(side), quantity, pos.stop_loss, pos.take_profit)
        except Exception as exc:
            logger.warning(f"{self.symbol}: protective orders failed, relying on monitor: {exc}")

        self._start_monitor(lifecycle)
        return CycleResult(True, f"Opened {side.value} {quantity} @ {entry:.2f}", decision, order)

    def _start_monitor(self, lifecycle: PositionLifecycle) -> None:
        monitor = PositionMonitor(
            lifecycle,
            self.exchange,
            self.candles,
            self.profile.base_timeframe,
            governor=self.governor,
            journal=self.journal,
            poll_interval=self.config.poll_interval,
            on_close=self._on_close,
        )
        self.monitors[lifecycle.symbol] = monitor
        monitor.start()

    def _on_close(self, trade: Trade) -> None:
        self.monitors.pop(trade.symbol, None)
        self.book.release(trade.symbol)

    def _journal_pause(self) -> None:
        if self.journal is not None:
            state = self.governor.state
            self.journal.update_manifest({"paused": state.paused, "pause_reason": state.pause_reason})

    async def close_position(self, price: float, reason: ExitReason = ExitReason.MANUAL, timestamp: int = 0) -> Trade | None:
        """Stop monitoring and close the open position explicitly."""
        monitor = self.monitors.get(self.symbol)
        if monitor is None:
            return None
        await monitor.stop()
        return await monitor.close(price, reason, timestamp)

    async def stop(self) -> None:
        """Cancel every monitor; open positions stay open."""
        for monitor in list(self.monitors.values()):
            await monitor.stop()
