"""Position state machine with dual trailing stops, break-even and emergency exit."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from tradeforge.market import Candle

logger = logging.getLogger(__name__)


class PositionStateError(RuntimeError):
    """Raised when the lifecycle is driven through an illegal transition."""


class PositionSide(Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is PositionSide.LONG else -1

    @classmethod
    def from_action(cls, action: str) -> "PositionSide":
        normalized = str(action).upper()
        if normalized in ("BUY", "LONG"):
            return cls.LONG
        if normalized in ("SELL", "SHORT"):
            return cls.SHORT
        raise ValueError(f"Unsupported trade direction: {action}")


class PositionState(Enum):
    FLAT = "FLAT"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class ExitReason(Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    TRAILING_TP = "TRAILING_TP"
    TRAILING_SL = "TRAILING_SL"
    EMERGENCY_EXIT = "EMERGENCY_EXIT"
    BREAK_EVEN = "BREAK_EVEN"
    END_OF_BACKTEST = "END_OF_BACKTEST"
    MANUAL = "MANUAL"


@dataclass(slots=True)
class ExitConfig:
    """Exit rules; percentages are fractions of the entry price (0.008 = 0.8%)."""

    stop_loss_pct: float = 0.03
    take_profit_pct: float = 0.06
    atr_stop_multiplier: float | None = None  # ATR-dynamic stop when set
    min_stop_loss_pct: float = 0.02
    max_stop_loss_pct: float = 0.05
    trail_profit_activate: float | None = None
    trail_profit_distance: float = 0.003
    trail_loss_activate: float | None = None  # negative, e.g. -0.003
    trail_loss_distance: float = 0.002
    emergency_exit_pct: float | None = None
    max_loss_amount: float | None = None  # dollar cap applied to emergency exits
    break_even_trigger: float | None = None
    fee_rate: float = 0.0  # flat per-side fee on notional

    def __post_init__(self) -> None:
        if self.stop_loss_pct <= 0 or self.take_profit_pct <= 0:
            raise ValueError("stop_loss_pct and take_profit_pct must be positive")
        if self.min_stop_loss_pct > self.max_stop_loss_pct:
            raise ValueError("min_stop_loss_pct must not exceed max_stop_loss_pct")
        if self.trail_loss_activate is not None and self.trail_loss_activate >= 0:
            raise ValueError("trail_loss_activate must be negative")
        if self.emergency_exit_pct is not None and self.emergency_exit_pct <= 0:
            raise ValueError("emergency_exit_pct must be positive")


@dataclass(frozen=True, slots=True)
class Levels:
    stop_loss: float
    take_profit: float
    stop_loss_pct: float


def compute_levels(entry_price: float, side: PositionSide, atr: float | None, config: ExitConfig) -> Levels:
    sl_pct = config.stop_loss_pct
    if config.atr_stop_multiplier and atr is not None and atr > 0 and entry_price > 0:
        sl_pct = atr / entry_price * config.atr_stop_multiplier
        sl_pct = min(max(sl_pct, config.min_stop_loss_pct), config.max_stop_loss_pct)
    sign = side.sign
    return Levels(
        stop_loss=entry_price * (1 - sign * sl_pct),
        take_profit=entry_price * (1 + sign * config.take_profit_pct),
        stop_loss_pct=sl_pct,
    )


@dataclass(slots=True)
class Position:
    symbol: str
    side: PositionSide
    entry_price: float
    quantity: float
    leverage: float
    margin: float
    stop_loss: float
    take_profit: float
    entry_time: int
    confidence: float = 0.0
    regime_tag: str | None = None
    stop_reason: ExitReason = ExitReason.STOP_LOSS
    trailing_profit_active: bool = False
    highest_profit: float = 0.0
    trailing_sl: float | None = None
    trailing_loss_active: bool = False
    lowest_loss: float = 0.0
    break_even_enabled: bool = False

    def move(self, price: float) -> float:
        """Signed price move as a fraction of entry, positive when favorable."""
        return self.side.sign * (price - self.entry_price) / self.entry_price


@dataclass(frozen=True, slots=True)
class Trade:
    symbol: str
    side: PositionSide
    entry_price: float
    exit_price: float
    entry_time: int
    exit_time: int
    exit_reason: ExitReason
    pnl: float  # leveraged return on margin, percent
    pnl_percent: float  # raw price move, percent
    dollar_pnl: float
    win: bool
    confidence: float
    quantity: float
    leverage: float
    regime_tag: str | None = None
    fees: float = 0.0

    @property
    def duration_ms(self) -> int:
        return self.exit_time - self.entry_time

    def to_dict(self) -> dict[str, object]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "entry_time": self.entry_time,
            "exit_time": self.exit_time,
            "exit_reason": self.exit_reason.value,
            "pnl": self.pnl,
            "pnl_percent": self.pnl_percent,
            "dollar_pnl": self.dollar_pnl,
            "win": self.win,
            "confidence": self.confidence,
            "quantity": self.quantity,
            "leverage": self.leverage,
            "regime_tag": self.regime_tag,
            "fees": self.fees,
        }


class PositionLifecycle:
    """
    Owns a single position from entry to exit.

    States move FLAT -> OPEN -> CLOSED; CLOSED is terminal and a new
    lifecycle is created for the next trade. While OPEN, ``update`` checks
    exits against the candle high/low in this order: trailing profit,
    trailing loss, emergency exit, static stop/target, break-even. At most
    one exit fires per candle.
    """

    def __init__(self, symbol: str, config: ExitConfig | None = None) -> None:
        self.symbol = symbol
        self.config = config or ExitConfig()
        self.state = PositionState.FLAT
        self.position: Position | None = None
        self.trade: Trade | None = None

    @property
    def is_open(self) -> bool:
        return self.state is PositionState.OPEN

    def open(
        self,
        side: PositionSide,
        entry_price: float,
        quantity: float,
        leverage: float,
        margin: float,
        timestamp: int,
        *,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        atr: float | None = None,
        confidence: float = 0.0,
        regime_tag: str | None = None,
    ) -> Position:
        if self.state is not PositionState.FLAT:
            raise PositionStateError(f"{self.symbol}: cannot open from state {self.state.value}")
        if entry_price <= 0 or quantity <= 0:
            raise ValueError("entry_price and quantity must be positive")
        if stop_loss is None or take_profit is None:
            levels = compute_levels(entry_price, side, atr, self.config)
            stop_loss = levels.stop_loss if stop_loss is None else stop_loss
            take_profit = levels.take_profit if take_profit is None else take_profit
        if side is PositionSide.LONG and not stop_loss < entry_price < take_profit:
            raise ValueError(f"Long levels must bracket entry: sl={stop_loss} entry={entry_price} tp={take_profit}")
        if side is PositionSide.SHORT and not take_profit < entry_price < stop_loss:
            raise ValueError(f"Short levels must bracket entry: tp={take_profit} entry={entry_price} sl={stop_loss}")

        self.position = Position(
            symbol=self.symbol,
            side=side,
            entry_price=float(entry_price),
            quantity=float(quantity),
            leverage=float(leverage),
            margin=float(margin),
            stop_loss=float(stop_loss),
            take_profit=float(take_profit),
            entry_time=int(timestamp),
            confidence=float(confidence),
            regime_tag=regime_tag,
        )
        self.state = PositionState.OPEN
        logger.info(
            "%s %s opened @ %.4f (sl=%.4f tp=%.4f qty=%.6f)",
            self.symbol,
            side.value,
            entry_price,
            stop_loss,
            take_profit,
            quantity,
        )
        return self.position

    # -- price helpers -------------------------------------------------

    def _offset(self, price: float, distance: float) -> float:
        """Price ``distance`` behind ``price`` on the protective side."""
        assert self.position is not None
        return price * (1 - self.position.side.sign * distance)

    def _tighter(self, current: float | None, candidate: float) -> float:
        assert self.position is not None
        if current is None:
            return candidate
        if self.position.side is PositionSide.LONG:
            return max(current, candidate)
        return min(current, candidate)

    def _crossed(self, adverse_price: float, level: float) -> bool:
        assert self.position is not None
        if self.position.side is PositionSide.LONG:
            return adverse_price <= level
        return adverse_price >= level

    def _reached(self, favorable_price: float, level: float) -> bool:
        assert self.position is not None
        if self.position.side is PositionSide.LONG:
            return favorable_price >= level
        return favorable_price <= level

    # -- transitions ---------------------------------------------------

    def update(self, candle: Candle) -> Trade | None:
        if self.state is not PositionState.OPEN or self.position is None:
            raise PositionStateError(f"{self.symbol}: update requires an open position")
        pos = self.position
        cfg = self.config
        long = pos.side is PositionSide.LONG
        favorable = candle.high if long else candle.low
        adverse = candle.low if long else candle.high
        favorable_move = pos.move(favorable)
        adverse_move = pos.move(adverse)

        # 1. trailing profit: check the stop carried from earlier candles, then trail
        if cfg.trail_profit_activate is not None:
            if pos.trailing_profit_active and pos.trailing_sl is not None and self._crossed(adverse, pos.trailing_sl):
                return self._finish(pos.trailing_sl, ExitReason.TRAILING_TP, candle.timestamp)
            if not pos.trailing_profit_active and favorable_move >= cfg.trail_profit_activate:
                pos.trailing_profit_active = True
                pos.highest_profit = favorable_move
                pos.trailing_sl = self._offset(favorable, cfg.trail_profit_distance)
                logger.debug("%s trailing profit armed, stop=%.4f", self.symbol, pos.trailing_sl)
            elif pos.trailing_profit_active and favorable_move > pos.highest_profit:
                pos.highest_profit = favorable_move
                pos.trailing_sl = self._tighter(pos.trailing_sl, self._offset(favorable, cfg.trail_profit_distance))

        # 2. trailing loss, only while profit trailing is idle
        if cfg.trail_loss_activate is not None and not pos.trailing_profit_active:
            if pos.stop_reason is ExitReason.TRAILING_SL and self._crossed(adverse, pos.stop_loss):
                return self._finish(pos.stop_loss, ExitReason.TRAILING_SL, candle.timestamp)
            if adverse_move <= cfg.trail_loss_activate and (
                not pos.trailing_loss_active or adverse_move < pos.lowest_loss
            ):
                pos.trailing_loss_active = True
                pos.lowest_loss = adverse_move
                self._tighten_stop(self._offset(adverse, cfg.trail_loss_distance), ExitReason.TRAILING_SL)

        # 3. emergency exit at the capped price
        if cfg.emergency_exit_pct is not None and adverse_move <= -cfg.emergency_exit_pct:
            exit_price = pos.entry_price * (1 - pos.side.sign * cfg.emergency_exit_pct)
            return self._finish(exit_price, ExitReason.EMERGENCY_EXIT, candle.timestamp, loss_cap=cfg.max_loss_amount)

        # 4. static stop then target
        if self._crossed(adverse, pos.stop_loss):
            return self._finish(pos.stop_loss, pos.stop_reason, candle.timestamp)
        if self._reached(favorable, pos.take_profit):
            return self._finish(pos.take_profit, ExitReason.TAKE_PROFIT, candle.timestamp)

        # 5. break-even ratchet
        if cfg.break_even_trigger is not None and not pos.break_even_enabled and favorable_move >= cfg.break_even_trigger:
            pos.break_even_enabled = True
            self._tighten_stop(pos.entry_price, ExitReason.BREAK_EVEN)
        return None

    def _tighten_stop(self, candidate: float, reason: ExitReason) -> None:
        assert self.position is not None
        pos = self.position
        tightened = self._tighter(pos.stop_loss, candidate)
        if tightened != pos.stop_loss:
            logger.debug("%s stop %.4f -> %.4f (%s)", self.symbol, pos.stop_loss, tightened, reason.value)
            pos.stop_loss = tightened
            pos.stop_reason = reason

    def close(self, price: float, reason: ExitReason = ExitReason.MANUAL, timestamp: int = 0) -> Trade:
        if self.state is not PositionState.OPEN:
            raise PositionStateError(f"{self.symbol}: cannot close from state {self.state.value}")
        return self._finish(price, reason, timestamp)

    def _finish(self, exit_price: float, reason: ExitReason, timestamp: int, loss_cap: float | None = None) -> Trade:
        assert self.position is not None
        pos = self.position
        pnl_percent = pos.move(exit_price) * 100.0
        pnl = pnl_percent * pos.leverage
        fees = self.config.fee_rate * pos.quantity * (pos.entry_price + exit_price)
        dollar_pnl = pos.margin * pnl / 100.0 - fees
        # the cap bounds the realized loss, fees included
        if loss_cap is not None and dollar_pnl < -loss_cap:
            dollar_pnl = -loss_cap
            pnl = (dollar_pnl + fees) / pos.margin * 100.0 if pos.margin else pnl

        self.trade = Trade(
            symbol=pos.symbol,
            side=pos.side,
            entry_price=pos.entry_price,
            exit_price=float(exit_price),
            entry_time=pos.entry_time,
            exit_time=int(timestamp),
            exit_reason=reason,
            pnl=pnl,
            pnl_percent=pnl_percent,
            dollar_pnl=dollar_pnl,
            win=dollar_pnl > 0,
            confidence=pos.confidence,
            quantity=pos.quantity,
            leverage=pos.leverage,
            regime_tag=pos.regime_tag,
            fees=fees,
        )
        self.state = PositionState.CLOSED
        logger.info(
            "%s %s closed @ %.4f (%s) pnl=%.2f%% $%.2f",
            pos.symbol,
            pos.side.value,
            exit_price,
            reason.value,
            pnl,
            dollar_pnl,
        )
        return self.trade

    def unrealized_pnl(self, price: float) -> float:
        if self.state is not PositionState.OPEN or self.position is None:
            return 0.0
        pos = self.position
        return pos.margin * pos.move(price) * pos.leverage


class PositionBook:
    """Open lifecycles keyed by symbol; at most one per symbol."""

    def __init__(self, config: ExitConfig | None = None) -> None:
        self.config = config or ExitConfig()
        self._open: dict[str, PositionLifecycle] = {}

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._open

    def __len__(self) -> int:
        return len(self._open)

    def __iter__(self) -> Iterator[PositionLifecycle]:
        return iter(list(self._open.values()))

    def get(self, symbol: str) -> PositionLifecycle | None:
        return self._open.get(symbol)

    def open(self, symbol: str, side: PositionSide, entry_price: float, quantity: float, leverage: float, margin: float, timestamp: int, **kwargs) -> PositionLifecycle:
        if symbol in self._open:
            raise PositionStateError(f"{symbol}: a position is already open")
        lifecycle = PositionLifecycle(symbol, self.config)
        lifecycle.open(side, entry_price, quantity, leverage, margin, timestamp, **kwargs)
        self._open[symbol] = lifecycle
        return lifecycle

    def release(self, symbol: str) -> PositionLifecycle | None:
        """Drop a lifecycle once its position is closed."""
        lifecycle = self._open.get(symbol)
        if lifecycle is not None and lifecycle.is_open:
            raise PositionStateError(f"{symbol}: cannot release an open position")
        return self._open.pop(symbol, None)
