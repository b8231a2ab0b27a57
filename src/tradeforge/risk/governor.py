"""
Pre-trade risk governor.

Independent checks each return a SafetyCheck (ALLOW / WARN / BLOCK); an
entry goes ahead only when nothing blocks. Daily-loss and losing-streak
blocks also pause the instance until ``resume()`` is called.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Sequence

logger = logging.getLogger(__name__)


class SafetyAction(Enum):
    ALLOW = "ALLOW"
    WARN = "WARN"
    BLOCK = "BLOCK"


@dataclass(frozen=True, slots=True)
class SafetyCheck:
    passed: bool
    action: SafetyAction
    reason: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls, **details: Any) -> "SafetyCheck":
        return cls(True, SafetyAction.ALLOW, "", details)

    @classmethod
    def warn(cls, reason: str, **details: Any) -> "SafetyCheck":
        return cls(True, SafetyAction.WARN, reason, details)

    @classmethod
    def block(cls, reason: str, **details: Any) -> "SafetyCheck":
        return cls(False, SafetyAction.BLOCK, reason, details)

    def to_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "action": self.action.value, "reason": self.reason, "details": dict(self.details)}


@dataclass(slots=True)
class RiskConfig:
    max_daily_loss: float = 100.0  # dollars
    daily_loss_warn_ratio: float = 0.8
    max_consecutive_losses: int = 5
    warn_consecutive_losses: int = 3
    position_size_percent: float = 10.0
    max_leverage: float = 20.0
    max_daily_trades: int | None = 50
    max_concurrent_positions: int | None = 1

    def __post_init__(self) -> None:
        if self.max_daily_loss <= 0:
            raise ValueError("max_daily_loss must be positive")
        if not 0 < self.daily_loss_warn_ratio <= 1:
            raise ValueError("daily_loss_warn_ratio must be in (0, 1]")
        if self.warn_consecutive_losses > self.max_consecutive_losses:
            raise ValueError("warn_consecutive_losses must not exceed max_consecutive_losses")


@dataclass(slots=True)
class RiskState:
    daily_pnl: float = 0.0
    daily_trade_count: int = 0
    consecutive_losses: int = 0
    last_reset_date: date | None = None
    open_positions: int = 0
    paused: bool = False
    pause_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "daily_pnl": self.daily_pnl,
            "daily_trade_count": self.daily_trade_count,
            "consecutive_losses": self.consecutive_losses,
            "last_reset_date": self.last_reset_date.isoformat() if self.last_reset_date else None,
            "open_positions": self.open_positions,
            "paused": self.paused,
            "pause_reason": self.pause_reason,
        }


@dataclass(frozen=True, slots=True)
class PreTradeResult:
    allowed: bool
    checks: tuple[SafetyCheck, ...]

    @property
    def blocking(self) -> list[SafetyCheck]:
        return [check for check in self.checks if check.action is SafetyAction.BLOCK]

    @property
    def warnings(self) -> list[SafetyCheck]:
        return [check for check in self.checks if check.action is SafetyAction.WARN]

    @property
    def reason(self) -> str:
        return "; ".join(check.reason for check in self.blocking)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def rollover_state(state: RiskState, today: date) -> RiskState:
    """Return ``state`` with daily counters reset when ``today`` differs from the last reset date."""
    if state.last_reset_date == today:
        return state
    return replace(state, daily_pnl=0.0, daily_trade_count=0, last_reset_date=today)


def count_consecutive_losses(pnls: Sequence[float]) -> int:
    """Length of the losing streak ending at the most recent trade."""
    streak = 0
    for pnl in reversed(pnls):
        if pnl >= 0:
            break
        streak += 1
    return streak


class RiskGovernor:
    """Risk limits for one strategy instance; every state change happens under a lock."""

    def __init__(
        self,
        config: RiskConfig | None = None,
        state: RiskState | None = None,
        clock: Callable[[], date] = utc_today,
    ) -> None:
        self.config = config or RiskConfig()
        self._state = state or RiskState()
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def state(self) -> RiskState:
        with self._lock:
            return replace(self._state)

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._state.paused

    def rollover(self, today: date | None = None) -> None:
        with self._lock:
            self._rollover(today)

    def _rollover(self, today: date | None) -> None:
        day = today or self._clock()
        previous = self._state.last_reset_date
        self._state = rollover_state(self._state, day)
        if previous is not None and previous != day:
            logger.info("Daily risk counters reset for %s", day.isoformat())

    # -- individual checks ------------------------------------------------

    def check_daily_loss(self) -> SafetyCheck:
        with self._lock:
            return self._check_daily_loss()

    def _check_daily_loss(self) -> SafetyCheck:
        pnl = self._state.daily_pnl
        limit = self.config.max_daily_loss
        details = {"daily_pnl": pnl, "max_daily_loss": limit}
        if pnl < 0 and abs(pnl) >= limit:
            return SafetyCheck.block(f"Daily loss limit exceeded: -${abs(pnl):.2f} / ${limit:g}", **details)
        if pnl < 0 and abs(pnl) >= limit * self.config.daily_loss_warn_ratio:
            return SafetyCheck.warn(f"Approaching daily loss limit: -${abs(pnl):.2f} / ${limit:g}", **details)
        return SafetyCheck.allow(**details)

    def check_consecutive_losses(self) -> SafetyCheck:
        with self._lock:
            return self._check_consecutive_losses()

    def _check_consecutive_losses(self) -> SafetyCheck:
        streak = self._state.consecutive_losses
        details = {"consecutive_losses": streak, "max_consecutive_losses": self.config.max_consecutive_losses}
        if streak >= self.config.max_consecutive_losses:
            return SafetyCheck.block(
                f"{streak} consecutive losses (limit {self.config.max_consecutive_losses})", **details
            )
        if streak >= self.config.warn_consecutive_losses:
            return SafetyCheck.warn(f"{streak} consecutive losses, trade with caution", **details)
        return SafetyCheck.allow(**details)

    def check_position_size(self, quantity: float, price: float, balance: float, leverage: float = 1.0) -> SafetyCheck:
        # margin committed is notional / leverage
        margin = quantity * price / max(leverage, 1.0)
        max_margin = balance * self.config.position_size_percent / 100.0
        details = {"position_value": quantity * price, "margin": margin, "max_margin": max_margin, "quantity": quantity}
        if margin > max_margin * (1 + 1e-9):
            return SafetyCheck.block(
                f"Position size exceeds {self.config.position_size_percent:g}% of balance: "
                f"${margin:.2f} > ${max_margin:.2f}",
                **details,
            )
        return SafetyCheck.allow(**details)

    def check_leverage(self, leverage: float) -> SafetyCheck:
        if leverage > self.config.max_leverage:
            return SafetyCheck.block(
                f"Leverage {leverage:g}x exceeds cap {self.config.max_leverage:g}x",
                leverage=leverage,
                max_leverage=self.config.max_leverage,
            )
        return SafetyCheck.allow(leverage=leverage)

    def check_daily_trades(self) -> SafetyCheck:
        with self._lock:
            count = self._state.daily_trade_count
        cap = self.config.max_daily_trades
        if cap is not None and count >= cap:
            return SafetyCheck.block(f"Daily trade cap reached ({count}/{cap})", daily_trade_count=count)
        return SafetyCheck.allow(daily_trade_count=count)

    def check_concurrent_positions(self) -> SafetyCheck:
        with self._lock:
            count = self._state.open_positions
        cap = self.config.max_concurrent_positions
        if cap is not None and count >= cap:
            return SafetyCheck.block(f"Concurrent position cap reached ({count}/{cap})", open_positions=count)
        return SafetyCheck.allow(open_positions=count)

    # -- aggregate -------------------------------------------------------------

    def run_pre_trade_checks(
        self,
        quantity: float,
        price: float,
        balance: float,
        leverage: float = 1.0,
        today: date | None = None,
    ) -> PreTradeResult:
        with self._lock:
            self._rollover(today)
            if self._state.paused:
                paused = SafetyCheck.block(f"Trading paused: {self._state.pause_reason}")
                return PreTradeResult(False, (paused,))
            daily = self._check_daily_loss()
            streak = self._check_consecutive_losses()
            for check in (daily, streak):
                if check.action is SafetyAction.BLOCK:
                    self._pause(check.reason)

        checks = (
            daily,
            streak,
            self.check_position_size(quantity, price, balance, leverage),
            self.check_leverage(leverage),
            self.check_daily_trades(),
            self.check_concurrent_positions(),
        )
        result = PreTradeResult(all(check.passed for check in checks), checks)
        for check in result.warnings:
            logger.warning("Risk warning: %s", check.reason)
        if not result.allowed:
            logger.warning("Entry blocked: %s", result.reason)
        return result

    # -- state updates ---------------------------------------------------------

    def register_open(self, today: date | None = None) -> None:
        with self._lock:
            self._rollover(today)
            self._state.daily_trade_count += 1
            self._state.open_positions += 1

    def register_close(self) -> None:
        """Free a concurrent-position slot without booking P&L."""
        with self._lock:
            self._state.open_positions = max(0, self._state.open_positions - 1)

    def record_trade(self, dollar_pnl: float, today: date | None = None) -> None:
        """Book a closed trade; only realized P&L reaches the daily counter."""
        with self._lock:
            self._rollover(today)
            self._state.daily_pnl += float(dollar_pnl)
            self._state.open_positions = max(0, self._state.open_positions - 1)
            if dollar_pnl < 0:
                self._state.consecutive_losses += 1
            else:
                self._state.consecutive_losses = 0

    def restore_streak(self, pnls: Sequence[float]) -> int:
        """Seed the losing streak from earlier closed trades, oldest first."""
        streak = count_consecutive_losses(pnls)
        with self._lock:
            self._state.consecutive_losses = streak
        if streak:
            logger.info("Restored losing streak of %d trade(s)", streak)
        return streak

    def emergency_stop(self, reason: str) -> None:
        with self._lock:
            self._pause(reason)

    def _pause(self, reason: str) -> None:
        if not self._state.paused:
            logger.warning("Trading paused: %s", reason)
        self._state.paused = True
        self._state.pause_reason = reason

    def resume(self) -> None:
        """Manual reset after a pause; the losing streak starts over."""
        with self._lock:
            self._state.paused = False
            self._state.pause_reason = None
            self._state.consecutive_losses = 0
        logger.info("Trading resumed")
