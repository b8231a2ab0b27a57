"""
Strategy profiles.

Every strategy is a plain configuration consumed by the shared signal
aggregator, so variants differ only in parameters:

- ``scalper``: 1m/3m/5m consensus, fast EMAs 5/10/20, RSI 7, tight 0.5%/1.0% exits
- ``futures_scalper``: 1m/3m/5m consensus with dual trailing stops and emergency exit
- ``bitcoin_pro``: single timeframe, EMA 20/50/200, ATR-dynamic stop
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Literal, get_args

from tradeforge.position.lifecycle import ExitConfig
from tradeforge.regime.detector import RegimeConfig

StrategyKind = Literal["scalper", "futures_scalper", "bitcoin_pro"]
STRATEGY_KINDS: tuple[str, ...] = get_args(StrategyKind)


@dataclass(slots=True)
class StrategyProfile:
    name: StrategyKind = "scalper"
    symbol: str = "BTCUSDT"

    # timeframe label -> number of base candles per bar
    timeframes: dict[str, int] = field(default_factory=lambda: {"1m": 1, "3m": 3, "5m": 5})

    # per-timeframe evaluation
    rsi_period: int = 7
    ema_periods: tuple[int, int, int] = (5, 10, 20)
    atr_period: int = 14
    min_candles: int = 50
    buy_rsi_band: tuple[float, float] = (45.0, 65.0)
    sell_rsi_band: tuple[float, float] = (35.0, 55.0)
    moderate_buy_rsi_max: float = 60.0
    moderate_sell_rsi_min: float = 40.0
    strict_confidence: float = 75.0
    moderate_confidence: float = 65.0
    fresh_cross_pct: float = 0.00005  # histogram below this fraction of price counts as a fresh cross
    macd_min_strength: float | None = None  # fraction of price

    # consensus
    unanimous_bonus: float = 15.0
    majority_bonus: float = 5.0

    # gates
    volume_range: tuple[float, float] | None = (0.8, 2.0)
    volume_lookback: int = 20
    adx_range: tuple[float, float] | None = (20.0, 50.0)
    use_regime_filter: bool = True
    regime: RegimeConfig = field(default_factory=lambda: RegimeConfig(ema_fast=5, ema_mid=10, ema_slow=20))
    blocked_hours: tuple[int, ...] = (0, 1, 2)  # UTC
    bias_period: int | None = None
    bias_threshold: float = 0.02
    confirmation_candles: int = 1
    min_confidence: float = 75.0

    # sizing
    leverage: float = 20.0
    position_size_percent: float = 6.0
    exit: ExitConfig = field(default_factory=lambda: ExitConfig(stop_loss_pct=0.005, take_profit_pct=0.01))

    def __post_init__(self) -> None:
        if self.name not in STRATEGY_KINDS:
            raise ValueError(f"Unknown strategy kind {self.name!r}; expected one of {STRATEGY_KINDS}")
        if not self.timeframes:
            raise ValueError("At least one timeframe is required")
        if any(factor < 1 for factor in self.timeframes.values()):
            raise ValueError("Timeframe factors must be >= 1")
        if len(self.ema_periods) != 3:
            raise ValueError("ema_periods must list fast, mid and slow periods")
        if self.confirmation_candles < 1:
            raise ValueError("confirmation_candles must be >= 1")

    @property
    def primary_timeframe(self) -> str:
        """Slowest timeframe; its regime and ATR drive the final decision."""
        return max(self.timeframes, key=self.timeframes.__getitem__)

    @property
    def base_timeframe(self) -> str:
        return min(self.timeframes, key=self.timeframes.__getitem__)

    @property
    def history_bars(self) -> int:
        """Candles each timeframe must hold before every rule and gate is live."""
        needed = max(self.min_candles, max(self.ema_periods), self.volume_lookback)
        if self.use_regime_filter:
            needed = max(needed, self.regime.ema_slow)
        if self.bias_period:
            needed = max(needed, self.bias_period + 1)
        return needed

    @property
    def warmup_candles(self) -> int:
        """Base candles needed before every timeframe can be evaluated."""
        slowest = max(self.timeframes.values())
        needed = max(self.min_candles, self.regime.ema_slow if self.use_regime_filter else 0)
        return max(needed * slowest, (self.bias_period or 0) + 1)


PRESETS: dict[str, StrategyProfile] = {
    "scalper": StrategyProfile(),
    "futures_scalper": StrategyProfile(
        name="futures_scalper",
        rsi_period=14,
        ema_periods=(9, 21, 50),
        buy_rsi_band=(45.0, 68.0),
        sell_rsi_band=(35.0, 55.0),
        macd_min_strength=0.00003,
        bias_period=100,
        bias_threshold=0.02,
        confirmation_candles=2,
        regime=RegimeConfig(ema_fast=9, ema_mid=21, ema_slow=50),
        leverage=10.0,
        position_size_percent=10.0,
        exit=ExitConfig(
            stop_loss_pct=0.008,
            take_profit_pct=0.008,
            trail_profit_activate=0.004,
            trail_profit_distance=0.003,
            trail_loss_activate=-0.003,
            trail_loss_distance=0.002,
            emergency_exit_pct=0.02,
            max_loss_amount=200.0,
        ),
    ),
    "bitcoin_pro": StrategyProfile(
        name="bitcoin_pro",
        timeframes={"1h": 1},
        rsi_period=14,
        ema_periods=(20, 50, 200),
        min_candles=200,
        buy_rsi_band=(40.0, 70.0),
        sell_rsi_band=(30.0, 60.0),
        moderate_buy_rsi_max=65.0,
        moderate_sell_rsi_min=35.0,
        fresh_cross_pct=0.002,
        unanimous_bonus=0.0,
        volume_range=None,
        adx_range=None,
        regime=RegimeConfig(),
        blocked_hours=(),
        min_confidence=65.0,
        leverage=10.0,
        position_size_percent=10.0,
        exit=ExitConfig(
            stop_loss_pct=0.03,
            take_profit_pct=0.06,
            atr_stop_multiplier=2.0,
            min_stop_loss_pct=0.02,
            max_stop_loss_pct=0.05,
            break_even_trigger=0.015,
        ),
    ),
}


def get_profile(name: str) -> StrategyProfile:
    try:
        preset = PRESETS[name]
    except KeyError:
        raise KeyError(f"Unknown strategy profile {name!r}; available: {sorted(PRESETS)}") from None
    return copy.deepcopy(preset)
