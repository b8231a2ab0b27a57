"""Per-timeframe signal evaluation and multi-timeframe consensus."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Sequence

from tradeforge.indicators.technical import IndicatorSnapshot, compute_snapshot, volume_ratio
from tradeforge.market import Candle, resample_candles, volumes
from tradeforge.regime.detector import RegimeClassification, detect_regime
from tradeforge.strategy.profiles import StrategyProfile

logger = logging.getLogger(__name__)


class SignalAction(Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class Trend(Enum):
    STRONG_UPTREND = "STRONG_UPTREND"
    UPTREND = "UPTREND"
    NEUTRAL = "NEUTRAL"
    DOWNTREND = "DOWNTREND"
    STRONG_DOWNTREND = "STRONG_DOWNTREND"


@dataclass(frozen=True, slots=True)
class TimeframeSignal:
    timeframe: str
    action: SignalAction
    confidence: float
    reason: str
    trend: Trend = Trend.NEUTRAL
    snapshot: IndicatorSnapshot | None = None

    @property
    def atr(self) -> float:
        return self.snapshot.atr if self.snapshot is not None else 0.0


@dataclass(frozen=True, slots=True)
class SignalDecision:
    action: SignalAction
    confidence: float
    reason: str
    atr: float | None = None
    indicators: dict[str, object] | None = None
    regime: str | None = None
    timeframes: tuple[TimeframeSignal, ...] = field(default_factory=tuple)

    @property
    def is_actionable(self) -> bool:
        return self.action is not SignalAction.HOLD

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "confidence": self.confidence,
            "reason": self.reason,
            "atr": self.atr,
            "indicators": self.indicators,
            "regime": self.regime,
            "timeframes": {
                tf.timeframe: {"action": tf.action.value, "confidence": tf.confidence} for tf in self.timeframes
            },
        }


def hold(reason: str, confidence: float = 0.0, **extra) -> SignalDecision:
    return SignalDecision(action=SignalAction.HOLD, confidence=confidence, reason=reason, **extra)


def classify_trend(fast: float, mid: float, slow: float) -> Trend:
    if fast > mid > slow:
        return Trend.STRONG_UPTREND
    if fast > mid:
        return Trend.UPTREND
    if fast < mid < slow:
        return Trend.STRONG_DOWNTREND
    if fast < mid:
        return Trend.DOWNTREND
    return Trend.NEUTRAL


def evaluate_timeframe(candles: Sequence[Candle], profile: StrategyProfile, timeframe: str = "") -> TimeframeSignal:
    if len(candles) < profile.min_candles:
        return TimeframeSignal(timeframe, SignalAction.HOLD, 0.0, "Insufficient data")

    fast_p, mid_p, slow_p = profile.ema_periods
    snap = compute_snapshot(
        candles,
        rsi_period=profile.rsi_period,
        ema_periods=profile.ema_periods,
        atr_period=profile.atr_period,
    )
    price = snap.price
    fast, mid, slow = snap.ema[fast_p], snap.ema[mid_p], snap.ema[slow_p]
    trend = classify_trend(fast, mid, slow)
    rsi_value = snap.rsi
    hist = snap.macd.histogram

    if profile.macd_min_strength is not None and abs(hist) < profile.macd_min_strength * price:
        return TimeframeSignal(timeframe, SignalAction.HOLD, 0.0, f"Weak MACD ({hist:.5f})", trend, snap)

    fresh_limit = profile.fresh_cross_pct * price
    cross_up = 0 < hist < fresh_limit
    cross_down = 0 > hist > -fresh_limit
    bullish = hist > 0 and snap.macd.macd > snap.macd.signal
    bearish = hist < 0 and snap.macd.macd < snap.macd.signal
    buy_lo, buy_hi = profile.buy_rsi_band
    sell_lo, sell_hi = profile.sell_rsi_band

    if cross_up and price > fast > mid > slow and buy_lo < rsi_value < buy_hi and trend is Trend.STRONG_UPTREND:
        return TimeframeSignal(
            timeframe, SignalAction.BUY, profile.strict_confidence,
            f"STRONG BUY: fresh cross, EMAs aligned, RSI {rsi_value:.1f}", trend, snap,
        )
    if cross_down and price < fast < mid < slow and sell_lo < rsi_value < sell_hi and trend is Trend.STRONG_DOWNTREND:
        return TimeframeSignal(
            timeframe, SignalAction.SELL, profile.strict_confidence,
            f"STRONG SELL: fresh cross, EMAs aligned, RSI {rsi_value:.1f}", trend, snap,
        )
    if (
        bullish
        and price > fast > mid
        and rsi_value < profile.moderate_buy_rsi_max
        and trend in (Trend.UPTREND, Trend.STRONG_UPTREND)
    ):
        return TimeframeSignal(
            timeframe, SignalAction.BUY, profile.moderate_confidence, f"BUY: momentum, {trend.value}", trend, snap
        )
    if (
        bearish
        and price < fast < mid
        and rsi_value > profile.moderate_sell_rsi_min
        and trend in (Trend.DOWNTREND, Trend.STRONG_DOWNTREND)
    ):
        return TimeframeSignal(
            timeframe, SignalAction.SELL, profile.moderate_confidence, f"SELL: momentum, {trend.value}", trend, snap
        )
    return TimeframeSignal(
        timeframe, SignalAction.HOLD, 0.0, f"No clear setup (RSI {rsi_value:.1f}, {trend.value})", trend, snap
    )


def build_consensus(
    signals: Sequence[TimeframeSignal],
    unanimous_bonus: float = 15.0,
    majority_bonus: float = 5.0,
) -> tuple[SignalAction, float, str]:
    """
    Combine per-timeframe signals.

    All N agree: weakest confidence plus ``unanimous_bonus``. N-1 of N agree
    (N >= 3): weakest agreeing confidence plus ``majority_bonus``. Anything
    else is HOLD.
    """

    total = len(signals)
    if total == 0:
        return SignalAction.HOLD, 0.0, "No timeframes evaluated"
    for action in (SignalAction.BUY, SignalAction.SELL):
        agreeing = [sig.confidence for sig in signals if sig.action is action]
        if len(agreeing) == total:
            return action, min(agreeing) + unanimous_bonus, f"{action.value}: all {total} timeframes agree"
        if total >= 3 and len(agreeing) == total - 1:
            return action, min(agreeing) + majority_bonus, f"{action.value}: {total - 1}/{total} timeframes agree"
    summary = ", ".join(f"{sig.timeframe}={sig.action.value}" for sig in signals)
    return SignalAction.HOLD, 0.0, f"Timeframes disagree ({summary})"


class EntryConfirmation:
    """Releases a signal only after it repeats on ``required`` consecutive evaluations."""

    def __init__(self, required: int = 1) -> None:
        self.required = max(1, int(required))
        self._pending: SignalAction | None = None
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def observe(self, action: SignalAction) -> bool:
        if action is SignalAction.HOLD:
            self.reset()
            return False
        if action is self._pending:
            self._count += 1
        else:
            self._pending = action
            self._count = 1
        if self._count >= self.required:
            self.reset()
            return True
        return False

    def reset(self) -> None:
        self._pending = None
        self._count = 0


def market_bias(candles: Sequence[Candle], period: int, threshold: float) -> int:
    """1 when price rose more than ``threshold`` over ``period`` candles, -1 when it fell, else 0."""
    if period < 1 or len(candles) <= period:
        return 0
    start = candles[-period - 1].close
    if start <= 0:
        return 0
    change = (candles[-1].close - start) / start
    if change > threshold:
        return 1
    if change < -threshold:
        return -1
    return 0


class SignalAggregator:
    """Turns candles for each profile timeframe into a single SignalDecision."""

    def __init__(self, profile: StrategyProfile, history_bars: int = 300) -> None:
        self.profile = profile
        self.history_bars = history_bars
        self.confirmation = EntryConfirmation(profile.confirmation_candles)

    def evaluate(self, frames: Mapping[str, Sequence[Candle]]) -> SignalDecision:
        profile = self.profile
        missing = [tf for tf in profile.timeframes if tf not in frames]
        if missing:
            raise ValueError(f"Missing candles for timeframes: {missing}")

        signals = tuple(evaluate_timeframe(frames[tf], profile, tf) for tf in profile.timeframes)
        primary_tf = profile.primary_timeframe
        primary_signal = next(sig for sig in signals if sig.timeframe == primary_tf)
        primary = frames[primary_tf]
        base = frames[profile.base_timeframe]
        extra = {
            "atr": primary_signal.atr,
            "indicators": primary_signal.snapshot.to_dict() if primary_signal.snapshot else None,
            "timeframes": signals,
        }

        action, confidence, reason = build_consensus(signals, profile.unanimous_bonus, profile.majority_bonus)
        if action is SignalAction.HOLD:
            self.confirmation.reset()
            return hold(reason, **extra)

        if profile.blocked_hours and base:
            hour = base[-1].utc_datetime.hour
            if hour in profile.blocked_hours:
                self.confirmation.reset()
                return hold(f"{reason} | blocked hour {hour:02d} UTC", **extra)

        regime: RegimeClassification | None = None
        if profile.use_regime_filter:
            regime = detect_regime(primary, profile.regime)
            extra["regime"] = regime.regime.value
            if not regime.should_trade:
                self.confirmation.reset()
                return hold(f"{regime.regime.value}: {regime.reason} (ADX {regime.adx:.1f})", **extra)
            confidence += regime.confidence_delta
            reason += f" | {regime.regime.value} (ADX {regime.adx:.1f})"

        if profile.volume_range is not None:
            ratio = volume_ratio(volumes(base), profile.volume_lookback)
            low, high = profile.volume_range
            if not low <= ratio <= high:
                self.confirmation.reset()
                return hold(f"{reason} | volume ratio {ratio:.2f} outside [{low}, {high}]", **extra)

        if profile.adx_range is not None and primary_signal.snapshot is not None:
            adx_value = primary_signal.snapshot.adx
            low, high = profile.adx_range
            if not low <= adx_value <= high:
                self.confirmation.reset()
                return hold(f"{reason} | ADX {adx_value:.1f} outside [{low}, {high}]", **extra)

        if profile.bias_period:
            bias = market_bias(base, profile.bias_period, profile.bias_threshold)
            if (bias > 0 and action is SignalAction.SELL) or (bias < 0 and action is SignalAction.BUY):
                self.confirmation.reset()
                return hold(f"{reason} | against market bias", **extra)

        confidence = min(max(confidence, 0.0), 100.0)
        if confidence < profile.min_confidence:
            self.confirmation.reset()
            return hold(f"{reason} | confidence {confidence:.0f} < {profile.min_confidence:.0f}", confidence, **extra)

        if not self.confirmation.observe(action):
            return hold(
                f"{reason} | awaiting confirmation ({self.confirmation.count}/{self.confirmation.required})",
                confidence,
                **extra,
            )

        logger.debug("Decision %s @ %.0f: %s", action.value, confidence, reason)
        return SignalDecision(action=action, confidence=confidence, reason=reason, **extra)

    def frames_at(self, candles: Sequence[Candle], index: int) -> dict[str, list[Candle]]:
        """
        Build each timeframe's history from a base series, as of ``index``.

        Higher timeframes only use groups that are complete at ``index`` so
        replay never sees a candle before it closes.
        """

        frames: dict[str, list[Candle]] = {}
        for tf, factor in self.profile.timeframes.items():
            groups = (index + 1) // factor
            first = max(0, groups - self.history_bars)
            frames[tf] = resample_candles(candles[first * factor : groups * factor], factor)
        return frames

    def evaluate_series(self, candles: Sequence[Candle], index: int) -> SignalDecision:
        return self.evaluate(self.frames_at(candles, index))

    __call__ = evaluate_series
