from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np

from tradeforge import market
from tradeforge.market import Candle

NEUTRAL_RSI = 50.0
NEUTRAL_ADX = 20.0


def _as_array(values: Iterable[float]) -> np.ndarray:
    return np.asarray(list(values), dtype=float)


@dataclass(frozen=True, slots=True)
class MACDResult:
    macd: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"macd": self.macd, "signal": self.signal, "histogram": self.histogram}


@dataclass(frozen=True, slots=True)
class IndicatorSnapshot:
    index: int
    price: float
    rsi: float
    macd: MACDResult
    atr: float
    adx: float
    ema: dict[int, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "index": self.index,
            "price": self.price,
            "rsi": self.rsi,
            "macd": self.macd.to_dict(),
            "ema": {str(period): value for period, value in self.ema.items()},
            "atr": self.atr,
            "adx": self.adx,
        }


def sma(prices: Sequence[float], period: int) -> float:
    arr = _as_array(prices)
    if arr.size == 0:
        return 0.0
    if arr.size < period:
        return float(arr.mean())
    return float(arr[-period:].mean())


def rsi(prices: Sequence[float], period: int = 14) -> float:
    """
    Relative strength over the trailing ``period`` deltas.

    Average gain and loss are plain means over the window (no Wilder
    smoothing). A window without losses reports 100, flat prices included.
    """

    arr = _as_array(prices)
    if period < 1 or arr.size < period + 1:
        return NEUTRAL_RSI
    deltas = np.diff(arr[-(period + 1) :])
    avg_gain = float(deltas[deltas > 0].sum()) / period
    avg_loss = float(-deltas[deltas < 0].sum()) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100.0 - 100.0 / (1.0 + rs))


def ema_series(prices: Sequence[float], period: int) -> list[float]:
    """EMA values from the seed bar onward; the seed is the SMA of the first ``period`` prices."""
    arr = _as_array(prices)
    if period < 1 or arr.size < period:
        return []
    k = 2.0 / (period + 1)
    value = float(arr[:period].mean())
    out = [value]
    for price in arr[period:]:
        value += (float(price) - value) * k
        out.append(value)
    return out


def ema(prices: Sequence[float], period: int) -> float:
    arr = _as_array(prices)
    if arr.size == 0:
        return 0.0
    if arr.size < period:
        return float(arr[-1])
    return ema_series(arr, period)[-1]


def macd(prices: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
    """MACD line, its EMA signal line and the histogram."""
    arr = _as_array(prices)
    if arr.size < slow:
        return MACDResult()
    fast_values = ema_series(arr, fast)
    slow_values = ema_series(arr, slow)
    # align the fast series on the bars where the slow EMA exists
    offset = len(fast_values) - len(slow_values)
    line = [f - s for f, s in zip(fast_values[offset:], slow_values)]
    macd_value = line[-1]
    signal_value = ema(line, signal)
    return MACDResult(macd=macd_value, signal=signal_value, histogram=macd_value - signal_value)


def true_range(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float]) -> np.ndarray:
    """True range per bar starting from the second bar."""
    h, l, c = _as_array(highs), _as_array(lows), _as_array(closes)
    if h.size < 2:
        return np.asarray([], dtype=float)
    prev_close = c[:-1]
    ranges = np.vstack(
        [
            h[1:] - l[1:],
            np.abs(h[1:] - prev_close),
            np.abs(l[1:] - prev_close),
        ]
    )
    return ranges.max(axis=0)


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> float:
    if period < 1 or len(closes) < period + 1:
        return 0.0
    tr = true_range(highs, lows, closes)
    return float(tr[-period:].mean())


def adx(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> float:
    """
    Trend-strength index from one window of directional movement.

    +DM, -DM and true range are averaged over the last ``period`` bars and
    turned into a single DX value. There is no recursive smoothing, so this
    is a strength proxy rather than Wilder's ADX.
    """

    h, l = _as_array(highs), _as_array(lows)
    if period < 1 or h.size < period + 1 or l.size != h.size or len(closes) != h.size:
        return NEUTRAL_ADX
    up_moves = h[1:] - h[:-1]
    down_moves = l[:-1] - l[1:]
    plus_dm = np.where((up_moves > down_moves) & (up_moves > 0), up_moves, 0.0)
    minus_dm = np.where((down_moves > up_moves) & (down_moves > 0), down_moves, 0.0)
    tr = true_range(h, l, closes)

    avg_tr = float(tr[-period:].mean())
    if avg_tr <= 0:
        return NEUTRAL_ADX
    plus_di = float(plus_dm[-period:].mean()) / avg_tr * 100.0
    minus_di = float(minus_dm[-period:].mean()) / avg_tr * 100.0
    di_sum = plus_di + minus_di
    if di_sum <= 0:
        return NEUTRAL_ADX
    dx = abs(plus_di - minus_di) / di_sum * 100.0
    return float(min(max(dx, 0.0), 100.0))


def volume_ratio(volumes: Sequence[float], lookback: int = 20) -> float:
    """Current volume over the mean of the previous ``lookback - 1`` volumes; 1.0 when unknown."""
    arr = _as_array(volumes)
    if arr.size < lookback:
        return 1.0
    previous = arr[-lookback:-1]
    avg = float(previous.mean())
    if avg <= 0:
        return 1.0
    return float(arr[-1] / avg)


def compute_snapshot(
    candles: Sequence[Candle],
    *,
    rsi_period: int = 14,
    ema_periods: Sequence[int] = (5, 10, 20),
    atr_period: int = 14,
    adx_period: int = 14,
) -> IndicatorSnapshot:
    close = market.closes(candles)
    high = market.highs(candles)
    low = market.lows(candles)
    return IndicatorSnapshot(
        index=len(candles) - 1,
        price=close[-1] if close else 0.0,
        rsi=rsi(close, rsi_period),
        macd=macd(close),
        atr=atr(high, low, close, atr_period),
        adx=adx(high, low, close, adx_period),
        ema={period: ema(close, period) for period in ema_periods},
    )
