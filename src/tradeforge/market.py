"""Candle model and helpers to move candles in and out of pandas."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence

import pandas as pd

OHLCV_COLUMNS = ("open", "high", "low", "close", "volume")


@dataclass(frozen=True, slots=True)
class Candle:
    timestamp: int  # ms since epoch, UTC
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def utc_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000.0, tz=timezone.utc)

    @property
    def utc_date(self) -> date:
        return self.utc_datetime.date()

    def to_dict(self) -> dict[str, float | int]:
        return {
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


def closes(candles: Sequence[Candle]) -> list[float]:
    return [c.close for c in candles]


def highs(candles: Sequence[Candle]) -> list[float]:
    return [c.high for c in candles]


def lows(candles: Sequence[Candle]) -> list[float]:
    return [c.low for c in candles]


def volumes(candles: Sequence[Candle]) -> list[float]:
    return [c.volume for c in candles]


def _timestamp_ms(value) -> int:
    if isinstance(value, pd.Timestamp):
        if value.tzinfo is None:
            value = value.tz_localize("UTC")
        return int(value.value // 1_000_000)
    return int(value)


def candles_from_frame(frame: pd.DataFrame) -> list[Candle]:
    """
    Convert an OHLCV DataFrame into candles.

    The timestamp is read from a ``timestamp`` column when present, otherwise
    from a DatetimeIndex. Rows are sorted by time.
    """

    missing = [col for col in OHLCV_COLUMNS if col not in frame.columns]
    if missing:
        raise ValueError(f"Candle frame missing columns: {missing}")
    if "timestamp" in frame.columns:
        ordered = frame.sort_values("timestamp")
        stamps = [_timestamp_ms(ts) for ts in ordered["timestamp"]]
    elif isinstance(frame.index, pd.DatetimeIndex):
        ordered = frame.sort_index()
        stamps = [_timestamp_ms(ts) for ts in ordered.index]
    else:
        raise ValueError("Candle frame needs a 'timestamp' column or a DatetimeIndex.")
    return [
        Candle(
            timestamp=ts,
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for ts, row in zip(stamps, ordered.itertuples(index=False))
    ]


def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    rows = [c.to_dict() for c in candles]
    frame = pd.DataFrame(rows, columns=["timestamp", *OHLCV_COLUMNS])
    frame.index = pd.to_datetime(frame["timestamp"], unit="ms", utc=True)
    frame.index.name = "time"
    return frame


def load_candles_csv(path: str | Path) -> list[Candle]:
    frame = pd.read_csv(Path(path))
    frame.columns = [str(col).strip().lower() for col in frame.columns]
    if "timestamp" not in frame.columns and "time" in frame.columns:
        frame = frame.rename(columns={"time": "timestamp"})
    if "timestamp" in frame.columns and not pd.api.types.is_numeric_dtype(frame["timestamp"]):
        frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
    return candles_from_frame(frame)


def aggregate_candles(group: Sequence[Candle]) -> Candle:
    if not group:
        raise ValueError("Cannot aggregate an empty candle group.")
    return Candle(
        timestamp=group[0].timestamp,
        open=group[0].open,
        high=max(c.high for c in group),
        low=min(c.low for c in group),
        close=group[-1].close,
        volume=sum(c.volume for c in group),
    )


def resample_candles(candles: Sequence[Candle], factor: int) -> list[Candle]:
    """Merge every ``factor`` consecutive base candles; a trailing partial group is dropped."""
    if factor < 1:
        raise ValueError("factor must be >= 1")
    if factor == 1:
        return list(candles)
    complete = len(candles) - len(candles) % factor
    return [aggregate_candles(candles[i : i + factor]) for i in range(0, complete, factor)]
