from __future__ import annotations

from .lifecycle import (
    ExitConfig,
    ExitReason,
    Levels,
    Position,
    PositionBook,
    PositionLifecycle,
    PositionSide,
    PositionState,
    PositionStateError,
    Trade,
    compute_levels,
)

__all__ = [
    "ExitConfig",
    "ExitReason",
    "Levels",
    "Position",
    "PositionBook",
    "PositionLifecycle",
    "PositionSide",
    "PositionState",
    "PositionStateError",
    "Trade",
    "compute_levels",
]
