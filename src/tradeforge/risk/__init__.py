from __future__ import annotations

from .governor import (
    PreTradeResult,
    RiskConfig,
    RiskGovernor,
    RiskState,
    SafetyAction,
    SafetyCheck,
    count_consecutive_losses,
    rollover_state,
)

__all__ = [
    "PreTradeResult",
    "RiskConfig",
    "RiskGovernor",
    "RiskState",
    "SafetyAction",
    "SafetyCheck",
    "count_consecutive_losses",
    "rollover_state",
]
