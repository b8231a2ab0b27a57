from __future__ import annotations

from .profiles import PRESETS, STRATEGY_KINDS, StrategyKind, StrategyProfile, get_profile

__all__ = ["PRESETS", "STRATEGY_KINDS", "StrategyKind", "StrategyProfile", "get_profile"]
