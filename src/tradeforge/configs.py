from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, TypeVar

import yaml

from tradeforge.backtest.simulator import BacktestConfig
from tradeforge.live.engine import LiveConfig
from tradeforge.risk.governor import RiskConfig
from tradeforge.strategy.profiles import StrategyProfile, get_profile

CONFIG_ROOT = (Path(__file__).resolve().parents[2] / "configs").resolve()
SECTIONS = ("strategy", "exit", "risk", "backtest", "live")

T = TypeVar("T")


@dataclass(slots=True)
class EngineConfig:
    profile: StrategyProfile
    risk: RiskConfig = field(default_factory=RiskConfig)
    backtest: BacktestConfig = field(default_factory=BacktestConfig)
    live: LiveConfig = field(default_factory=LiveConfig)


def _read_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping.")
    return data


def _coerce(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(value)
    return value


def apply_overrides(obj: T, overrides: Mapping[str, Any] | None, section: str) -> T:
    """Return a copy of dataclass ``obj`` with ``overrides`` applied; unknown keys raise ValueError."""
    if not overrides:
        return obj
    if not isinstance(overrides, Mapping):
        raise ValueError(f"Section '{section}' must be a mapping.")
    known = {f.name for f in fields(obj)}  # type: ignore[arg-type]
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown {section} option(s): {', '.join(unknown)}")
    return replace(obj, **{key: _coerce(value) for key, value in overrides.items()})  # type: ignore[type-var]


def build_profile(strategy: Mapping[str, Any] | None, exit_overrides: Mapping[str, Any] | None = None) -> StrategyProfile:
    strategy = dict(strategy or {})
    profile = get_profile(strategy.pop("preset", "scalper"))
    regime_overrides = strategy.pop("regime", None)
    if regime_overrides:
        strategy["regime"] = apply_overrides(profile.regime, regime_overrides, "regime")
    if exit_overrides:
        strategy["exit"] = apply_overrides(profile.exit, exit_overrides, "exit")
    return apply_overrides(profile, strategy, "strategy")


def engine_config_from_dict(data: Mapping[str, Any]) -> EngineConfig:
    unknown = sorted(set(data) - set(SECTIONS))
    if unknown:
        raise ValueError(f"Unknown config section(s): {', '.join(unknown)}")
    profile = build_profile(data.get("strategy"), data.get("exit"))
    backtest_defaults = BacktestConfig(
        symbol=profile.symbol,
        position_size_percent=profile.position_size_percent,
        leverage=profile.leverage,
        min_confidence=profile.min_confidence,
        warmup_candles=max(200, profile.warmup_candles),
    )
    risk_defaults = RiskConfig(
        position_size_percent=profile.position_size_percent,
        max_leverage=max(RiskConfig().max_leverage, profile.leverage),
    )
    live = apply_overrides(LiveConfig(), data.get("live"), "live")
    if live.history_bars is not None and live.history_bars < profile.history_bars:
        raise ValueError(f"live.history_bars must be at least {profile.history_bars} for {profile.name}")
    return EngineConfig(
        profile=profile,
        risk=apply_overrides(risk_defaults, data.get("risk"), "risk"),
        backtest=apply_overrides(backtest_defaults, data.get("backtest"), "backtest"),
        live=live,
    )


def load_engine_config(path: str | Path) -> EngineConfig:
    candidate = Path(path)
    if not candidate.is_absolute() and not candidate.exists():
        candidate = CONFIG_ROOT / candidate
    if not candidate.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    return engine_config_from_dict(_read_yaml(candidate))
