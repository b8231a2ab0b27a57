from __future__ import annotations

import pytest

from tradeforge.strategy.profiles import PRESETS, StrategyProfile, get_profile


def test_presets_share_one_profile_type() -> None:
    assert set(PRESETS) == {"scalper", "futures_scalper", "bitcoin_pro"}
    for name in PRESETS:
        profile = get_profile(name)
        assert isinstance(profile, StrategyProfile)
        assert profile.name == name


def test_get_profile_returns_independent_copies() -> None:
    first = get_profile("futures_scalper")
    first.exit.stop_loss_pct = 0.5
    first.timeframes["15m"] = 15
    fresh = get_profile("futures_scalper")
    assert fresh.exit.stop_loss_pct == pytest.approx(0.008)
    assert "15m" not in fresh.timeframes


def test_timeframe_roles_and_warmup() -> None:
    scalper = get_profile("scalper")
    assert scalper.primary_timeframe == "5m"
    assert scalper.base_timeframe == "1m"
    assert scalper.warmup_candles == 250

    pro = get_profile("bitcoin_pro")
    assert pro.primary_timeframe == pro.base_timeframe == "1h"
    assert pro.warmup_candles == 200


def test_history_bars_cover_every_gate() -> None:
    assert get_profile("scalper").history_bars == 50
    assert get_profile("bitcoin_pro").history_bars == 200
    # the 100-bar bias needs one extra candle for its reference close
    assert get_profile("futures_scalper").history_bars == 101
    assert StrategyProfile(min_candles=10, use_regime_filter=False).history_bars == 20


def test_unknown_profile_and_bad_fields() -> None:
    with pytest.raises(KeyError):
        get_profile("grid")
    with pytest.raises(ValueError):
        StrategyProfile(name="grid")  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        StrategyProfile(timeframes={})
    with pytest.raises(ValueError):
        StrategyProfile(confirmation_candles=0)
