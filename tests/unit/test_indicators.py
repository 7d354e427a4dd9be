"""
Test indicator calculations for correctness.
"""
import pytest

from tradeloop.config.strategy_config import IndicatorInputs
from tradeloop.strategy.indicators import Indicators, calculate_indicators
from tests.conftest import make_candles


def test_rsi_uptrend_without_losses_is_100():
    candles = make_candles(count=30)

    rsi = Indicators.latest_rsi(candles, period=14)

    assert rsi == 100.0


def test_rsi_downtrend_is_low():
    candles = make_candles(count=30, base_price=200.0, step=-1.0)

    rsi = Indicators.latest_rsi(candles, period=14)

    assert rsi is not None
    assert 0 <= rsi < 30


def test_rsi_needs_period_plus_one_candles():
    assert Indicators.latest_rsi(make_candles(count=14), period=14) is None


def test_atr_calculation():
    """High/low are +/-1 around a close stepping by 1: true range is always 2."""
    candles = make_candles(count=30)

    atr = Indicators.latest_atr(candles, period=14)

    assert atr == pytest.approx(2.0)


def test_volatility_of_flat_series_is_zero():
    candles = make_candles(count=60, step=0.0)

    assert Indicators.latest_volatility(candles, window=50) == pytest.approx(0.0)


def test_volatility_needs_full_window():
    assert Indicators.latest_volatility(make_candles(count=20), window=50) is None


def test_ema_fast_above_slow_in_uptrend():
    candles = make_candles(count=60)

    fast = Indicators.latest_ema(candles, 12)
    slow = Indicators.latest_ema(candles, 26)

    assert fast > slow
    # Lags the last close in an uptrend
    assert fast < float(candles[-1].close)


def test_calculate_indicators_only_enabled():
    candles = make_candles(count=60)
    settings = IndicatorInputs.model_validate({"rsi": {"enabled": True, "period": 14}})

    snapshot = calculate_indicators(candles, settings)

    assert set(snapshot) == {"rsi"}
    assert snapshot["rsi"]["period"] == 14


def test_calculate_indicators_skips_insufficient_data():
    candles = make_candles(count=10)
    settings = IndicatorInputs.model_validate({
        "rsi": {"enabled": True},
        "ema": {"enabled": True, "fast": 5, "slow": 26},
    })

    snapshot = calculate_indicators(candles, settings)

    assert "rsi" not in snapshot
    assert set(snapshot["ema"]) == {"fast"}
    assert snapshot["ema"]["fast"]["period"] == 5


def test_calculate_indicators_without_candles():
    settings = IndicatorInputs.model_validate({"atr": {"enabled": True}})
    assert calculate_indicators([], settings) == {}
