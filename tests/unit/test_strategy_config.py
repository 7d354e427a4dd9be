"""
Strategy filter normalization: legacy entry modes, confidence resolution, defaults.
"""
import pytest
from pydantic import ValidationError

from tradeloop.config.strategy_config import DEFAULT_MIN_CONFIDENCE, normalize_strategy_filters
from tradeloop.domain.models import ExitMode


def test_empty_filters_get_defaults():
    filters = normalize_strategy_filters({})

    assert filters.min_confidence == DEFAULT_MIN_CONFIDENCE
    assert filters.behaviors.trend and filters.behaviors.breakout and filters.behaviors.mean_reversion
    assert filters.exit_rules.mode == ExitMode.SIGNAL
    assert filters.trade_control.max_trades_per_hour == 2
    assert filters.risk.max_position_usd == 10000
    assert filters.market_processing_mode == "round-robin"


def test_none_is_treated_as_empty():
    assert normalize_strategy_filters(None).min_confidence == DEFAULT_MIN_CONFIDENCE


@pytest.mark.parametrize("mode,expected", [
    ("trend", (True, False, False)),
    ("breakout", (False, True, False)),
    ("meanReversion", (False, False, True)),
    ("signal", (True, True, True)),
])
def test_legacy_entry_mode_derives_behaviors(mode, expected):
    filters = normalize_strategy_filters({"entryExit": {"entry": {"mode": mode}}})

    b = filters.behaviors
    assert (b.trend, b.breakout, b.mean_reversion) == expected


def test_explicit_behaviors_win_over_legacy_mode():
    filters = normalize_strategy_filters({
        "entryExit": {"entry": {"mode": "trend", "behaviors": {"trend": False, "breakout": True, "meanReversion": False}}}
    })

    assert not filters.behaviors.trend
    assert filters.behaviors.breakout


def test_confidence_control_wins_over_guardrails():
    filters = normalize_strategy_filters({
        "guardrails": {"minConfidence": 0.5},
        "entryExit": {"confidenceControl": {"minConfidence": 0.8}},
    })

    assert filters.min_confidence == 0.8
    assert filters.guardrails.min_confidence == 0.8


def test_guardrails_confidence_used_when_alone():
    filters = normalize_strategy_filters({"guardrails": {"minConfidence": 0.55}})

    assert filters.min_confidence == 0.55


def test_camel_and_snake_case_keys():
    camel = normalize_strategy_filters({"entryExit": {"exit": {"mode": "tp_sl", "takeProfitPct": 2}}})
    snake = normalize_strategy_filters({"entry_exit": {"exit": {"mode": "tp_sl", "take_profit_pct": 2}}})

    assert camel.exit_rules.take_profit_pct == snake.exit_rules.take_profit_pct == 2


def test_invalid_values_raise():
    with pytest.raises(ValidationError):
        normalize_strategy_filters({"risk": {"maxPositionUsd": -5}})
