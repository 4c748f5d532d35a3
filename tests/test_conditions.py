"""
Tests for condition evaluation.
"""
from typing import List, Optional

import pandas as pd
import pytest
from pytest_mock import MockerFixture

from stratsim.bars import prepare_bars
from stratsim.conditions import (
    ConditionContext,
    check_consecutive,
    check_operator,
    evaluate,
    is_day_trading,
    required_history,
    resolve_pattern,
)
from stratsim.strategy import (
    ConsecutiveCondition,
    PatternCondition,
    SimpleCondition,
    TechnicalCondition,
)


def make_bars(
    closes: List[float], opens: Optional[List[float]] = None, volumes: Optional[List[float]] = None
) -> pd.DataFrame:
    index = pd.bdate_range("2024-01-01", periods=len(closes))
    return prepare_bars(pd.DataFrame({"Open": opens, "Close": closes, "Volume": volumes}, index=index))


@pytest.mark.parametrize(
    "value, operator, threshold, expected",
    [
        (5, "greater_than", 4, True),
        (4, "greater_than", 4, False),
        (4, "greater_than_equal", 4, True),
        (3, "less_than", 4, True),
        (4, "less_than_equal", 4, True),
        (4, "equal", 4, True),
        (4.1, "equal", 4, False),
        (4, "between", 4, False),
        (None, "less_than", 4, False),
    ],
)
def test_check_operator(value, operator: str, threshold: float, expected: bool) -> None:
    assert check_operator(value, operator, threshold) is expected


def test_consecutive_boundaries() -> None:
    assert not check_consecutive(make_bars([10, 11]), 3, "up")
    assert check_consecutive(make_bars([10, 11, 12]), 3, "up")
    assert not check_consecutive(make_bars([10, 12, 11]), 3, "up")


def test_consecutive_only_examines_trailing_window() -> None:
    bars = make_bars([20, 5, 10, 11, 12])
    assert check_consecutive(bars, 3, "up")
    assert not check_consecutive(bars, 5, "up")


def test_consecutive_down_and_unchanged() -> None:
    assert check_consecutive(make_bars([12, 11, 10]), 3, "down")
    assert check_consecutive(make_bars([7, 7, 7]), 3, "unchanged")
    assert not check_consecutive(make_bars([7, 7, 7.01]), 3, "unchanged")


def test_evaluate_consecutive_without_history_is_false() -> None:
    assert not evaluate(ConsecutiveCondition(days=2, direction="up"), ConditionContext())


def test_evaluate_simple_uses_value() -> None:
    condition = SimpleCondition(metric="percent_change", operator="less_than", value=-5)
    assert evaluate(condition, ConditionContext(value=-6.0))
    assert not evaluate(condition, ConditionContext(value=-5.0))
    assert not evaluate(condition, ConditionContext(value=None))


def test_resolve_pattern_table() -> None:
    gap = resolve_pattern(PatternCondition(pattern="gap_down"))
    assert gap.indicator == "gap"
    assert gap.params == {"direction": "down", "threshold": 1.0, "valueType": "event"}
    assert (gap.operator, gap.value) == ("equal", 1)

    day_trade = resolve_pattern(PatternCondition(pattern="day_trade_gap_any", threshold=2.5))
    assert day_trade.indicator == "day_trading_signal"
    assert day_trade.params == {"gapDirection": "both", "gapThreshold": 2.5}

    obv = resolve_pattern(PatternCondition(pattern="obv_positive_divergence"))
    assert obv.params == {"valueType": "divergence", "direction": "positive", "period": 14}

    assert resolve_pattern(PatternCondition(pattern="head_and_shoulders")) is None


def test_unmapped_pattern_is_false() -> None:
    history = make_bars([10, 11, 12])
    assert not evaluate(PatternCondition(pattern="double_top"), ConditionContext(history=history))


def test_gap_patterns() -> None:
    history = make_bars([100, 100], opens=[100, 96])
    context = ConditionContext(history=history)
    assert evaluate(PatternCondition(pattern="gap_down"), context)
    assert not evaluate(PatternCondition(pattern="gap_up"), context)
    assert not evaluate(PatternCondition(pattern="gap_down", threshold=5), context)


def test_day_trade_pattern() -> None:
    history = make_bars([100, 98], opens=[100, 96.5])
    condition = PatternCondition(pattern="day_trade_gap_down", threshold=3)
    assert evaluate(condition, ConditionContext(history=history))
    assert is_day_trading(condition)
    assert not is_day_trading(PatternCondition(pattern="gap_down"))
    assert not is_day_trading(SimpleCondition())


def test_technical_gap_scalar_compares_signed_percent() -> None:
    history = make_bars([100, 100], opens=[100, 96])
    condition = TechnicalCondition(indicator="gap", operator="less_than", value=-3)
    assert evaluate(condition, ConditionContext(history=history))


def test_unknown_indicator_is_false() -> None:
    history = make_bars(list(range(1, 50)))
    condition = TechnicalCondition(indicator="ichimoku", operator="greater_than", value=0)
    assert not evaluate(condition, ConditionContext(history=history))


def test_rsi_threshold() -> None:
    history = make_bars([float(x) for x in range(1, 30)])
    overbought = TechnicalCondition(indicator="rsi", operator="greater_than", value=70, params={"period": 14})
    assert evaluate(overbought, ConditionContext(history=history))


def test_undefined_indicator_value_is_false() -> None:
    """RSI is NaN with too little data; a NaN reading never compares as zero."""
    history = make_bars([10.0, 11.0, 12.0])
    condition = TechnicalCondition(indicator="rsi", operator="less_than", value=1000)
    assert not evaluate(condition, ConditionContext(history=history))


def test_bbands_percent_b_flat_prices() -> None:
    history = make_bars([50.0] * 25)
    condition = TechnicalCondition(
        indicator="bbands", operator="equal", value=0.5, params={"valueType": "percent_b"}
    )
    assert evaluate(condition, ConditionContext(history=history))


def test_volume_change() -> None:
    condition = TechnicalCondition(indicator="volume_change", operator="greater_than", value=40)
    assert evaluate(condition, ConditionContext(history=make_bars([10, 10], volumes=[100, 150])))
    assert not evaluate(condition, ConditionContext(history=make_bars([10, 10], volumes=[0, 150])))


def test_macd_crossover_is_an_event(mocker: MockerFixture) -> None:
    history = make_bars([10.0] * 40)
    mocker.patch(
        "stratsim.conditions.ind.macd",
        return_value=pd.DataFrame(
            {"macd": [0.0, 0.0], "signal": [0.0, 0.0], "histogram": [-0.2, 0.3]},
            index=history.index[-2:],
        ),
    )
    bullish = TechnicalCondition(
        indicator="macd",
        operator="less_than",
        value=-100,
        params={"valueType": "crossover", "direction": "bullish"},
    )
    bearish = bullish.model_copy(update={"params": {"valueType": "crossover", "direction": "bearish"}})

    assert evaluate(bullish, ConditionContext(history=history))
    assert not evaluate(bearish, ConditionContext(history=history))


def test_atr_percent() -> None:
    history = prepare_bars(pd.DataFrame(
        {"High": [101.0] * 20, "Low": [99.0] * 20, "Close": [100.0] * 20},
        index=pd.bdate_range("2024-01-01", periods=20),
    ))
    condition = TechnicalCondition(
        indicator="atr", operator="greater_than", value=1.99, params={"percent": True}
    )
    assert evaluate(condition, ConditionContext(history=history))


def test_required_history() -> None:
    assert required_history(TechnicalCondition(indicator="rsi")) == 28
    assert required_history(TechnicalCondition(indicator="rsi", params={"period": 5})) == 10
    assert required_history(TechnicalCondition(indicator="macd")) == 36
    assert required_history(TechnicalCondition(indicator="bbands")) == 25
    assert required_history(TechnicalCondition(indicator="obv")) == 5
    assert required_history(TechnicalCondition(indicator="volume_change")) == 2
    assert required_history(TechnicalCondition(indicator="ichimoku")) == 200
