"""
Condition evaluation.

`evaluate` answers "is this trade trigger active" for one condition against
either a single value (simple conditions) or a window of recent bars
(consecutive, pattern and technical conditions). Insufficient data and
undefined indicator values always evaluate to False, never to an error.
"""
import logging
from typing import Any, Callable, Dict, NamedTuple, Optional, Tuple, Union

import numpy as np
import pandas as pd

from stratsim import indicators as ind
from stratsim.strategy import (
    Condition,
    ConsecutiveCondition,
    PatternCondition,
    SimpleCondition,
    TechnicalCondition,
    _to_float,
    _to_int,
)

__all__ = [
    "ConditionContext",
    "IndicatorSpec",
    "INDICATORS",
    "PATTERN_TABLE",
    "DAY_TRADE_PATTERNS",
    "evaluate",
    "check_operator",
    "check_consecutive",
    "resolve_pattern",
    "required_history",
    "is_day_trading",
]

log = logging.getLogger(__name__)

# A computed indicator reading: a bool for event-style indicators
# (crossovers, detectors), a float for threshold comparison, or None when
# the indicator is undefined for the latest bar.
Reading = Union[bool, float, None]

UNKNOWN_INDICATOR_HISTORY = 200


class ConditionContext(NamedTuple):
    value: Optional[float] = None
    history: Optional[pd.DataFrame] = None


# §1. Simple and consecutive conditions
# --------------------------------------------------------------------------------------


def check_operator(value: Optional[float], operator: str, threshold: float) -> bool:
    """Compares value against threshold; unknown operators and missing values are False."""
    if value is None or pd.isna(value):
        return False
    if operator == "greater_than":
        return value > threshold
    if operator == "greater_than_equal":
        return value >= threshold
    if operator == "less_than":
        return value < threshold
    if operator == "less_than_equal":
        return value <= threshold
    if operator == "equal":
        return value == threshold
    log.debug(f"Unknown operator '{operator}'")
    return False


def check_consecutive(history: Optional[pd.DataFrame], days: int, direction: str) -> bool:
    """
    True when the last `days` closes move strictly up, strictly down, or stay
    exactly equal, bar over bar.
    """
    if history is None or len(history) < days:
        log.debug(f"Consecutive check needs {days} bars, have {0 if history is None else len(history)}")
        return False

    closes = history["Close"].to_numpy(dtype=float)[-days:]
    steps = np.diff(closes)
    if direction == "up":
        return bool((steps > 0).all())
    if direction == "down":
        return bool((steps < 0).all())
    if direction == "unchanged":
        return bool((steps == 0).all())
    return False


# §2. Technical indicator registry
# --------------------------------------------------------------------------------------


def _period(params: Dict[str, Any], key: str, default: int) -> int:
    """Reads a window length; anything unparseable or below 1 falls back to the default."""
    return _to_int(params.get(key)) or default


def _number(params: Dict[str, Any], key: str, default: float) -> float:
    return _to_float(params.get(key)) or default


def _rsi(history: pd.DataFrame, params: Dict[str, Any]) -> Reading:
    return ind.latest(ind.rsi(history, _period(params, "period", 14)))


def _macd(history: pd.DataFrame, params: Dict[str, Any]) -> Reading:
    result = ind.macd(
        history,
        _period(params, "fastPeriod", 12),
        _period(params, "slowPeriod", 26),
        _period(params, "signalPeriod", 9),
    )
    value_type = params.get("valueType") or "histogram"
    if value_type in ("line", "signal", "histogram"):
        column = "macd" if value_type == "line" else value_type
        return ind.latest(result[column])

    if value_type == "crossover":
        if len(result) < 2:
            return False
        current, previous = result["histogram"].iloc[-1], result["histogram"].iloc[-2]
        if pd.isna(current) or pd.isna(previous):
            return False
        if params.get("direction") == "bullish":
            return bool(previous < 0 < current)
        if params.get("direction") == "bearish":
            return bool(previous > 0 > current)
    return None


def _ma_relative(history: pd.DataFrame, params: Dict[str, Any]) -> Reading:
    period = _period(params, "period", 20)
    direction = params.get("direction")
    if params.get("valueType") == "crossover" and direction in ("bullish", "bearish"):
        crossed = ind.latest(ind.ma_crossovers(history, period))
        return crossed == (1.0 if direction == "bullish" else -1.0)
    return ind.latest(ind.price_relative_to_ma(history, period))


def _bbands(history: pd.DataFrame, params: Dict[str, Any]) -> Reading:
    period = _period(params, "period", 20)
    multiplier = _number(params, "multiplier", 2.0)
    value_type = params.get("valueType") or "percent_b"

    if value_type == "width_change":
        lookback = _period(params, "lookback", 5)
        return ind.latest(ind.bollinger_width_change(history, period, multiplier, lookback))

    bands = ind.bollinger_bands(history, period, multiplier)
    if value_type in ("upper", "lower", "width"):
        return ind.latest(bands[value_type])
    if value_type == "percent_b":
        upper, lower = ind.latest(bands["upper"]), ind.latest(bands["lower"])
        if upper is None or lower is None:
            return None
        if upper == lower:
            return 0.5
        return (float(history["Close"].iloc[-1]) - lower) / (upper - lower)
    return None


def _volume_change(history: pd.DataFrame, params: Dict[str, Any]) -> Reading:
    if len(history) < 2:
        return False
    current, previous = history["Volume"].iloc[-1], history["Volume"].iloc[-2]
    if previous == 0:
        return False
    return float((current - previous) / previous * 100)


def _obv(history: pd.DataFrame, params: Dict[str, Any]) -> Reading:
    value_type = params.get("valueType") or ("slope" if params.get("slope") is True else "value")

    if value_type == "value":
        return ind.latest(ind.obv(history))

    if value_type == "slope":
        values = ind.obv(history)
        if len(values) < 2 or values.iloc[-2] == 0:
            return None
        return float((values.iloc[-1] - values.iloc[-2]) / abs(values.iloc[-2]) * 100)

    if value_type == "divergence":
        divergence = ind.latest(ind.obv_divergence(history, _period(params, "period", 14)))
        direction = params.get("direction")
        if direction == "positive":
            return divergence is not None and divergence > 0
        if direction == "negative":
            return divergence is not None and divergence < 0
        return divergence
    return None


def _atr(history: pd.DataFrame, params: Dict[str, Any]) -> Reading:
    period = _period(params, "period", 14)
    value_type = params.get("valueType") or "value"

    if value_type == "change":
        return ind.latest(ind.atr_change(history, period, _period(params, "lookback", 5)))
    if value_type != "value":
        return None

    value = ind.latest(ind.atr(history, period))
    if value is not None and params.get("percent") is True:
        close = float(history["Close"].iloc[-1])
        return value / close * 100 if close else None
    return value


def _mfi(history: pd.DataFrame, params: Dict[str, Any]) -> Reading:
    return ind.latest(ind.mfi(history, _period(params, "period", 14)))


def _gap(history: pd.DataFrame, params: Dict[str, Any]) -> Reading:
    gaps = ind.detect_gaps(history, _number(params, "threshold", 1.0))
    gap, gap_direction = gaps["gap"].iloc[-1], gaps["direction"].iloc[-1]
    if pd.isna(gap):
        return False

    wanted = params.get("direction")
    matches = wanted not in ("up", "down") or wanted == gap_direction
    if params.get("valueType") == "event":
        return matches
    return float(gap) if matches else None


def _double_bottom(history: pd.DataFrame, params: Dict[str, Any]) -> Reading:
    detected = ind.detect_double_bottom(
        history,
        lookback=_period(params, "lookback", 40),
        max_variation=_number(params, "variation", 3.0),
    )
    return bool(detected.iloc[-1])


def _mean_reversion(history: pd.DataFrame, params: Dict[str, Any]) -> Reading:
    return ind.latest(ind.mean_reversion(history, _period(params, "period", 20)))


def _day_trading_signal(history: pd.DataFrame, params: Dict[str, Any]) -> Reading:
    signals = ind.detect_day_trading_signals(
        history,
        gap_threshold=_number(params, "gapThreshold", 3.0),
        gap_direction=params.get("gapDirection") or "down",
    )
    fired = bool(signals["signal"].iloc[-1])
    if fired:
        log.debug(f"Day-trading gap of {signals['gap'].iloc[-1]:.2f}% detected")
    return fired


class IndicatorSpec(NamedTuple):
    compute: Callable[[pd.DataFrame, Dict[str, Any]], Reading]
    # Bars of history required before the indicator is evaluated at all.
    min_history: Callable[[Dict[str, Any]], int]


INDICATORS: Dict[str, IndicatorSpec] = {
    "rsi": IndicatorSpec(_rsi, lambda p: _period(p, "period", 14) * 2),
    "macd": IndicatorSpec(
        _macd, lambda p: max(_period(p, "fastPeriod", 12), _period(p, "slowPeriod", 26)) + 10
    ),
    "ma_relative": IndicatorSpec(_ma_relative, lambda p: _period(p, "period", 20) + 5),
    "bbands": IndicatorSpec(_bbands, lambda p: _period(p, "period", 20) + 5),
    "volume_change": IndicatorSpec(_volume_change, lambda p: 2),
    "obv": IndicatorSpec(_obv, lambda p: 5),
    "atr": IndicatorSpec(_atr, lambda p: _period(p, "period", 14) + 5),
    "mfi": IndicatorSpec(_mfi, lambda p: _period(p, "period", 14) + 5),
    "gap": IndicatorSpec(_gap, lambda p: 2),
    "double_bottom": IndicatorSpec(_double_bottom, lambda p: 15),
    "mean_reversion": IndicatorSpec(_mean_reversion, lambda p: _period(p, "period", 20) + 5),
    "day_trading_signal": IndicatorSpec(_day_trading_signal, lambda p: 2),
}


def required_history(condition: TechnicalCondition) -> int:
    """Minimum number of bars before a technical condition may be evaluated."""
    spec = INDICATORS.get(condition.indicator)
    if spec is None:
        return UNKNOWN_INDICATOR_HISTORY
    return spec.min_history(condition.params)


def _evaluate_technical(condition: TechnicalCondition, history: Optional[pd.DataFrame]) -> bool:
    spec = INDICATORS.get(condition.indicator)
    if spec is None:
        log.debug(f"Unknown indicator '{condition.indicator}'")
        return False
    if history is None or history.empty:
        return False

    reading = spec.compute(history, condition.params)
    if isinstance(reading, (bool, np.bool_)):
        return bool(reading)
    if reading is None or pd.isna(reading):
        log.debug(f"{condition.indicator} is undefined for the latest bar")
        return False
    return check_operator(reading, condition.operator, condition.value)


# §3. Pattern resolution
# --------------------------------------------------------------------------------------


def _gap_pattern(direction: str) -> Callable[[PatternCondition], Tuple[str, Dict[str, Any]]]:
    return lambda c: (
        "gap", {"direction": direction, "threshold": c.threshold or 1.0, "valueType": "event"}
    )


def _day_trade_pattern(direction: str) -> Callable[[PatternCondition], Tuple[str, Dict[str, Any]]]:
    return lambda c: (
        "day_trading_signal", {"gapDirection": direction, "gapThreshold": c.threshold or 3.0}
    )


def _obv_pattern(direction: str) -> Callable[[PatternCondition], Tuple[str, Dict[str, Any]]]:
    return lambda c: (
        "obv", {"valueType": "divergence", "direction": direction, "period": c.period or 14}
    )


PATTERN_TABLE: Dict[str, Callable[[PatternCondition], Tuple[str, Dict[str, Any]]]] = {
    "double_bottom": lambda c: ("double_bottom", dict(c.params)),
    "gap_down": _gap_pattern("down"),
    "gap_up": _gap_pattern("up"),
    "day_trade_gap_down": _day_trade_pattern("down"),
    "day_trade_gap_up": _day_trade_pattern("up"),
    "day_trade_gap_any": _day_trade_pattern("both"),
    "obv_positive_divergence": _obv_pattern("positive"),
    "obv_negative_divergence": _obv_pattern("negative"),
}

DAY_TRADE_PATTERNS = frozenset({"day_trade_gap_down", "day_trade_gap_up", "day_trade_gap_any"})


def resolve_pattern(condition: PatternCondition) -> Optional[TechnicalCondition]:
    """Maps a named pattern onto its technical condition, or None if unmapped."""
    builder = PATTERN_TABLE.get(condition.pattern)
    if builder is None:
        return None
    indicator, params = builder(condition)
    return TechnicalCondition(indicator=indicator, operator="equal", value=1, params=params)


def is_day_trading(condition: Condition) -> bool:
    """Whether a condition enters at the open and flattens at the close."""
    return isinstance(condition, PatternCondition) and condition.pattern in DAY_TRADE_PATTERNS


# §4. Entry point
# --------------------------------------------------------------------------------------


def evaluate(condition: Condition, context: ConditionContext) -> bool:
    """
    Evaluates a condition.

    Args:
        condition: Any condition variant.
        context: `value` for simple conditions; `history` (recent bars,
                 oldest first, current bar last) for all others.

    Returns:
        True when the trigger is active.
    """
    if isinstance(condition, ConsecutiveCondition):
        return check_consecutive(context.history, condition.days, condition.direction)

    if isinstance(condition, PatternCondition):
        technical = resolve_pattern(condition)
        if technical is None:
            log.debug(f"Pattern '{condition.pattern}' is not implemented")
            return False
        return _evaluate_technical(technical, context.history)

    if isinstance(condition, TechnicalCondition):
        return _evaluate_technical(condition, context.history)

    if isinstance(condition, SimpleCondition):
        return check_operator(context.value, condition.operator, condition.value)

    return False
