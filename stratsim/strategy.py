"""
Strategy description models and normalization.

A strategy arrives as a loosely structured dictionary (usually produced by an
upstream language model). `normalize_strategy` coerces it into the typed models
below, filling conservative defaults instead of rejecting the input.
"""
import json
import logging
import math
import re
from datetime import date
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

__all__ = [
    "SimpleCondition",
    "ConsecutiveCondition",
    "PatternCondition",
    "TechnicalCondition",
    "Condition",
    "AmountRule",
    "StrategyAction",
    "Universe",
    "TimeRange",
    "Strategy",
    "normalize_strategy",
    "load_strategy",
]

log = logging.getLogger(__name__)


# §1. Conditions
# --------------------------------------------------------------------------------------


class SimpleCondition(BaseModel):
    """Threshold on a single per-bar value (percent change, price or volume)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["simple"] = "simple"
    metric: Literal["percent_change", "price", "volume"] = "percent_change"
    operator: str = "less_than"
    value: float = 5.0


class ConsecutiveCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["consecutive"] = "consecutive"
    days: int = Field(default=3, ge=1)
    direction: Literal["up", "down", "unchanged"] = "up"


class PatternCondition(BaseModel):
    """Named chart pattern, resolved to a technical condition at evaluation time."""

    model_config = ConfigDict(frozen=True)

    type: Literal["pattern"] = "pattern"
    pattern: str
    threshold: Optional[float] = None
    period: Optional[int] = None
    params: Dict[str, Any] = Field(default_factory=dict)


class TechnicalCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["technical"] = "technical"
    indicator: str
    operator: str = "less_than"
    value: float = 30.0
    params: Dict[str, Any] = Field(default_factory=dict)


Condition = Annotated[
    Union[SimpleCondition, ConsecutiveCondition, PatternCondition, TechnicalCondition],
    Field(discriminator="type"),
]


# §2. Actions and the Strategy
# --------------------------------------------------------------------------------------


class AmountRule(BaseModel):
    """
    Order sizing rule. `value` may be missing; the amount calculator
    substitutes a type-appropriate default in that case.
    """

    model_config = ConfigDict(frozen=True)

    type: str = "fixed_amount"
    value: Optional[float] = None


class StrategyAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["buy", "sell", "short"]
    condition: Condition
    timeframe: Literal["daily", "weekly", "monthly"] = "daily"
    amount: Optional[AmountRule] = None


class Universe(BaseModel):
    categories: List[str] = Field(default_factory=lambda: ["blue_chip", "penny_stock"])
    count: int = 10


class TimeRange(BaseModel):
    start: int = 2010
    end: int = Field(default_factory=lambda: date.today().year)


class Strategy(BaseModel):
    actions: List[StrategyAction]
    universe: Universe = Field(default_factory=Universe)
    time_range: TimeRange = Field(default_factory=TimeRange)


# §3. Normalization
# --------------------------------------------------------------------------------------

_AMOUNT_TYPES = {"fixed_amount", "percentage", "shares"}

# Defaults applied to technical indicator params when the caller omits them.
_TECHNICAL_PARAM_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "rsi": {"period": 14},
    "macd": {"fastPeriod": 12, "slowPeriod": 26, "signalPeriod": 9, "valueType": "histogram"},
    "ma_relative": {"period": 20},
    "bbands": {"period": 20, "multiplier": 2.0, "valueType": "percent_b"},
    "atr": {"period": 14},
    "mfi": {"period": 14},
}


def _get(mapping: Any, *keys: str) -> Any:
    """First present key among case variants, or None."""
    if not isinstance(mapping, dict):
        return None
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return None


def _to_float(raw: Any) -> Optional[float]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return None if math.isnan(raw) else float(raw)
    if isinstance(raw, str):
        match = re.match(r"\s*[-+]?\d*\.?\d+", raw)
        if match:
            return float(match.group())
    return None


def _to_int(raw: Any) -> Optional[int]:
    value = _to_float(raw)
    return int(value) if value and value >= 1 else None


def _or_default(value: Optional[float], default: float) -> float:
    return default if value is None else value


def _normalize_amount(raw: Any) -> AmountRule:
    raw_type = _get(raw, "type", "Type")
    if raw_type == "fixed":
        raw_type = "fixed_amount"
    amount_type = raw_type if raw_type in _AMOUNT_TYPES else "fixed_amount"

    value = _to_float(_get(raw, "value", "Value"))
    if value is None:
        value = {"percentage": 5.0, "shares": 10.0}.get(raw_type, 100.0)
    return AmountRule(type=amount_type, value=value)


def _normalize_technical_params(indicator: str, params: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(params)
    for key, default in _TECHNICAL_PARAM_DEFAULTS.get(indicator, {}).items():
        if isinstance(default, str):
            merged[key] = merged.get(key) or default
        elif isinstance(default, int):
            merged[key] = _to_int(merged.get(key)) or default
        else:
            merged[key] = _to_float(merged.get(key)) or default

    if indicator == "macd" and merged.get("valueType") == "crossover":
        merged["direction"] = merged.get("direction") or "bullish"
    if indicator == "obv":
        merged["slope"] = merged.get("slope") is True
    if indicator == "atr":
        merged["percent"] = merged.get("percent") is True
    return merged


def _normalize_condition(raw: Any) -> Condition:
    raw = raw if isinstance(raw, dict) else {}
    condition_type = _get(raw, "type", "Type")

    if condition_type == "consecutive":
        direction = _get(raw, "direction", "Direction")
        return ConsecutiveCondition(
            days=_to_int(_get(raw, "days", "Days")) or 3,
            direction=direction if direction in ("up", "down", "unchanged") else "up",
        )

    if condition_type == "pattern":
        return PatternCondition(
            pattern=_get(raw, "pattern", "Pattern") or "double_top",
            threshold=_to_float(raw.get("threshold")),
            period=_to_int(raw.get("period")),
            params=raw.get("params") or {},
        )

    if condition_type == "technical":
        indicator = raw.get("indicator") or "rsi"
        return TechnicalCondition(
            indicator=indicator,
            operator=raw.get("operator") or "less_than",
            value=_or_default(_to_float(raw.get("value")), 30.0),
            params=_normalize_technical_params(indicator, raw.get("params") or {}),
        )

    metric = _get(raw, "metric", "Metric")
    return SimpleCondition(
        metric=metric if metric in ("percent_change", "price", "volume") else "percent_change",
        operator=_get(raw, "operator", "Operator") or "less_than",
        value=_or_default(_to_float(_get(raw, "value", "Value")), 5.0),
    )


def _normalize_action(raw: Dict[str, Any]) -> StrategyAction:
    action_type = _get(raw, "type", "Type")
    timeframe = _get(raw, "timeframe", "Timeframe")
    return StrategyAction(
        type=action_type if action_type in ("sell", "short") else "buy",
        condition=_normalize_condition(_get(raw, "condition", "Condition")),
        timeframe=timeframe if timeframe in ("daily", "weekly", "monthly") else "weekly",
        amount=_normalize_amount(_get(raw, "amount", "Amount")),
    )


def _default_actions(description: Optional[str]) -> List[StrategyAction]:
    """Fallback actions for a strategy that arrived with none."""
    text = (description or "").lower()
    if "consecutive" in text and "days" in text and "row" in text:
        days_match = re.search(r"(\d+)\s+days", text)
        direction = "down" if ("goes down" in text or "decreases" in text) else "up"
        return [
            StrategyAction(
                type="buy" if "buy" in text else "sell",
                condition=ConsecutiveCondition(
                    days=int(days_match.group(1)) if days_match else 3,
                    direction=direction,
                ),
                timeframe="daily",
                amount=AmountRule(type="fixed_amount", value=100.0),
            )
        ]

    return [
        StrategyAction(
            type="buy",
            condition=SimpleCondition(metric="percent_change", operator="less_than", value=-5.0),
            timeframe="weekly",
            amount=AmountRule(type="fixed_amount", value=5.0),
        ),
        StrategyAction(
            type="sell",
            condition=SimpleCondition(metric="percent_change", operator="greater_than", value=10.0),
            timeframe="weekly",
            amount=AmountRule(type="fixed_amount", value=10.0),
        ),
    ]


def normalize_strategy(raw: Dict[str, Any]) -> Optional[Strategy]:
    """
    Coerces a loosely structured strategy dictionary into a `Strategy`.

    Accepts both lower-case and capitalized keys. Returns None only when the
    input is not a mapping or no actions could be produced.
    """
    if not isinstance(raw, dict):
        return None

    raw_actions = _get(raw, "actions", "Actions")
    if isinstance(raw_actions, list):
        actions = [_normalize_action(a) for a in raw_actions if isinstance(a, dict)]
    else:
        actions = _default_actions(raw.get("_original_description"))

    if not actions:
        return None

    # Universe and time range are only set when given, so callers can tell
    # an explicit universe from the default via `model_fields_set`.
    fields: Dict[str, Any] = {}
    raw_universe = _get(raw, "universe", "Universe")
    categories = _get(raw_universe, "categories", "Categories")
    if categories:
        if isinstance(categories, str):
            categories = [categories]
        fields["universe"] = Universe(
            categories=[str(c) for c in categories],
            count=_to_int(_get(raw_universe, "count", "Count")) or 10,
        )

    raw_range = _get(raw, "timeRange", "TimeRange", "time_range")
    if isinstance(raw_range, dict):
        fields["time_range"] = TimeRange(
            start=_to_int(_get(raw_range, "start", "Start")) or 2010,
            end=_to_int(_get(raw_range, "end", "End")) or date.today().year,
        )

    return Strategy(actions=actions, **fields)


# impure
def load_strategy(strategy_path: Path) -> Strategy:
    """
    Reads a JSON or YAML strategy file and normalizes it.
    #impure: Reads from the filesystem.
    """
    if not strategy_path.is_file():
        raise FileNotFoundError(f"Strategy file not found: {strategy_path}")

    text = strategy_path.read_text(encoding="utf-8")
    try:
        if strategy_path.suffix.lower() == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValueError(f"Invalid strategy syntax in {strategy_path}: {e}") from e

    # A file may wrap the strategy under a top-level "strategy" key.
    if isinstance(raw, dict) and isinstance(raw.get("strategy"), dict):
        raw = raw["strategy"]

    try:
        strategy = normalize_strategy(raw)
    except ValidationError as e:
        raise ValueError(f"Strategy validation failed for {strategy_path}: {e}") from e

    if strategy is None:
        raise ValueError(f"Could not extract any actions from {strategy_path}")
    log.info(f"Loaded strategy with {len(strategy.actions)} actions from {strategy_path}")
    return strategy
