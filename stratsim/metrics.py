"""
Performance metrics and reconciliation.

This module summarizes a finished simulation: total return, maximum
drawdown and Sharpe ratio of the value history, plus a bottom-up
reconciliation of the final portfolio value against the ledger.
"""
import logging
from typing import Dict, List

import numpy as np
import pandas as pd

from stratsim.types import Metrics, Transaction, ValuePoint

__all__ = [
    "TRADING_DAYS_PER_YEAR",
    "value_series",
    "total_return",
    "max_drawdown",
    "sharpe_ratio",
    "average_costs",
    "reconcile",
    "calculate_metrics",
]

log = logging.getLogger(__name__)

TRADING_DAYS_PER_YEAR = 252


def value_series(value_history: List[ValuePoint]) -> pd.Series:
    """Portfolio values indexed by date."""
    return pd.Series(
        [p.value for p in value_history],
        index=pd.DatetimeIndex([pd.Timestamp(p.date) for p in value_history], name="date"),
        dtype=float,
    )


def total_return(final_value: float, initial_cash: float) -> float:
    """(final - initial) / initial * 100; 0 for a non-positive initial value."""
    if initial_cash <= 0:
        return 0.0
    return (final_value - initial_cash) / initial_cash * 100


def max_drawdown(values: pd.Series, initial_cash: float) -> float:
    """
    Largest peak-to-trough decline in percent.

    The running peak starts at the initial cash, so a portfolio that only
    loses value from the first day still reports a drawdown.
    """
    if values.empty:
        return 0.0
    peak = values.cummax().clip(lower=initial_cash)
    drawdown = ((peak - values) / peak.replace(0, np.nan) * 100).fillna(0.0)
    return float(drawdown.max())


def sharpe_ratio(values: pd.Series) -> float:
    """
    Annualized Sharpe ratio of simple daily returns (zero risk-free rate).

    Uses the population standard deviation. Returns 0 when there are fewer
    than two points or the returns have no dispersion.
    """
    if len(values) < 2:
        return 0.0
    returns = values.pct_change().iloc[1:].replace([np.inf, -np.inf], np.nan).dropna()
    if returns.empty:
        return 0.0
    std = returns.std(ddof=0)
    if std == 0 or pd.isna(std):
        return 0.0
    return float(returns.mean() / std * np.sqrt(TRADING_DAYS_PER_YEAR))


def average_costs(positions: Dict[str, float], position_cost: Dict[str, float]) -> Dict[str, float]:
    """|cost basis| / |quantity| for every symbol with a non-zero position."""
    return {
        symbol: abs(position_cost.get(symbol, 0.0)) / abs(quantity)
        for symbol, quantity in positions.items()
        if quantity != 0
    }


def reconcile(
    cash: float,
    positions: Dict[str, float],
    transactions: List[Transaction],
    final_value: float,
    tolerance: float = 0.01,
) -> bool:
    """
    Recomputes the portfolio value from cash and the last traded price of
    each held symbol and compares it with the tracked final value.
    """
    last_price: Dict[str, float] = {}
    for tx in transactions:
        last_price[tx.symbol] = tx.price

    recomputed = cash + sum(qty * last_price.get(symbol, 0.0) for symbol, qty in positions.items())
    difference = abs(final_value - recomputed)
    if difference > tolerance:
        log.warning(
            f"Portfolio value mismatch: tracked {final_value:.2f}, "
            f"recomputed {recomputed:.2f} (diff {difference:.4f})"
        )
        return False
    return True


def calculate_metrics(
    value_history: List[ValuePoint],
    cash: float,
    positions: Dict[str, float],
    transactions: List[Transaction],
    initial_cash: float,
    tolerance: float = 0.01,
) -> Metrics:
    """Single pass over the finished run."""
    if not value_history:
        return Metrics()

    values = value_series(value_history)
    final_value = value_history[-1].value
    return Metrics(
        start_date=value_history[0].date,
        end_date=value_history[-1].date,
        total_return=total_return(final_value, initial_cash),
        max_drawdown=max_drawdown(values, initial_cash),
        sharpe_ratio=sharpe_ratio(values),
        values_consistent=reconcile(cash, positions, transactions, final_value, tolerance),
    )
