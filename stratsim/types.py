"""
Shared data structures for the application.
"""
from datetime import date
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

__all__ = ["PriceBar", "Transaction", "ValuePoint", "Metrics", "BacktestResult"]

TransactionType = Literal["buy", "sell", "short", "cover_short"]


class PriceBar(BaseModel):
    """
    One day's OHLCV record for a symbol.

    Open, high and low may be omitted and are back-filled from the close when
    the bar is turned into a frame; a missing volume becomes zero.
    """

    model_config = ConfigDict(frozen=True)

    date: date
    close: float
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    volume: Optional[float] = Field(default=None, ge=0)


class Transaction(BaseModel):
    """
    An executed order. Appended to the ledger once and never changed.
    """

    model_config = ConfigDict(frozen=True)

    date: date
    symbol: str
    type: TransactionType
    price: float
    quantity: float
    amount: float
    amount_type: Optional[str] = None
    amount_value: Optional[float] = None
    position_after: float
    cost_basis_after: float
    condition_details: str

    # Day-trading details, only populated for same-session entries and exits.
    is_day_trading: bool = False
    is_open_entry: bool = False
    is_eod_exit: bool = False
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    profit_loss: Optional[float] = None
    profit_loss_percent: Optional[float] = None


class ValuePoint(BaseModel):
    """Mark-to-market snapshot of the portfolio for one trading date."""

    model_config = ConfigDict(frozen=True)

    date: date
    value: float
    cash: float
    positions: float


class Metrics(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    total_return: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    values_consistent: bool = True


class BacktestResult(BaseModel):
    """
    Outcome of a simulation run.

    When `error` is set the run produced nothing else and the remaining fields
    hold their empty defaults; callers must check it first.
    """

    cash: float = 0.0
    positions: Dict[str, float] = Field(default_factory=dict)
    position_cost: Dict[str, float] = Field(default_factory=dict)
    position_avg_cost: Dict[str, float] = Field(default_factory=dict)
    transactions: List[Transaction] = Field(default_factory=list)
    value_history: List[ValuePoint] = Field(default_factory=list)
    metrics: Metrics = Field(default_factory=Metrics)
    error: Optional[str] = None
