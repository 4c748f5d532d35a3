"""
Portfolio ledger and simulation loop.

`run_backtest` replays every trading date in order. For each date it marks
the portfolio to market, records one ValuePoint, evaluates each strategy
action for each symbol with a bar on that date, executes triggered orders,
and finally flattens any same-day (day-trading) entries at the close.

All mutation is scoped to one `Portfolio` instance per call; the function
is deterministic for a given strategy and bar set.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Mapping, NamedTuple, Optional

import pandas as pd

from stratsim.amounts import OrderSize, resolve_amount
from stratsim.bars import BarsLike, prepare_bars
from stratsim.conditions import (
    INDICATORS,
    ConditionContext,
    evaluate,
    is_day_trading,
    required_history,
    resolve_pattern,
)
from stratsim.config import EngineConfig
from stratsim.metrics import average_costs, calculate_metrics
from stratsim.strategy import (
    Condition,
    PatternCondition,
    SimpleCondition,
    Strategy,
    StrategyAction,
    TechnicalCondition,
)
from stratsim.types import BacktestResult, Transaction, ValuePoint

__all__ = [
    "NO_DATA_ERROR",
    "Portfolio",
    "DayTradeEntry",
    "execute_buy",
    "execute_sell",
    "execute_short",
    "close_day_trades",
    "run_backtest",
]

log = logging.getLogger(__name__)

NO_DATA_ERROR = "No trading data available"
EOD_EXIT_DETAILS = json.dumps({"type": "day_trading_eod_exit"})


# §1. Portfolio state and order execution
# --------------------------------------------------------------------------------------


class DayTradeEntry(NamedTuple):
    entry_date: date
    entry_price: float
    quantity: float
    action_type: str


@dataclass
class Portfolio:
    """Mutable simulation state. Not shared between runs."""
    cash: float
    positions: Dict[str, float] = field(default_factory=dict)
    position_cost: Dict[str, float] = field(default_factory=dict)
    transactions: List[Transaction] = field(default_factory=list)
    value_history: List[ValuePoint] = field(default_factory=list)
    day_trades: Dict[str, DayTradeEntry] = field(default_factory=dict)
    # Last close seen per symbol, used to value positions on dates the
    # symbol has no bar.
    marks: Dict[str, float] = field(default_factory=dict)

    def position(self, symbol: str) -> float:
        return self.positions.get(symbol, 0.0)

    def cost(self, symbol: str) -> float:
        return self.position_cost.get(symbol, 0.0)


def _amount_fields(action: StrategyAction) -> dict:
    if action.amount is None:
        return {"amount_type": None, "amount_value": None}
    return {"amount_type": action.amount.type, "amount_value": action.amount.value}


def execute_buy(
    portfolio: Portfolio,
    symbol: str,
    day: date,
    price: float,
    size: OrderSize,
    action: StrategyAction,
    day_trade: bool = False,
) -> Optional[Transaction]:
    """
    Buys `size` at `price`, covering a short first if one is open.

    Skipped (returns None) when cash does not cover the order; there is no
    partial fill.
    """
    if portfolio.cash < size.dollars:
        log.debug(
            f"{day} {symbol}: insufficient cash (${portfolio.cash:.2f}) "
            f"to buy ${size.dollars:.2f}; order skipped"
        )
        return None

    current = portfolio.position(symbol)
    cost = portfolio.cost(symbol)
    if current < 0:
        cover_ratio = min(1.0, size.shares / abs(current))
        cost *= 1 - cover_ratio
    else:
        cost += size.dollars

    portfolio.positions[symbol] = current + size.shares
    portfolio.position_cost[symbol] = cost
    portfolio.cash -= size.dollars

    tx = Transaction(
        date=day,
        symbol=symbol,
        type="cover_short" if current < 0 else "buy",
        price=price,
        quantity=size.shares,
        amount=size.shares * price if day_trade else size.dollars,
        **_amount_fields(action),
        position_after=portfolio.positions[symbol],
        cost_basis_after=cost,
        condition_details=action.condition.model_dump_json(),
        is_day_trading=day_trade,
        is_open_entry=day_trade,
    )
    portfolio.transactions.append(tx)

    if day_trade:
        portfolio.day_trades[symbol] = DayTradeEntry(day, price, size.shares, action.type)
        log.debug(f"{day} {symbol}: day-trade entry at open ${price:.2f}, flat at close")
    return tx


def execute_sell(
    portfolio: Portfolio,
    symbol: str,
    day: date,
    price: float,
    size: OrderSize,
    action: StrategyAction,
) -> Transaction:
    """
    Sells at `price`, reducing a long or opening/extending a short.

    Dollar and percentage sells are capped at the value of an open long;
    share sells are capped at the long quantity. With no long position the
    sell is uncapped and builds a short.
    """
    current = portfolio.position(symbol)
    rule_type = action.amount.type if action.amount is not None else None

    if rule_type == "shares":
        quantity = min(size.shares, current) if current > 0 else size.shares
        proceeds = quantity * price
    elif current > 0:
        proceeds = min(size.dollars, current * price)
        quantity = proceeds / price if price > 0 else 0.0
    else:
        proceeds = size.dollars
        quantity = size.shares

    cost = portfolio.cost(symbol)
    if current > 0:
        cost -= cost * min(1.0, quantity / current)
    else:
        cost -= proceeds

    portfolio.positions[symbol] = current - quantity
    portfolio.position_cost[symbol] = cost
    portfolio.cash += proceeds

    tx = Transaction(
        date=day,
        symbol=symbol,
        type="sell" if current > 0 else "short",
        price=price,
        quantity=quantity,
        amount=proceeds,
        **_amount_fields(action),
        position_after=portfolio.positions[symbol],
        cost_basis_after=cost,
        condition_details=action.condition.model_dump_json(),
    )
    portfolio.transactions.append(tx)

    if symbol in portfolio.day_trades and portfolio.positions[symbol] <= 0:
        log.debug(f"{day} {symbol}: day-trade position sold before the close")
        del portfolio.day_trades[symbol]
    return tx


def execute_short(
    portfolio: Portfolio,
    symbol: str,
    day: date,
    price: float,
    size: OrderSize,
    action: StrategyAction,
) -> Transaction:
    """Opens or extends a short by `size`. Always executes."""
    portfolio.positions[symbol] = portfolio.position(symbol) - size.shares
    portfolio.position_cost[symbol] = portfolio.cost(symbol) - size.dollars
    portfolio.cash += size.dollars

    tx = Transaction(
        date=day,
        symbol=symbol,
        type="short",
        price=price,
        quantity=size.shares,
        amount=size.dollars,
        **_amount_fields(action),
        position_after=portfolio.positions[symbol],
        cost_basis_after=portfolio.position_cost[symbol],
        condition_details=action.condition.model_dump_json(),
    )
    portfolio.transactions.append(tx)
    return tx


def close_day_trades(portfolio: Portfolio, day: date, closes: Mapping[str, float]) -> List[Transaction]:
    """
    Sells the whole position of every symbol entered as a day trade on `day`
    at that day's close.
    """
    exits = []
    for symbol in [s for s, e in portfolio.day_trades.items() if e.entry_date == day]:
        entry = portfolio.day_trades.pop(symbol)
        quantity = portfolio.position(symbol)
        if quantity <= 0 or symbol not in closes:
            continue

        close = closes[symbol]
        proceeds = quantity * close
        entry_value = entry.quantity * entry.entry_price
        profit_loss = proceeds - entry_value
        profit_loss_percent = profit_loss / entry_value * 100 if entry_value else 0.0

        portfolio.positions[symbol] = 0.0
        portfolio.position_cost[symbol] = 0.0
        portfolio.cash += proceeds

        tx = Transaction(
            date=day,
            symbol=symbol,
            type="sell",
            price=close,
            quantity=quantity,
            amount=proceeds,
            amount_type="percentage",
            amount_value=100.0,
            position_after=0.0,
            cost_basis_after=0.0,
            condition_details=EOD_EXIT_DETAILS,
            is_day_trading=True,
            is_eod_exit=True,
            entry_price=entry.entry_price,
            exit_price=close,
            profit_loss=profit_loss,
            profit_loss_percent=profit_loss_percent,
        )
        portfolio.transactions.append(tx)
        exits.append(tx)
        log.debug(
            f"{day} {symbol}: day-trade exit at ${close:.2f}, "
            f"P&L ${profit_loss:.2f} ({profit_loss_percent:.2f}%)"
        )
    return exits


# §2. Per-symbol bar access
# --------------------------------------------------------------------------------------


class _SymbolBars:
    """Prepared bars for one symbol with O(1) date lookup."""

    def __init__(self, frame: pd.DataFrame):
        self.frame = frame
        self.opens = frame["Open"].to_numpy(dtype=float)
        self.closes = frame["Close"].to_numpy(dtype=float)
        self.volumes = frame["Volume"].to_numpy(dtype=float)
        self._positions = {ts: i for i, ts in enumerate(frame.index)}

    def locate(self, ts: pd.Timestamp) -> Optional[int]:
        return self._positions.get(ts)

    def close_on(self, ts: pd.Timestamp) -> Optional[float]:
        i = self.locate(ts)
        return None if i is None else float(self.closes[i])

    def history(self, i: int, window: int) -> pd.DataFrame:
        """Up to `window` bars ending at (and including) bar `i`."""
        return self.frame.iloc[max(0, i + 1 - window) : i + 1]


def _percent_change(current: float, previous: float) -> float:
    if previous == 0:
        return 0.0
    return (current - previous) / previous * 100


def _lookback_change(
    bars: _SymbolBars, trading_dates: List[pd.Timestamp], idx: int, lookback: int, close: float
) -> Optional[float]:
    """Change versus this symbol's bar `lookback` trading dates back, if it has one."""
    if idx < lookback:
        return None
    past = bars.close_on(trading_dates[idx - lookback])
    return None if past is None else _percent_change(close, past)


def _is_week_boundary(ts: pd.Timestamp, prev: pd.Timestamp) -> bool:
    return ts.year != prev.year or ts.isocalendar()[1] != prev.isocalendar()[1]


def _is_month_boundary(ts: pd.Timestamp, prev: pd.Timestamp) -> bool:
    return ts.year != prev.year or ts.month != prev.month


# §3. Simulation loop
# --------------------------------------------------------------------------------------


class _BarContext(NamedTuple):
    """What the action loop knows about one symbol on one date."""
    open: float
    close: float
    volume: float
    history: pd.DataFrame
    daily_change: float
    weekly_change: Optional[float]
    monthly_change: Optional[float]
    week_boundary: bool
    month_boundary: bool


def _condition_window(condition: Condition, base: int) -> int:
    """Bars one condition sees: the configured window, widened to its indicator's need."""
    if isinstance(condition, PatternCondition):
        condition = resolve_pattern(condition)
    if isinstance(condition, TechnicalCondition) and condition.indicator in INDICATORS:
        return max(base, required_history(condition))
    return base


def _history_window(strategy: Strategy, settings: EngineConfig) -> int:
    """The widest window any action needs; each condition is then sliced to its own."""
    return max(
        [settings.history_window]
        + [_condition_window(a.condition, settings.history_window) for a in strategy.actions]
    )


def _is_due(action: StrategyAction, ctx: _BarContext) -> bool:
    if action.timeframe == "weekly":
        return ctx.week_boundary and ctx.weekly_change is not None
    if action.timeframe == "monthly":
        return ctx.month_boundary and ctx.monthly_change is not None
    return True


def _condition_met(action: StrategyAction, ctx: _BarContext, base_window: int) -> bool:
    condition = action.condition

    if isinstance(condition, SimpleCondition):
        if condition.metric == "price":
            value = ctx.close
        elif condition.metric == "volume":
            value = ctx.volume
        elif action.timeframe == "weekly":
            value = ctx.weekly_change
        elif action.timeframe == "monthly":
            value = ctx.monthly_change
        else:
            value = ctx.daily_change
        return evaluate(condition, ConditionContext(value=value))

    if isinstance(condition, TechnicalCondition):
        needed = required_history(condition)
        if len(ctx.history) < needed:
            log.debug(
                f"{condition.indicator}: insufficient data ({len(ctx.history)} of {needed} bars)"
            )
            return False

    history = ctx.history.iloc[-_condition_window(condition, base_window) :]
    return evaluate(condition, ConditionContext(history=history))


def _execute(
    portfolio: Portfolio,
    symbol: str,
    day: date,
    action: StrategyAction,
    ctx: _BarContext,
    portfolio_value: float,
) -> Optional[Transaction]:
    day_trade = is_day_trading(action.condition)
    # Day-trading entries size and fill at the open.
    price = (ctx.open or ctx.close) if day_trade else ctx.close
    size = resolve_amount(action.amount, portfolio_value, price)

    if action.type == "buy":
        return execute_buy(portfolio, symbol, day, price, size, action, day_trade)
    if action.type == "sell":
        return execute_sell(portfolio, symbol, day, ctx.close, size, action)
    return execute_short(portfolio, symbol, day, ctx.close, size, action)


def _mark_to_market(
    portfolio: Portfolio, symbols: Mapping[str, _SymbolBars], ts: pd.Timestamp, tolerance: float
) -> ValuePoint:
    total_value = portfolio.cash
    positions_value = 0.0
    for symbol, quantity in portfolio.positions.items():
        close = symbols[symbol].close_on(ts)
        if close is None:
            close = portfolio.marks.get(symbol)
        if close is None:
            continue
        total_value += quantity * close
        positions_value += quantity * close

    expected = portfolio.cash + positions_value
    if abs(expected - total_value) > tolerance:
        log.warning(
            f"{ts.date()}: portfolio value drift, tracked {total_value:.2f} "
            f"vs cash + positions {expected:.2f}; using the latter"
        )
        total_value = expected

    return ValuePoint(date=ts.date(), value=total_value, cash=portfolio.cash, positions=positions_value)


def run_backtest(
    strategy: Strategy,
    stock_data: Mapping[str, BarsLike],
    settings: Optional[EngineConfig] = None,
) -> BacktestResult:
    """
    Simulates a strategy over historical bars.

    Args:
        strategy: The normalized strategy; only its actions are used.
        stock_data: Bars per symbol, as DataFrames or sequences of PriceBar.
                    Symbols are processed in the mapping's order each date.
        settings: Engine settings; defaults to `EngineConfig()`.

    Returns:
        A BacktestResult, or one with only `error` set when there are no
        trading dates at all.
    """
    settings = settings or EngineConfig()
    symbols = {symbol: _SymbolBars(prepare_bars(bars)) for symbol, bars in stock_data.items()}
    trading_dates: List[pd.Timestamp] = sorted(
        set().union(*(bars.frame.index for bars in symbols.values()))
    )
    if not trading_dates:
        log.warning("No bars for any symbol; nothing to simulate")
        return BacktestResult(error=NO_DATA_ERROR)

    window = _history_window(strategy, settings)
    portfolio = Portfolio(cash=settings.initial_cash)
    log.debug(f"Simulating {len(trading_dates)} trading dates, history window {window}")

    for idx, ts in enumerate(trading_dates):
        day = ts.date()
        point = _mark_to_market(portfolio, symbols, ts, settings.consistency_tolerance)
        portfolio.value_history.append(point)

        closes: Dict[str, float] = {}
        for symbol, bars in symbols.items():
            i = bars.locate(ts)
            if i is None:
                continue
            close = float(bars.closes[i])
            closes[symbol] = close

            prev = trading_dates[idx - 1] if idx > 0 else None
            prev_close = bars.close_on(prev) if prev is not None else None
            if prev_close is None:
                portfolio.marks[symbol] = close
                continue

            ctx = _BarContext(
                open=float(bars.opens[i]),
                close=close,
                volume=float(bars.volumes[i]),
                history=bars.history(i, window),
                daily_change=_percent_change(close, prev_close),
                weekly_change=_lookback_change(bars, trading_dates, idx, settings.week_lookback, close),
                monthly_change=_lookback_change(bars, trading_dates, idx, settings.month_lookback, close),
                week_boundary=_is_week_boundary(ts, prev),
                month_boundary=_is_month_boundary(ts, prev),
            )
            for action in strategy.actions:
                if _is_due(action, ctx) and _condition_met(action, ctx, settings.history_window):
                    _execute(portfolio, symbol, day, action, ctx, point.value)
            portfolio.marks[symbol] = close

        close_day_trades(portfolio, day, closes)

    metrics = calculate_metrics(
        portfolio.value_history,
        portfolio.cash,
        portfolio.positions,
        portfolio.transactions,
        settings.initial_cash,
        settings.consistency_tolerance,
    )
    log.info(
        f"Backtest finished: {len(portfolio.transactions)} transactions over "
        f"{len(trading_dates)} dates, total return {metrics.total_return:.2f}%"
    )
    return BacktestResult(
        cash=portfolio.cash,
        positions=dict(portfolio.positions),
        position_cost=dict(portfolio.position_cost),
        position_avg_cost=average_costs(portfolio.positions, portfolio.position_cost),
        transactions=list(portfolio.transactions),
        value_history=list(portfolio.value_history),
        metrics=metrics,
    )
