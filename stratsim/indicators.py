"""
Technical indicators and pattern detectors.

Functions in this module are pure and operate on a single bar DataFrame
('Open', 'High', 'Low', 'Close', 'Volume', chronological). Each returns a
Series or DataFrame aligned to the input index, with NaN for bars that lack
the lookback the indicator needs.
"""
from typing import Optional

import numpy as np
import pandas as pd

__all__ = [
    "sma",
    "ema",
    "rsi",
    "macd",
    "vwma",
    "bollinger_bands",
    "bollinger_width_change",
    "obv",
    "obv_divergence",
    "price_relative_to_ma",
    "ma_crossovers",
    "atr",
    "atr_change",
    "mfi",
    "detect_gaps",
    "detect_day_trading_signals",
    "detect_double_bottom",
    "mean_reversion",
    "latest",
]

RS_EPSILON = 0.001


def _percent_change(current: pd.Series, previous: pd.Series) -> pd.Series:
    """(current - previous) / previous * 100, NaN where previous is zero."""
    return (current - previous) / previous.replace(0, np.nan) * 100


def _ema_values(values: np.ndarray, period: int) -> np.ndarray:
    """EMA seeded with the SMA of the first `period` values."""
    result = np.full(len(values), np.nan)
    if period < 1 or len(values) < period:
        return result
    k = 2 / (period + 1)
    result[period - 1] = values[:period].mean()
    for i in range(period, len(values)):
        result[i] = (values[i] - result[i - 1]) * k + result[i - 1]
    return result


def sma(bars: pd.DataFrame, period: int) -> pd.Series:
    """Arithmetic mean of the trailing `period` closes."""
    return bars["Close"].rolling(window=period, min_periods=period).mean()


def ema(bars: pd.DataFrame, period: int) -> pd.Series:
    """Exponential moving average with k = 2 / (period + 1)."""
    return pd.Series(_ema_values(bars["Close"].to_numpy(dtype=float), period), index=bars.index)


def rsi(bars: pd.DataFrame, period: int = 14) -> pd.Series:
    """
    Relative Strength Index with Wilder smoothing.

    The first value (at bar `period`) averages the first `period` changes;
    later values use avg = (avg * (period - 1) + new) / period. A zero average
    loss is replaced by RS_EPSILON.
    """
    closes = bars["Close"].to_numpy(dtype=float)
    result = np.full(len(closes), np.nan)
    if len(closes) <= period:
        return pd.Series(result, index=bars.index)

    changes = np.diff(closes)
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)

    avg_gain = gains[:period].sum() / period
    avg_loss = losses[:period].sum() / period
    result[period] = 100 - 100 / (1 + avg_gain / (avg_loss or RS_EPSILON))

    for i in range(period + 1, len(closes)):
        avg_gain = (avg_gain * (period - 1) + gains[i - 1]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i - 1]) / period
        result[i] = 100 - 100 / (1 + avg_gain / (avg_loss or RS_EPSILON))

    return pd.Series(result, index=bars.index)


def macd(
    bars: pd.DataFrame, fast_period: int = 12, slow_period: int = 26, signal_period: int = 9
) -> pd.DataFrame:
    """
    MACD line, signal line and histogram.

    The signal line is the EMA of the non-null MACD values only, re-aligned
    onto the bars they came from.
    """
    line = ema(bars, fast_period) - ema(bars, slow_period)

    valid = line.dropna()
    signal = pd.Series(np.nan, index=bars.index)
    signal.loc[valid.index] = _ema_values(valid.to_numpy(dtype=float), signal_period)

    return pd.DataFrame({"macd": line, "signal": signal, "histogram": line - signal}, index=bars.index)


def vwma(bars: pd.DataFrame, period: int) -> pd.Series:
    """Volume-weighted moving average; NaN where the window volume is zero."""
    volume = bars["Volume"].rolling(window=period, min_periods=period).sum()
    weighted = (bars["Close"] * bars["Volume"]).rolling(window=period, min_periods=period).sum()
    return weighted / volume.replace(0, np.nan)


def bollinger_bands(bars: pd.DataFrame, period: int = 20, multiplier: float = 2.0) -> pd.DataFrame:
    """
    Bollinger Bands using the population standard deviation of the window.

    Returns columns 'upper', 'middle', 'lower' and 'width', where width is
    (upper - lower) / middle * 100.
    """
    rolling = bars["Close"].rolling(window=period, min_periods=period)
    middle = rolling.mean()
    band = multiplier * rolling.std(ddof=0)
    upper = middle + band
    lower = middle - band
    width = (upper - lower) / middle.replace(0, np.nan) * 100
    return pd.DataFrame({"upper": upper, "middle": middle, "lower": lower, "width": width})


def bollinger_width_change(
    bars: pd.DataFrame, period: int = 20, multiplier: float = 2.0, lookback: int = 5
) -> pd.Series:
    """Percent change of the band width over `lookback` bars."""
    width = bollinger_bands(bars, period, multiplier)["width"]
    return _percent_change(width, width.shift(lookback))


def obv(bars: pd.DataFrame) -> pd.Series:
    """On-Balance Volume, seeded at 0 on the first bar."""
    direction = np.sign(bars["Close"].diff()).fillna(0.0)
    return (direction * bars["Volume"]).cumsum()


def obv_divergence(bars: pd.DataFrame, period: int = 14) -> pd.Series:
    """
    Percent change in OBV over `period` bars minus the percent change in price.

    A zero starting OBV or price contributes a 0% change.
    """
    obv_values = obv(bars)
    obv_base = obv_values.shift(period)
    obv_pct = ((obv_values - obv_base) / obv_base.abs().replace(0, np.nan) * 100)
    obv_pct = obv_pct.where(obv_base != 0, 0.0).where(obv_base.notna())

    close_base = bars["Close"].shift(period)
    price_pct = _percent_change(bars["Close"], close_base)
    price_pct = price_pct.where(close_base != 0, 0.0).where(close_base.notna())
    return obv_pct - price_pct


def price_relative_to_ma(bars: pd.DataFrame, period: int = 20) -> pd.Series:
    """Percent deviation of the close from its SMA."""
    return _percent_change(bars["Close"], sma(bars, period))


def ma_crossovers(bars: pd.DataFrame, period: int = 20) -> pd.Series:
    """
    +1 where the close crosses above its SMA, -1 where it crosses below, else 0.
    NaN where either bar lacks an SMA value.
    """
    relative = bars["Close"] - sma(bars, period)
    previous = relative.shift(1)
    crossed = pd.Series(0.0, index=bars.index)
    crossed[(previous <= 0) & (relative > 0)] = 1.0
    crossed[(previous >= 0) & (relative < 0)] = -1.0
    return crossed.where(relative.notna() & previous.notna())


def _true_range(bars: pd.DataFrame) -> pd.Series:
    prev_close = bars["Close"].shift(1)
    ranges = pd.concat(
        [
            bars["High"] - bars["Low"],
            (bars["High"] - prev_close).abs(),
            (bars["Low"] - prev_close).abs(),
        ],
        axis=1,
    )
    true_range = ranges.max(axis=1)
    true_range.iloc[:1] = np.nan
    return true_range


def atr(bars: pd.DataFrame, period: int = 14) -> pd.Series:
    """
    Average True Range. The first value (at bar `period`) is the mean of the
    first `period` true ranges; later values use Wilder smoothing.
    """
    true_range = _true_range(bars).to_numpy(dtype=float)
    result = np.full(len(true_range), np.nan)
    if len(true_range) <= period:
        return pd.Series(result, index=bars.index)

    result[period] = true_range[1 : period + 1].mean()
    for i in range(period + 1, len(true_range)):
        result[i] = (result[i - 1] * (period - 1) + true_range[i]) / period
    return pd.Series(result, index=bars.index)


def atr_change(bars: pd.DataFrame, period: int = 14, lookback: int = 5) -> pd.Series:
    """Percent change of ATR over `lookback` bars."""
    values = atr(bars, period)
    return _percent_change(values, values.shift(lookback))


def mfi(bars: pd.DataFrame, period: int = 14) -> pd.Series:
    """
    Money Flow Index. Flows are classified by the direction of the typical
    price versus the prior bar; 100 when there is no negative flow.
    """
    typical = ((bars["High"] + bars["Low"] + bars["Close"]) / 3).to_numpy(dtype=float)
    money_flow = typical * bars["Volume"].to_numpy(dtype=float)
    result = np.full(len(typical), np.nan)

    for i in range(period, len(typical)):
        positive = negative = 0.0
        for j in range(i - period + 1, i + 1):
            if j == 0:
                continue
            if typical[j] > typical[j - 1]:
                positive += money_flow[j]
            elif typical[j] < typical[j - 1]:
                negative += money_flow[j]
        result[i] = 100.0 if negative == 0 else 100 - 100 / (1 + positive / negative)

    return pd.Series(result, index=bars.index)


def detect_gaps(bars: pd.DataFrame, min_percent: float = 1.0) -> pd.DataFrame:
    """
    Overnight gaps: (open - previous close) / previous close * 100.

    Returns columns 'gap' (signed percent, NaN where |gap| < min_percent) and
    'direction' ('up', 'down' or None).
    """
    prev_close = bars["Close"].shift(1)
    gap = _percent_change(bars["Open"], prev_close)
    gap = gap.where(gap.abs() >= min_percent)
    direction = pd.Series(
        np.where(gap > 0, "up", np.where(gap < 0, "down", None)), index=bars.index, dtype=object
    )
    return pd.DataFrame({"gap": gap, "direction": direction})


def detect_day_trading_signals(
    bars: pd.DataFrame, gap_threshold: float = 3.0, gap_direction: str = "down"
) -> pd.DataFrame:
    """
    Day-trading entry signals from opening gaps.

    A bar signals when it opens at least `gap_threshold` percent below
    (direction 'down'), above ('up') or beyond either side ('both') of the
    previous close. Returns columns 'signal' (bool) and 'gap' (signed percent).
    """
    gap = _percent_change(bars["Open"], bars["Close"].shift(1))
    if gap_direction == "up":
        signal = gap >= gap_threshold
    elif gap_direction == "down":
        signal = gap <= -gap_threshold
    else:
        signal = gap.abs() >= gap_threshold
    return pd.DataFrame({"signal": signal.fillna(False).astype(bool), "gap": gap})


def _double_bottom_at(
    lows: np.ndarray, highs: np.ndarray, close: float, start: int, end: int, max_variation: float
) -> bool:
    minima = [
        j for j in range(start + 1, end)
        if lows[j] < lows[j - 1] and lows[j] < lows[j + 1]
    ]
    for a_pos, first in enumerate(minima):
        for second in minima[a_pos + 1:]:
            if second - first < 10:
                continue
            if lows[first] <= 0:
                continue
            variation = abs(lows[second] - lows[first]) / lows[first] * 100
            if variation > max_variation:
                continue
            peak = highs[first + 1 : second].max()
            if peak >= lows[first] * 1.05 and close > peak:
                return True
    return False


def detect_double_bottom(
    bars: pd.DataFrame, lookback: int = 40, max_variation: float = 3.0
) -> pd.Series:
    """
    Double-bottom detection over a trailing window ending at each bar.

    Local minima are lows strictly below both neighbours. A pair of minima at
    least 10 bars apart whose lows differ by at most `max_variation` percent
    qualifies when the highest high between them is at least 5% above the
    first bottom and the current close is above that high.
    """
    lows = bars["Low"].to_numpy(dtype=float)
    highs = bars["High"].to_numpy(dtype=float)
    closes = bars["Close"].to_numpy(dtype=float)

    detected = np.zeros(len(bars), dtype=bool)
    for i in range(len(bars)):
        start = max(0, i - lookback + 1)
        detected[i] = _double_bottom_at(lows, highs, closes[i], start, i, max_variation)
    return pd.Series(detected, index=bars.index)


def mean_reversion(bars: pd.DataFrame, period: int = 20) -> pd.Series:
    """Percent deviation of the close from SMA(period)."""
    return price_relative_to_ma(bars, period)


def latest(series: pd.Series) -> Optional[float]:
    """Last value of a series, or None when it is empty or NaN."""
    if series.empty:
        return None
    value = series.iloc[-1]
    return None if pd.isna(value) else float(value)
