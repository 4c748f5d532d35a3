"""
Price-bar frame preparation.

Every consumer downstream of this module works on a DataFrame with a
tz-naive, normalized, ascending DatetimeIndex and the columns
'Open', 'High', 'Low', 'Close', 'Volume'.
"""
from typing import Any, Iterable, Mapping, Union

import numpy as np
import pandas as pd

from stratsim.types import PriceBar

__all__ = ["OHLCV", "prepare_bars"]

OHLCV = ["Open", "High", "Low", "Close", "Volume"]

BarsLike = Union[pd.DataFrame, Iterable[Union[PriceBar, Mapping[str, Any]]]]


def _frame_from_records(bars: Iterable[Union[PriceBar, Mapping[str, Any]]]) -> pd.DataFrame:
    records = []
    for bar in bars:
        if isinstance(bar, PriceBar):
            bar = bar.model_dump()
        records.append({
            "date": bar.get("date"),
            "Open": bar.get("open"),
            "High": bar.get("high"),
            "Low": bar.get("low"),
            "Close": bar.get("close"),
            "Volume": bar.get("volume"),
        })
    if not records:
        return pd.DataFrame(columns=OHLCV, index=pd.DatetimeIndex([], name="date"))
    return pd.DataFrame.from_records(records).set_index("date")


def prepare_bars(bars: BarsLike) -> pd.DataFrame:
    """
    Validates and back-fills a bar series.

    - Open falls back to Close (and Close to Open when only that exists).
    - High/Low fall back to the max/min of Open and Close.
    - Volume defaults to 0.
    Rows with neither an open nor a close are dropped. Duplicate dates keep
    the last row.

    Args:
        bars: A DataFrame indexed by date with OHLCV columns (either case), or
              an iterable of PriceBar objects / mappings with lower-case keys.

    Returns:
        A new DataFrame with exactly the OHLCV columns, sorted by date.
    """
    if isinstance(bars, pd.DataFrame):
        df = bars.rename(columns={c: str(c).capitalize() for c in bars.columns}).copy()
    else:
        df = _frame_from_records(bars)

    for col in OHLCV:
        if col not in df.columns:
            df[col] = np.nan
    df = df[OHLCV].apply(pd.to_numeric, errors="coerce").astype(float)

    df["Open"] = df["Open"].fillna(df["Close"])
    df["Close"] = df["Close"].fillna(df["Open"])
    df = df.dropna(subset=["Close"])

    df["High"] = df["High"].fillna(df[["Open", "Close"]].max(axis=1))
    df["Low"] = df["Low"].fillna(df[["Open", "Close"]].min(axis=1))
    df["Volume"] = df["Volume"].fillna(0.0)

    index = pd.DatetimeIndex(pd.to_datetime(df.index))
    if index.tz is not None:
        index = index.tz_localize(None)
    df.index = index.normalize()
    df.index.name = "date"

    df = df[~df.index.duplicated(keep="last")]
    return df.sort_index()
