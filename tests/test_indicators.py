"""
Tests for the indicator library.
"""
from typing import List, Optional

import numpy as np
import pandas as pd
import pytest

from stratsim import indicators as ind
from stratsim.bars import prepare_bars


def make_bars(
    closes: List[float],
    opens: Optional[List[float]] = None,
    highs: Optional[List[float]] = None,
    lows: Optional[List[float]] = None,
    volumes: Optional[List[float]] = None,
) -> pd.DataFrame:
    index = pd.bdate_range("2024-01-01", periods=len(closes))
    return prepare_bars(pd.DataFrame(
        {"Open": opens, "High": highs, "Low": lows, "Close": closes, "Volume": volumes},
        index=index,
    ))


def test_sma_needs_full_window() -> None:
    result = ind.sma(make_bars([1, 2, 3, 4, 5]), 3)
    assert result.iloc[:2].isna().all()
    assert result.iloc[2:].tolist() == [2.0, 3.0, 4.0]


def test_ema_is_seeded_with_sma() -> None:
    result = ind.ema(make_bars([1, 2, 3, 4]), 3)
    assert np.isnan(result.iloc[1])
    assert result.iloc[2] == pytest.approx(2.0)
    assert result.iloc[3] == pytest.approx(3.0)


def test_rsi_all_gains_uses_epsilon_loss() -> None:
    """A zero average loss must not divide by zero."""
    result = ind.rsi(make_bars(list(range(1, 17))), 14)
    assert result.iloc[:14].isna().all()
    assert result.iloc[14] == pytest.approx(100 - 100 / (1 + 1 / ind.RS_EPSILON))
    assert np.isfinite(result.iloc[-1])


def test_rsi_short_history_is_all_nan() -> None:
    assert ind.rsi(make_bars([1.0] * 14), 14).isna().all()


def test_macd_signal_aligned_to_valid_macd_values() -> None:
    bars = make_bars([10, 11, 13, 12, 15, 14, 16, 18, 17, 19])
    result = ind.macd(bars, fast_period=3, slow_period=5, signal_period=2)

    assert result["macd"].first_valid_index() == bars.index[4]
    assert result["signal"].first_valid_index() == bars.index[5]
    expected_seed = result["macd"].iloc[4:6].mean()
    assert result["signal"].iloc[5] == pytest.approx(expected_seed)
    pd.testing.assert_series_equal(
        result["histogram"], result["macd"] - result["signal"], check_names=False
    )


def test_vwma_zero_volume_is_nan() -> None:
    bars = make_bars([10, 20, 30], volumes=[1, 1, 2])
    assert ind.vwma(bars, 2).iloc[-1] == pytest.approx((20 + 60) / 3)
    assert np.isnan(ind.vwma(make_bars([10, 20], volumes=[0, 0]), 2).iloc[-1])


def test_bollinger_bands_on_flat_prices() -> None:
    bands = ind.bollinger_bands(make_bars([50.0] * 25), 20)
    last = bands.iloc[-1]
    assert last["upper"] == last["lower"] == last["middle"] == 50.0
    assert last["width"] == 0.0


def test_obv_accumulates_signed_volume() -> None:
    bars = make_bars([10, 11, 10, 10], volumes=[100, 200, 300, 400])
    assert ind.obv(bars).tolist() == [0.0, 200.0, -100.0, -100.0]


def test_obv_divergence_zero_base_counts_as_no_change() -> None:
    bars = make_bars([10, 11, 12], volumes=[100, 100, 100])
    # OBV: 0, 100, 200. Base OBV two bars back is 0 so OBV change is 0%.
    result = ind.obv_divergence(bars, period=2)
    assert result.iloc[-1] == pytest.approx(0 - 20.0)


def test_ma_crossovers_detect_direction() -> None:
    bars = make_bars([10, 10, 9, 12, 8])
    crossed = ind.ma_crossovers(bars, 2)
    assert np.isnan(crossed.iloc[1])
    assert crossed.iloc[3] == 1.0
    assert crossed.iloc[4] == -1.0


def test_atr_constant_range() -> None:
    closes = [100.0] * 20
    bars = make_bars(closes, highs=[101.0] * 20, lows=[99.0] * 20)
    result = ind.atr(bars, 14)
    assert result.iloc[:14].isna().all()
    assert result.iloc[14] == pytest.approx(2.0)
    assert result.iloc[-1] == pytest.approx(2.0)
    assert ind.atr_change(bars, 14, 5).iloc[-1] == pytest.approx(0.0)


def test_mfi_without_negative_flow_is_100() -> None:
    bars = make_bars(list(range(10, 30)), volumes=[1000] * 20)
    assert ind.mfi(bars, 14).iloc[-1] == 100.0


def test_detect_gaps_threshold_and_direction() -> None:
    bars = make_bars([100, 100, 100], opens=[100, 96, 103])
    gaps = ind.detect_gaps(bars, min_percent=1.0)
    assert gaps["gap"].iloc[1] == pytest.approx(-4.0)
    assert gaps["direction"].iloc[1] == "down"
    assert gaps["direction"].iloc[2] == "up"
    assert np.isnan(ind.detect_gaps(bars, min_percent=5.0)["gap"].iloc[1])


def test_detect_day_trading_signals() -> None:
    bars = make_bars([100, 98], opens=[100, 96.5])
    assert bool(ind.detect_day_trading_signals(bars, 3.0, "down")["signal"].iloc[-1])
    assert not bool(ind.detect_day_trading_signals(bars, 3.0, "up")["signal"].iloc[-1])
    assert bool(ind.detect_day_trading_signals(bars, 3.0, "both")["signal"].iloc[-1])
    assert not bool(ind.detect_day_trading_signals(bars, 4.0, "down")["signal"].iloc[-1])


def test_detect_double_bottom() -> None:
    lows = [95.0] * 30
    highs = [96.0] * 30
    closes = [95.5] * 30
    lows[5], lows[17] = 90.0, 90.5
    highs[10] = 98.0
    closes[29], highs[29] = 99.0, 99.5
    bars = make_bars(closes, highs=highs, lows=lows)

    detected = ind.detect_double_bottom(bars, lookback=40, max_variation=3.0)
    assert bool(detected.iloc[29])
    assert not bool(detected.iloc[28])
    # The bottoms differ by about 0.56%.
    assert not bool(ind.detect_double_bottom(bars, lookback=40, max_variation=0.1).iloc[29])


def test_mean_reversion_matches_relative_to_ma() -> None:
    bars = make_bars([10, 12, 14, 13, 18])
    pd.testing.assert_series_equal(ind.mean_reversion(bars, 3), ind.price_relative_to_ma(bars, 3))


def test_latest_handles_empty_and_nan() -> None:
    assert ind.latest(pd.Series(dtype=float)) is None
    assert ind.latest(pd.Series([1.0, np.nan])) is None
    assert ind.latest(pd.Series([1.0, 2.5])) == 2.5
