"""
Pandas implementations of the strategy indicators.

These mirror the SQL fragments built by ``sql_indicators`` bar for bar and are
used by the in-process evaluator (``signals.generate_signals``) and to
cross-check the compiled query.

Currently supported:
- SMA (Simple Moving Average)
- RSI (Relative Strength Index, simple rolling sums)
- ATR (Average True Range, simple rolling mean)
"""

from __future__ import annotations

import numpy as np
import pandas as pd

__all__ = [
    "sma",
    "rsi",
    "true_range",
    "atr",
]


def sma(series: pd.Series, window: int) -> pd.Series:
    """
    Simple Moving Average (SMA).

    Parameters
    ----------
    series : pd.Series
        Input price/volume series.
    window : int
        Lookback window length.

    Returns
    -------
    pd.Series
        Rolling mean with the given window. The first (window-1) values are NaN.
    """
    return series.astype(float).rolling(window=window, min_periods=window).mean()


def rsi(series: pd.Series, window: int = 14) -> pd.Series:
    """
    Relative Strength Index (RSI) from rolling sums of close-to-close changes.

    Parameters
    ----------
    series : pd.Series
        Input price series (typically close).
    window : int, default 14
        Number of price changes in each window.

    Returns
    -------
    pd.Series
        RSI values in the range [0, 100]. NaN until ``window`` changes exist;
        100 wherever the window has no losses.
    """
    delta = series.astype(float).diff()

    gain = delta.clip(lower=0)
    loss = -delta.clip(upper=0)

    sum_gain = gain.rolling(window=window, min_periods=window).sum()
    sum_loss = loss.rolling(window=window, min_periods=window).sum()

    with np.errstate(divide="ignore", invalid="ignore"):
        rsi_series = 100.0 - 100.0 / (1.0 + sum_gain / sum_loss)
    rsi_series = rsi_series.where(sum_loss != 0, 100.0)
    return rsi_series.where(sum_loss.notna())


def true_range(high: pd.Series, low: pd.Series, close: pd.Series) -> pd.Series:
    """Per-bar true range; the first bar (no previous close) is high - low."""
    prev_close = close.astype(float).shift(1)
    ranges = pd.concat(
        [high - low, (high - prev_close).abs(), (low - prev_close).abs()],
        axis=1,
    )
    return ranges.max(axis=1, skipna=True).astype(float)


def atr(high: pd.Series, low: pd.Series, close: pd.Series, window: int = 14) -> pd.Series:
    """
    Average True Range (ATR) as a simple rolling mean of ``true_range``.

    The first (window-1) values are NaN.
    """
    return true_range(high, low, close).rolling(window=window, min_periods=window).mean()
