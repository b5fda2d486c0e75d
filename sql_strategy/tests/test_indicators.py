# tests/test_indicators.py

import numpy as np
import pandas as pd
import pytest

from conftest import binary, func, ident, num, strategy_dict
from sql_strategy.src.indicators import atr, rsi, sma, true_range
from sql_strategy.src.signals import generate_signals
from sql_strategy.src.validator import validate


def test_sma_basic():
    s = pd.Series([1, 2, 3, 4, 5], dtype=float)
    out = sma(s, 3)
    assert np.isnan(out.iloc[0]) and np.isnan(out.iloc[1])
    assert out.iloc[2] == pytest.approx(2.0)
    assert out.iloc[4] == pytest.approx(4.0)


def test_rsi_warmup_and_values():
    s = pd.Series([10, 11, 10, 12, 12], dtype=float)
    out = rsi(s, 2)
    # deltas: nan, +1, -1, +2, 0
    assert out.iloc[:2].isna().all()
    assert out.iloc[2] == pytest.approx(50.0)
    assert out.iloc[3] == pytest.approx(100 - 100 / (1 + 2 / 1))
    assert out.iloc[4] == pytest.approx(100.0)


def test_rsi_is_100_without_losses():
    out = rsi(pd.Series(np.arange(1, 21), dtype=float), 14)
    assert out.iloc[:14].isna().all()
    assert (out.iloc[14:] == 100.0).all()


def test_true_range_and_atr():
    high = pd.Series([11, 12, 15], dtype=float)
    low = pd.Series([9, 10, 13], dtype=float)
    close = pd.Series([10, 11, 14], dtype=float)
    tr = true_range(high, low, close)
    assert list(tr) == [2.0, 2.0, 4.0]
    out = atr(high, low, close, 2)
    assert np.isnan(out.iloc[0])
    assert list(out.iloc[1:]) == [2.0, 3.0]


def test_generate_signals_treats_missing_as_false(make_bars):
    bars = make_bars([1.0, 2.0, 3.0, 4.0])
    strategy = validate(strategy_dict(
        binary(">", ident("close"), func("ma", 3)),
        binary("<", ident("close"), num(2.5)),
    ))
    signals = generate_signals(strategy, bars)
    assert list(signals.columns) == ["date", "open", "close", "entry", "exit"]
    assert list(signals["entry"]) == [0, 0, 1, 1]
    assert list(signals["exit"]) == [1, 1, 0, 0]
