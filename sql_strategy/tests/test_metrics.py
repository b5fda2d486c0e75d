# tests/test_metrics.py

import math

import pandas as pd
import pytest

from sql_strategy.src.metrics import cagr, max_drawdown, per_step_returns, sharpe_ratio


def _equity(values, start="2024-01-01"):
    return pd.Series(values, index=pd.date_range(start, periods=len(values), freq="D"), dtype=float)


def test_max_drawdown_peak_to_trough():
    eq = _equity([100, 120, 90, 130, 117])
    assert max_drawdown(eq) == pytest.approx(90 / 120 - 1)


def test_max_drawdown_counts_loss_from_start_equity():
    eq = _equity([90, 95])
    assert max_drawdown(eq) == pytest.approx(0.0)
    assert max_drawdown(eq, start_equity=100) == pytest.approx(-0.1)


def test_max_drawdown_empty_is_nan():
    assert math.isnan(max_drawdown(pd.Series([], dtype=float)))


def test_cagr_one_year_doubling():
    assert cagr(100, 200, "2023-01-01", "2024-01-01", days_per_year=365) == pytest.approx(1.0)


def test_cagr_undefined_cases():
    assert math.isnan(cagr(100, 120, "2024-01-01", "2024-01-01"))
    assert math.isnan(cagr(0, 120, "2024-01-01", "2024-02-01"))


def test_per_step_returns_with_start():
    eq = _equity([110, 121])
    rets = per_step_returns(eq, start_equity=100)
    assert list(rets.round(10)) == [0.1, 0.1]
    assert len(per_step_returns(eq)) == 1


def test_sharpe_constant_returns_is_nan():
    assert math.isnan(sharpe_ratio(pd.Series([0.25, 0.25, 0.25])))
    assert math.isnan(sharpe_ratio(pd.Series([0.01])))


def test_sharpe_uses_population_std():
    rets = pd.Series([0.01, -0.01, 0.02, 0.0])
    expected = rets.mean() / rets.std(ddof=0) * math.sqrt(252)
    assert sharpe_ratio(rets) == pytest.approx(expected)
