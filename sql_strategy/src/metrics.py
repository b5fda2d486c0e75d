"""
Risk/return metrics over an equity curve.

All functions return ``nan`` instead of raising when a ratio is undefined
(zero variance, zero elapsed time, non-positive starting equity); callers
decide how to report that.
"""

from __future__ import annotations

import math
from typing import Optional

import numpy as np
import pandas as pd

from .settings import DAYS_PER_YEAR, TRADING_DAYS_PER_YEAR

__all__ = [
    "per_step_returns",
    "max_drawdown",
    "cagr",
    "sharpe_ratio",
]


def per_step_returns(equity: pd.Series, start_equity: Optional[float] = None) -> pd.Series:
    """
    Simple returns between consecutive equity values.

    The first step is measured against ``start_equity`` when given, otherwise it
    is dropped.
    """
    equity = equity.astype(float)
    prev = equity.shift(1)
    if start_equity is not None and len(equity):
        prev.iloc[0] = float(start_equity)
    with np.errstate(divide="ignore", invalid="ignore"):
        rets = equity / prev - 1.0
    return rets.replace([np.inf, -np.inf], np.nan).dropna()


def max_drawdown(equity: pd.Series, start_equity: Optional[float] = None) -> float:
    """
    Largest peak-to-trough decline as a fraction (<= 0), e.g. -0.25 for -25%.
    """
    if len(equity) == 0:
        return float("nan")
    peak = equity.astype(float).cummax()
    if start_equity is not None:
        peak = peak.clip(lower=float(start_equity))
    with np.errstate(divide="ignore", invalid="ignore"):
        drawdown = equity / peak - 1.0
    drawdown = drawdown.replace([np.inf, -np.inf], np.nan)
    return float(drawdown.min()) if drawdown.notna().any() else float("nan")


def cagr(start_equity: float, end_equity: float, first_date, last_date, days_per_year: float = DAYS_PER_YEAR) -> float:
    """
    Compound annual growth rate between two equity values.

    Parameters
    ----------
    start_equity, end_equity : float
        Equity at the start and end of the period.
    first_date, last_date : date-like
        Calendar span of the period.
    days_per_year : float, default 365.25
    """
    try:
        days = (pd.Timestamp(last_date) - pd.Timestamp(first_date)).total_seconds() / 86400.0
    except (TypeError, ValueError):
        return float("nan")
    if days <= 0 or not start_equity or start_equity <= 0 or end_equity is None or end_equity < 0:
        return float("nan")
    with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
        growth = np.power(np.float64(end_equity) / np.float64(start_equity), days_per_year / days) - 1.0
    return float(growth) if math.isfinite(growth) else float("nan")


def sharpe_ratio(returns: pd.Series, periods_per_year: int = TRADING_DAYS_PER_YEAR) -> float:
    """Annualized mean/std of per-step returns (population std, no risk-free rate)."""
    rets = returns.dropna()
    if len(rets) < 2:
        return float("nan")
    std = float(rets.std(ddof=0))
    if not math.isfinite(std) or std == 0.0:
        return float("nan")
    return float(rets.mean() / std * math.sqrt(periods_per_year))
