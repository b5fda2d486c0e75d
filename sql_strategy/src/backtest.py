"""
In-process backtest over per-bar signal rows.

Assumptions (identical to the SQL pipeline in ``sql_assembler``):
- Long-only, at most one open position; no pyramiding.
- Entries trigger on the rising edge of the entry signal while flat; exits on
  a later rising edge of the exit signal.
- ``close`` timing fills at the signal bar's close, ``next_open`` at the next
  bar's open. Exits fill at the exit bar's close.
- Slippage is a flat basis-point cost against each fill; the whole equity is
  invested on entry.

The output rows have the same ``type``-tagged shape the compiled query
returns, so ``interpreter.interpret`` handles both.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Union

import numpy as np
import pandas as pd

from .metrics import max_drawdown
from .settings import DEFAULT_CASH, DEFAULT_SLIPPAGE_BP


@dataclass
class Trade:
    entry_date: Any
    exit_date: Any
    qty: float
    entry_price: float
    exit_price: float
    pnl: float
    return_pct: float


def _iso(value) -> str:
    return pd.Timestamp(value).strftime("%Y-%m-%d")


def rising_edges(signal: pd.Series) -> pd.Series:
    """True where ``signal`` goes from false (or missing) to true."""
    s = signal.map(lambda v: bool(v) if pd.notna(v) else False).astype(bool)
    return s & ~s.shift(1, fill_value=False)


def simulate(
    signal_rows: Union[pd.DataFrame, Iterable[Dict[str, Any]]],
    timing: str = "next_open",
    cash: float = DEFAULT_CASH,
    slippage_bp: float = DEFAULT_SLIPPAGE_BP,
) -> List[Dict[str, Any]]:
    """
    Execute a long-only backtest over signal rows.

    Parameters
    ----------
    signal_rows : DataFrame or iterable of dicts
        One row per bar with ``date``, ``open``, ``close``, ``entry``, ``exit``.
    timing : {"next_open", "close"}
        Entry fill timing.
    cash : float
        Starting equity.
    slippage_bp : float
        One-way slippage in basis points applied to every fill.

    Returns
    -------
    list of dict
        ``metrics`` / ``equity_point`` / ``trade_log`` rows; empty for empty input.
    """
    frame = signal_rows if isinstance(signal_rows, pd.DataFrame) else pd.DataFrame(list(signal_rows))
    if frame.empty:
        return []
    frame = frame.sort_values("date").reset_index(drop=True)

    entry_edge = rising_edges(frame["entry"]).to_numpy()
    exit_edge = rising_edges(frame["exit"]).to_numpy()
    prev_entry_edge = np.concatenate([[False], entry_edge[:-1]])
    opens = frame["open"].astype(float).to_numpy()
    closes = frame["close"].astype(float).to_numpy()
    dates = [_iso(d) for d in frame["date"]]

    buy = 1.0 + slippage_bp / 10000.0
    sell = 1.0 - slippage_bp / 10000.0

    position = 0
    qty = 0.0
    free_cash = float(cash)
    entry_date = None
    entry_price = None
    exited_prev = False
    trades: List[Trade] = []
    equity: List[float] = []

    for i in range(len(frame)):
        close_price = closes[i]
        if timing == "close":
            enter = position == 0 and entry_edge[i]
            fill = close_price * buy
        else:
            enter = position == 0 and not exited_prev and prev_entry_edge[i]
            fill = opens[i] * buy
        leave = position == 1 and exit_edge[i]
        exited_prev = False

        if enter:
            qty = free_cash / fill if fill else float("nan")
            free_cash = 0.0
            position = 1
            entry_date = dates[i]
            entry_price = fill
            equity.append(qty * close_price)
        elif leave:
            exit_price = close_price * sell
            trades.append(Trade(
                entry_date=entry_date,
                exit_date=dates[i],
                qty=qty,
                entry_price=float(entry_price),
                exit_price=float(exit_price),
                pnl=float(qty * (exit_price - entry_price)),
                return_pct=float((exit_price - entry_price) / entry_price) if entry_price else float("nan"),
            ))
            free_cash = qty * exit_price
            qty = 0.0
            position = 0
            exited_prev = True
            equity.append(free_cash)
        elif position == 1:
            equity.append(qty * close_price)
        else:
            equity.append(free_cash)

    equity_series = pd.Series(equity, index=pd.to_datetime(dates), dtype=float)

    rows: List[Dict[str, Any]] = [{
        "type": "metrics",
        "cagr": None,
        "maxDd": max_drawdown(equity_series, float(cash)),
        "sharpe": None,
        "startEquity": float(cash),
        "endEquity": equity[-1],
        "steps": len(equity),
        "firstDate": dates[0],
        "lastDate": dates[-1],
    }]
    rows.extend({"type": "equity_point", "date": d, "equity": e} for d, e in zip(dates, equity))
    for n, t in enumerate(trades, start=1):
        rows.append({
            "type": "trade_log",
            "id": n,
            "entryDate": t.entry_date,
            "exitDate": t.exit_date,
            "qty": t.qty,
            "entryPx": t.entry_price,
            "exitPx": t.exit_price,
            "slippageBp": float(slippage_bp),
            "pnl": t.pnl,
            "pnlPct": t.return_pct,
            "duration": int((pd.Timestamp(t.exit_date) - pd.Timestamp(t.entry_date)).days),
        })
    return rows
