"""
Result-side interpreter: raw engine rows → ``BacktestResult``.

Rows are split by their ``type`` discriminator (``metrics``, ``equity_point``,
``trade_log``). Metrics the query leaves NULL (CAGR and Sharpe need math
functions not every engine has) are derived here from the equity curve.
Degenerate values and inconsistent trades become warnings; a missing metrics
row for a non-empty row-set is fatal.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from . import metrics as m
from .errors import ResultShapeError

logger = logging.getLogger(__name__)

ROW_KINDS = ("metrics", "equity_point", "trade_log")


@dataclass
class Metrics:
    cagr: Optional[float]
    max_dd: Optional[float]
    sharpe: Optional[float]

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {"cagr": self.cagr, "maxDd": self.max_dd, "sharpe": self.sharpe}


@dataclass
class EquityPoint:
    date: str
    equity: float


@dataclass
class TradeRow:
    id: int
    code: Optional[str]
    side: str
    entry_date: Optional[str]
    exit_date: Optional[str]
    qty: Optional[float]
    entry_px: Optional[float]
    exit_px: Optional[float]
    slippage_bp: Optional[float]
    pnl: Optional[float]
    pnl_pct: Optional[float]
    duration: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "side": self.side,
            "entryDate": self.entry_date,
            "exitDate": self.exit_date,
            "qty": self.qty,
            "entryPx": self.entry_px,
            "exitPx": self.exit_px,
            "slippageBp": self.slippage_bp,
            "pnl": self.pnl,
            "pnlPct": self.pnl_pct,
            "duration": self.duration,
        }


@dataclass
class BacktestResult:
    metrics: Optional[Metrics]
    equity_curve: List[EquityPoint] = field(default_factory=list)
    trades: List[TradeRow] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "equityCurve": [asdict(p) for p in self.equity_curve],
            "trades": [t.to_dict() for t in self.trades],
            "warnings": list(self.warnings),
        }


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _finite(value: Any) -> bool:
    return value is not None and math.isfinite(value)


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dt.date, dt.datetime, pd.Timestamp)):
        return value.strftime("%Y-%m-%d")
    return str(value)


def _metrics(row: Dict[str, Any], curve: List[EquityPoint], warnings: List[str]) -> Metrics:
    start = _to_float(row.get("startEquity"))
    series = pd.Series(
        [p.equity for p in curve], index=pd.to_datetime([p.date for p in curve]), dtype=float
    )
    if start is None and len(series):
        start = float(series.iloc[0])

    steps = row.get("steps")
    if steps is not None and curve and int(steps) != len(curve):
        warnings.append(f"metrics row reports {int(steps)} steps but {len(curve)} equity points were returned")

    max_dd = _to_float(row.get("maxDd"))
    if max_dd is None:
        max_dd = m.max_drawdown(series, start) if len(series) else float("nan")

    cagr = _to_float(row.get("cagr"))
    if cagr is None:
        end = _to_float(row.get("endEquity"))
        if end is None and len(series):
            end = float(series.iloc[-1])
        first = row.get("firstDate") or (curve[0].date if curve else None)
        last = row.get("lastDate") or (curve[-1].date if curve else None)
        cagr = m.cagr(start, end, first, last) if first is not None and last is not None else float("nan")

    sharpe = _to_float(row.get("sharpe"))
    if sharpe is None:
        sharpe = m.sharpe_ratio(m.per_step_returns(series, start)) if len(series) else float("nan")

    out: Dict[str, Optional[float]] = {}
    for name, value in (("cagr", cagr), ("maxDd", max_dd), ("sharpe", sharpe)):
        if _finite(value):
            out[name] = float(value)
        else:
            warnings.append(f"{name} is undefined for this series ({value}); reported as null")
            out[name] = None
    return Metrics(cagr=out["cagr"], max_dd=out["maxDd"], sharpe=out["sharpe"])


def _trade(row: Dict[str, Any], code: Optional[str], warnings: List[str]) -> TradeRow:
    trade = TradeRow(
        id=int(row["id"]) if row.get("id") is not None else 0,
        code=code if code is not None else row.get("code"),
        side=row.get("side") or "long",
        entry_date=_iso(row.get("entryDate")),
        exit_date=_iso(row.get("exitDate")),
        qty=_to_float(row.get("qty")),
        entry_px=_to_float(row.get("entryPx")),
        exit_px=_to_float(row.get("exitPx")),
        slippage_bp=_to_float(row.get("slippageBp")),
        pnl=_to_float(row.get("pnl")),
        pnl_pct=_to_float(row.get("pnlPct")),
        duration=int(row["duration"]) if _finite(_to_float(row.get("duration"))) else None,
    )
    label = f"trade {trade.id}"
    for name in ("qty", "entry_px", "exit_px"):
        if not _finite(getattr(trade, name)):
            warnings.append(f"{label}: {name} is not a finite number ({getattr(trade, name)})")
    if _finite(trade.qty) and trade.qty <= 0:
        warnings.append(f"{label}: qty must be positive (got {trade.qty})")
    if trade.entry_date is None:
        warnings.append(f"{label}: missing entryDate")
    elif trade.exit_date is not None and pd.Timestamp(trade.exit_date) < pd.Timestamp(trade.entry_date):
        warnings.append(f"{label}: exitDate {trade.exit_date} is before entryDate {trade.entry_date}")
    return trade


def interpret(rows: Iterable[Dict[str, Any]], code: Optional[str] = None, row_count: Optional[int] = None) -> BacktestResult:
    """
    Turn raw result rows into a ``BacktestResult``.

    Parameters
    ----------
    rows : iterable of dict
        Rows returned by the query engine (or ``backtest.simulate``).
    code : str, optional
        Ticker to stamp on every trade row.
    row_count : int, optional
        Number of input bars, when known; a non-zero count without a metrics row
        is a result-shape defect even if no equity points came back.

    Raises
    ------
    ResultShapeError
        Missing or duplicated metrics row for a non-empty row-set.
    """
    buckets: Dict[str, List[Dict[str, Any]]] = {kind: [] for kind in ROW_KINDS}
    warnings: List[str] = []
    for row in rows:
        kind = row.get("type")
        if kind in buckets:
            buckets[kind].append(row)
        else:
            warnings.append(f"ignored result row with unknown type {kind!r}")

    curve: List[EquityPoint] = []
    for row in sorted(buckets["equity_point"], key=lambda r: str(r.get("date"))):
        equity = _to_float(row.get("equity"))
        if not _finite(equity) or row.get("date") is None:
            warnings.append(f"dropped equity point {row.get('date')!r} with value {row.get('equity')!r}")
            continue
        curve.append(EquityPoint(date=_iso(row["date"]), equity=equity))

    non_empty = bool(buckets["equity_point"]) or bool(row_count)
    metric_rows = buckets["metrics"]
    if len(metric_rows) > 1:
        raise ResultShapeError(f"expected a single metrics row, got {len(metric_rows)}")
    if not metric_rows:
        if non_empty:
            raise ResultShapeError("no metrics row returned for a non-empty row-set")
        metrics = None
    else:
        metrics = _metrics(metric_rows[0], curve, warnings)

    trades = [
        _trade(row, code, warnings)
        for row in sorted(buckets["trade_log"], key=lambda r: (r.get("id") is None, r.get("id") or 0))
    ]

    for w in warnings:
        logger.warning(w)
    return BacktestResult(metrics=metrics, equity_curve=curve, trades=trades, warnings=warnings)
