"""
One-ticker backtest orchestration: validate → compile → execute → interpret.

``run_backtest`` works with any ``QueryEngine``. In ``sql`` mode the whole
backtest runs inside the compiled query; in ``signals`` mode the engine only
evaluates the per-bar signals and ``backtest.simulate`` does the trading in
Python. ``run_with_pandas`` skips SQL entirely.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

import pandas as pd

from .ast_nodes import Strategy
from .backtest import simulate
from .engine import QueryEngine, prepare_row_set
from .errors import ExecutionError, StrategyError
from .interpreter import BacktestResult, interpret
from .progress import Checkpoint, ProgressReporter
from .settings import DEFAULT_ROW_SET
from .signals import generate_signals
from .sql_assembler import compile_strategy
from .validator import validate

logger = logging.getLogger(__name__)

MODES = ("sql", "signals")


def _execute(engine: QueryEngine, sql: str) -> List[Dict[str, Any]]:
    try:
        return engine.execute(sql)
    except StrategyError:
        raise
    except Exception as e:
        raise ExecutionError(f"query engine failed: {e}", original=e) from e


def run_backtest(
    raw: Any,
    engine: QueryEngine,
    request_id: Optional[str] = None,
    code: Optional[str] = None,
    progress: Optional[ProgressReporter] = None,
    mode: str = "sql",
    row_set: str = DEFAULT_ROW_SET,
) -> BacktestResult:
    """
    Backtest one ticker whose bars the engine exposes as ``row_set``.

    Parameters
    ----------
    raw : dict or Strategy
        Strategy JSON or an already-typed strategy; validated either way.
    engine : QueryEngine
        Executes the compiled SQL.
    request_id : str, optional
        Correlates log lines and progress callbacks; generated when omitted.
    code : str, optional
        Ticker stamped on trade rows; defaults to the first universe entry.
    progress : ProgressReporter, optional
        Notified at each checkpoint.
    mode : {"sql", "signals"}

    Raises
    ------
    StrategyError
        Any validation, compile, execution or result-shape failure.
    """
    if mode not in MODES:
        raise ValueError(f"mode must be one of {MODES}, got {mode!r}")
    request_id = request_id or uuid.uuid4().hex
    progress = progress or ProgressReporter(request_id)

    strategy = validate(raw)
    progress.report(Checkpoint.VALIDATED, request_id)

    compiled = compile_strategy(strategy, row_set)
    logger.info("[%s] compiled %d fragments: %s", request_id, len(compiled.fragments), ", ".join(compiled.fragment_keys))
    progress.report(Checkpoint.COMPILED, request_id)

    progress.report(Checkpoint.DISPATCHED, request_id)
    if mode == "sql":
        rows = _execute(engine, compiled.sql)
    else:
        signal_rows = _execute(engine, compiled.signals_sql)
        rows = simulate(signal_rows, compiled.timing, compiled.cash, compiled.slippage_bp)
    logger.info("[%s] engine returned %d rows", request_id, len(rows))

    result = interpret(rows, code=code or strategy.universe[0])
    progress.report(Checkpoint.INTERPRETED, request_id)
    return result


def run_with_pandas(raw: Any, df: pd.DataFrame, code: Optional[str] = None) -> BacktestResult:
    """Evaluate the strategy over ``df`` with pandas only (no query engine)."""
    strategy: Strategy = validate(raw)
    bars = prepare_row_set(df)
    signals = generate_signals(strategy, bars)
    rows = simulate(signals, strategy.entry.timing, strategy.cash, strategy.slippage_bp)
    return interpret(rows, code=code or strategy.universe[0], row_count=len(bars))
