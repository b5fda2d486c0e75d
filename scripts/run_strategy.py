#!/usr/bin/env python3
"""
CLI runner: load a CSV of OHLCV bars, read a strategy (text DSL or AST JSON),
compile it to SQL and run the backtest.

Usage:
  python scripts/run_strategy.py --csv data.csv --ticker 7203.T \
      --dsl "ENTRY: close > ma(20) EXIT: close < ma(20)"
  python scripts/run_strategy.py --csv data.csv --ast-json strategy.json --json

CSV requirements:
  - Must have columns: date, open, high, low, close, volume (any case)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys

import pandas as pd


def _ensure_root_on_path():
    here = os.path.dirname(os.path.abspath(__file__))
    root = os.path.dirname(here)
    if root not in sys.path:
        sys.path.insert(0, root)


def _load_strategy(args, parse_dsl, validate):
    if args.dsl:
        return parse_dsl(
            args.dsl,
            universe=[args.ticker],
            cash=args.cash,
            slippage_bp=args.slippage_bp,
            entry_timing=args.entry_timing or "next_open",
        )
    with open(args.ast_json, encoding="utf-8") as fh:
        raw = json.load(fh)
    raw.setdefault("universe", [args.ticker])
    if args.cash is not None:
        raw["cash"] = args.cash
    if args.slippage_bp is not None:
        raw["slippage_bp"] = args.slippage_bp
    if args.entry_timing and isinstance(raw.get("entry"), dict):
        raw["entry"]["timing"] = args.entry_timing
    return validate(raw)


def fmt(value, pct=False) -> str:
    if value is None:
        return "n/a"
    return f"{value * 100:.2f}%" if pct else f"{value:.2f}"


def main(argv=None) -> int:
    _ensure_root_on_path()
    from sql_strategy.src.ast_text import strategy_to_text
    from sql_strategy.src.dsl_lexer_parser import parse_dsl
    from sql_strategy.src.engine import SQLiteQueryEngine
    from sql_strategy.src.errors import SchemaError, StrategyError
    from sql_strategy.src.runner import run_backtest, run_with_pandas
    from sql_strategy.src.settings import setup_logging
    from sql_strategy.src.sql_assembler import compile_strategy
    from sql_strategy.src.validator import validate

    parser = argparse.ArgumentParser(description="Compile a strategy to SQL and backtest it on a CSV dataset")
    parser.add_argument('--csv', required=True, help='Path to CSV with columns: date, open, high, low, close, volume')
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument('--dsl', help='Strategy text, e.g. "ENTRY@close: rsi(14) < 30 EXIT: rsi(14) > 70"')
    group.add_argument('--ast-json', help='Path to a strategy AST JSON file')
    parser.add_argument('--ticker', default='0000.T', help='Ticker code for the CSV (4 digits + ".T")')
    parser.add_argument('--cash', type=int, default=None, help='Starting cash (default: 1,000,000)')
    parser.add_argument('--slippage-bp', type=float, default=None, help='Slippage in basis points per fill (default: 3)')
    parser.add_argument('--entry-timing', choices=['next_open', 'close'], default=None, help='Entry fill timing')
    parser.add_argument('--engine', choices=['sqlite', 'pandas'], default='sqlite', help='Execution backend')
    parser.add_argument('--mode', choices=['sql', 'signals'], default='sql',
                        help='sql: whole backtest in SQL; signals: SQL signals + Python trade loop')
    parser.add_argument('--show-sql', action='store_true', help='Print the compiled SQL')
    parser.add_argument('--json', action='store_true', help='Print the result as JSON')
    parser.add_argument('--log-level', default='WARNING', help='Logging level (default: WARNING)')
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    log = logging.getLogger("run_strategy")

    df = pd.read_csv(args.csv)

    try:
        strategy = _load_strategy(args, parse_dsl, validate)
        if not args.json:
            print("=== Strategy ===")
            print(strategy_to_text(strategy))
            print()
        if args.show_sql:
            compiled = compile_strategy(strategy)
            print("=== SQL ===")
            print(compiled.sql if args.mode == 'sql' else compiled.signals_sql)
            print()
        if args.engine == 'pandas':
            result = run_with_pandas(strategy, df, code=args.ticker)
        else:
            with SQLiteQueryEngine.from_frame(df) as engine:
                result = run_backtest(strategy, engine, code=args.ticker, mode=args.mode)
    except StrategyError as e:
        print(f"ERROR {e.code.value}: {e.message}", file=sys.stderr)
        if isinstance(e, SchemaError):
            for v in e.violations:
                print(f"  - {v}", file=sys.stderr)
        return 2
    except ValueError as e:
        log.error("bad input data: %s", e)
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    m = result.metrics
    print("=== Backtest Metrics ===")
    print(f"CAGR: {fmt(m.cagr if m else None, pct=True)}")
    print(f"Max Drawdown: {fmt(m.max_dd if m else None, pct=True)}")
    print(f"Sharpe: {fmt(m.sharpe if m else None)}")
    print(f"Trades: {len(result.trades)}")
    if result.trades:
        print("=== Trades ===")
        for t in result.trades:
            print(f"#{t.id} {t.code} Enter {t.entry_date} @ {fmt(t.entry_px)} | Exit {t.exit_date} @ {fmt(t.exit_px)} "
                  f"| PnL {fmt(t.pnl)} ({fmt(t.pnl_pct, pct=True)})")
    if result.warnings:
        print("=== Warnings ===")
        for w in result.warnings:
            print(f"- {w}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
