"""
AST → pandas signal generation.

This module takes a validated Strategy and evaluates its entry and exit ASTs
over a pandas DataFrame of daily bars, producing one signal row per bar.
Missing indicator values (warm-up bars) make a comparison false, the same way
a NULL comparison is false in the compiled query.

Main entry point:
- generate_signals(strategy, df) -> DataFrame with date, open, close, entry, exit
"""

from __future__ import annotations

from typing import Union

import pandas as pd

from .ast_nodes import ASTNode, Binary, Func, Logical, Strategy, Value
from .errors import UnknownSymbolError
from .indicators import atr, rsi, sma
from .sql_indicators import indicator_key
from .validator import resolve_identifier

Operand = Union[pd.Series, float]


def eval_ast(node: ASTNode, df: pd.DataFrame) -> Operand:
    """
    Evaluate an AST node over a pandas DataFrame.

    Depending on the node, this returns:
    - A float for numeric literals
    - A float Series for identifiers and indicator calls
    - A boolean Series for comparisons and logical joins

    Parameters
    ----------
    node : ASTNode
        Typed AST node (see ``validator.validate``).
    df : pd.DataFrame
        Bars ordered by date with columns 'open', 'high', 'low', 'close', 'volume'.
    """
    if isinstance(node, Value):
        if node.kind == "NUMBER":
            return float(node.value)
        return df[resolve_identifier(node.value)].astype(float)

    if isinstance(node, Func):
        _key, column, period = indicator_key(node)
        if node.name == "ma":
            return sma(df[column], period)
        if node.name == "rsi":
            return rsi(df["close"], period)
        return atr(df["high"], df["low"], df["close"], period)

    if isinstance(node, Logical):
        left = _as_mask(eval_ast(node.left, df), df)
        right = _as_mask(eval_ast(node.right, df), df)
        return left & right if node.op == "AND" else left | right

    if isinstance(node, Binary):
        left = eval_ast(node.left, df)
        right = eval_ast(node.right, df)
        return _compare(left, right, node.op, df)

    raise UnknownSymbolError(f"Unknown AST node type: {type(node).__name__}")


def _as_mask(value: Operand, df: pd.DataFrame) -> pd.Series:
    if isinstance(value, pd.Series):
        return value.map(lambda v: bool(v) if pd.notna(v) else False).astype(bool)
    return pd.Series(bool(value), index=df.index)


def _compare(left: Operand, right: Operand, op: str, df: pd.DataFrame) -> pd.Series:
    """
    Comparison with SQL NULL semantics: a missing operand yields False.
    """
    lhs = left if isinstance(left, pd.Series) else pd.Series(left, index=df.index, dtype=float)
    rhs = right if isinstance(right, pd.Series) else pd.Series(right, index=df.index, dtype=float)
    if op == ">":
        out = lhs > rhs
    elif op == "<":
        out = lhs < rhs
    elif op == ">=":
        out = lhs >= rhs
    elif op == "<=":
        out = lhs <= rhs
    elif op == "==":
        out = lhs == rhs
    elif op == "!=":
        out = lhs != rhs
    else:
        raise UnknownSymbolError(f"Unsupported comparison op: {op}")
    return out & lhs.notna() & rhs.notna()


def generate_signals(strategy: Strategy, df: pd.DataFrame) -> pd.DataFrame:
    """
    Generate entry and exit signals from a Strategy over a DataFrame.

    Parameters
    ----------
    strategy : Strategy
        Validated strategy.
    df : pd.DataFrame
        Bars with a 'date' column (see ``engine.prepare_row_set``) and
        'open', 'high', 'low', 'close', 'volume'.

    Returns
    -------
    pd.DataFrame
        Columns 'date', 'open', 'close' and integer 0/1 'entry' / 'exit', the
        same shape ``sql_assembler`` signal queries return.
    """
    bars = df.reset_index(drop=True)
    entry = _as_mask(eval_ast(strategy.entry.ast, bars), bars)
    exit_ = _as_mask(eval_ast(strategy.exit.ast, bars), bars)

    signals = pd.DataFrame({
        "date": bars["date"],
        "open": bars["open"].astype(float),
        "close": bars["close"].astype(float),
    })
    signals["entry"] = entry.astype(int)
    signals["exit"] = exit_.astype(int)
    return signals
