"""
AST node definitions for the trading strategy language.

The wire format (JSON from the UI or a language model) is a tagged union keyed
by ``type``; ``validator.validate`` is the only place that turns that untyped
data into the frozen dataclasses below.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Tuple, Union

from .settings import DEFAULT_CASH, DEFAULT_SLIPPAGE_BP


class ASTNode:
    """Base class for all AST nodes."""
    pass


@dataclass(frozen=True)
class Value(ASTNode):
    """
    Leaf node: a column identifier or a numeric literal.

    Examples:
        Value("IDENT", "close")
        Value("NUMBER", 30.0)
    """
    kind: str
    value: Union[str, float]


@dataclass(frozen=True)
class Func(ASTNode):
    """
    Indicator call.

    Examples:
        ma(20)            -> Func("ma", (20,))
        ma(high, 5)       -> Func("ma", (Value("IDENT", "high"), 5))
        rsi(14), atr(14)
    """
    name: str
    args: Tuple[Union[float, Value], ...]


@dataclass(frozen=True)
class Binary(ASTNode):
    """Comparison, e.g. ``close > ma(close, 20)``."""
    op: str
    left: ASTNode
    right: ASTNode


@dataclass(frozen=True)
class Logical(ASTNode):
    """Boolean join of two sub-expressions (AND / OR)."""
    op: str
    left: ASTNode
    right: ASTNode


AnyNode = Union[Value, Func, Binary, Logical]


@dataclass(frozen=True)
class StrategyRule:
    ast: AnyNode
    timing: str


@dataclass(frozen=True)
class Strategy:
    """
    Top-level strategy.

    ``universe`` lists the tickers the caller fans out over; a single compile
    works on exactly one ticker's row-set.
    """
    entry: StrategyRule
    exit: StrategyRule
    universe: Tuple[str, ...]
    cash: int = DEFAULT_CASH
    slippage_bp: float = DEFAULT_SLIPPAGE_BP


def node_to_dict(node: ASTNode) -> Dict[str, Any]:
    """Serialize a typed node back to its wire (JSON) form."""
    if isinstance(node, Value):
        return {"type": "Value", "kind": node.kind, "value": node.value}
    if isinstance(node, Func):
        args = [node_to_dict(a) if isinstance(a, Value) else a for a in node.args]
        return {"type": "Func", "name": node.name, "args": args}
    if isinstance(node, (Binary, Logical)):
        return {
            "type": type(node).__name__,
            "op": node.op,
            "left": node_to_dict(node.left),
            "right": node_to_dict(node.right),
        }
    raise TypeError(f"Unknown AST node type: {type(node)}")


def strategy_to_dict(strategy: Strategy) -> Dict[str, Any]:
    return {
        "entry": {"ast": node_to_dict(strategy.entry.ast), "timing": strategy.entry.timing},
        "exit": {"ast": node_to_dict(strategy.exit.ast), "timing": strategy.exit.timing},
        "universe": list(strategy.universe),
        "cash": strategy.cash,
        "slippage_bp": strategy.slippage_bp,
    }

