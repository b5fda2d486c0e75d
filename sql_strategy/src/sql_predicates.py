"""
Predicate compiler: Logical / Binary / Value / Func nodes → SQL predicate text.

Only whitelisted tokens reach the output: operators come from fixed maps,
identifiers from ``ALLOWED_IDENTIFIERS``, numbers are re-rendered from floats
and functions become references to memoized fragments. Anything else fails
closed with ``UnknownSymbolError``.
"""

from __future__ import annotations

from typing import Any

from .ast_nodes import ASTNode, Binary, Func, Logical, Value
from .errors import UnknownSymbolError
from .sql_indicators import BASE, FragmentTable, compile_indicator
from .validator import ALLOWED_IDENTIFIERS, is_number, resolve_identifier

COMPARISON_SQL = {
    ">": ">",
    "<": "<",
    ">=": ">=",
    "<=": "<=",
    "==": "=",
    "!=": "<>",
}

LOGICAL_SQL = {"AND": "AND", "OR": "OR"}


def render_number(value: Any, path: str = "") -> str:
    """Locale-independent numeric literal (``repr`` of a Python float)."""
    if not is_number(value):
        raise UnknownSymbolError(f"not a finite number: {value!r}", path=path or None)
    return repr(float(value))


def render_identifier(name: Any, path: str = "") -> str:
    if not isinstance(name, str) or name not in ALLOWED_IDENTIFIERS:
        raise UnknownSymbolError(f"identifier {name!r} is not allowed", path=path or None)
    return f"{BASE}.{resolve_identifier(name)}"


def compile_predicate(node: ASTNode, table: FragmentTable, path: str = "ast") -> str:
    """
    Lower ``node`` to SQL, depth first.

    Every Logical and Binary join is parenthesized so the parsed tree, not the
    engine's operator precedence, fixes evaluation order.
    """
    if isinstance(node, Logical):
        op = LOGICAL_SQL.get(node.op)
        if op is None:
            raise UnknownSymbolError(f"logical operator {node.op!r} is not allowed", path=f"{path}.op")
        left = compile_predicate(node.left, table, f"{path}.left")
        right = compile_predicate(node.right, table, f"{path}.right")
        return f"({left} {op} {right})"

    if isinstance(node, Binary):
        op = COMPARISON_SQL.get(node.op)
        if op is None:
            raise UnknownSymbolError(f"comparison operator {node.op!r} is not allowed", path=f"{path}.op")
        left = compile_predicate(node.left, table, f"{path}.left")
        right = compile_predicate(node.right, table, f"{path}.right")
        return f"({left} {op} {right})"

    if isinstance(node, Func):
        return compile_indicator(node, table, path=path).reference

    if isinstance(node, Value):
        if node.kind == "NUMBER":
            return render_number(node.value, f"{path}.value")
        if node.kind == "IDENT":
            return render_identifier(node.value, f"{path}.value")
        raise UnknownSymbolError(f"unknown value kind {node.kind!r}", path=f"{path}.kind")

    raise UnknownSymbolError(f"unknown AST node type {type(node).__name__}", path=path)
