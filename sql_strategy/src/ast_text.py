"""
Canonical text rendering of typed strategies (inverse of ``dsl_lexer_parser``).

Every Logical and Binary join is parenthesized, so parsing the output gives
back the same tree regardless of precedence.
"""

from __future__ import annotations

from .ast_nodes import ASTNode, Binary, Func, Logical, Strategy, Value


def _number(value) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else repr(value)


def to_text(node: ASTNode) -> str:
    if isinstance(node, Value):
        return _number(node.value) if node.kind == "NUMBER" else str(node.value)
    if isinstance(node, Func):
        args = ", ".join(to_text(a) if isinstance(a, Value) else _number(a) for a in node.args)
        return f"{node.name}({args})"
    if isinstance(node, (Binary, Logical)):
        return f"({to_text(node.left)} {node.op} {to_text(node.right)})"
    raise TypeError(f"Unknown AST node type: {type(node)}")


def strategy_to_text(strategy: Strategy) -> str:
    """Two-line rendering: ``ENTRY@timing: ...`` then ``EXIT@timing: ...``."""
    return (
        f"ENTRY@{strategy.entry.timing}: {to_text(strategy.entry.ast)}\n"
        f"EXIT@{strategy.exit.timing}: {to_text(strategy.exit.ast)}"
    )
