"""
Validation of untrusted strategy JSON.

- validate(raw): checks every node against the closed four-variant union and the
  whitelists below, collecting all violations before raising ``SchemaError``.

Nothing downstream of ``validate`` re-inspects untyped data.
"""

from __future__ import annotations

import difflib
import math
import re
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .ast_nodes import Binary, Func, Logical, Strategy, StrategyRule, Value, strategy_to_dict
from .errors import SchemaError, Violation
from .settings import DEFAULT_CASH, DEFAULT_SLIPPAGE_BP

# Identifiers a Value(IDENT) may carry.
ALLOWED_IDENTIFIERS: FrozenSet[str] = frozenset(
    {"price", "entry_price", "high", "low", "close", "volume", "open"}
)

# Logical aliases resolved at compile time.
PRICE_ALIASES: Dict[str, str] = {"price": "close", "entry_price": "close"}

# Physical columns of the row-set.
ALLOWED_FIELDS: FrozenSet[str] = frozenset({"open", "high", "low", "close", "volume"})

# Indicator allowed arities. ma(period) | ma(column, period); rsi(period); atr(period).
ALLOWED_INDICATORS: Dict[str, Tuple[int, ...]] = {
    "ma": (1, 2),
    "rsi": (1,),
    "atr": (1,),
}

BINARY_OPS: FrozenSet[str] = frozenset({">", "<", ">=", "<=", "==", "!="})
LOGICAL_OPS: FrozenSet[str] = frozenset({"AND", "OR"})
NODE_TYPES: Tuple[str, ...] = ("Value", "Func", "Binary", "Logical")

ENTRY_TIMINGS: FrozenSet[str] = frozenset({"next_open", "close"})
EXIT_TIMINGS: FrozenSet[str] = frozenset({"current_close"})

TICKER_PATTERN = re.compile(r"^[0-9]{4}\.T$")

# Deeper trees than this are rejected outright (also stops self-referencing dicts).
MAX_DEPTH = 64


def resolve_identifier(name: str) -> str:
    """Map an allowed identifier to its row-set column."""
    return PRICE_ALIASES.get(name, name)


def _suggest(name: Any, choices) -> str:
    if not isinstance(name, str):
        return ""
    match = difflib.get_close_matches(name, sorted(choices), n=1)
    return f". Did you mean {match[0]}?" if match else ""


def is_number(value: Any) -> bool:
    """True for finite int/float values (bool is not a number here)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


class _Collector:
    """Walks raw JSON once, building typed nodes and recording every violation."""

    def __init__(self) -> None:
        self.violations: List[Violation] = []

    def fail(self, path: str, reason: str) -> None:
        self.violations.append(Violation(path, reason))

    # --- nodes ---

    def node(self, raw: Any, path: str, depth: int = 0):
        if depth > MAX_DEPTH:
            self.fail(path, f"expression nested deeper than {MAX_DEPTH} levels")
            return None
        if not isinstance(raw, dict):
            self.fail(path, f"expected an AST node object, got {type(raw).__name__}")
            return None
        tag = raw.get("type")
        if tag == "Value":
            return self.value(raw, path)
        if tag == "Func":
            return self.func(raw, path)
        if tag in ("Binary", "Logical"):
            return self.join(raw, path, tag, depth)
        self.fail(f"{path}.type", f"unknown node type {tag!r}; expected one of {list(NODE_TYPES)}")
        return None

    def value(self, raw: Dict[str, Any], path: str) -> Optional[Value]:
        kind = raw.get("kind")
        val = raw.get("value")
        if kind == "IDENT":
            if not isinstance(val, str) or val not in ALLOWED_IDENTIFIERS:
                self.fail(
                    f"{path}.value",
                    f"identifier {val!r} is not allowed; expected one of {sorted(ALLOWED_IDENTIFIERS)}"
                    + _suggest(val, ALLOWED_IDENTIFIERS),
                )
                return None
            return Value("IDENT", val)
        if kind == "NUMBER":
            if not is_number(val):
                self.fail(f"{path}.value", f"expected a finite number, got {val!r}")
                return None
            return Value("NUMBER", float(val))
        self.fail(f"{path}.kind", f"unknown value kind {kind!r}; expected 'IDENT' or 'NUMBER'")
        return None

    def func(self, raw: Dict[str, Any], path: str) -> Optional[Func]:
        name = raw.get("name")
        args = raw.get("args")
        ok = True
        if not isinstance(name, str) or name not in ALLOWED_INDICATORS:
            self.fail(
                f"{path}.name",
                f"unsupported function {name!r}; expected one of {sorted(ALLOWED_INDICATORS)}"
                + _suggest(name, ALLOWED_INDICATORS),
            )
            ok = False
        if not isinstance(args, list):
            self.fail(f"{path}.args", "expected a list of arguments")
            return None

        typed: List[Any] = []
        for i, arg in enumerate(args):
            arg_path = f"{path}.args[{i}]"
            if is_number(arg):
                typed.append(arg)
            elif isinstance(arg, dict) and arg.get("type") == "Value":
                leaf = self.value(arg, arg_path)
                if leaf is None:
                    ok = False
                elif leaf.kind == "NUMBER":
                    typed.append(leaf.value)
                else:
                    typed.append(leaf)
            else:
                self.fail(arg_path, f"expected a number or an identifier Value node, got {arg!r}")
                ok = False
        if not ok:
            return None

        allowed = ALLOWED_INDICATORS[name]
        if len(typed) not in allowed:
            self.fail(f"{path}.args", f"{name} takes {' or '.join(map(str, allowed))} argument(s), got {len(typed)}")
            return None
        if len(typed) == 2:
            column, period = typed
            if not isinstance(column, Value):
                self.fail(f"{path}.args[0]", f"first argument of {name} must be a column identifier")
                return None
            if not is_number(period):
                self.fail(f"{path}.args[1]", f"period of {name} must be a number")
                return None
        elif not is_number(typed[0]):
            self.fail(f"{path}.args[0]", f"period of {name} must be a number")
            return None
        return Func(name, tuple(typed))

    def join(self, raw: Dict[str, Any], path: str, tag: str, depth: int):
        op = raw.get("op")
        allowed = BINARY_OPS if tag == "Binary" else LOGICAL_OPS
        op_ok = isinstance(op, str) and op in allowed
        if not op_ok:
            self.fail(f"{path}.op", f"operator {op!r} is not allowed for {tag}; expected one of {sorted(allowed)}")
        left = self.node(raw.get("left"), f"{path}.left", depth + 1)
        right = self.node(raw.get("right"), f"{path}.right", depth + 1)
        if not op_ok or left is None or right is None:
            return None
        cls = Binary if tag == "Binary" else Logical
        return cls(op, left, right)

    # --- strategy ---

    def rule(self, raw: Any, path: str, timings: FrozenSet[str]) -> Optional[StrategyRule]:
        if not isinstance(raw, dict):
            self.fail(path, "expected an object with 'ast' and 'timing'")
            return None
        ast = self.node(raw.get("ast"), f"{path}.ast")
        timing = raw.get("timing")
        if not isinstance(timing, str) or timing not in timings:
            self.fail(f"{path}.timing", f"timing {timing!r} is not allowed; expected one of {sorted(timings)}")
            return None
        if ast is None:
            return None
        return StrategyRule(ast=ast, timing=timing)

    def universe(self, raw: Any) -> Optional[Tuple[str, ...]]:
        if not isinstance(raw, list) or not raw:
            self.fail("universe", "expected a non-empty list of tickers")
            return None
        ok = True
        for i, ticker in enumerate(raw):
            if not isinstance(ticker, str) or not TICKER_PATTERN.fullmatch(ticker):
                self.fail(f"universe[{i}]", f"ticker {ticker!r} does not match 4 digits + '.T'")
                ok = False
        return tuple(raw) if ok else None

    def cash(self, raw: Any) -> Optional[int]:
        if raw is None:
            return DEFAULT_CASH
        if not is_number(raw) or float(raw) != int(raw) or raw < 0:
            self.fail("cash", f"cash must be a non-negative integer, got {raw!r}")
            return None
        return int(raw)

    def slippage(self, raw: Any) -> Optional[float]:
        if raw is None:
            return DEFAULT_SLIPPAGE_BP
        if not is_number(raw) or raw < 0:
            self.fail("slippage_bp", f"slippage must be a non-negative number of basis points, got {raw!r}")
            return None
        return float(raw)


def validate_node(raw: Any, path: str = "ast"):
    """Validate a single wire-format expression; raises SchemaError."""
    c = _Collector()
    node = c.node(raw, path)
    if c.violations:
        raise SchemaError(c.violations)
    return node


def validate(raw: Any) -> Strategy:
    """
    Validate untrusted strategy data and return the typed ``Strategy``.

    Parameters
    ----------
    raw : dict or Strategy
        Wire-format strategy JSON. A ``Strategy`` is round-tripped through its
        wire form so hand-built objects get the same checks.

    Returns
    -------
    Strategy

    Raises
    ------
    SchemaError
        With every violation found (path + reason), never just the first.
    """
    if isinstance(raw, Strategy):
        raw = strategy_to_dict(raw)
    c = _Collector()
    if not isinstance(raw, dict):
        c.fail("$", f"expected a strategy object, got {type(raw).__name__}")
        raise SchemaError(c.violations)

    entry = c.rule(raw.get("entry"), "entry", ENTRY_TIMINGS)
    exit_ = c.rule(raw.get("exit"), "exit", EXIT_TIMINGS)
    universe = c.universe(raw.get("universe"))
    cash = c.cash(raw.get("cash"))
    slippage = c.slippage(raw.get("slippage_bp", raw.get("slippageBp")))

    if c.violations:
        raise SchemaError(c.violations)
    return Strategy(entry=entry, exit=exit_, universe=universe, cash=cash, slippage_bp=slippage)
