"""
Indicator compiler: Func nodes → named SQL fragments (CTEs).

Each fragment windows over the ordered ``base`` row-set (one row per trading
day, ``rn`` = 1..n by date) and exposes ``rn``, ``date`` and ``value``. Fragments
are memoized in a ``FragmentTable`` owned by a single compile call, keyed by
``"{function}_{normalized-args}"``, so ``ma(20)`` and ``ma(close, 20)`` used in
both entry and exit compile to one ``ma_close_20`` CTE.

Supported:
- ma(period) / ma(column, period): simple moving average, NULL until the
  window holds ``period`` rows
- rsi(period): close-to-close RSI from rolling sums of gains and losses
  (100 when the loss sum is 0)
- atr(period): rolling mean of the true range (first row: high - low)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Tuple

from .ast_nodes import Func, Value
from .errors import ArgRangeError, UnknownSymbolError
from .validator import ALLOWED_FIELDS, ALLOWED_IDENTIFIERS, ALLOWED_INDICATORS, is_number, resolve_identifier

logger = logging.getLogger(__name__)

BASE = "base"

# Helper fragments shared by several indicators.
CLOSE_CHANGE = "close_change"
TRUE_RANGE = "true_range"


@dataclass(frozen=True)
class Fragment:
    """One CTE of the assembled query."""
    key: str
    definition: str
    depends_on: Tuple[str, ...] = ()
    kind: str = "indicator"

    @property
    def reference(self) -> str:
        """Column reference to this indicator's value at the current row."""
        return f"{self.key}.value"


class FragmentTable:
    """
    Per-compile memoization table of fragments, in creation order.

    Creation order is already a valid dependency order: helpers are added
    before the indicators that read them.
    """

    def __init__(self) -> None:
        self._fragments: Dict[str, Fragment] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._fragments

    def __getitem__(self, key: str) -> Fragment:
        return self._fragments[key]

    def __iter__(self) -> Iterator[Fragment]:
        return iter(self._fragments.values())

    def __len__(self) -> int:
        return len(self._fragments)

    def add(self, fragment: Fragment) -> Fragment:
        return self._fragments.setdefault(fragment.key, fragment)

    def keys(self) -> List[str]:
        return list(self._fragments)


def _window(period: int, alias: str) -> str:
    return f"(ORDER BY {alias}.rn ROWS BETWEEN {period - 1} PRECEDING AND CURRENT ROW)"


def normalize_period(arg, name: str, path: str) -> int:
    """Return ``arg`` as a positive int, or raise ArgRangeError."""
    if not is_number(arg):
        raise ArgRangeError(f"period of {name} must be a number, got {arg!r}", path=path)
    if float(arg) != int(arg) or int(arg) <= 0:
        raise ArgRangeError(f"period of {name} must be a positive integer, got {arg!r}", path=path)
    return int(arg)


def indicator_key(node: Func, path: str = "") -> Tuple[str, str, int]:
    """
    Normalize a Func node to ``(key, column, period)``.

    Raises UnknownSymbolError for anything outside the whitelists and
    ArgRangeError for a bad period.
    """
    name = node.name
    if name not in ALLOWED_INDICATORS:
        raise UnknownSymbolError(f"unknown function {name!r}", path=f"{path}.name" if path else None)
    args = tuple(node.args)
    if len(args) not in ALLOWED_INDICATORS[name]:
        raise UnknownSymbolError(f"{name} received {len(args)} args", path=f"{path}.args" if path else None)

    column = "close"
    if len(args) == 2:
        ident, raw_period = args
        if not isinstance(ident, Value) or ident.kind != "IDENT" or ident.value not in ALLOWED_IDENTIFIERS:
            raise UnknownSymbolError(f"column argument {ident!r} is not an allowed identifier", path=f"{path}.args[0]")
        column = resolve_identifier(ident.value)
        period_path = f"{path}.args[1]"
    else:
        raw_period = args[0]
        period_path = f"{path}.args[0]"
    if column not in ALLOWED_FIELDS:
        raise UnknownSymbolError(f"unknown column {column!r}", path=path)

    period = normalize_period(raw_period, name, period_path)
    if name == "ma":
        return f"ma_{column}_{period}", column, period
    return f"{name}_{period}", column, period


def _close_change(source: str) -> Fragment:
    definition = f"""{CLOSE_CHANGE} AS (
  SELECT d.rn, d.date, d.delta,
         MAX(d.delta, 0.0) AS gain,
         MAX(-d.delta, 0.0) AS loss
  FROM (
    SELECT src.rn, src.date, src.close - LAG(src.close) OVER (ORDER BY src.rn) AS delta
    FROM {source} AS src
  ) AS d
)"""
    return Fragment(CLOSE_CHANGE, definition, (), "helper")


def _true_range(source: str) -> Fragment:
    definition = f"""{TRUE_RANGE} AS (
  SELECT t.rn, t.date,
         CASE WHEN t.prev_close IS NULL THEN t.high - t.low
              ELSE MAX(t.high - t.low, ABS(t.high - t.prev_close), ABS(t.low - t.prev_close))
         END AS tr
  FROM (
    SELECT src.rn, src.date, src.high, src.low, LAG(src.close) OVER (ORDER BY src.rn) AS prev_close
    FROM {source} AS src
  ) AS t
)"""
    return Fragment(TRUE_RANGE, definition, (), "helper")


def _ma(key: str, column: str, period: int, source: str) -> Fragment:
    w = _window(period, "src")
    definition = f"""{key} AS (
  SELECT src.rn, src.date,
         CASE WHEN COUNT(src.{column}) OVER {w} = {period}
              THEN AVG(src.{column}) OVER {w} END AS value
  FROM {source} AS src
)"""
    return Fragment(key, definition)


def _rsi(key: str, period: int) -> Fragment:
    w = _window(period, "c")
    definition = f"""{key} AS (
  SELECT c.rn, c.date,
         CASE WHEN COUNT(c.delta) OVER {w} < {period} THEN NULL
              WHEN SUM(c.loss) OVER {w} = 0 THEN 100.0
              ELSE 100.0 - 100.0 / (1.0 + SUM(c.gain) OVER {w} / SUM(c.loss) OVER {w})
         END AS value
  FROM {CLOSE_CHANGE} AS c
)"""
    return Fragment(key, definition, (CLOSE_CHANGE,))


def _atr(key: str, period: int) -> Fragment:
    w = _window(period, "t")
    definition = f"""{key} AS (
  SELECT t.rn, t.date,
         CASE WHEN COUNT(t.tr) OVER {w} = {period}
              THEN AVG(t.tr) OVER {w} END AS value
  FROM {TRUE_RANGE} AS t
)"""
    return Fragment(key, definition, (TRUE_RANGE,))


def compile_indicator(node: Func, table: FragmentTable, source: str = BASE, path: str = "") -> Fragment:
    """
    Return the fragment computing ``node``, creating it (and its helpers) on
    first use.

    Parameters
    ----------
    node : Func
        Indicator call (ma / rsi / atr).
    table : FragmentTable
        Memoization table of the current compile; mutated in place.
    source : str
        Name of the ordered row-set CTE the windows run over.
    path : str
        Node path used in error messages.
    """
    key, column, period = indicator_key(node, path)
    if key in table:
        return table[key]

    if node.name == "ma":
        fragment = _ma(key, column, period, source)
    elif node.name == "rsi":
        table.add(_close_change(source))
        fragment = _rsi(key, period)
    else:
        table.add(_true_range(source))
        fragment = _atr(key, period)

    logger.debug("compiled indicator fragment %s", key)
    return table.add(fragment)
