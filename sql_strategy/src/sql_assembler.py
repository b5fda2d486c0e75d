"""
Query assembler: predicates + indicator fragments → one executable SQLite query.

Pipeline inside the query (all CTEs):

    base      typed, ordered copy of the row-set with rn = 1..n
    <frags>   indicator fragments in dependency order
    signals   entry / exit predicate per bar (NULL counts as false)
    edges     rising edges of both signals
    steps     edges plus the previous bar's entry edge (next_open fills)
    walk      recursive position state machine, one position at a time
    curve     equity, per-step return and drawdown per bar
    trades    completed round trips
    stats     aggregates for the metrics row

The result is a union of rows tagged by ``type``: one ``metrics`` row (only for
a non-empty row-set), one ``equity_point`` per bar and one ``trade_log`` per
completed trade.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

from .ast_nodes import Strategy
from .errors import UnknownSymbolError
from .settings import DEFAULT_ROW_SET
from .sql_indicators import BASE, Fragment, FragmentTable
from .sql_predicates import compile_predicate, render_number
from .validator import ENTRY_TIMINGS

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

RESERVED_NAMES = frozenset({BASE, "signals", "edges", "steps", "walk", "curve", "trades", "stats"})

OUTPUT_COLUMNS: Tuple[str, ...] = (
    "type",
    # metrics
    "cagr", "maxDd", "sharpe", "startEquity", "endEquity", "steps", "firstDate", "lastDate",
    # equity_point
    "date", "equity",
    # trade_log
    "id", "entryDate", "exitDate", "qty", "entryPx", "exitPx", "slippageBp", "pnl", "pnlPct", "duration",
)


@dataclass(frozen=True)
class CompiledQuery:
    """Assembled query text plus the fragments it depends on."""
    sql: str
    signals_sql: str
    fragments: Tuple[Fragment, ...]
    row_set: str
    timing: str
    cash: int
    slippage_bp: float

    @property
    def fragment_keys(self) -> List[str]:
        return [f.key for f in self.fragments]

    @property
    def indicator_keys(self) -> List[str]:
        return [f.key for f in self.fragments if f.kind == "indicator"]


def check_row_set_name(name: str) -> str:
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name) or name.lower() in RESERVED_NAMES:
        raise UnknownSymbolError(f"row-set name {name!r} must be a plain identifier not used by the query")
    return name


def order_fragments(fragments: Iterable[Fragment]) -> List[Fragment]:
    """
    Stable topological order: every fragment after the fragments it depends on.

    Raises UnknownSymbolError when a dependency is missing or cyclic.
    """
    by_key: Dict[str, Fragment] = {}
    for f in fragments:
        by_key.setdefault(f.key, f)

    ordered: List[Fragment] = []
    state: Dict[str, int] = {}  # 1 = visiting, 2 = done

    def visit(key: str) -> None:
        if state.get(key) == 2:
            return
        if state.get(key) == 1:
            raise UnknownSymbolError(f"cyclic fragment dependency at {key!r}")
        if key not in by_key:
            raise UnknownSymbolError(f"missing fragment dependency {key!r}")
        state[key] = 1
        for dep in by_key[key].depends_on:
            visit(dep)
        state[key] = 2
        ordered.append(by_key[key])

    for key in by_key:
        visit(key)
    return ordered


def _select(kind: str, columns: Dict[str, str], source: str) -> str:
    cols = [f"'{kind}' AS \"type\""]
    for name in OUTPUT_COLUMNS[1:]:
        cols.append(f"{columns.get(name, 'NULL')} AS \"{name}\"")
    return "SELECT " + ",\n       ".join(cols) + f"\n{source}"


def _prefix(
    entry_predicate: str,
    exit_predicate: str,
    fragments: Sequence[Fragment],
    row_set: str,
) -> List[str]:
    """CTEs shared by the full query and the signals query."""
    ctes = [
        f"""{BASE} AS (
  SELECT ROW_NUMBER() OVER (ORDER BY date) AS rn,
         date,
         CAST(open AS REAL) AS open,
         CAST(high AS REAL) AS high,
         CAST(low AS REAL) AS low,
         CAST(close AS REAL) AS close,
         CAST(volume AS REAL) AS volume
  FROM {row_set}
)"""
    ]
    ctes.extend(f.definition for f in fragments)

    indicators = [f for f in fragments if f.kind == "indicator"]
    value_cols = "".join(f",\n         {f.reference} AS {f.key}" for f in indicators)
    joins = "".join(f"\n  LEFT JOIN {f.key} ON {f.key}.rn = {BASE}.rn" for f in indicators)
    ctes.append(
        f"""signals AS (
  SELECT {BASE}.rn, {BASE}.date, {BASE}.open, {BASE}.close,
         CASE WHEN {entry_predicate} THEN 1 ELSE 0 END AS entry_sig,
         CASE WHEN {exit_predicate} THEN 1 ELSE 0 END AS exit_sig{value_cols}
  FROM {BASE}{joins}
)"""
    )
    return ctes


def _pipeline(timing: str, cash: int, slippage_bp: float) -> List[str]:
    cash_sql = render_number(cash)
    buy = render_number(1.0 + slippage_bp / 10000.0)
    sell = render_number(1.0 - slippage_bp / 10000.0)

    if timing == "close":
        enter = "(w.pos = 0 AND st.entry_edge = 1)"
        fill = f"(st.close * {buy})"
    else:
        # signal on the previous bar, filled at this bar's open
        enter = "(w.pos = 0 AND w.exited = 0 AND st.prev_entry_edge = 1)"
        fill = f"(st.open * {buy})"
    leave = "(w.pos = 1 AND st.exit_edge = 1)"
    exit_fill = f"(st.close * {sell})"

    return [
        """edges AS (
  SELECT s.rn, s.date, s.open, s.close,
         CASE WHEN s.entry_sig = 1 AND COALESCE(LAG(s.entry_sig) OVER (ORDER BY s.rn), 0) = 0
              THEN 1 ELSE 0 END AS entry_edge,
         CASE WHEN s.exit_sig = 1 AND COALESCE(LAG(s.exit_sig) OVER (ORDER BY s.rn), 0) = 0
              THEN 1 ELSE 0 END AS exit_edge
  FROM signals AS s
)""",
        """steps AS (
  SELECT e.rn, e.date, e.open, e.close, e.entry_edge, e.exit_edge,
         COALESCE(LAG(e.entry_edge) OVER (ORDER BY e.rn), 0) AS prev_entry_edge
  FROM edges AS e
)""",
        f"""walk (rn, date, close, pos, qty, cash, entry_date, entry_px, exited, exit_px, closed_qty, equity) AS (
  SELECT 0, NULL, NULL, 0, 0.0, {cash_sql}, NULL, NULL, 0, NULL, NULL, {cash_sql}
  UNION ALL
  SELECT st.rn, st.date, st.close,
         CASE WHEN {enter} THEN 1 WHEN {leave} THEN 0 ELSE w.pos END,
         CASE WHEN {enter} THEN w.cash / {fill} WHEN {leave} THEN 0.0 ELSE w.qty END,
         CASE WHEN {enter} THEN 0.0 WHEN {leave} THEN w.qty * {exit_fill} ELSE w.cash END,
         CASE WHEN {enter} THEN st.date ELSE w.entry_date END,
         CASE WHEN {enter} THEN {fill} ELSE w.entry_px END,
         CASE WHEN {leave} THEN 1 ELSE 0 END,
         CASE WHEN {leave} THEN {exit_fill} END,
         CASE WHEN {leave} THEN w.qty END,
         CASE WHEN {enter} THEN w.cash / {fill} * st.close
              WHEN {leave} THEN w.qty * {exit_fill}
              WHEN w.pos = 1 THEN w.qty * st.close
              ELSE w.cash END
  FROM walk AS w
  JOIN steps AS st ON st.rn = w.rn + 1
)""",
        f"""curve AS (
  SELECT w.rn, w.date, w.equity,
         w.equity / COALESCE(LAG(w.equity) OVER (ORDER BY w.rn), {cash_sql}) - 1.0 AS ret,
         w.equity / MAX(MAX(w.equity) OVER (ORDER BY w.rn ROWS BETWEEN UNBOUNDED PRECEDING AND CURRENT ROW),
                        {cash_sql}) - 1.0 AS drawdown
  FROM walk AS w
  WHERE w.rn > 0
)""",
        """trades AS (
  SELECT ROW_NUMBER() OVER (ORDER BY w.rn) AS id,
         w.entry_date, w.date AS exit_date, w.closed_qty AS qty, w.entry_px, w.exit_px
  FROM walk AS w
  WHERE w.exited = 1
)""",
        """stats AS (
  SELECT COUNT(*) AS steps,
         MIN(c.drawdown) AS max_dd,
         MIN(c.date) AS first_date,
         MAX(c.date) AS last_date,
         (SELECT c2.equity FROM curve AS c2 ORDER BY c2.rn DESC LIMIT 1) AS end_equity
  FROM curve AS c
)""",
    ]


def _outputs(cash: int, slippage_bp: float) -> str:
    cash_sql = render_number(cash)
    metrics = _select(
        "metrics",
        {
            "maxDd": "s.max_dd",
            "startEquity": cash_sql,
            "endEquity": "s.end_equity",
            "steps": "s.steps",
            "firstDate": "s.first_date",
            "lastDate": "s.last_date",
        },
        "FROM stats AS s\nWHERE s.steps > 0",
    )
    equity = _select("equity_point", {"date": "c.date", "equity": "c.equity"}, "FROM curve AS c")
    trades = _select(
        "trade_log",
        {
            "id": "t.id",
            "entryDate": "t.entry_date",
            "exitDate": "t.exit_date",
            "qty": "t.qty",
            "entryPx": "t.entry_px",
            "exitPx": "t.exit_px",
            "slippageBp": render_number(slippage_bp),
            "pnl": "t.qty * (t.exit_px - t.entry_px)",
            "pnlPct": "(t.exit_px - t.entry_px) / t.entry_px",
            "duration": "CAST(julianday(t.exit_date) - julianday(t.entry_date) AS INTEGER)",
        },
        "FROM trades AS t",
    )
    return "\nUNION ALL\n".join([metrics, equity, trades])


def assemble(
    entry_predicate: str,
    exit_predicate: str,
    fragments: Iterable[Fragment],
    row_set: str = DEFAULT_ROW_SET,
    *,
    timing: str = "next_open",
    cash: int = 1_000_000,
    slippage_bp: float = 3.0,
) -> CompiledQuery:
    """
    Combine compiled predicates and fragments into a ``CompiledQuery``.

    ``timing`` is the entry timing: ``close`` fills at the signal bar's close,
    ``next_open`` at the following bar's open. Exits always fill at the close
    of the exit bar.
    """
    row_set = check_row_set_name(row_set)
    if timing not in ENTRY_TIMINGS:
        raise UnknownSymbolError(f"entry timing {timing!r} is not allowed")
    ordered = order_fragments(fragments)

    prefix = _prefix(entry_predicate, exit_predicate, ordered, row_set)
    sql = "WITH RECURSIVE\n" + ",\n".join(prefix + _pipeline(timing, cash, slippage_bp)) + "\n" + _outputs(cash, slippage_bp)

    indicator_cols = "".join(f", s.{f.key}" for f in ordered if f.kind == "indicator")
    signals_sql = (
        "WITH\n" + ",\n".join(prefix) + "\n"
        f'SELECT s.rn, s.date, s.open, s.close, s.entry_sig AS "entry", s.exit_sig AS "exit"{indicator_cols}\n'
        "FROM signals AS s\nORDER BY s.rn"
    )
    return CompiledQuery(
        sql=sql,
        signals_sql=signals_sql,
        fragments=tuple(ordered),
        row_set=row_set,
        timing=timing,
        cash=cash,
        slippage_bp=slippage_bp,
    )


def compile_strategy(strategy: Strategy, row_set: str = DEFAULT_ROW_SET) -> CompiledQuery:
    """
    Compile a validated strategy for one ticker's row-set.

    The fragment table lives only for this call; two compiles never share
    state, and compiling the same strategy twice yields identical text.
    """
    table = FragmentTable()
    entry = compile_predicate(strategy.entry.ast, table, path="entry.ast")
    exit_ = compile_predicate(strategy.exit.ast, table, path="exit.ast")
    compiled = assemble(
        entry,
        exit_,
        table,
        row_set,
        timing=strategy.entry.timing,
        cash=strategy.cash,
        slippage_bp=strategy.slippage_bp,
    )
    logger.debug(
        "compiled strategy: %d fragments (%s), %d chars",
        len(compiled.fragments), ", ".join(compiled.fragment_keys), len(compiled.sql),
    )
    return compiled
