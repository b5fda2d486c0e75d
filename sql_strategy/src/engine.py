"""
Query-engine adapters.

The compiler emits SQL text; anything with ``execute(sql) -> list[dict]`` can
run it. ``SQLiteQueryEngine`` is the bundled adapter: it loads one ticker's
bars into an in-memory SQLite database and executes the compiled query there.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any, Dict, List, Optional, Protocol

import pandas as pd

from .errors import ExecutionError
from .settings import DEFAULT_ROW_SET
from .sql_assembler import check_row_set_name

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("open", "high", "low", "close", "volume")

# Progress-handler granularity, in SQLite VM instructions.
PROGRESS_STEPS = 10_000


class QueryEngine(Protocol):
    def execute(self, sql: str) -> List[Dict[str, Any]]:
        ...


def prepare_row_set(df: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize OHLCV bars into the row-set layout the compiled query reads.

    - column names lower-cased
    - ``date`` taken from a column or, failing that, the index, as ISO
      ``YYYY-MM-DD`` strings
    - sorted ascending by date, one row per date (last one wins)

    Raises
    ------
    ValueError
        If any of open/high/low/close/volume is missing or dates don't parse.
    """
    bars = df.rename(columns={c: str(c).lower() for c in df.columns})
    if "date" not in bars.columns:
        bars = bars.rename_axis("date").reset_index()
    missing = [c for c in REQUIRED_COLUMNS if c not in bars.columns]
    if missing:
        raise ValueError(f"row-set is missing required columns: {missing}")

    bars = bars[["date", *REQUIRED_COLUMNS]].copy()
    bars["date"] = pd.to_datetime(bars["date"]).dt.strftime("%Y-%m-%d")
    for col in REQUIRED_COLUMNS:
        bars[col] = pd.to_numeric(bars[col], errors="coerce").astype(float)

    dupes = int(bars["date"].duplicated(keep="last").sum())
    if dupes:
        logger.warning("dropping %d duplicate date rows", dupes)
        bars = bars.drop_duplicates(subset="date", keep="last")
    return bars.sort_values("date").reset_index(drop=True)


class SQLiteQueryEngine:
    """
    In-memory SQLite engine holding one row-set.

    Parameters
    ----------
    connection : sqlite3.Connection, optional
        Existing connection; a fresh in-memory database when omitted.
    timeout : float, optional
        Seconds a single ``execute`` may run before it is interrupted.
    """

    def __init__(self, connection: Optional[sqlite3.Connection] = None, timeout: Optional[float] = None):
        self.connection = connection if connection is not None else sqlite3.connect(":memory:")
        self.timeout = timeout

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        table: str = DEFAULT_ROW_SET,
        timeout: Optional[float] = None,
    ) -> "SQLiteQueryEngine":
        engine = cls(timeout=timeout)
        engine.load(df, table)
        return engine

    def load(self, df: pd.DataFrame, table: str = DEFAULT_ROW_SET) -> int:
        """Replace ``table`` with the normalized bars of ``df``; returns the row count."""
        table = check_row_set_name(table)
        bars = prepare_row_set(df)
        bars.to_sql(table, self.connection, if_exists="replace", index=False)
        logger.debug("loaded %d rows into %s", len(bars), table)
        return len(bars)

    def execute(self, sql: str) -> List[Dict[str, Any]]:
        """
        Run ``sql`` and return its rows as dicts keyed by column name.

        Raises
        ------
        ExecutionError
            On any engine failure, including a timeout.
        """
        started = time.monotonic()
        if self.timeout is not None:
            deadline = started + self.timeout
            self.connection.set_progress_handler(lambda: int(time.monotonic() > deadline), PROGRESS_STEPS)
        try:
            cursor = self.connection.execute(sql)
            columns = [d[0] for d in cursor.description or ()]
            rows = [dict(zip(columns, values)) for values in cursor.fetchall()]
        except sqlite3.Error as e:
            if self.timeout is not None and time.monotonic() - started >= self.timeout:
                raise ExecutionError(f"query interrupted after {self.timeout}s", original=e) from e
            raise ExecutionError(f"query engine failed: {e}", original=e) from e
        finally:
            if self.timeout is not None:
                self.connection.set_progress_handler(None, 0)
        logger.debug("query returned %d rows in %.3fs", len(rows), time.monotonic() - started)
        return rows

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> "SQLiteQueryEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
