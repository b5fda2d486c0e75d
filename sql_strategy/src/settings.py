"""
Defaults and logging setup.

Defaults live on the ``Strategy`` entity; the values here are only what a
strategy gets when its JSON leaves a field out.
"""

from __future__ import annotations

import logging

DEFAULT_CASH = 1_000_000
DEFAULT_SLIPPAGE_BP = 3.0

# Name of the ordered OHLCV row-set the query engine exposes.
DEFAULT_ROW_SET = "ohlc"

TRADING_DAYS_PER_YEAR = 252
DAYS_PER_YEAR = 365.25

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: int | str = logging.INFO) -> None:
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[logging.StreamHandler()])
