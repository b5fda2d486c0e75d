import math

import numpy as np
import pandas as pd
import pytest

from sql_strategy.src.dsl_lexer_parser import parse_dsl
from sql_strategy.src.engine import SQLiteQueryEngine
from sql_strategy.src.runner import run_backtest, run_with_pandas


def trend_df():
    # 10 bars up, 10 bars down
    closes = [100.0 + i for i in range(10)] + [108.0 - i for i in range(10)]
    dates = pd.date_range("2024-01-01", periods=20, freq="D")
    return pd.DataFrame({
        "Date": dates,
        "Open": closes,
        "High": [c + 1 for c in closes],
        "Low": [c - 1 for c in closes],
        "Close": closes,
        "Volume": [1_000] * 20,
    })


def ma_cross_strategy():
    return {
        "entry": {"ast": {"type": "Binary", "op": ">",
                          "left": {"type": "Value", "kind": "IDENT", "value": "close"},
                          "right": {"type": "Func", "name": "ma",
                                    "args": [{"type": "Value", "kind": "IDENT", "value": "close"}, 5]}},
                  "timing": "next_open"},
        "exit": {"ast": {"type": "Binary", "op": "<",
                         "left": {"type": "Value", "kind": "IDENT", "value": "close"},
                         "right": {"type": "Func", "name": "ma",
                                   "args": [{"type": "Value", "kind": "IDENT", "value": "close"}, 5]}},
                 "timing": "current_close"},
        "universe": ["7203.T"],
    }


@pytest.mark.parametrize("mode", ["sql", "signals"])
def test_uptrend_then_downtrend_single_round_trip(mode):
    with SQLiteQueryEngine.from_frame(trend_df()) as engine:
        result = run_backtest(ma_cross_strategy(), engine, mode=mode)

    assert len(result.trades) == 1
    t = result.trades[0]
    # first full ma(5) window on day 5; filled at day 6's open
    assert t.entry_date == "2024-01-06"
    assert t.entry_px == pytest.approx(105.0 * (1 + 3 / 10_000))
    # close 107 < ma 107.8 on day 12
    assert t.exit_date == "2024-01-12"
    assert t.exit_px == pytest.approx(107.0 * (1 - 3 / 10_000))
    assert t.code == "7203.T"

    assert len(result.equity_curve) == 20
    assert result.equity_curve[0].equity == 1_000_000
    assert result.metrics is not None
    assert math.isfinite(result.metrics.cagr)
    assert result.metrics.max_dd <= 0
    assert result.metrics.sharpe is not None


def test_pandas_path_matches_sql_path_on_scenario():
    with SQLiteQueryEngine.from_frame(trend_df()) as engine:
        sql_result = run_backtest(ma_cross_strategy(), engine)
    pd_result = run_with_pandas(ma_cross_strategy(), trend_df())
    assert [p.date for p in pd_result.equity_curve] == [p.date for p in sql_result.equity_curve]
    assert [p.equity for p in pd_result.equity_curve] == pytest.approx([p.equity for p in sql_result.equity_curve])
    assert pd_result.metrics.to_dict() == pytest.approx(sql_result.metrics.to_dict())


def test_text_strategy_close_timing():
    strategy = parse_dsl(
        "ENTRY@close: close > ma(close, 5) EXIT: close < ma(5)",
        universe=["7203.T"],
        slippage_bp=0,
    )
    with SQLiteQueryEngine.from_frame(trend_df()) as engine:
        result = run_backtest(strategy, engine)
    (t,) = result.trades
    assert t.entry_date == "2024-01-05"
    assert t.entry_px == pytest.approx(104.0)
    assert t.exit_px == pytest.approx(107.0)
    assert t.pnl_pct == pytest.approx(107.0 / 104.0 - 1)
    assert t.duration == 7
    assert result.equity_curve[-1].equity == pytest.approx(1_000_000 * 107.0 / 104.0)
