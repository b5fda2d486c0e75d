# tests/test_sql_compile.py

import pytest

from sql_strategy.src.ast_nodes import Binary, Func, Logical, Value
from sql_strategy.src.errors import ArgRangeError, ErrorCode, UnknownSymbolError
from sql_strategy.src.sql_indicators import CLOSE_CHANGE, TRUE_RANGE, FragmentTable, compile_indicator, indicator_key
from sql_strategy.src.sql_predicates import compile_predicate, render_number


def test_indicator_keys_are_normalized():
    assert indicator_key(Func("ma", (20,)))[0] == "ma_close_20"
    assert indicator_key(Func("ma", (Value("IDENT", "close"), 20.0)))[0] == "ma_close_20"
    assert indicator_key(Func("ma", (Value("IDENT", "price"), 20)))[0] == "ma_close_20"
    assert indicator_key(Func("ma", (Value("IDENT", "volume"), 3)))[0] == "ma_volume_3"
    assert indicator_key(Func("rsi", (14,)))[0] == "rsi_14"
    assert indicator_key(Func("atr", (7.0,)))[0] == "atr_7"


@pytest.mark.parametrize("period", [0, -3, 2.5])
def test_bad_period_raises_arg_range(period):
    with pytest.raises(ArgRangeError) as ei:
        compile_indicator(Func("ma", (period,)), FragmentTable(), path="entry.ast.right")
    assert ei.value.code is ErrorCode.E_ARG_RANGE
    assert ei.value.path == "entry.ast.right.args[0]"


def test_memoization_within_one_table():
    table = FragmentTable()
    a = compile_indicator(Func("ma", (20,)), table)
    b = compile_indicator(Func("ma", (Value("IDENT", "close"), 20)), table)
    assert a is b
    assert table.keys() == ["ma_close_20"]


def test_helpers_precede_dependents():
    table = FragmentTable()
    compile_indicator(Func("rsi", (14,)), table)
    compile_indicator(Func("atr", (14,)), table)
    compile_indicator(Func("rsi", (5,)), table)
    assert table.keys() == [CLOSE_CHANGE, "rsi_14", TRUE_RANGE, "atr_14", "rsi_5"]
    assert table["rsi_14"].depends_on == (CLOSE_CHANGE,)


def test_fragment_sql_shape():
    table = FragmentTable()
    ma = compile_indicator(Func("ma", (5,)), table)
    assert ma.definition.startswith("ma_close_5 AS (")
    assert "ROWS BETWEEN 4 PRECEDING AND CURRENT ROW" in ma.definition
    assert ma.reference == "ma_close_5.value"


def test_predicate_is_fully_parenthesized():
    table = FragmentTable()
    node = Logical(
        "OR",
        Logical("AND", Binary(">", Value("IDENT", "close"), Func("ma", (20,))),
                Binary("==", Value("IDENT", "volume"), Value("NUMBER", 0.0))),
        Binary("!=", Value("IDENT", "entry_price"), Value("NUMBER", -1.5)),
    )
    sql = compile_predicate(node, table)
    assert sql == (
        "(((base.close > ma_close_20.value) AND (base.volume = 0.0)) "
        "OR (base.close <> -1.5))"
    )


def test_unvalidated_symbols_fail_closed():
    table = FragmentTable()
    with pytest.raises(UnknownSymbolError) as ei:
        compile_predicate(Binary(">", Value("IDENT", "close; DROP TABLE ohlc"), Value("NUMBER", 1.0)), table)
    assert ei.value.code is ErrorCode.E_UNKNOWN_SYMBOL
    assert ei.value.path == "ast.left.value"
    with pytest.raises(UnknownSymbolError):
        compile_predicate(Binary("LIKE", Value("IDENT", "close"), Value("NUMBER", 1.0)), table)
    with pytest.raises(UnknownSymbolError):
        compile_predicate(Func("sma", (5,)), table)
    with pytest.raises(UnknownSymbolError):
        compile_predicate(Value("NUMBER", "1; --"), table)


def test_render_number_is_locale_free_repr():
    assert render_number(20) == "20.0"
    assert render_number(1e-7) == "1e-07"
    with pytest.raises(UnknownSymbolError):
        render_number(float("inf"))
