# tests/test_dsl_parser.py

import pytest

from sql_strategy.src.ast_nodes import Binary, Func, Logical, Strategy, Value
from sql_strategy.src.ast_text import strategy_to_text, to_text
from sql_strategy.src.dsl_lexer_parser import DSLParseError, parse_dsl, parse_expression, tokenize
from sql_strategy.src.errors import SchemaError


def test_parse_simple_entry_exit():
    dsl = """
    ENTRY: close > ma(close, 3) AND volume > 1000000
    EXIT:  rsi(14) < 30
    """

    strategy = parse_dsl(dsl, universe=["7203.T"])
    assert isinstance(strategy, Strategy)
    assert strategy.entry.timing == "next_open"
    assert strategy.exit.timing == "current_close"

    entry = strategy.entry.ast
    assert isinstance(entry, Logical)
    assert entry.op == "AND"

    left = entry.left
    assert isinstance(left, Binary)
    assert left.op == ">"
    assert left.left == Value("IDENT", "close")
    assert left.right == Func("ma", (Value("IDENT", "close"), 3))

    exit_node = strategy.exit.ast
    assert isinstance(exit_node, Binary)
    assert exit_node.left == Func("rsi", (14,))
    assert exit_node.right == Value("NUMBER", 30.0)


def test_and_binds_tighter_than_or():
    node = parse_expression("close > 1 OR close < 2 AND volume > 3")
    assert isinstance(node, Logical) and node.op == "OR"
    assert isinstance(node.right, Logical) and node.right.op == "AND"

    grouped = parse_expression("(close > 1 OR close < 2) AND volume > 3")
    assert grouped.op == "AND"
    assert grouped.left.op == "OR"


def test_keywords_are_case_insensitive_and_names_lowercased():
    s = parse_dsl("entry@close: CLOSE > MA(20) and Close < 100 exit: Price < ATR(14)", universe=["6758.T"])
    assert s.entry.timing == "close"
    assert s.entry.ast.left.right == Func("ma", (20,))
    assert s.exit.ast.left == Value("IDENT", "price")


def test_negative_numbers_and_decimals():
    node = parse_expression("close >= -1.25")
    assert node.right == Value("NUMBER", -1.25)


def test_parse_dsl_applies_options():
    s = parse_dsl("ENTRY: close > 1 EXIT: close < 1", universe=["7203.T"], cash=5000, slippage_bp=0, entry_timing="close")
    assert s.cash == 5000
    assert s.slippage_bp == 0.0
    assert s.entry.timing == "close"


def test_error_carries_line_and_col():
    with pytest.raises(DSLParseError) as ei:
        parse_dsl("ENTRY: close > \nEXIT: close < 1", universe=["7203.T"])
    err = ei.value
    assert err.line == 2 and err.col == 1
    assert "line 2, col 1" in str(err)
    assert isinstance(err, SchemaError)


def test_unexpected_character():
    with pytest.raises(DSLParseError) as ei:
        tokenize("close > 1; DROP")
    assert ei.value.col == 10


def test_missing_exit_expression():
    with pytest.raises(DSLParseError, match="end of input"):
        parse_dsl("ENTRY: ma(20) > close EXIT:", universe=["7203.T"])


def test_unknown_names_go_through_validation():
    with pytest.raises(SchemaError) as ei:
        parse_dsl("ENTRY: sma(5) > close EXIT: close < 1", universe=["7203.T"])
    assert not isinstance(ei.value, DSLParseError)
    assert ei.value.paths == ["entry.ast.left.name"]


def test_bad_timing_goes_through_validation():
    with pytest.raises(SchemaError) as ei:
        parse_dsl("ENTRY@later: close > 1 EXIT: close < 1", universe=["7203.T"])
    assert ei.value.paths == ["entry.timing"]


def test_text_rendering_round_trips():
    text = "ENTRY@close: (close > ma(high, 5)) AND rsi(14) < 30.5 OR volume != 0 EXIT: price <= atr(10)"
    s = parse_dsl(text, universe=["7203.T"])
    rendered = strategy_to_text(s)
    assert rendered.splitlines()[0] == "ENTRY@close: (((close > ma(high, 5)) AND (rsi(14) < 30.5)) OR (volume != 0))"
    assert rendered.splitlines()[1] == "EXIT@current_close: (price <= atr(10))"
    assert parse_dsl(rendered, universe=["7203.T"]) == s


def test_to_text_leaf_nodes():
    assert to_text(Value("NUMBER", 20.0)) == "20"
    assert to_text(Value("NUMBER", -0.5)) == "-0.5"
    assert to_text(Func("ma", (Value("IDENT", "close"), 20.0))) == "ma(close, 20)"


@pytest.mark.parametrize("value", [1e-07, -2.5e-10, 1.25e+17])
def test_exponent_literals_round_trip(value):
    node = Binary(">", Value("IDENT", "close"), Value("NUMBER", value))
    text = to_text(node)
    assert parse_expression(text) == node


def test_tokenizer_reads_exponents():
    tokens = [t for t in tokenize("close > 1.5e+20") if t.type == "NUMBER"]
    assert [t.value for t in tokens] == ["1.5e+20"]
