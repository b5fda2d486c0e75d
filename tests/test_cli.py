import importlib.util
import json
from pathlib import Path

import pandas as pd
import pytest

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "run_strategy.py"


@pytest.fixture
def cli():
    module_spec = importlib.util.spec_from_file_location("run_strategy", SCRIPT)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


@pytest.fixture
def csv_path(tmp_path):
    closes = [100.0 + i for i in range(10)] + [108.0 - i for i in range(10)]
    df = pd.DataFrame({
        "Date": pd.date_range("2024-01-01", periods=20, freq="D").strftime("%Y-%m-%d"),
        "Open": closes,
        "High": [c + 1 for c in closes],
        "Low": [c - 1 for c in closes],
        "Close": closes,
        "Volume": [1_000] * 20,
    })
    path = tmp_path / "bars.csv"
    df.to_csv(path, index=False)
    return path


def test_cli_json_output(cli, csv_path, capsys):
    code = cli.main([
        "--csv", str(csv_path), "--ticker", "7203.T", "--json",
        "--dsl", "ENTRY: close > ma(5) EXIT: close < ma(5)",
    ])
    assert code == 0
    out = json.loads(capsys.readouterr().out)
    assert len(out["equityCurve"]) == 20
    assert len(out["trades"]) == 1
    assert out["trades"][0]["code"] == "7203.T"
    assert set(out["metrics"]) == {"cagr", "maxDd", "sharpe"}


def test_cli_text_report_with_sql(cli, csv_path, capsys):
    code = cli.main([
        "--csv", str(csv_path), "--ticker", "7203.T", "--show-sql", "--engine", "pandas",
        "--dsl", "ENTRY@close: rsi(3) > 60 EXIT: rsi(3) < 40",
    ])
    assert code == 0
    out = capsys.readouterr().out
    assert "=== Strategy ===" in out
    assert "ENTRY@close: (rsi(3) > 60)" in out
    assert "WITH RECURSIVE" in out
    assert "=== Backtest Metrics ===" in out


def test_cli_ast_json_input(cli, csv_path, tmp_path, capsys):
    ast_file = tmp_path / "strategy.json"
    ast_file.write_text(json.dumps({
        "entry": {"ast": {"type": "Binary", "op": ">",
                          "left": {"type": "Value", "kind": "IDENT", "value": "close"},
                          "right": {"type": "Value", "kind": "NUMBER", "value": 104.5}},
                  "timing": "close"},
        "exit": {"ast": {"type": "Binary", "op": "<",
                         "left": {"type": "Value", "kind": "IDENT", "value": "close"},
                         "right": {"type": "Value", "kind": "NUMBER", "value": 104.5}},
                 "timing": "current_close"},
    }))
    code = cli.main(["--csv", str(csv_path), "--ticker", "7203.T", "--ast-json", str(ast_file),
                     "--mode", "signals", "--slippage-bp", "0", "--json"])
    assert code == 0
    out = json.loads(capsys.readouterr().out)
    (trade,) = out["trades"]
    assert trade["entryPx"] == pytest.approx(105.0)
    assert trade["exitPx"] == pytest.approx(104.0)


def test_cli_reports_schema_errors(cli, csv_path, capsys):
    code = cli.main(["--csv", str(csv_path), "--dsl", "ENTRY: sma(5) > close EXIT: close < 1"])
    assert code == 2
    err = capsys.readouterr().err
    assert "E_SCHEMA" in err
    assert "entry.ast.left.name" in err


def test_fmt_handles_missing_values(cli):
    assert cli.fmt(None) == "n/a"
    assert cli.fmt(0.1234, pct=True) == "12.34%"
    assert cli.fmt(1.5) == "1.50"
