import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure repository root is importable when pytest runs from elsewhere
REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))


def num(v):
    return {"type": "Value", "kind": "NUMBER", "value": v}


def ident(name):
    return {"type": "Value", "kind": "IDENT", "value": name}


def func(name, *args):
    return {"type": "Func", "name": name, "args": list(args)}


def binary(op, left, right):
    return {"type": "Binary", "op": op, "left": left, "right": right}


def logical(op, left, right):
    return {"type": "Logical", "op": op, "left": left, "right": right}


def strategy_dict(entry, exit_, timing="close", universe=("7203.T",), **extra):
    raw = {
        "entry": {"ast": entry, "timing": timing},
        "exit": {"ast": exit_, "timing": "current_close"},
        "universe": list(universe),
    }
    raw.update(extra)
    return raw


@pytest.fixture
def make_bars():
    """Factory: daily bars from a list of closes (opens default to closes)."""

    def _make(closes, opens=None, start="2024-01-01"):
        closes = np.asarray(closes, dtype=float)
        opens = closes if opens is None else np.asarray(opens, dtype=float)
        return pd.DataFrame({
            "date": pd.date_range(start, periods=len(closes), freq="D").strftime("%Y-%m-%d"),
            "open": opens,
            "high": np.maximum(opens, closes) + 1.0,
            "low": np.minimum(opens, closes) - 1.0,
            "close": closes,
            "volume": np.full(len(closes), 1_000.0),
        })

    return _make
