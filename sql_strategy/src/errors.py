"""
Error taxonomy shared by the validate → compile → execute → interpret pipeline.

Every fatal failure is a ``StrategyError`` carrying one ``ErrorCode``. Non-fatal
problems are plain strings on ``BacktestResult.warnings``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class ErrorCode(str, Enum):
    E_SCHEMA = "E_SCHEMA"
    E_ARG_RANGE = "E_ARG_RANGE"
    E_UNKNOWN_SYMBOL = "E_UNKNOWN_SYMBOL"
    E_EXECUTION = "E_EXECUTION"
    E_RESULT_SHAPE = "E_RESULT_SHAPE"


@dataclass(frozen=True)
class Violation:
    path: str
    reason: str

    def __str__(self) -> str:
        return f"{self.path}: {self.reason}"


class StrategyError(Exception):
    """Base class; ``code`` identifies the error kind."""

    code: ErrorCode = ErrorCode.E_SCHEMA

    def __init__(self, message: str, path: Optional[str] = None, details: Any = None):
        self.message = message
        self.path = path
        self.details = details
        super().__init__(f"{message} (at {path})" if path else message)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.path is not None:
            out["path"] = self.path
        if self.details is not None:
            out["details"] = self.details
        return out


class SchemaError(StrategyError):
    """Raised when the strategy fails validation; lists every violation found."""

    code = ErrorCode.E_SCHEMA

    def __init__(self, violations: Sequence[Violation], message: str | None = None):
        self.violations: List[Violation] = list(violations)
        if message is None:
            message = f"{len(self.violations)} schema violation(s): " + "; ".join(
                str(v) for v in self.violations
            )
        super().__init__(message, details=[{"path": v.path, "reason": v.reason} for v in self.violations])

    @property
    def paths(self) -> List[str]:
        return [v.path for v in self.violations]


class DSLParseError(SchemaError):
    """Raised when strategy text cannot be parsed, with optional position info."""

    def __init__(self, message: str, position: int | None = None, line: int | None = None, col: int | None = None):
        self.position = position
        self.line = line
        self.col = col
        where = f"line {line}, col {col}" if line is not None and col is not None else "text"
        if line is not None and col is not None:
            message = f"{message} (line {line}, col {col})"
        super().__init__([Violation(where, message)], message=message)


class ArgRangeError(StrategyError):
    code = ErrorCode.E_ARG_RANGE


class UnknownSymbolError(StrategyError):
    code = ErrorCode.E_UNKNOWN_SYMBOL


class ExecutionError(StrategyError):
    """The query engine failed; ``original`` keeps the engine's own exception."""

    code = ErrorCode.E_EXECUTION

    def __init__(self, message: str, original: BaseException | None = None):
        self.original = original
        super().__init__(message, details=repr(original) if original is not None else None)


class ResultShapeError(StrategyError):
    code = ErrorCode.E_RESULT_SHAPE
