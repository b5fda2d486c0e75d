"""
DSL lexer and parser for the strategy text language.

    ENTRY[@next_open|@close]: <expr>
    EXIT[@current_close]: <expr>

    expr    := or
    or      := and (OR and)*
    and     := cmp (AND cmp)*
    cmp     := primary (op primary)?        op: > < >= <= == !=
    primary := NUMBER | -NUMBER | IDENT | IDENT '(' args ')' | '(' expr ')'

The parser only builds wire-format dicts; ``validator`` turns them into typed
nodes, so text and JSON strategies get exactly the same checks.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .ast_nodes import Strategy
from .errors import DSLParseError
from .validator import validate, validate_node

__all__ = ["DSLParseError", "tokenize", "Parser", "parse_expression", "parse_dsl"]


# ==============
# Tokenizer
# ==============

TOKEN_SPEC = [
    ("NUMBER", r"\d+(\.\d+)?([eE][+-]?\d+)?"),
    ("IDENT", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("GE", r">="),
    ("LE", r"<="),
    ("EQ", r"=="),
    ("NE", r"!="),
    ("GT", r">"),
    ("LT", r"<"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("COMMA", r","),
    ("COLON", r":"),
    ("AT", r"@"),
    ("MINUS", r"-"),
    ("NEWLINE", r"\n"),
    ("SKIP", r"[ \t\r]+"),
    ("MISMATCH", r"."),
]

TOK_REGEX = "|".join("(?P<%s>%s)" % pair for pair in TOKEN_SPEC)

KEYWORDS = frozenset({"AND", "OR", "ENTRY", "EXIT"})

COMPARISON_TOKENS = {
    "GT": ">",
    "LT": "<",
    "GE": ">=",
    "LE": "<=",
    "EQ": "==",
    "NE": "!=",
}


@dataclass
class Token:
    type: str
    value: str
    line: int | None = None
    col: int | None = None
    position: int | None = None


def _line_col(code: str, start: int):
    line = code.count("\n", 0, start) + 1
    last_newline = code.rfind("\n", 0, start)
    col = (start - last_newline) if last_newline != -1 else (start + 1)
    return line, col


def tokenize(code: str) -> List[Token]:
    """
    Convert DSL text into tokens.

    Keywords (AND, OR, ENTRY, EXIT) are matched case-insensitively and emitted
    as KEYWORD tokens in upper case; other identifiers are lower-cased.
    """
    tokens: List[Token] = []
    for mo in re.finditer(TOK_REGEX, code):
        kind = mo.lastgroup
        value = mo.group()
        start = mo.start()
        line, col = _line_col(code, start)
        if kind == "IDENT":
            if value.upper() in KEYWORDS:
                tokens.append(Token("KEYWORD", value.upper(), line, col, start))
            else:
                tokens.append(Token("IDENT", value.lower(), line, col, start))
        elif kind in ("NEWLINE", "SKIP"):
            continue
        elif kind == "MISMATCH":
            raise DSLParseError(f"Unexpected character: {value!r}", position=start, line=line, col=col)
        else:
            tokens.append(Token(kind, value, line, col, start))
    return tokens


# ==============
# Parser
# ==============

class Parser:
    """Recursive descent parser producing wire-format dicts."""

    def __init__(self, tokens: Sequence[Token], source_text: str | None = None):
        self.tokens = list(tokens)
        self.pos = 0
        self.source_text = source_text or ""

    def peek(self) -> Optional[Token]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None

    def at_keyword(self, word: str) -> bool:
        tok = self.peek()
        return tok is not None and tok.type == "KEYWORD" and tok.value == word

    def advance(self) -> Token:
        tok = self.peek()
        if tok is None:
            self._error_at_end("Unexpected end of input")
        self.pos += 1
        return tok

    def expect(self, type_: str, value: str | None = None) -> Token:
        tok = self.peek()
        wanted = value or type_
        if tok is None:
            self._error_at_end(f"Expected {wanted} but got end of input")
        if tok.type != type_ or (value is not None and tok.value != value):
            self._error(tok, f"Expected {wanted} but got {tok.type} ({tok.value}). Near: {self._snippet(tok)}")
        self.pos += 1
        return tok

    def _error(self, tok: Token, message: str):
        raise DSLParseError(message, position=tok.position, line=tok.line, col=tok.col)

    def _error_at_end(self, message: str):
        end = len(self.source_text)
        line, col = _line_col(self.source_text, end)
        raise DSLParseError(f"{message}. Near: {self._snippet(None)}", position=end, line=line, col=col)

    def _snippet(self, tok: Optional[Token], radius: int = 20) -> str:
        """Return a small slice of source text around ``tok`` (or the end of input)."""
        if not self.source_text:
            return "(no snippet)"
        at = tok.position if tok is not None and tok.position is not None else len(self.source_text)
        start = max(0, at - radius)
        end = min(len(self.source_text), at + radius)
        return "..." + self.source_text[start:end].replace("\n", " ") + "..."

    # --- entry point ---

    def parse_rules(self) -> Dict[str, Dict[str, Any]]:
        entry_timing = self._rule_header("ENTRY")
        entry = self.parse_expr()
        exit_timing = self._rule_header("EXIT")
        exit_ = self.parse_expr()
        self.expect_end()
        return {
            "entry": {"ast": entry, "timing": entry_timing},
            "exit": {"ast": exit_, "timing": exit_timing},
        }

    def _rule_header(self, keyword: str) -> Optional[str]:
        self.expect("KEYWORD", keyword)
        timing = None
        tok = self.peek()
        if tok is not None and tok.type == "AT":
            self.advance()
            timing = self.expect("IDENT").value
        self.expect("COLON")
        return timing

    def expect_end(self) -> None:
        tok = self.peek()
        if tok is not None:
            self._error(tok, f"Extra tokens after expression: {tok.value!r}. Near: {self._snippet(tok)}")

    # --- boolean expressions ---

    def parse_expr(self) -> Dict[str, Any]:
        return self.parse_or_expr()

    def parse_or_expr(self) -> Dict[str, Any]:
        node = self.parse_and_expr()
        while self.at_keyword("OR"):
            self.advance()
            right = self.parse_and_expr()
            node = {"type": "Logical", "op": "OR", "left": node, "right": right}
        return node

    def parse_and_expr(self) -> Dict[str, Any]:
        node = self.parse_comparison()
        while self.at_keyword("AND"):
            self.advance()
            right = self.parse_comparison()
            node = {"type": "Logical", "op": "AND", "left": node, "right": right}
        return node

    # --- comparisons ---

    def parse_comparison(self) -> Dict[str, Any]:
        left = self.parse_primary()
        tok = self.peek()
        if tok is not None and tok.type in COMPARISON_TOKENS:
            self.advance()
            right = self.parse_primary()
            return {"type": "Binary", "op": COMPARISON_TOKENS[tok.type], "left": left, "right": right}
        return left

    def parse_primary(self) -> Dict[str, Any]:
        tok = self.peek()
        if tok is None:
            self._error_at_end("Unexpected end of input in expression")

        if tok.type == "NUMBER":
            self.advance()
            return {"type": "Value", "kind": "NUMBER", "value": float(tok.value)}

        if tok.type == "MINUS":
            self.advance()
            num = self.expect("NUMBER")
            return {"type": "Value", "kind": "NUMBER", "value": -float(num.value)}

        if tok.type == "IDENT":
            self.advance()
            nxt = self.peek()
            if nxt is not None and nxt.type == "LPAREN":
                self.advance()
                args: List[Any] = []
                if self.peek() is not None and self.peek().type != "RPAREN":
                    args.append(self.parse_arg())
                    while self.peek() is not None and self.peek().type == "COMMA":
                        self.advance()
                        args.append(self.parse_arg())
                self.expect("RPAREN")
                return {"type": "Func", "name": tok.value, "args": args}
            return {"type": "Value", "kind": "IDENT", "value": tok.value}

        if tok.type == "LPAREN":
            self.advance()
            node = self.parse_expr()
            self.expect("RPAREN")
            return node

        self._error(tok, f"Unexpected token in expression: {tok.type} {tok.value!r}. Near: {self._snippet(tok)}")

    def parse_arg(self) -> Any:
        """Function arguments are plain numbers or column identifiers."""
        tok = self.peek()
        if tok is not None and tok.type == "NUMBER":
            self.advance()
            value = float(tok.value)
            return int(value) if value.is_integer() else value
        if tok is not None and tok.type == "IDENT":
            self.advance()
            return {"type": "Value", "kind": "IDENT", "value": tok.value}
        if tok is None:
            self._error_at_end("Expected a function argument")
        self._error(tok, f"Expected a number or column name as argument but got {tok.value!r}")


# ==============
# Public API
# ==============

def parse_expression_dict(text: str) -> Dict[str, Any]:
    """Parse a single expression into its wire-format dict (not validated)."""
    parser = Parser(tokenize(text), source_text=text)
    node = parser.parse_expr()
    parser.expect_end()
    return node


def parse_expression(text: str):
    """Parse and validate a single expression, returning the typed node."""
    return validate_node(parse_expression_dict(text))


def parse_dsl(
    dsl_text: str,
    universe: Sequence[str],
    cash: int | None = None,
    slippage_bp: float | None = None,
    entry_timing: str = "next_open",
) -> Strategy:
    """
    Parse strategy text and validate it into a ``Strategy``.

    An ``@timing`` written in the text wins over ``entry_timing``. Exit timing
    defaults to ``current_close``.

    Raises
    ------
    DSLParseError
        The text does not follow the grammar.
    SchemaError
        The parsed strategy fails validation (unknown names, bad timings, ...).
    """
    parser = Parser(tokenize(dsl_text), source_text=dsl_text)
    rules = parser.parse_rules()
    if rules["entry"]["timing"] is None:
        rules["entry"]["timing"] = entry_timing
    if rules["exit"]["timing"] is None:
        rules["exit"]["timing"] = "current_close"
    raw: Dict[str, Any] = {**rules, "universe": list(universe)}
    if cash is not None:
        raw["cash"] = cash
    if slippage_bp is not None:
        raw["slippage_bp"] = slippage_bp
    return validate(raw)
