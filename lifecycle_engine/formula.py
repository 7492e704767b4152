"""
Formula language for condition expressions.

Supports formulas such as::

    credits_balance > 100
    (credits_balance > 100 AND is_paid_user == true) OR total_generations < 5

Grammar (AND binds tighter than OR, parentheses override)::

    expression := orExpr
    orExpr     := andExpr (OR andExpr)*
    andExpr    := primary (AND primary)*
    primary    := condition | '(' expression ')'
    condition  := FIELD OPERATOR VALUE

The tokenizer is lenient and never fails: characters it does not recognise
are dropped.  The parser raises ``FormulaSyntaxError`` and does not recover.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from lifecycle_engine.models import (
    OP_EQUALS,
    OP_EXISTS,
    OP_GT,
    OP_GTE,
    OP_IN,
    OP_LT,
    OP_LTE,
    OP_NOT_EQUALS,
    OP_NOT_EXISTS,
    OP_NOT_IN,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------
TOKEN_FIELD    = "FIELD"
TOKEN_OPERATOR = "OPERATOR"
TOKEN_VALUE    = "VALUE"
TOKEN_AND      = "AND"
TOKEN_OR       = "OR"
TOKEN_LPAREN   = "LPAREN"
TOKEN_RPAREN   = "RPAREN"
TOKEN_EOF      = "EOF"

# A word is an operator when it starts with one of these; the longest match wins.
COMPARISON_OPERATORS: Tuple[str, ...] = (
    "==", "!=", ">=", "<=", ">", "<", "in", "!in", "exists", "!exists",
)

DISPLAY_TO_OPERATOR = {
    "==": OP_EQUALS,
    "!=": OP_NOT_EQUALS,
    ">": OP_GT,
    ">=": OP_GTE,
    "<": OP_LT,
    "<=": OP_LTE,
    "in": OP_IN,
    "!in": OP_NOT_IN,
    "exists": OP_EXISTS,
    "!exists": OP_NOT_EXISTS,
}

OPERATOR_TO_DISPLAY = {v: k for k, v in DISPLAY_TO_OPERATOR.items()}

_WORD_CHAR = re.compile(r"[A-Za-z0-9_!<>=.]")
_DIGITS = "0123456789"
_NUMBER_CHAR = re.compile(r"[0-9.\-]")


@dataclass(frozen=True, slots=True)
class Token:
    kind:     str
    text:     str
    position: int       # character offset into the formula


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ConditionNode:
    field:    str
    operator: str       # internal enum, e.g. "GT"
    value:    str       # untyped; coerced at evaluation time


@dataclass(frozen=True, slots=True)
class LogicalNode:
    kind:  str          # "AND" | "OR"
    left:  "Node"
    right: "Node"


Node = Union[ConditionNode, LogicalNode]


class FormulaSyntaxError(ValueError):
    """Structural parse failure with the offending token position."""

    def __init__(self, message: str, position: int) -> None:
        super().__init__(message)
        self.message = message
        self.position = position


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid:    bool
    error:    Optional[str] = None
    position: Optional[int] = None
    length:   Optional[int] = None


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------
def tokenize(formula: str) -> List[Token]:
    """Lex a formula into tokens, always terminated by an EOF token."""
    tokens: List[Token] = []
    i = 0
    n = len(formula)

    while i < n:
        char = formula[i]

        if char.isspace():
            i += 1
            continue

        if char == "(":
            tokens.append(Token(TOKEN_LPAREN, "(", i))
            i += 1
            continue

        if char == ")":
            tokens.append(Token(TOKEN_RPAREN, ")", i))
            i += 1
            continue

        # Quoted literal; an unterminated quote runs to the end of input
        if char in ("'", '"'):
            start = i
            end = formula.find(char, i + 1)
            if end == -1:
                end = n
            tokens.append(Token(TOKEN_VALUE, formula[i + 1:end], start))
            i = end + 1
            continue

        if char in _DIGITS or (char == "-" and i + 1 < n and formula[i + 1] in _DIGITS):
            start = i
            while i < n and _NUMBER_CHAR.match(formula[i]):
                i += 1
            tokens.append(Token(TOKEN_VALUE, formula[start:i], start))
            continue

        start = i
        while i < n and _WORD_CHAR.match(formula[i]):
            i += 1
        word = formula[start:i]

        if not word:
            # Unknown character, skip
            i += 1
            continue

        upper = word.upper()
        if upper == "AND":
            tokens.append(Token(TOKEN_AND, "AND", start))
        elif upper == "OR":
            tokens.append(Token(TOKEN_OR, "OR", start))
        elif upper in ("TRUE", "FALSE"):
            tokens.append(Token(TOKEN_VALUE, word.lower(), start))
        else:
            op = _match_operator(word)
            if op is not None:
                tokens.append(Token(TOKEN_OPERATOR, op, start))
                i = start + len(op)
            else:
                tokens.append(Token(TOKEN_FIELD, word, start))

    tokens.append(Token(TOKEN_EOF, "", i))
    return tokens


def _match_operator(word: str) -> Optional[str]:
    matches = [op for op in COMPARISON_OPERATORS if word.startswith(op)]
    return max(matches, key=len) if matches else None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------
class Parser:
    """Recursive-descent parser over a token list; one instance per parse."""

    def __init__(self, tokens: Sequence[Token]) -> None:
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Token:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return Token(TOKEN_EOF, "", -1)

    def consume(self, expected: Optional[str] = None) -> Token:
        token = self.peek()
        if expected is not None and token.kind != expected:
            raise FormulaSyntaxError(
                f"Expected {expected} but got {token.kind} at position {token.position}",
                token.position,
            )
        self.pos += 1
        return token

    def parse(self) -> Node:
        ast = self.parse_or()
        token = self.peek()
        if token.kind != TOKEN_EOF:
            raise FormulaSyntaxError(
                f"Unexpected token {token.text} at position {token.position}",
                token.position,
            )
        return ast

    def parse_or(self) -> Node:
        left = self.parse_and()
        while self.peek().kind == TOKEN_OR:
            self.consume(TOKEN_OR)
            left = LogicalNode(TOKEN_OR, left, self.parse_and())
        return left

    def parse_and(self) -> Node:
        left = self.parse_primary()
        while self.peek().kind == TOKEN_AND:
            self.consume(TOKEN_AND)
            left = LogicalNode(TOKEN_AND, left, self.parse_primary())
        return left

    def parse_primary(self) -> Node:
        if self.peek().kind == TOKEN_LPAREN:
            self.consume(TOKEN_LPAREN)
            expr = self.parse_or()
            self.consume(TOKEN_RPAREN)
            return expr
        return self.parse_condition()

    def parse_condition(self) -> ConditionNode:
        field = self.consume(TOKEN_FIELD).text
        operator = self.consume(TOKEN_OPERATOR).text
        value = self.consume(TOKEN_VALUE).text
        return ConditionNode(field, DISPLAY_TO_OPERATOR.get(operator, operator), value)


def parse(tokens: Sequence[Token]) -> Node:
    return Parser(tokens).parse()


def parse_formula(formula: str) -> Node:
    """Tokenize and parse a formula string into an AST."""
    if not formula.strip():
        raise FormulaSyntaxError("Formula cannot be empty", 0)
    tokens = tokenize(formula)
    logger.debug("Tokenized %d tokens from %r", len(tokens), formula)
    return parse(tokens)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def iter_conditions(node: Node) -> Iterable[ConditionNode]:
    """Yield leaf conditions depth-first, left to right."""
    if isinstance(node, ConditionNode):
        yield node
    else:
        yield from iter_conditions(node.left)
        yield from iter_conditions(node.right)


def validate_formula(formula: str, valid_fields: Iterable[str] = ()) -> ValidationResult:
    """
    Check a formula without raising.

    Syntax errors report the token position with length 1.  When
    ``valid_fields`` is non-empty, the first field not in it is reported with
    the span of its FIELD token.
    """
    allowed = set(valid_fields)
    try:
        tokens = tokenize(formula)
        ast = parse(tokens)
    except FormulaSyntaxError as exc:
        return ValidationResult(False, exc.message, exc.position, 1)

    if allowed:
        for cond in iter_conditions(ast):
            if cond.field in allowed:
                continue
            position = next(
                (t.position for t in tokens
                 if t.kind == TOKEN_FIELD and t.text == cond.field),
                0,
            )
            return ValidationResult(
                False,
                f'Unknown field "{cond.field}". Use autocomplete for valid field names.',
                position,
                len(cond.field),
            )

    return ValidationResult(True)
