"""
Restricted Arithmetic for Harker Coordinate Solvers.

Space-group tables describe how to recover atomic coordinates from a
Harker peak with short formulas such as ``"u/2"`` or ``"(0.5-u)/2"``.
These strings come from configuration, so they are never executed as
code. Instead they are tokenised against a fixed alphabet and evaluated
by a small recursive-descent parser.

Grammar::

    expr    := term (('+' | '-') term)*
    term    := unary (('*' | '/' | '%') unary)*
    unary   := ('+' | '-') unary | primary
    primary := NUMBER | 'u' | 'v' | 'w' | '(' expr ')'

``%`` is the truncated remainder (sign follows the dividend), matching
``math.fmod``. Parentheses and unary signs may nest at most
``MAX_NESTING`` levels deep.

Author: Patterson Heavy-Atom Search Project
"""

import math
import re
from functools import lru_cache
from typing import Dict, List, Tuple

MAX_NESTING = 64

_ALLOWED = re.compile(r'^[uvw0-9+\-*/%().\s]*$')
_TOKEN = re.compile(r'\s*(?:(\d+\.?\d*|\.\d+)|([uvw])|([+\-*/%()]))')


class ExpressionError(ValueError):
    """Raised when a solver expression cannot be parsed or evaluated."""


def tokenize(text: str) -> List[Tuple[str, str]]:
    """
    Split an expression into ``(kind, text)`` tokens.

    Kinds are ``'num'``, ``'var'`` and ``'op'``. Any character outside the
    allowed alphabet rejects the whole expression.
    """
    if not isinstance(text, str):
        raise ExpressionError(f"Expression must be a string, got {type(text).__name__}")
    if not _ALLOWED.match(text):
        raise ExpressionError(f"Disallowed characters in expression: {text!r}")

    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if m is None:
            raise ExpressionError(f"Unexpected input at position {pos}: {text!r}")
        number, var, op = m.groups()
        if number is not None:
            tokens.append(('num', number))
        elif var is not None:
            tokens.append(('var', var))
        else:
            tokens.append(('op', op))
        pos = m.end()
    return tokens


class _Parser:
    """Recursive-descent parser producing a nested-tuple syntax tree."""

    def __init__(self, tokens: List[Tuple[str, str]]):
        self.tokens = tokens
        self.pos = 0
        self.depth = 0

    def descend(self):
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise ExpressionError(f"Expression nested deeper than {MAX_NESTING} levels")

    def peek(self):
        return self.tokens[self.pos] if self.pos < len(self.tokens) else (None, None)

    def take(self):
        tok = self.peek()
        self.pos += 1
        return tok

    def parse(self):
        if not self.tokens:
            raise ExpressionError("Empty expression")
        node = self.expr()
        if self.pos != len(self.tokens):
            raise ExpressionError(f"Unexpected token: {self.peek()[1]!r}")
        return node

    def expr(self):
        node = self.term()
        while self.peek() in (('op', '+'), ('op', '-')):
            op = self.take()[1]
            node = (op, node, self.term())
        return node

    def term(self):
        node = self.unary()
        while self.peek() in (('op', '*'), ('op', '/'), ('op', '%')):
            op = self.take()[1]
            node = (op, node, self.unary())
        return node

    def unary(self):
        if self.peek() in (('op', '+'), ('op', '-')):
            op = self.take()[1]
            self.descend()
            node = ('neg' if op == '-' else 'pos', self.unary())
            self.depth -= 1
            return node
        return self.primary()

    def primary(self):
        kind, text = self.take()
        if kind == 'num':
            return ('num', float(text))
        if kind == 'var':
            return ('var', text)
        if (kind, text) == ('op', '('):
            self.descend()
            node = self.expr()
            if self.take() != ('op', ')'):
                raise ExpressionError("Missing closing parenthesis")
            self.depth -= 1
            return node
        if kind is None:
            raise ExpressionError("Unexpected end of expression")
        raise ExpressionError(f"Unexpected token: {text!r}")


@lru_cache(maxsize=256)
def parse_expression(text: str):
    """Parse an expression into a syntax tree (cached per string)."""
    return _Parser(tokenize(text)).parse()


def _evaluate_node(node, env: Dict[str, float]) -> float:
    kind = node[0]
    if kind == 'num':
        return node[1]
    if kind == 'var':
        return env[node[1]]
    if kind == 'neg':
        return -_evaluate_node(node[1], env)
    if kind == 'pos':
        return _evaluate_node(node[1], env)

    left = _evaluate_node(node[1], env)
    right = _evaluate_node(node[2], env)
    if kind == '+':
        return left + right
    if kind == '-':
        return left - right
    if kind == '*':
        return left * right
    if right == 0.0:
        raise ExpressionError(f"Division by zero in '{kind}'")
    if kind == '/':
        return left / right
    return math.fmod(left, right)


def evaluate_expression(text: str, u: float, v: float, w: float) -> float:
    """
    Evaluate a solver expression at a peak position.

    Raises
    ------
    ExpressionError
        If the expression is malformed or too deeply nested, divides by
        zero, or does not produce a finite number.
    """
    try:
        node = parse_expression(text)
        result = _evaluate_node(node, {'u': u, 'v': v, 'w': w})
    except ExpressionError:
        raise
    except (OverflowError, ValueError, RecursionError) as e:
        raise ExpressionError(f"Evaluation failed for {text!r}: {e}") from e
    if not math.isfinite(result):
        raise ExpressionError(f"Solver returned non-finite: {result}")
    return result
