"""Numeric expression evaluation for math questions."""

from __future__ import annotations

import math
import re
from tokenize import TokenError
from typing import Protocol

import sympy
from sympy.core.sympify import SympifyError
from sympy.parsing.sympy_parser import convert_xor, parse_expr, standard_transformations

MAX_EXPRESSION_LENGTH = 200
MAX_EXPONENT = 1000

# No underscores, quotes or brackets: parse_expr only ever sees arithmetic and function calls.
_ALLOWED = re.compile(r"^[0-9A-Za-z\s+\-*/^().,]*$")

_TRANSFORMATIONS = standard_transformations + (convert_xor,)

_NAMESPACE = {
    "pi": sympy.pi,
    "e": sympy.E,
    "ln": sympy.log,
    "abs": sympy.Abs,
}

_FUNCTIONS = (
    sympy.sin,
    sympy.cos,
    sympy.tan,
    sympy.asin,
    sympy.acos,
    sympy.atan,
    sympy.log,
    sympy.exp,
    sympy.Abs,
)

_PARSE_ERRORS = (SympifyError, TokenError, SyntaxError, TypeError, ValueError, AttributeError, ArithmeticError, RecursionError)
_EVAL_ERRORS = (TypeError, ValueError, AttributeError, ArithmeticError, RecursionError)


class ExpressionError(ValueError):
    """Raised when an expression cannot be evaluated to a finite real number."""


class ExpressionEvaluator(Protocol):
    def evaluate(self, expression: str) -> float:
        """Return the numeric value of ``expression`` or raise ``ExpressionError``."""


def _magnitude(value: sympy.Expr) -> float:
    return abs(complex(value))


def _numeric(node: sympy.Expr) -> sympy.Expr:
    """Evaluate ``node`` bottom-up on floats.

    Only numbers, ``+ - * / ^`` and a few elementary functions are accepted.
    Exponents (and ``exp`` arguments) are checked against ``MAX_EXPONENT``
    before the power is taken, so towers like ``9^9^9^9`` are refused instead
    of computed.
    """
    if isinstance(node, (sympy.Number, sympy.NumberSymbol)):
        return node.evalf()
    if not isinstance(node, (sympy.Add, sympy.Mul, sympy.Pow) + _FUNCTIONS):
        raise ExpressionError(f"unsupported operation {node.func.__name__}")

    args = [_numeric(arg) for arg in node.args]
    if isinstance(node, sympy.Pow) and _magnitude(args[1]) > MAX_EXPONENT:
        raise ExpressionError(f"exponent too large (limit {MAX_EXPONENT})")
    if isinstance(node, sympy.exp) and _magnitude(args[0]) > MAX_EXPONENT:
        raise ExpressionError(f"exponent too large (limit {MAX_EXPONENT})")
    return node.func(*args)


class SympyEvaluator:
    """Evaluates plain arithmetic (``"3*3"``, ``"2^10"``, ``"sqrt(2)/2"``) with SymPy."""

    def evaluate(self, expression: str) -> float:
        text = str(expression or "").strip()
        if not text:
            raise ExpressionError("empty expression")
        if len(text) > MAX_EXPRESSION_LENGTH:
            raise ExpressionError("expression too long")
        if not _ALLOWED.match(text):
            raise ExpressionError(f"unsupported characters in {text!r}")

        try:
            parsed = parse_expr(
                text,
                local_dict=dict(_NAMESPACE),
                transformations=_TRANSFORMATIONS,
                evaluate=False,
            )
        except _PARSE_ERRORS as exc:
            raise ExpressionError(f"could not parse {text!r}: {exc}") from exc

        if not isinstance(parsed, sympy.Expr):
            raise ExpressionError(f"{text!r} is not a numeric expression")
        if parsed.free_symbols:
            names = ", ".join(sorted(str(s) for s in parsed.free_symbols))
            raise ExpressionError(f"undefined symbol(s): {names}")

        try:
            value = complex(_numeric(parsed))
        except _EVAL_ERRORS as exc:
            raise ExpressionError(f"could not evaluate {text!r}: {exc}") from exc

        if abs(value.imag) > 1e-12:
            raise ExpressionError(f"{text!r} is not a real number")
        if not math.isfinite(value.real):
            raise ExpressionError(f"{text!r} is not finite")
        return value.real
