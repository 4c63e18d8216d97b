"""Operator tables shared by the tape, the sweeps and the sparsity analysis.

Node operator codes are positions in these tuples.
Each univariate operator carries its value together with its first and second
derivative on real numbers, which is all the dual-number ring needs to
differentiate through it twice.
"""

import math
from collections.abc import Callable
from typing import NamedTuple

import numpy as np
from scipy import special

OPERATORS: tuple[str, ...] = ("+", "-", "*", "^", "/", "ifelse", "max", "min")
"""Operators of ``CALL`` nodes."""

COMPARISON_OPERATORS: tuple[str, ...] = ("<=", "==", ">=", "<", ">")
"""Operators of ``COMPARISON`` nodes, chained over two or more arguments."""

LOGIC_OPERATORS: tuple[str, ...] = ("&&", "||")
"""Operators of ``LOGIC`` nodes, always binary."""

OPERATOR_TO_ID = {op: i for i, op in enumerate(OPERATORS)}
COMPARISON_OPERATOR_TO_ID = {op: i for i, op in enumerate(COMPARISON_OPERATORS)}
LOGIC_OPERATOR_TO_ID = {op: i for i, op in enumerate(LOGIC_OPERATORS)}

# Binary or ternary operators with a fixed arity.
FIXED_ARITY: dict[str, int] = {"-": 2, "^": 2, "/": 2, "ifelse": 3}


class Univariate(NamedTuple):
    """A real function with its first and second derivative."""

    f: Callable
    df: Callable
    d2f: Callable


_LN2 = math.log(2.0)
_LN10 = math.log(10.0)
_TWO_OVER_SQRT_PI = 2.0 / math.sqrt(math.pi)


def _sec(x):
    return 1.0 / np.cos(x)


def _csc(x):
    return 1.0 / np.sin(x)


def _cot(x):
    return 1.0 / np.tan(x)


UNIVARIATE: dict[str, Univariate] = {
    "+": Univariate(lambda x: x, lambda x: 1.0, lambda x: 0.0),
    "-": Univariate(lambda x: -x, lambda x: -1.0, lambda x: 0.0),
    "abs": Univariate(np.abs, np.sign, lambda x: 0.0),
    "sqrt": Univariate(
        np.sqrt,
        lambda x: 0.5 / np.sqrt(x),
        lambda x: -0.25 / (x * np.sqrt(x)),
    ),
    "cbrt": Univariate(
        np.cbrt,
        lambda x: 1.0 / (3.0 * np.cbrt(x) ** 2),
        lambda x: -2.0 / (9.0 * np.cbrt(x) ** 5),
    ),
    "abs2": Univariate(lambda x: x * x, lambda x: 2.0 * x, lambda x: 2.0),
    "inv": Univariate(
        lambda x: 1.0 / x, lambda x: -1.0 / (x * x), lambda x: 2.0 / (x * x * x)
    ),
    "log": Univariate(np.log, lambda x: 1.0 / x, lambda x: -1.0 / (x * x)),
    "log10": Univariate(
        np.log10, lambda x: 1.0 / (x * _LN10), lambda x: -1.0 / (x * x * _LN10)
    ),
    "log2": Univariate(
        np.log2, lambda x: 1.0 / (x * _LN2), lambda x: -1.0 / (x * x * _LN2)
    ),
    "log1p": Univariate(
        np.log1p, lambda x: 1.0 / (1.0 + x), lambda x: -1.0 / ((1.0 + x) ** 2)
    ),
    "exp": Univariate(np.exp, np.exp, np.exp),
    "exp2": Univariate(
        np.exp2, lambda x: _LN2 * np.exp2(x), lambda x: _LN2 * _LN2 * np.exp2(x)
    ),
    "expm1": Univariate(np.expm1, np.exp, np.exp),
    "sin": Univariate(np.sin, np.cos, lambda x: -np.sin(x)),
    "cos": Univariate(np.cos, lambda x: -np.sin(x), lambda x: -np.cos(x)),
    "tan": Univariate(
        np.tan,
        lambda x: 1.0 + np.tan(x) ** 2,
        lambda x: 2.0 * np.tan(x) * (1.0 + np.tan(x) ** 2),
    ),
    "sec": Univariate(
        _sec,
        lambda x: _sec(x) * np.tan(x),
        lambda x: _sec(x) * (np.tan(x) ** 2 + _sec(x) ** 2),
    ),
    "csc": Univariate(
        _csc,
        lambda x: -_csc(x) * _cot(x),
        lambda x: _csc(x) * (_cot(x) ** 2 + _csc(x) ** 2),
    ),
    "cot": Univariate(
        _cot,
        lambda x: -(_csc(x) ** 2),
        lambda x: 2.0 * _csc(x) ** 2 * _cot(x),
    ),
    "asin": Univariate(
        np.arcsin,
        lambda x: 1.0 / np.sqrt(1.0 - x * x),
        lambda x: x / (1.0 - x * x) ** 1.5,
    ),
    "acos": Univariate(
        np.arccos,
        lambda x: -1.0 / np.sqrt(1.0 - x * x),
        lambda x: -x / (1.0 - x * x) ** 1.5,
    ),
    "atan": Univariate(
        np.arctan,
        lambda x: 1.0 / (1.0 + x * x),
        lambda x: -2.0 * x / (1.0 + x * x) ** 2,
    ),
    "sinh": Univariate(np.sinh, np.cosh, np.sinh),
    "cosh": Univariate(np.cosh, np.sinh, np.cosh),
    "tanh": Univariate(
        np.tanh,
        lambda x: 1.0 - np.tanh(x) ** 2,
        lambda x: -2.0 * np.tanh(x) * (1.0 - np.tanh(x) ** 2),
    ),
    "asinh": Univariate(
        np.arcsinh,
        lambda x: 1.0 / np.sqrt(x * x + 1.0),
        lambda x: -x / (x * x + 1.0) ** 1.5,
    ),
    "acosh": Univariate(
        np.arccosh,
        lambda x: 1.0 / np.sqrt(x * x - 1.0),
        lambda x: -x / (x * x - 1.0) ** 1.5,
    ),
    "atanh": Univariate(
        np.arctanh,
        lambda x: 1.0 / (1.0 - x * x),
        lambda x: 2.0 * x / (1.0 - x * x) ** 2,
    ),
    "erf": Univariate(
        special.erf,
        lambda x: _TWO_OVER_SQRT_PI * np.exp(-x * x),
        lambda x: -2.0 * x * _TWO_OVER_SQRT_PI * np.exp(-x * x),
    ),
    "erfc": Univariate(
        special.erfc,
        lambda x: -_TWO_OVER_SQRT_PI * np.exp(-x * x),
        lambda x: 2.0 * x * _TWO_OVER_SQRT_PI * np.exp(-x * x),
    ),
}
"""Univariate operators of ``CALLUNIVAR`` nodes."""

UNIVARIATE_OPERATORS: tuple[str, ...] = tuple(UNIVARIATE)
UNIVARIATE_OPERATOR_TO_ID = {op: i for i, op in enumerate(UNIVARIATE_OPERATORS)}

# Univariate operators that pass their argument through affinely.
AFFINE_UNIVARIATE: frozenset[str] = frozenset({"+", "-"})
