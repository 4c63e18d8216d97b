"""Symbolic reconstruction of tapes with sympy.

The forward sweep is reused unchanged over a symbolic ring,
so the reconstructed expression is exactly what the numeric sweeps compute.
Variables become ``x[i]`` of ``sympy.IndexedBase("x")``,
parameters are substituted by their current values
and subexpressions by their already reconstructed expressions.
This is for inspection and export, never on the evaluation path.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np
import sympy
from numpy.typing import ArrayLike
from sympy.logic.boolalg import Boolean

from nlpdiff.model import QuadExpr
from nlpdiff.sweep import forward_pass
from nlpdiff.tape import Tape

X = sympy.IndexedBase("x")

_UNIVARIATE = {
    "+": lambda a: a,
    "-": lambda a: -a,
    "abs": sympy.Abs,
    "sqrt": sympy.sqrt,
    "cbrt": lambda a: sympy.sign(a) * sympy.Abs(a) ** sympy.Rational(1, 3),
    "abs2": lambda a: a**2,
    "inv": lambda a: 1 / a,
    "log": sympy.log,
    "log10": lambda a: sympy.log(a, 10),
    "log2": lambda a: sympy.log(a, 2),
    "log1p": lambda a: sympy.log(1 + a),
    "exp": sympy.exp,
    "exp2": lambda a: 2**a,
    "expm1": lambda a: sympy.exp(a) - 1,
    "sin": sympy.sin,
    "cos": sympy.cos,
    "tan": sympy.tan,
    "sec": sympy.sec,
    "csc": sympy.csc,
    "cot": sympy.cot,
    "asin": sympy.asin,
    "acos": sympy.acos,
    "atan": sympy.atan,
    "sinh": sympy.sinh,
    "cosh": sympy.cosh,
    "tanh": sympy.tanh,
    "asinh": sympy.asinh,
    "acosh": sympy.acosh,
    "atanh": sympy.atanh,
    "erf": sympy.erf,
    "erfc": sympy.erfc,
}

_RELATIONAL = {
    "<=": sympy.Le,
    "==": sympy.Eq,
    ">=": sympy.Ge,
    "<": sympy.Lt,
    ">": sympy.Gt,
}


def _number(c: float) -> sympy.Expr:
    c = float(c)
    if c.is_integer():
        return sympy.Integer(int(c))
    return sympy.Float(c)


def _as_bool(condition):
    """Numeric conditions are true when nonzero."""
    if isinstance(condition, Boolean):
        return condition
    return sympy.Ne(condition, 0)


class SympyRing:
    """Forward-only ring building sympy expressions."""

    def lift(self, c):
        return _number(c)

    def univariate(self, op, x):
        return _UNIVARIATE[op](x)

    def power(self, base, exponent):
        return base**exponent

    def log(self, x):
        return sympy.log(x)

    def maximum(self, values):
        return sympy.Max(*values)

    def minimum(self, values):
        return sympy.Min(*values)

    def compare(self, op, lhs, rhs):
        return _RELATIONAL[op](lhs, rhs)

    def logical(self, op, lhs, rhs):
        combine = sympy.And if op == "&&" else sympy.Or
        return combine(_as_bool(lhs), _as_bool(rhs))

    def select(self, condition, if_true, if_false):
        return sympy.Piecewise((if_true, _as_bool(condition)), (if_false, True))


SYMPY = SympyRing()


def tape_to_sympy(
    tape: Tape,
    parameters: Sequence[float] = (),
    subexpressions: Sequence[sympy.Basic | None] = (),
) -> sympy.Basic:
    """Expression of ``tape`` over ``x = sympy.IndexedBase("x")``.

    Args:
        tape: The tape to reconstruct.
        parameters: Values substituted for parameter leaves.
        subexpressions: Reconstructed subexpressions, addressed by index.
    """
    storage = [None] * len(tape)
    return forward_pass(storage, tape, X, parameters, subexpressions, SYMPY)


def subexpressions_to_sympy(
    subexpression_tapes: Sequence[Tape],
    order: Sequence[int],
    parameters: Sequence[float] = (),
) -> list[sympy.Basic | None]:
    """Reconstruct the subexpressions in ``order``, each once.

    Subexpressions outside ``order`` are left as ``None``.
    """
    expressions: list[sympy.Basic | None] = [None] * len(subexpression_tapes)
    for k in order:
        expressions[k] = tape_to_sympy(subexpression_tapes[k], parameters, expressions)
    return expressions


def quad_to_sympy(expr: QuadExpr) -> sympy.Expr:
    terms = [_number(expr.constant)]
    for i, c in zip(expr.affine_vars, expr.affine_coeffs, strict=True):
        terms.append(_number(c) * X[i])
    for i, j, q in zip(expr.qvars1, expr.qvars2, expr.qcoeffs, strict=True):
        terms.append(_number(q) * X[i] * X[j])
    return sympy.Add(*terms)


def linear_to_sympy(variables, coefficients) -> sympy.Expr:
    return sympy.Add(
        *(_number(a) * X[j] for j, a in zip(variables, coefficients, strict=True))
    )


def constraint_to_sympy(body: sympy.Expr, lb: float, ub: float) -> sympy.Basic:
    """Wrap ``body`` in the relation its bounds describe.

    Equal bounds give ``Eq``, one finite bound gives ``<=`` or ``>=``,
    two finite bounds give ``And(lb <= body, body <= ub)``.
    A row without finite bounds is returned as the bare body.
    """
    if lb == ub:
        return sympy.Eq(body, _number(lb))
    has_lb, has_ub = math.isfinite(lb), math.isfinite(ub)
    if has_lb and has_ub:
        return sympy.And(sympy.Le(_number(lb), body), sympy.Le(body, _number(ub)))
    if has_ub:
        return sympy.Le(body, _number(ub))
    if has_lb:
        return sympy.Ge(body, _number(lb))
    return body


def evaluate_sympy(expr: sympy.Basic, x: ArrayLike) -> float:
    """Numeric value of a reconstructed expression at ``x``."""
    x = np.asarray(x, dtype=np.float64)
    values = {X[i]: sympy.Float(float(v)) for i, v in enumerate(x)}
    result = expr.xreplace(values)
    if isinstance(result, Boolean):
        return 1.0 if bool(result) else 0.0
    return float(result.evalf())
