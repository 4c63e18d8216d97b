"""Numeric rings the tape sweeps run over.

The forward and reverse sweeps are written once
and delegate every ring-specific operation
(lifting constants, elementary functions, comparisons, branch selection)
to a ring object.
``REAL`` evaluates plain ``numpy.float64`` values.
``DUAL`` evaluates first-order dual numbers,
so a reverse sweep over dual values yields Hessian-vector products
(forward-over-reverse).
"""

from __future__ import annotations

import numbers
import operator
from typing import Any, Protocol

import numpy as np

from nlpdiff.operators import UNIVARIATE


class Dual:
    """A value paired with one directional-derivative component.

    Arithmetic follows the chain rule on the ``epsilon`` component.
    Setting ``__array_ufunc__`` to None makes numpy scalars
    defer to the reflected operators instead of building object arrays.
    """

    __slots__ = ("value", "epsilon")
    __array_ufunc__ = None

    def __init__(self, value=0.0, epsilon=0.0):
        self.value = np.float64(value)
        self.epsilon = np.float64(epsilon)

    def __repr__(self) -> str:
        return f"Dual({float(self.value)!r}, {float(self.epsilon)!r})"

    def __eq__(self, other) -> bool:
        other = _as_dual(other)
        if other is NotImplemented:
            return NotImplemented
        return self.value == other.value and self.epsilon == other.epsilon

    __hash__ = None

    def __neg__(self) -> Dual:
        return Dual(-self.value, -self.epsilon)

    def __pos__(self) -> Dual:
        return self

    def __add__(self, other) -> Dual:
        other = _as_dual(other)
        if other is NotImplemented:
            return NotImplemented
        return Dual(self.value + other.value, self.epsilon + other.epsilon)

    __radd__ = __add__

    def __sub__(self, other) -> Dual:
        other = _as_dual(other)
        if other is NotImplemented:
            return NotImplemented
        return Dual(self.value - other.value, self.epsilon - other.epsilon)

    def __rsub__(self, other) -> Dual:
        other = _as_dual(other)
        if other is NotImplemented:
            return NotImplemented
        return other - self

    def __mul__(self, other) -> Dual:
        other = _as_dual(other)
        if other is NotImplemented:
            return NotImplemented
        return Dual(
            self.value * other.value,
            self.epsilon * other.value + self.value * other.epsilon,
        )

    __rmul__ = __mul__

    def __truediv__(self, other) -> Dual:
        other = _as_dual(other)
        if other is NotImplemented:
            return NotImplemented
        value = self.value / other.value
        return Dual(value, (self.epsilon - value * other.epsilon) / other.value)

    def __rtruediv__(self, other) -> Dual:
        other = _as_dual(other)
        if other is NotImplemented:
            return NotImplemented
        return other / self

    def __pow__(self, other) -> Dual:
        other = _as_dual(other)
        if other is NotImplemented:
            return NotImplemented
        value = np.power(self.value, other.value)
        epsilon = np.float64(0.0)
        # Skip zero components so 0 * inf does not leak a NaN.
        if self.epsilon != 0:
            epsilon += (
                other.value * np.power(self.value, other.value - 1.0) * self.epsilon
            )
        if other.epsilon != 0:
            epsilon += value * np.log(self.value) * other.epsilon
        return Dual(value, epsilon)

    def __rpow__(self, other) -> Dual:
        other = _as_dual(other)
        if other is NotImplemented:
            return NotImplemented
        return other**self


def _as_dual(x) -> Dual:
    if isinstance(x, Dual):
        return x
    if isinstance(x, numbers.Real):
        return Dual(x, 0.0)
    return NotImplemented


def epsilon(x) -> float:
    """Directional-derivative component of ``x`` (zero for plain numbers)."""
    return x.epsilon if isinstance(x, Dual) else 0.0


_COMPARE = {
    "<=": operator.le,
    "==": operator.eq,
    ">=": operator.ge,
    "<": operator.lt,
    ">": operator.gt,
}


class Ring(Protocol):
    """Operations a tape sweep needs from a number system.

    Forward-only rings (symbolic or traced) need not implement
    ``univariate_derivative``, ``primal`` or ``epsilon``.
    """

    def lift(self, c: float) -> Any: ...

    def univariate(self, op: str, x: Any) -> Any: ...

    def univariate_derivative(self, op: str, x: Any) -> Any: ...

    def power(self, base: Any, exponent: Any) -> Any: ...

    def log(self, x: Any) -> Any: ...

    def maximum(self, values: list) -> Any: ...

    def minimum(self, values: list) -> Any: ...

    def compare(self, op: str, lhs: Any, rhs: Any) -> Any: ...

    def logical(self, op: str, lhs: Any, rhs: Any) -> Any: ...

    def select(self, condition: Any, if_true: Any, if_false: Any) -> Any: ...

    def truth(self, x: Any) -> bool: ...

    def primal(self, x: Any) -> float: ...

    def epsilon(self, x: Any) -> float: ...


class RealRing:
    """Plain ``numpy.float64`` arithmetic with IEEE semantics."""

    def lift(self, c):
        return np.float64(c)

    def univariate(self, op, x):
        return UNIVARIATE[op].f(x)

    def univariate_derivative(self, op, x):
        return UNIVARIATE[op].df(x)

    def power(self, base, exponent):
        return np.power(base, exponent)

    def log(self, x):
        return np.log(x)

    def maximum(self, values):
        return max(values, key=self.primal)

    def minimum(self, values):
        return min(values, key=self.primal)

    def compare(self, op, lhs, rhs):
        holds = _COMPARE[op](self.primal(lhs), self.primal(rhs))
        return self.lift(1.0 if holds else 0.0)

    def logical(self, op, lhs, rhs):
        if op == "&&":
            result = self.truth(lhs) and self.truth(rhs)
        else:
            result = self.truth(lhs) or self.truth(rhs)
        return self.lift(1.0 if result else 0.0)

    def select(self, condition, if_true, if_false):
        return if_true if self.truth(condition) else if_false

    def truth(self, x):
        return bool(self.primal(x) != 0)

    def primal(self, x):
        return x

    def epsilon(self, x):
        return 0.0


class DualRing(RealRing):
    """First-order dual numbers over ``numpy.float64``.

    Elementary functions use the real first and second derivatives
    from the operator table,
    so derivatives taken in this ring are themselves dual numbers.
    """

    def lift(self, c):
        return c if isinstance(c, Dual) else Dual(c, 0.0)

    def univariate(self, op, x):
        fn = UNIVARIATE[op]
        return Dual(fn.f(x.value), fn.df(x.value) * x.epsilon)

    def univariate_derivative(self, op, x):
        fn = UNIVARIATE[op]
        return Dual(fn.df(x.value), fn.d2f(x.value) * x.epsilon)

    def power(self, base, exponent):
        return base**exponent

    def log(self, x):
        return self.univariate("log", x)

    def primal(self, x):
        return x.value

    def epsilon(self, x):
        return x.epsilon


REAL = RealRing()
DUAL = DualRing()
