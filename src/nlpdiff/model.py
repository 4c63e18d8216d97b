"""Front-end model data consumed by the evaluator.

The model owns the definitions: variables with bounds and start values,
a linear/quadratic objective part evaluated in closed form,
an optional nonlinear objective tape,
linear, quadratic and nonlinear constraints,
shared subexpression tapes, and nonlinear parameters.
Expressions enter as tapes or as nested tuples (see `tape_from_tree`).
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

import numpy as np
from numpy.typing import ArrayLike, NDArray

from nlpdiff.tape import (
    ParameterRef,
    SubexpressionRef,
    Tape,
    VariableRef,
    tape_from_tree,
)

Sense = Literal["min", "max"]


@dataclass
class QuadExpr:
    """``constant + sum(c * x[i]) + sum(q * x[i] * x[j])``.

    Quadratic terms are stored as given;
    ``(i, j)`` and ``(j, i)`` may both appear and are summed.
    """

    affine_vars: list[int] = field(default_factory=list)
    affine_coeffs: list[float] = field(default_factory=list)
    constant: float = 0.0
    qvars1: list[int] = field(default_factory=list)
    qvars2: list[int] = field(default_factory=list)
    qcoeffs: list[float] = field(default_factory=list)

    def __post_init__(self) -> None:
        if len(self.affine_vars) != len(self.affine_coeffs):
            raise ValueError("affine_vars and affine_coeffs must have the same length.")
        if not len(self.qvars1) == len(self.qvars2) == len(self.qcoeffs):
            raise ValueError("qvars1, qvars2 and qcoeffs must have the same length.")

    @property
    def is_affine(self) -> bool:
        return not self.qcoeffs

    @property
    def variables(self) -> set[int]:
        return {*self.affine_vars, *self.qvars1, *self.qvars2}

    def value(self, x: NDArray[np.float64]) -> float:
        total = self.constant
        for i, c in zip(self.affine_vars, self.affine_coeffs, strict=True):
            total += c * x[i]
        for i, j, q in zip(self.qvars1, self.qvars2, self.qcoeffs, strict=True):
            total += q * x[i] * x[j]
        return float(total)

    def add_gradient(self, x: NDArray[np.float64], out: NDArray[np.float64]) -> None:
        """Add the gradient at ``x`` into ``out``."""
        for i, c in zip(self.affine_vars, self.affine_coeffs, strict=True):
            out[i] += c
        for i, j, q in zip(self.qvars1, self.qvars2, self.qcoeffs, strict=True):
            out[i] += q * x[j]
            out[j] += q * x[i]

    def jacobian_columns(self) -> list[int]:
        """Gradient columns, with duplicates.

        One column per affine term followed by two per quadratic term
        (``qvars1`` then ``qvars2``), the layout `jacobian_values` fills.
        """
        cols = list(self.affine_vars)
        for i, j in zip(self.qvars1, self.qvars2, strict=True):
            cols.append(i)
            cols.append(j)
        return cols

    def jacobian_values(self, x: NDArray[np.float64]) -> list[float]:
        values = [float(c) for c in self.affine_coeffs]
        for i, j, q in zip(self.qvars1, self.qvars2, self.qcoeffs, strict=True):
            values.append(q * x[j])
            values.append(q * x[i])
        return values

    def hessian_structure(self) -> tuple[list[int], list[int]]:
        """Lower-triangular coordinates, one per quadratic term."""
        rows, cols = [], []
        for i, j in zip(self.qvars1, self.qvars2, strict=True):
            rows.append(max(i, j))
            cols.append(min(i, j))
        return rows, cols

    def hessian_values(self, scale: float = 1.0) -> list[float]:
        """Entries in `hessian_structure` order; diagonal terms count twice."""
        return [
            scale * (2.0 * q if i == j else q)
            for i, j, q in zip(self.qvars1, self.qvars2, self.qcoeffs, strict=True)
        ]

    def add_hessian_vector_product(
        self, v: NDArray[np.float64], out: NDArray[np.float64], scale: float = 1.0
    ) -> None:
        for i, j, q in zip(self.qvars1, self.qvars2, self.qcoeffs, strict=True):
            out[i] += scale * q * v[j]
            out[j] += scale * q * v[i]


@dataclass
class LinearConstraint:
    """``lb <= sum(coeffs * x[vars]) <= ub``."""

    vars: list[int]
    coeffs: list[float]
    lb: float = -math.inf
    ub: float = math.inf


@dataclass
class QuadraticConstraint:
    """``lb <= expr(x) <= ub``."""

    expr: QuadExpr
    lb: float = -math.inf
    ub: float = math.inf


@dataclass
class NonlinearConstraint:
    """``lb <= tape(x) <= ub``."""

    tape: Tape
    lb: float = -math.inf
    ub: float = math.inf


class ParameterStore:
    """Values of nonlinear parameters, addressed by handle.

    Tapes read parameters by handle at every forward sweep,
    so changing a value takes effect at the next evaluation
    without rebuilding any tape.
    """

    def __init__(self) -> None:
        self._values: list[float] = []

    def __len__(self) -> int:
        return len(self._values)

    def add(self, value: float) -> ParameterRef:
        self._values.append(float(value))
        return ParameterRef(len(self._values) - 1)

    def get(self, handle: ParameterRef | int) -> float:
        return self._values[_index(handle, ParameterRef)]

    def set(self, handle: ParameterRef | int, value: float) -> None:
        self._values[_index(handle, ParameterRef)] = float(value)

    @property
    def values(self) -> list[float]:
        return self._values


def _index(ref, kind: type) -> int:
    """Index of a ``kind`` handle or a plain integer."""
    if isinstance(ref, kind):
        return ref.index
    if isinstance(ref, tuple):
        raise TypeError(f"Expected a {kind.__name__} or an int, got {ref!r}.")
    return int(ref)


class Model:
    """Variables, objective, constraints and shared data of one problem.

    Example:
        >>> m = Model()
        >>> x1, x2 = m.add_variable(start=1.0), m.add_variable(start=0.5)
        >>> m.set_nonlinear_objective(("+", ("sin", ("*", x1, x2)), ("^", x1, 2)))
        >>> m.add_nonlinear_constraint(("+", x1, ("^", x2, 2)), ub=1.0)
        0
    """

    def __init__(self) -> None:
        self.lower: list[float] = []
        self.upper: list[float] = []
        self.start: list[float] = []
        self.sense: Sense = "min"
        self.objective = QuadExpr()
        self.nonlinear_objective: Tape | None = None
        self.linear_constraints: list[LinearConstraint] = []
        self.quadratic_constraints: list[QuadraticConstraint] = []
        self.nonlinear_constraints: list[NonlinearConstraint] = []
        self.subexpressions: list[Tape] = []
        self.parameters = ParameterStore()

    @property
    def num_variables(self) -> int:
        return len(self.lower)

    @property
    def num_constraints(self) -> int:
        return (
            len(self.linear_constraints)
            + len(self.quadratic_constraints)
            + len(self.nonlinear_constraints)
        )

    def add_variable(
        self,
        lower: float = -math.inf,
        upper: float = math.inf,
        start: float = math.nan,
    ) -> VariableRef:
        if lower > upper:
            raise ValueError(f"Lower bound {lower} exceeds upper bound {upper}.")
        self.lower.append(float(lower))
        self.upper.append(float(upper))
        self.start.append(float(start))
        return VariableRef(len(self.lower) - 1)

    def add_parameter(self, value: float) -> ParameterRef:
        return self.parameters.add(value)

    def add_subexpression(self, expression) -> SubexpressionRef:
        self.subexpressions.append(self._as_tape(expression))
        return SubexpressionRef(len(self.subexpressions) - 1)

    def set_objective(self, sense: Sense, expr: QuadExpr | None = None) -> None:
        """Set the closed-form part of the objective; clears the nonlinear part."""
        self.sense = _check_sense(sense)
        self.objective = expr if expr is not None else QuadExpr()
        self.nonlinear_objective = None

    def set_nonlinear_objective(self, expression, sense: Sense = "min") -> None:
        """Set the tape part of the objective; the closed-form part is kept."""
        self.sense = _check_sense(sense)
        self.nonlinear_objective = self._as_tape(expression)

    def add_linear_constraint(
        self,
        vars: Sequence[VariableRef | int],
        coeffs: Sequence[float],
        lb: float = -math.inf,
        ub: float = math.inf,
    ) -> int:
        if len(vars) != len(coeffs):
            raise ValueError("vars and coeffs must have the same length.")
        indices = [self._check_variable(v) for v in vars]
        self.linear_constraints.append(
            LinearConstraint(indices, [float(c) for c in coeffs], lb, ub)
        )
        return len(self.linear_constraints) - 1

    def add_quadratic_constraint(
        self, expr: QuadExpr, lb: float = -math.inf, ub: float = math.inf
    ) -> int:
        for v in expr.variables:
            self._check_variable(v)
        self.quadratic_constraints.append(QuadraticConstraint(expr, lb, ub))
        return len(self.quadratic_constraints) - 1

    def add_nonlinear_constraint(
        self, expression, lb: float = -math.inf, ub: float = math.inf
    ) -> int:
        self.nonlinear_constraints.append(
            NonlinearConstraint(self._as_tape(expression), lb, ub)
        )
        return len(self.nonlinear_constraints) - 1

    def set_start(self, variable: VariableRef | int, value: float) -> None:
        self.start[self._check_variable(variable)] = float(value)

    def bounds(self) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        return np.asarray(self.lower, dtype=np.float64), np.asarray(
            self.upper, dtype=np.float64
        )

    def start_point(self) -> NDArray[np.float64]:
        """Start values with missing (NaN) entries set to 0 and clamped to the bounds."""
        start = np.nan_to_num(np.asarray(self.start, dtype=np.float64), nan=0.0)
        lower, upper = self.bounds()
        return np.clip(start, lower, upper)

    def _check_variable(self, variable: VariableRef | int) -> int:
        index = _index(variable, VariableRef)
        if not 0 <= index < self.num_variables:
            raise IndexError(
                f"Variable {index} out of range; the model has {self.num_variables}."
            )
        return index

    @staticmethod
    def _as_tape(expression) -> Tape:
        if isinstance(expression, Tape):
            return expression
        return tape_from_tree(expression)


def _check_sense(sense: str) -> Sense:
    if sense not in ("min", "max"):
        raise ValueError(f"sense must be 'min' or 'max', got {sense!r}.")
    return sense


def as_point(x: ArrayLike, num_variables: int) -> NDArray[np.float64]:
    """Convert ``x`` to a float vector, checking its length."""
    x = np.asarray(x, dtype=np.float64)
    if x.shape != (num_variables,):
        msg = f"Expected a point of shape ({num_variables},), got {x.shape}."
        raise ValueError(msg)
    return x
