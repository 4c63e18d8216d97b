"""The evaluator façade: the NLP callback protocol over one model.

`NLPEvaluator` owns the derived state of every tape of a `Model`:
sparsity and coloring plans built once by `initialize`,
scratch buffers, and the last evaluated point.
Linear and quadratic terms are always evaluated in closed form;
tapes go through the forward/reverse sweeps.

Constraint rows are ordered linear, quadratic, nonlinear.
Coordinate lists follow the same block order,
and within the nonlinear block each tape keeps its own order.
"""

from __future__ import annotations

import logging
import time
import warnings
from collections.abc import Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Literal

import numpy as np
import sympy
from numpy.typing import ArrayLike, NDArray
from scipy.sparse import csc_matrix

from nlpdiff.coloring import ColoringOracle, StarColoring
from nlpdiff.errors import (
    CapabilityNotRequestedError,
    StaleExternalDataError,
    TapeInvariantError,
    UnsupportedFeatureError,
)
from nlpdiff.expression import (
    constraint_to_sympy,
    linear_to_sympy,
    quad_to_sympy,
    subexpressions_to_sympy,
    tape_to_sympy,
)
from nlpdiff.hessian import FunctionStorage, hessian_slice, hessian_vector_product
from nlpdiff.model import Model, as_point
from nlpdiff.pattern import SparsityPattern
from nlpdiff.sparsity import (
    Linearity,
    classify_linearity,
    compute_gradient_sparsity,
    compute_hessian_sparsity,
    list_subexpressions,
    order_subexpressions,
)
from nlpdiff.subexpressions import SubexpressionCache, SubexpressionStorage
from nlpdiff.sweep import forward_pass, reverse_pass
from nlpdiff.tape import Tape

logger = logging.getLogger(__name__)

Feature = Literal["Value", "Grad", "Jac", "Hess", "HessVec", "ExprGraph"]
SUPPORTED_FEATURES: frozenset[str] = frozenset(
    {"Value", "Grad", "Jac", "Hess", "HessVec", "ExprGraph"}
)


@dataclass(frozen=True)
class EvaluatorConfig:
    """Options of one evaluator.

    Attributes:
        allow_resolve: Permit `NLPEvaluator.prepare_resolve` on a model
            without nonlinear parameters.
        warn_on_new_features: Warn when a repeated ``initialize``
            asks for capabilities the first call did not grant.
    """

    allow_resolve: bool = False
    warn_on_new_features: bool = True


@dataclass
class EvaluationStats:
    """Counters and cumulative wall time of the callbacks.

    Attributes:
        forward_sweeps: Real forward sweeps over the whole problem,
            i.e. evaluations at a new point.
        subexpression_forward: Forward sweeps per subexpression.
        calls: Number of calls per callback name.
        seconds: Cumulative wall time per callback name.
    """

    forward_sweeps: int = 0
    subexpression_forward: list[int] = field(default_factory=list)
    calls: dict[str, int] = field(default_factory=dict)
    seconds: dict[str, float] = field(default_factory=dict)

    def record(self, name: str, elapsed: float) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        self.seconds[name] = self.seconds.get(name, 0.0) + elapsed


class NLPEvaluator:
    """Values and derivatives of a `Model` for a nonlinear solver.

    Args:
        model: The problem definition. The evaluator keeps a reference;
            its tapes must not change after `initialize`.
        config: Evaluator options.
        coloring: Coloring oracle for sparse Hessians.
            Defaults to [`StarColoring`][nlpdiff.StarColoring].

    Example:
        >>> ev = NLPEvaluator(model)
        >>> ev.initialize({"Grad", "Jac", "Hess"})
        >>> ev.eval_gradient([1.0, 0.5])
    """

    def __init__(
        self,
        model: Model,
        *,
        config: EvaluatorConfig | None = None,
        coloring: ColoringOracle | None = None,
    ):
        self.model = model
        self.config = config if config is not None else EvaluatorConfig()
        self.coloring = coloring if coloring is not None else StarColoring()
        self.stats = EvaluationStats()
        self._features: frozenset[str] = frozenset()
        self._initialized = False
        self._last_x = np.full(model.num_variables, np.nan)
        self._last_parameters: list[float] = []
        self._sympy_memo: tuple[list[float], list[sympy.Expr | None]] | None = None

    # Setup

    @property
    def num_variables(self) -> int:
        return self.model.num_variables

    @property
    def num_constraints(self) -> int:
        return self.model.num_constraints

    def features_available(self) -> frozenset[str]:
        """Capabilities this evaluator can provide."""
        return SUPPORTED_FEATURES

    def initialize(self, requested: Iterable[Feature]) -> None:
        """Build all sparsity and coloring plans for ``requested``.

        Only the first call does any work.
        Capabilities cannot be added later;
        a repeated call asking for new ones is otherwise ignored.

        Raises:
            UnsupportedFeatureError: If a name is not a supported capability.
        """
        requested = frozenset(requested)
        unknown = requested - SUPPORTED_FEATURES
        if unknown:
            msg = (
                f"Unsupported features {sorted(unknown)}; "
                f"supported are {sorted(SUPPORTED_FEATURES)}."
            )
            raise UnsupportedFeatureError(msg)

        if self._initialized:
            new = requested - self._features
            if new and self.config.warn_on_new_features:
                warnings.warn(
                    "Evaluator is already initialized; "
                    f"ignoring new features {sorted(new)}.",
                    UserWarning,
                    stacklevel=2,
                )
            return

        start = time.perf_counter()
        model = self.model
        n = model.num_variables
        want_hess = "Hess" in requested
        want_dual = want_hess or "HessVec" in requested

        main_tapes: list[Tape] = []
        if model.nonlinear_objective is not None:
            main_tapes.append(model.nonlinear_objective)
        main_tapes.extend(c.tape for c in model.nonlinear_constraints)
        order, individual_orders = order_subexpressions(
            main_tapes, model.subexpressions
        )

        num_sub = len(model.subexpressions)
        self._sub_linearity = [Linearity.NONLINEAR] * num_sub
        self._sub_variables: list[set[int]] = [set() for _ in range(num_sub)]
        self._sub_edges: list[set[tuple[int, int]]] = [set() for _ in range(num_sub)]
        storages: list[SubexpressionStorage | None] = [None] * num_sub
        for k in order:
            tape = model.subexpressions[k]
            _check_variables(tape, n, f"subexpression {k}")
            linearity = classify_linearity(tape, self._sub_linearity)
            variables = compute_gradient_sparsity(tape)
            for r in list_subexpressions(tape):
                variables |= self._sub_variables[r]
            self._sub_linearity[k] = linearity[0]
            self._sub_variables[k] = variables
            if want_hess:
                self._sub_edges[k] = compute_hessian_sparsity(
                    tape, linearity, self._sub_edges, self._sub_variables
                )
            storages[k] = SubexpressionStorage(tape, linearity[0], want_dual)
        self._cache = SubexpressionCache(storages, order)
        self.stats.subexpression_forward = self._cache.forward_counts

        dependents = iter(individual_orders)
        self._objective: FunctionStorage | None = None
        if model.nonlinear_objective is not None:
            self._objective = self._build_function(
                model.nonlinear_objective,
                next(dependents),
                want_hess,
                want_dual,
                "objective",
            )
        self._constraints = [
            self._build_function(
                c.tape, next(dependents), want_hess, want_dual, f"constraint {i}"
            )
            for i, c in enumerate(model.nonlinear_constraints)
        ]

        self._linear_matrix = _linear_matrix(model)
        self._hessian_offsets = self._compute_hessian_offsets()
        self._features = requested
        self._initialized = True
        logger.debug(
            "Prepared %d nonlinear tapes and %d subexpressions in %.3fs",
            len(main_tapes),
            len(order),
            time.perf_counter() - start,
        )

    def _build_function(
        self,
        tape: Tape,
        dependents: list[int],
        want_hess: bool,
        want_dual: bool,
        name: str,
    ) -> FunctionStorage:
        n = self.model.num_variables
        _check_variables(tape, n, name)
        linearity = classify_linearity(tape, self._sub_linearity)
        grad_sparsity = compute_gradient_sparsity(tape)
        for k in dependents:
            grad_sparsity |= self._sub_variables[k]
        storage = FunctionStorage(
            tape=tape,
            linearity=linearity[0],
            grad_sparsity=sorted(grad_sparsity),
            dependents=dependents,
            want_dual=want_dual,
        )
        if not want_hess:
            return storage

        edges = compute_hessian_sparsity(
            tape, linearity, self._sub_edges, self._sub_variables
        )
        if linearity[0] == Linearity.LINEAR and edges:
            msg = f"The {name} tape is linear but has {len(edges)} Hessian edges."
            raise TapeInvariantError(msg)
        if linearity[0] == Linearity.NONLINEAR:
            hess_I, hess_J, rinfo = self.coloring.preprocess(edges, n)
            storage.hess_I = np.asarray(hess_I, dtype=np.int32)
            storage.hess_J = np.asarray(hess_J, dtype=np.int32)
            storage.recovery_info = rinfo
            storage.seed_matrix = np.asarray(
                self.coloring.seed_matrix(rinfo), dtype=np.float64
            )
            logger.debug(
                "%s: %d Hessian entries, %d colors",
                name.capitalize(),
                len(storage.hess_I),
                storage.seed_matrix.shape[1],
            )
        return storage

    def _compute_hessian_offsets(self) -> list[int]:
        """Start of each nonlinear block in the Hessian value buffer."""
        model = self.model
        offset = len(model.objective.qcoeffs)
        offset += sum(len(c.expr.qcoeffs) for c in model.quadratic_constraints)
        offsets = []
        for storage in self._nonlinear_functions():
            offsets.append(offset)
            offset += storage.num_hessian_entries
        offsets.append(offset)
        return offsets

    def _nonlinear_functions(self) -> list[FunctionStorage]:
        head = [self._objective] if self._objective is not None else []
        return head + self._constraints

    def _require(self, *features: str) -> None:
        if not self._initialized:
            raise CapabilityNotRequestedError("Call initialize() before evaluating.")
        if features and not self._features.intersection(features):
            msg = (
                f"This call needs one of {list(features)}, "
                f"but only {sorted(self._features)} were requested on initialize()."
            )
            raise CapabilityNotRequestedError(msg)

    # Point cache

    def reset_last_point(self) -> None:
        """Forget the cached point so the next call re-evaluates."""
        self._last_x = np.full(self.model.num_variables, np.nan)
        self._last_parameters = []

    def prepare_resolve(self) -> None:
        """Reset the point cache before solving the same model again.

        Raises:
            StaleExternalDataError: If the model has no nonlinear parameters
                and ``allow_resolve`` is not set.
        """
        if len(self.model.parameters) == 0 and not self.config.allow_resolve:
            raise StaleExternalDataError(
                "Re-solving a nonlinear model without nonlinear parameters. "
                "Values baked into its expressions cannot have changed; "
                "use parameters for data that changes between solves, "
                "or set EvaluatorConfig(allow_resolve=True)."
            )
        self.reset_last_point()

    def _forward_all(self, x: NDArray[np.float64]) -> None:
        parameters = self.model.parameters.values
        if np.array_equal(x, self._last_x) and parameters == self._last_parameters:
            return
        self._cache.forward(x, parameters)
        for storage in self._nonlinear_functions():
            storage.value = forward_pass(
                storage.forward, storage.tape, x, parameters, self._cache.values
            )
        self._last_x = x.copy()
        self._last_parameters = list(parameters)
        self.stats.forward_sweeps += 1

    def _reverse(
        self, storage: FunctionStorage, output: NDArray[np.float64], seed: float
    ) -> None:
        self._cache.clear_adjoints(storage.dependents)
        reverse_pass(
            output,
            storage.reverse,
            storage.forward,
            storage.tape,
            self._cache.adjoints,
            seed,
        )
        self._cache.reverse(output, storage.dependents)

    # Callbacks

    def eval_objective(self, x: ArrayLike) -> float:
        with self._timed("eval_objective"):
            self._require()
            x = as_point(x, self.num_variables)
            value = self.model.objective.value(x)
            if self._objective is not None:
                self._forward_all(x)
                value += float(self._objective.value)
            return value

    def eval_gradient(
        self, x: ArrayLike, out: NDArray[np.float64] | None = None
    ) -> NDArray[np.float64]:
        with self._timed("eval_gradient"):
            self._require()
            x = as_point(x, self.num_variables)
            out = _output(out, self.num_variables)
            self.model.objective.add_gradient(x, out)
            if self._objective is not None:
                self._forward_all(x)
                self._reverse(self._objective, out, 1.0)
            return out

    def eval_constraints(
        self, x: ArrayLike, out: NDArray[np.float64] | None = None
    ) -> NDArray[np.float64]:
        with self._timed("eval_constraints"):
            self._require()
            x = as_point(x, self.num_variables)
            out = _output(out, self.num_constraints)
            num_linear = self._linear_matrix.shape[0]
            out[:num_linear] = self._linear_matrix @ x
            row = num_linear
            for c in self.model.quadratic_constraints:
                out[row] = c.expr.value(x)
                row += 1
            if self._constraints:
                self._forward_all(x)
                for storage in self._constraints:
                    out[row] = storage.value
                    row += 1
            return out

    def eval_jacobian(
        self, x: ArrayLike, out: NDArray[np.float64] | None = None
    ) -> NDArray[np.float64]:
        """Jacobian values in `jacobian_structure` order."""
        with self._timed("eval_jacobian"):
            self._require()
            x = as_point(x, self.num_variables)
            out = _output(out, self._jacobian_nnz())
            A = self._linear_matrix
            pos = A.nnz
            out[:pos] = A.data
            for c in self.model.quadratic_constraints:
                values = c.expr.jacobian_values(x)
                out[pos : pos + len(values)] = values
                pos += len(values)
            if self._constraints:
                self._forward_all(x)
                scratch = np.zeros(self.num_variables)
                for storage in self._constraints:
                    idx = storage.grad_sparsity
                    self._reverse(storage, scratch, 1.0)
                    out[pos : pos + len(idx)] = scratch[idx]
                    scratch[idx] = 0.0
                    pos += len(idx)
            return out

    def eval_hessian_lagrangian(
        self,
        x: ArrayLike,
        obj_factor: float,
        lambdas: ArrayLike,
        out: NDArray[np.float64] | None = None,
    ) -> NDArray[np.float64]:
        """Lower-triangular Hessian of the Lagrangian in `hessian_structure` order.

        The Lagrangian is ``obj_factor * f(x) + lambdas @ g(x)``.
        """
        with self._timed("eval_hessian_lagrangian"):
            self._require("Hess")
            x = as_point(x, self.num_variables)
            lambdas = _multipliers(lambdas, self.num_constraints)
            out = _output(out, self._hessian_offsets[-1])

            pos = 0
            values = self.model.objective.hessian_values(obj_factor)
            out[pos : pos + len(values)] = values
            pos += len(values)
            row = self._linear_matrix.shape[0]
            for c in self.model.quadratic_constraints:
                values = c.expr.hessian_values(lambdas[row])
                out[pos : pos + len(values)] = values
                pos += len(values)
                row += 1

            parameters = self.model.parameters.values
            scales = [obj_factor] if self._objective is not None else []
            scales.extend(lambdas[row:])
            for storage, offset, scale in zip(
                self._nonlinear_functions(), self._hessian_offsets, scales, strict=False
            ):
                hessian_slice(
                    out,
                    offset,
                    storage,
                    self._cache,
                    x,
                    parameters,
                    scale,
                    self.coloring,
                )
            return out

    def eval_hessian_vector_product(
        self,
        x: ArrayLike,
        v: ArrayLike,
        obj_factor: float,
        lambdas: ArrayLike,
        out: NDArray[np.float64] | None = None,
    ) -> NDArray[np.float64]:
        """``H @ v`` for the full symmetric Hessian of the Lagrangian."""
        with self._timed("eval_hessian_vector_product"):
            self._require("Hess", "HessVec")
            x = as_point(x, self.num_variables)
            v = as_point(v, self.num_variables)
            lambdas = _multipliers(lambdas, self.num_constraints)
            out = _output(out, self.num_variables)

            self.model.objective.add_hessian_vector_product(v, out, obj_factor)
            row = self._linear_matrix.shape[0]
            for c in self.model.quadratic_constraints:
                c.expr.add_hessian_vector_product(v, out, lambdas[row])
                row += 1

            weighted = []
            if self._objective is not None:
                weighted.append((self._objective, obj_factor))
            weighted.extend(zip(self._constraints, lambdas[row:].tolist(), strict=True))
            hessian_vector_product(
                out, x, v, weighted, self._cache, self.model.parameters.values
            )
            return out

    # Structure

    def jacobian_structure(self) -> tuple[NDArray[np.int32], NDArray[np.int32]]:
        """``(rows, cols)`` of the Jacobian; duplicates are summed by the solver."""
        self._require()
        A = self._linear_matrix
        rows = [A.indices.astype(np.int32)]
        cols = [np.repeat(np.arange(A.shape[1], dtype=np.int32), np.diff(A.indptr))]
        row = A.shape[0]
        for c in self.model.quadratic_constraints:
            qcols = c.expr.jacobian_columns()
            rows.append(np.full(len(qcols), row, dtype=np.int32))
            cols.append(np.asarray(qcols, dtype=np.int32))
            row += 1
        for storage in self._constraints:
            rows.append(np.full(len(storage.grad_sparsity), row, dtype=np.int32))
            cols.append(np.asarray(storage.grad_sparsity, dtype=np.int32))
            row += 1
        return np.concatenate(rows), np.concatenate(cols)

    def hessian_structure(self) -> tuple[NDArray[np.int32], NDArray[np.int32]]:
        """``(rows, cols)`` of the Lagrangian Hessian, ``rows >= cols``."""
        self._require("Hess")
        qrows, qcols = self.model.objective.hessian_structure()
        rows = [np.asarray(qrows, dtype=np.int32)]
        cols = [np.asarray(qcols, dtype=np.int32)]
        for c in self.model.quadratic_constraints:
            qrows, qcols = c.expr.hessian_structure()
            rows.append(np.asarray(qrows, dtype=np.int32))
            cols.append(np.asarray(qcols, dtype=np.int32))
        for storage in self._nonlinear_functions():
            rows.append(storage.hess_I)
            cols.append(storage.hess_J)
        return np.concatenate(rows), np.concatenate(cols)

    def jacobian_pattern(self) -> SparsityPattern:
        rows, cols = self.jacobian_structure()
        return SparsityPattern.from_coordinates(
            rows, cols, (self.num_constraints, self.num_variables)
        )

    def hessian_pattern(self) -> SparsityPattern:
        """Full symmetric Hessian pattern, without duplicates."""
        rows, cols = self.hessian_structure()
        n = self.num_variables
        return SparsityPattern.from_coordinates(rows, cols, (n, n)).symmetrize()

    def constraint_bounds(self) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Lower and upper bounds of all constraint rows."""
        model = self.model
        constraints = [
            *model.linear_constraints,
            *model.quadratic_constraints,
            *model.nonlinear_constraints,
        ]
        lb = np.array([c.lb for c in constraints], dtype=np.float64)
        ub = np.array([c.ub for c in constraints], dtype=np.float64)
        return lb, ub

    def _jacobian_nnz(self) -> int:
        nnz = self._linear_matrix.nnz
        for c in self.model.quadratic_constraints:
            nnz += len(c.expr.jacobian_columns())
        nnz += sum(len(s.grad_sparsity) for s in self._constraints)
        return nnz

    # Classification

    def is_objective_linear(self) -> bool:
        self._require()
        if not self.model.objective.is_affine:
            return False
        return self._objective is None or self._objective.linearity <= Linearity.LINEAR

    def is_objective_quadratic(self) -> bool:
        self._require()
        return self._objective is None or self._objective.linearity <= Linearity.LINEAR

    def is_constraint_linear(self, i: int) -> bool:
        self._require()
        kind, local = self._constraint_row(i)
        if kind == "linear":
            return True
        if kind == "quadratic":
            return self.model.quadratic_constraints[local].expr.is_affine
        return self._constraints[local].linearity <= Linearity.LINEAR

    def _constraint_row(self, i: int) -> tuple[str, int]:
        model = self.model
        if not 0 <= i < self.num_constraints:
            raise IndexError(
                f"Constraint {i} out of range; the model has {self.num_constraints}."
            )
        num_linear = len(model.linear_constraints)
        num_quadratic = len(model.quadratic_constraints)
        if i < num_linear:
            return "linear", i
        if i < num_linear + num_quadratic:
            return "quadratic", i - num_linear
        return "nonlinear", i - num_linear - num_quadratic

    # Introspection

    def objective_expression(self) -> sympy.Expr:
        """Symbolic objective over ``x = sympy.IndexedBase("x")``."""
        self._require("ExprGraph")
        model = self.model
        expr = quad_to_sympy(model.objective)
        if model.nonlinear_objective is not None:
            expr = expr + tape_to_sympy(
                model.nonlinear_objective,
                model.parameters.values,
                self._sympy_subexpressions(),
            )
        return expr

    def constraint_expression(self, i: int) -> sympy.Basic:
        """Symbolic constraint ``i`` as a relational over its bounds."""
        self._require("ExprGraph")
        kind, local = self._constraint_row(i)
        model = self.model
        if kind == "linear":
            c = model.linear_constraints[local]
            body = linear_to_sympy(c.vars, c.coeffs)
        elif kind == "quadratic":
            c = model.quadratic_constraints[local]
            body = quad_to_sympy(c.expr)
        else:
            c = model.nonlinear_constraints[local]
            body = tape_to_sympy(
                c.tape, model.parameters.values, self._sympy_subexpressions()
            )
        return constraint_to_sympy(body, c.lb, c.ub)

    def _sympy_subexpressions(self) -> list[sympy.Expr | None]:
        """Expanded subexpressions, rebuilt only when a parameter value changes."""
        model = self.model
        parameters = list(model.parameters.values)
        if self._sympy_memo is None or self._sympy_memo[0] != parameters:
            expanded = subexpressions_to_sympy(
                model.subexpressions, self._cache.order, parameters
            )
            self._sympy_memo = (parameters, expanded)
        return self._sympy_memo[1]

    @contextmanager
    def _timed(self, name: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            self.stats.record(name, time.perf_counter() - start)


def _check_variables(tape: Tape, num_variables: int, name: str) -> None:
    for v in compute_gradient_sparsity(tape):
        if v >= num_variables:
            raise ValueError(
                f"The {name} tape references variable {v}, "
                f"but the model has {num_variables}."
            )


def _linear_matrix(model: Model) -> csc_matrix:
    rows, cols, data = [], [], []
    for i, c in enumerate(model.linear_constraints):
        rows.extend([i] * len(c.vars))
        cols.extend(c.vars)
        data.extend(c.coeffs)
    A = csc_matrix(
        (
            np.asarray(data, dtype=np.float64),
            (np.asarray(rows, dtype=np.int64), np.asarray(cols, dtype=np.int64)),
        ),
        shape=(len(model.linear_constraints), model.num_variables),
    )
    A.sum_duplicates()
    return A


def _output(out: NDArray[np.float64] | None, size: int) -> NDArray[np.float64]:
    if out is None:
        return np.zeros(size, dtype=np.float64)
    if out.shape != (size,):
        msg = f"Expected an output buffer of shape ({size},), got {out.shape}."
        raise ValueError(msg)
    out[:] = 0.0
    return out


def _multipliers(lambdas: ArrayLike, num_constraints: int) -> NDArray[np.float64]:
    lambdas = np.asarray(lambdas, dtype=np.float64)
    if lambdas.shape != (num_constraints,):
        raise ValueError(
            f"Expected {num_constraints} multipliers, got shape {lambdas.shape}."
        )
    return lambdas
