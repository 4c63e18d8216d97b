"""Hand a model to a nonlinear solver and collect the result.

The solver only sees the evaluator callbacks, the variable and constraint
bounds, and a warm start.
Termination statuses are results, never exceptions:
a non-optimal status produces a warning and is returned as is.
Multipliers are only collected from an optimal solve.
"""

from __future__ import annotations

import logging
import math
import time
import warnings
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import numpy as np
from numpy.typing import NDArray

from nlpdiff.evaluator import EvaluatorConfig, Feature, NLPEvaluator
from nlpdiff.model import Model, Sense

logger = logging.getLogger(__name__)

OPTIMAL_STATUSES: frozenset[str] = frozenset({"Optimal", "LocallyOptimal"})
# Statuses without a meaningful point
NO_SOLUTION_STATUSES: frozenset[str] = frozenset({"Infeasible", "Unbounded"})
DEFAULT_FEATURES: tuple[Feature, ...] = ("Grad", "Jac", "Hess")


@runtime_checkable
class NonlinearSolver(Protocol):
    """What `solve` needs from a solver backend.

    Backends may additionally implement ``constraint_duals()`` and
    ``reduced_costs()``; both are optional.
    """

    def load_problem(
        self,
        evaluator: NLPEvaluator,
        lower: NDArray[np.float64],
        upper: NDArray[np.float64],
        constraint_lower: NDArray[np.float64],
        constraint_upper: NDArray[np.float64],
        sense: Sense,
    ) -> None: ...

    def set_warm_start(self, x: NDArray[np.float64]) -> None: ...

    def optimize(self) -> None: ...

    def status(self) -> str: ...

    def objective_value(self) -> float: ...

    def solution(self) -> NDArray[np.float64]: ...


@dataclass(frozen=True, eq=False)
class SolveResult:
    """Outcome of one solve.

    Attributes:
        status: Termination status reported by the solver.
        objective_value: Objective at ``x``; NaN for an infeasible or
            unbounded status.
        x: Variable values; all NaN for an infeasible or unbounded status.
        evaluator: Evaluator the solver used; pass it to the next `solve`
            of the same model.
        linear_duals: Multipliers of the linear constraint rows, if the solve
            is optimal and the solver provides them.
        quadratic_duals: Multipliers of the quadratic constraint rows, if available.
        nonlinear_duals: Multipliers of the nonlinear constraint rows, if available.
        reduced_costs: Multipliers of the variable bounds, if available.
    """

    status: str
    objective_value: float
    x: NDArray[np.float64]
    evaluator: NLPEvaluator
    linear_duals: NDArray[np.float64] | None = None
    quadratic_duals: NDArray[np.float64] | None = None
    nonlinear_duals: NDArray[np.float64] | None = None
    reduced_costs: NDArray[np.float64] | None = None

    @property
    def is_optimal(self) -> bool:
        return self.status in OPTIMAL_STATUSES


def load(
    model: Model,
    solver: NonlinearSolver,
    evaluator: NLPEvaluator | None = None,
    *,
    config: EvaluatorConfig | None = None,
    features: Iterable[Feature] = DEFAULT_FEATURES,
) -> NLPEvaluator:
    """Pass ``model`` to ``solver``, building or re-arming its evaluator.

    A fresh evaluator is initialized with ``features``.
    A given evaluator is reused for a re-solve,
    which resets its point cache (see `NLPEvaluator.prepare_resolve`).

    Raises:
        ValueError: If ``evaluator`` belongs to another model.
        StaleExternalDataError: On a guarded re-solve.
    """
    if evaluator is None:
        evaluator = NLPEvaluator(model, config=config)
        evaluator.initialize(features)
    elif evaluator.model is not model:
        raise ValueError("The evaluator was built for a different model.")
    else:
        evaluator.prepare_resolve()

    lower, upper = model.bounds()
    constraint_lower, constraint_upper = evaluator.constraint_bounds()
    solver.load_problem(
        evaluator, lower, upper, constraint_lower, constraint_upper, model.sense
    )
    solver.set_warm_start(model.start_point())
    return evaluator


def solve(
    model: Model,
    solver: NonlinearSolver,
    evaluator: NLPEvaluator | None = None,
    *,
    config: EvaluatorConfig | None = None,
    features: Iterable[Feature] = DEFAULT_FEATURES,
    warn_on_failure: bool = True,
) -> SolveResult:
    """Load ``model`` into ``solver``, optimize and collect the result.

    Args:
        model: The problem.
        solver: Backend implementing `NonlinearSolver`.
        evaluator: Evaluator of a previous solve of ``model``, if any.
        config: Options for a newly built evaluator.
        features: Capabilities requested from a newly built evaluator.
        warn_on_failure: Warn when the status is not optimal,
            or when an optimal solve comes without multipliers.

    Returns:
        The termination status, solution and available multipliers.
    """
    evaluator = load(model, solver, evaluator, config=config, features=features)

    start = time.perf_counter()
    solver.optimize()
    status = solver.status()
    elapsed = time.perf_counter() - start
    logger.debug("Solver finished with status %s in %.3fs", status, elapsed)
    if warn_on_failure and status not in OPTIMAL_STATUSES:
        warnings.warn(f"Not solved to optimality, status: {status}", stacklevel=2)

    if status in NO_SOLUTION_STATUSES:
        x = np.full(model.num_variables, np.nan)
        objective_value = math.nan
    else:
        x = np.asarray(solver.solution(), dtype=np.float64)
        objective_value = float(solver.objective_value())

    duals = reduced_costs = None
    if status in OPTIMAL_STATUSES:
        duals = _optional(solver, "constraint_duals")
        reduced_costs = _optional(solver, "reduced_costs")
        if duals is None and warn_on_failure:
            warnings.warn(
                "Nonlinear solver does not provide dual solutions", stacklevel=2
            )
    linear = quadratic = nonlinear = None
    if duals is not None:
        num_linear = len(model.linear_constraints)
        num_quadratic = len(model.quadratic_constraints)
        linear = duals[:num_linear]
        quadratic = duals[num_linear : num_linear + num_quadratic]
        nonlinear = duals[num_linear + num_quadratic :]

    return SolveResult(
        status=status,
        objective_value=objective_value,
        x=x,
        evaluator=evaluator,
        linear_duals=linear,
        quadratic_duals=quadratic,
        nonlinear_duals=nonlinear,
        reduced_costs=reduced_costs,
    )


def _optional(solver: NonlinearSolver, name: str) -> NDArray[np.float64] | None:
    method = getattr(solver, name, None)
    if method is None:
        return None
    values = method()
    return None if values is None else np.asarray(values, dtype=np.float64)
