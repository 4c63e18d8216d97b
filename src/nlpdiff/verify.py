"""Verification utilities for checking evaluator results against JAX references.

The tapes are replayed through the ordinary forward sweep over a ring of
jax arrays, which makes the whole problem a traceable jax function.
``jax.grad``, ``jax.jacobian`` and ``jax.hessian`` of that function
are dense references for the evaluator's sparse results.
Enable ``jax_enable_x64`` for tolerances tighter than single precision.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

import jax
import jax.numpy as jnp
import jax.scipy.special as jsp
import numpy as np
from numpy.typing import ArrayLike

from nlpdiff.evaluator import NLPEvaluator
from nlpdiff.model import Model, QuadExpr
from nlpdiff.pattern import SparsityPattern
from nlpdiff.sparsity import order_subexpressions
from nlpdiff.sweep import forward_pass
from nlpdiff.tape import Tape


class VerificationError(AssertionError):
    """Raised when the evaluator's sparse result does not match JAX's dense reference.

    This indicates a missing nonzero in a sparsity pattern
    or a wrong derivative rule, which is a bug:
    patterns must be conservative and sweeps exact.
    """


_UNIVARIATE = {
    "+": lambda a: a,
    "-": jnp.negative,
    "abs": jnp.abs,
    "sqrt": jnp.sqrt,
    "cbrt": jnp.cbrt,
    "abs2": jnp.square,
    "inv": jnp.reciprocal,
    "log": jnp.log,
    "log10": jnp.log10,
    "log2": jnp.log2,
    "log1p": jnp.log1p,
    "exp": jnp.exp,
    "exp2": jnp.exp2,
    "expm1": jnp.expm1,
    "sin": jnp.sin,
    "cos": jnp.cos,
    "tan": jnp.tan,
    "sec": lambda a: 1.0 / jnp.cos(a),
    "csc": lambda a: 1.0 / jnp.sin(a),
    "cot": lambda a: 1.0 / jnp.tan(a),
    "asin": jnp.arcsin,
    "acos": jnp.arccos,
    "atan": jnp.arctan,
    "sinh": jnp.sinh,
    "cosh": jnp.cosh,
    "tanh": jnp.tanh,
    "asinh": jnp.arcsinh,
    "acosh": jnp.arccosh,
    "atanh": jnp.arctanh,
    "erf": jsp.erf,
    "erfc": jsp.erfc,
}

_RELATIONAL = {
    "<=": jnp.less_equal,
    "==": jnp.equal,
    ">=": jnp.greater_equal,
    "<": jnp.less,
    ">": jnp.greater,
}


class JaxRing:
    """Forward-only ring over jax arrays, traceable by jax transformations.

    Comparisons yield 1.0 or 0.0 and branches use ``jnp.where``,
    so derivatives flow only through the selected branch.
    """

    def lift(self, c):
        return jnp.asarray(c, dtype=jnp.result_type(float))

    def univariate(self, op, x):
        return _UNIVARIATE[op](x)

    def power(self, base, exponent):
        return jnp.power(base, exponent)

    def log(self, x):
        return jnp.log(x)

    def maximum(self, values):
        result = values[0]
        for v in values[1:]:
            result = jnp.where(v > result, v, result)
        return result

    def minimum(self, values):
        result = values[0]
        for v in values[1:]:
            result = jnp.where(v < result, v, result)
        return result

    def compare(self, op, lhs, rhs):
        return jnp.where(_RELATIONAL[op](lhs, rhs), 1.0, 0.0)

    def logical(self, op, lhs, rhs):
        combine = jnp.logical_and if op == "&&" else jnp.logical_or
        return jnp.where(combine(lhs != 0, rhs != 0), 1.0, 0.0)

    def select(self, condition, if_true, if_false):
        return jnp.where(condition != 0, if_true, if_false)


JAX = JaxRing()


def _replay(tapes: Sequence[Tape], model: Model) -> Callable[[jax.Array], jax.Array]:
    """jax function mapping ``x`` to the stacked values of ``tapes``."""
    parameters = list(model.parameters.values)
    subexpressions = model.subexpressions
    order, _ = order_subexpressions(tapes, subexpressions)

    def f(x):
        values: list = [None] * len(subexpressions)
        for k in order:
            tape = subexpressions[k]
            values[k] = forward_pass(
                [None] * len(tape), tape, x, parameters, values, JAX
            )
        results = [
            forward_pass([None] * len(tape), tape, x, parameters, values, JAX)
            for tape in tapes
        ]
        return jnp.stack(results) if results else jnp.zeros(0)

    return f


def _quad_value(expr: QuadExpr, x: jax.Array) -> jax.Array:
    value = jnp.asarray(expr.constant, dtype=x.dtype)
    for i, c in zip(expr.affine_vars, expr.affine_coeffs, strict=True):
        value = value + c * x[i]
    for i, j, q in zip(expr.qvars1, expr.qvars2, expr.qcoeffs, strict=True):
        value = value + q * x[i] * x[j]
    return value


def objective_function(model: Model) -> Callable[[jax.Array], jax.Array]:
    """The full objective (closed-form and nonlinear parts) as a jax function."""
    expr = model.objective
    nonlinear = (
        _replay([model.nonlinear_objective], model)
        if model.nonlinear_objective is not None
        else None
    )

    def f(x):
        value = _quad_value(expr, x)
        if nonlinear is not None:
            value = value + nonlinear(x)[0]
        return value

    return f


def constraint_function(model: Model) -> Callable[[jax.Array], jax.Array]:
    """All constraint rows (linear, quadratic, nonlinear) as a jax function."""
    nonlinear = _replay([c.tape for c in model.nonlinear_constraints], model)

    def g(x):
        rows = []
        for c in model.linear_constraints:
            rows.append(_quad_value(QuadExpr(c.vars, c.coeffs), x))
        for c in model.quadratic_constraints:
            rows.append(_quad_value(c.expr, x))
        parts = [jnp.stack(rows)] if rows else []
        if model.nonlinear_constraints:
            parts.append(nonlinear(x))
        return jnp.concatenate(parts) if parts else jnp.zeros(0)

    return g


def check_gradient_correctness(
    evaluator: NLPEvaluator,
    x: ArrayLike,
    *,
    rtol: float = 1e-7,
    atol: float = 1e-7,
) -> None:
    """Verify ``eval_gradient`` against ``jax.grad`` at a given input.

    Raises:
        VerificationError: If the two gradients disagree.
    """
    x = np.asarray(x, dtype=np.float64)
    ours = evaluator.eval_gradient(x)
    reference = jax.grad(objective_function(evaluator.model))(jnp.asarray(x))
    _check_allclose(ours, reference, "gradient", rtol=rtol, atol=atol)


def check_jacobian_correctness(
    evaluator: NLPEvaluator,
    x: ArrayLike,
    *,
    rtol: float = 1e-7,
    atol: float = 1e-7,
) -> None:
    """Verify ``eval_jacobian`` against ``jax.jacobian`` at a given input.

    The sparse values are summed into a dense matrix via
    ``jacobian_structure`` before comparing.

    Raises:
        VerificationError: If the sparse and dense Jacobians disagree.
    """
    x = np.asarray(x, dtype=np.float64)
    pattern = evaluator.jacobian_pattern()
    ours = pattern.to_scipy(evaluator.eval_jacobian(x)).toarray()
    if evaluator.num_constraints == 0:
        reference = ours
    else:
        reference = jax.jacobian(constraint_function(evaluator.model))(jnp.asarray(x))
    _check_allclose(
        ours, reference, "Jacobian", rtol=rtol, atol=atol, pattern=pattern
    )


def check_hessian_correctness(
    evaluator: NLPEvaluator,
    x: ArrayLike,
    obj_factor: float = 1.0,
    lambdas: ArrayLike | None = None,
    *,
    rtol: float = 1e-7,
    atol: float = 1e-7,
) -> None:
    """Verify ``eval_hessian_lagrangian`` against ``jax.hessian`` at a given input.

    The lower-triangular sparse values are mirrored into a dense
    symmetric matrix before comparing.

    Raises:
        VerificationError: If the sparse and dense Hessians disagree.
    """
    x = np.asarray(x, dtype=np.float64)
    m = evaluator.num_constraints
    lambdas = np.ones(m) if lambdas is None else np.asarray(lambdas, dtype=np.float64)
    rows, cols = evaluator.hessian_structure()
    values = evaluator.eval_hessian_lagrangian(x, obj_factor, lambdas)
    n = evaluator.num_variables
    lower = (
        SparsityPattern.from_coordinates(rows, cols, (n, n)).to_scipy(values).toarray()
    )
    ours = lower + lower.T - np.diag(np.diag(lower))

    f = objective_function(evaluator.model)
    g = constraint_function(evaluator.model)

    def lagrangian(z):
        value = obj_factor * f(z)
        if m:
            value = value + jnp.dot(jnp.asarray(lambdas), g(z))
        return value

    reference = jax.hessian(lagrangian)(jnp.asarray(x))
    _check_allclose(
        ours,
        reference,
        "Hessian",
        rtol=rtol,
        atol=atol,
        pattern=evaluator.hessian_pattern(),
    )


def _check_allclose(
    ours: ArrayLike,
    reference: ArrayLike,
    name: str,
    *,
    rtol: float,
    atol: float,
    pattern: SparsityPattern | None = None,
) -> None:
    """Compare sparse and dense results, raising VerificationError on mismatch.

    With a ``pattern``, the message counts reference nonzeros outside it.
    """
    ours_np = np.asarray(ours)
    reference_np = np.asarray(reference)

    if ours_np.shape != reference_np.shape:
        raise VerificationError(
            f"The evaluator's {name} has shape {ours_np.shape} "
            f"but JAX's dense reference has shape {reference_np.shape}."
        )

    try:
        np.testing.assert_allclose(ours_np, reference_np, rtol=rtol, atol=atol)
    except AssertionError:
        detail = ""
        if pattern is not None:
            reference_pattern = SparsityPattern.from_dense(reference_np != 0)
            outside = reference_pattern.todense() > pattern.todense()
            detail = (
                f" {int(outside.sum())} reference nonzeros lie outside the pattern."
            )
        raise VerificationError(
            f"The evaluator's {name} does not match JAX's dense reference. "
            "This likely means a sparsity pattern is missing nonzeros "
            f"or a derivative rule is wrong.{detail}"
        ) from None
