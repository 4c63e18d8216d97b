"""Tests for the verification utilities."""

import numpy as np
import pytest

from nlpdiff import (
    Model,
    NLPEvaluator,
    QuadExpr,
    StarColoring,
    VerificationError,
    check_gradient_correctness,
    check_hessian_correctness,
    check_jacobian_correctness,
)
from nlpdiff.verify import constraint_function, objective_function


def _rich_model():
    """Every kind of row, a parameter, a subexpression and a branch."""
    m = Model()
    x = [m.add_variable() for _ in range(4)]
    p = m.add_parameter(1.5)
    s = m.add_subexpression(("*", x[0], ("exp", x[1])))
    m.set_objective("min", QuadExpr([3], [2.0], 0.5, [0, 1], [1, 1], [1.0, -0.5]))
    m.set_nonlinear_objective(
        ("+", ("sin", s), ("ifelse", ("<", x[2], 0.0), ("^", x[2], 2), ("*", p, x[2])))
    )
    m.add_linear_constraint([x[0], x[3]], [1.0, -1.0], ub=2.0)
    m.add_quadratic_constraint(QuadExpr([2], [1.0], 0.0, [3], [0], [4.0]), lb=-1.0)
    m.add_nonlinear_constraint(("/", s, ("+", 2.0, ("abs2", x[3]))), lb=0.0, ub=5.0)
    m.add_nonlinear_constraint(("max", x[1], ("log", ("+", 3.0, x[2])), x[0]))
    return m


X = np.array([0.4, -0.3, 0.8, 1.1])


@pytest.fixture
def rich():
    ev = NLPEvaluator(_rich_model())
    ev.initialize({"Grad", "Jac", "Hess"})
    return ev


class _DiagonalOnly(StarColoring):
    """Drops every off-diagonal Hessian entry."""

    def preprocess(self, edgelist, num_variables):
        diagonal = [(i, j) for i, j in edgelist if i == j]
        return super().preprocess(diagonal, num_variables)


@pytest.mark.hessian
def test_reference_functions_match_evaluator(rich):
    assert float(objective_function(rich.model)(X)) == pytest.approx(
        rich.eval_objective(X)
    )
    np.testing.assert_allclose(
        np.asarray(constraint_function(rich.model)(X)), rich.eval_constraints(X)
    )


@pytest.mark.hessian
def test_check_gradient_passes(rich):
    check_gradient_correctness(rich, X)


@pytest.mark.hessian
def test_check_jacobian_passes(rich):
    check_jacobian_correctness(rich, X)


@pytest.mark.hessian
@pytest.mark.parametrize("obj_factor", [1.0, 0.0, -2.5])
def test_check_hessian_passes(rich, obj_factor):
    check_hessian_correctness(
        rich, X, obj_factor, np.array([0.3, -1.2, 0.7, 2.0]), rtol=1e-9, atol=1e-9
    )


@pytest.mark.hessian
def test_checks_on_other_branch(rich):
    """The ``x2 < 0`` branch of the objective."""
    x = np.array([0.4, -0.3, -0.8, 1.1])

    check_gradient_correctness(rich, x)
    check_hessian_correctness(rich, x)


@pytest.mark.hessian
def test_scenario_checks(scenario_model):
    ev = NLPEvaluator(scenario_model)
    ev.initialize({"Grad", "Jac", "Hess"})
    x = scenario_model.start_point()

    check_gradient_correctness(ev, x)
    check_jacobian_correctness(ev, x)
    check_hessian_correctness(ev, x, 1.0, [2.0])


@pytest.mark.hessian
def test_model_without_constraints():
    m = Model()
    a, b = m.add_variable(), m.add_variable()
    m.set_nonlinear_objective(
        (
            "+",
            ("^", ("-", 1.0, a), 2),
            ("*", 100.0, ("^", ("-", b, ("^", a, 2)), 2)),
        )
    )
    ev = NLPEvaluator(m)
    ev.initialize({"Grad", "Jac", "Hess"})

    check_gradient_correctness(ev, [-1.2, 1.0])
    check_jacobian_correctness(ev, [-1.2, 1.0])
    check_hessian_correctness(ev, [-1.2, 1.0])


@pytest.mark.hessian
def test_check_hessian_raises_on_missing_entries(scenario_model):
    ev = NLPEvaluator(scenario_model, coloring=_DiagonalOnly())
    ev.initialize({"Hess"})

    with pytest.raises(VerificationError, match="does not match"):
        check_hessian_correctness(ev, [1.0, 0.5])


@pytest.mark.hessian
def test_mismatch_counts_entries_outside_pattern(scenario_model):
    ev = NLPEvaluator(scenario_model, coloring=_DiagonalOnly())
    ev.initialize({"Hess"})

    with pytest.raises(VerificationError, match=r"wrong\. [1-9]\d* reference nonzeros"):
        check_hessian_correctness(ev, [1.0, 0.5])


@pytest.mark.hessian
def test_wrong_values_inside_pattern_count_none(rich, monkeypatch):
    wrong = rich.eval_jacobian(X) * 1.01
    monkeypatch.setattr(rich, "eval_jacobian", lambda x: wrong)

    with pytest.raises(VerificationError, match=r"wrong\. 0 reference nonzeros"):
        check_jacobian_correctness(rich, X)


@pytest.mark.hessian
def test_check_gradient_raises_on_mismatch(rich, monkeypatch):
    monkeypatch.setattr(rich, "eval_gradient", lambda x: np.zeros(4))

    with pytest.raises(VerificationError, match="gradient does not match"):
        check_gradient_correctness(rich, X)


@pytest.mark.hessian
def test_check_jacobian_raises_on_mismatch(rich, monkeypatch):
    wrong = rich.eval_jacobian(X) * 1.01
    monkeypatch.setattr(rich, "eval_jacobian", lambda x: wrong)

    with pytest.raises(VerificationError, match="Jacobian does not match"):
        check_jacobian_correctness(rich, X)


@pytest.mark.hessian
def test_check_gradient_raises_on_shape_mismatch(rich, monkeypatch):
    monkeypatch.setattr(rich, "eval_gradient", lambda x: np.zeros(3))

    with pytest.raises(VerificationError, match="has shape"):
        check_gradient_correctness(rich, X)


@pytest.mark.hessian
def test_custom_tolerances(rich, monkeypatch):
    """A small relative error passes a loose tolerance and fails a tight one."""
    perturbed = rich.eval_gradient(X) * (1 + 1e-6)
    monkeypatch.setattr(rich, "eval_gradient", lambda x: perturbed)

    check_gradient_correctness(rich, X, rtol=1e-5, atol=0.0)
    with pytest.raises(VerificationError):
        check_gradient_correctness(rich, X, rtol=1e-8, atol=0.0)
