"""Pytest configuration and fixtures for nlpdiff tests."""

import jax
import pytest

from nlpdiff import Model

# Reference derivatives are compared at double precision.
jax.config.update("jax_enable_x64", True)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "tape: tape layout and validation")
    config.addinivalue_line("markers", "sweep: forward and reverse sweeps")
    config.addinivalue_line(
        "markers", "sparsity: gradient, linearity and Hessian sparsity analysis"
    )
    config.addinivalue_line("markers", "coloring: star coloring and recovery")
    config.addinivalue_line("markers", "hessian: sparse Hessian computation")
    config.addinivalue_line("markers", "evaluator: NLP callback protocol")
    config.addinivalue_line(
        "markers", "subexpressions: shared subexpression caching and adjoints"
    )
    config.addinivalue_line("markers", "expression: symbolic reconstruction")
    config.addinivalue_line("markers", "solve: solver driver")


@pytest.fixture
def scenario_model() -> Model:
    """``min sin(x1*x2) + x1^2  s.t.  x1 + x2^2 <= 1``."""
    m = Model()
    x1 = m.add_variable(start=1.0)
    x2 = m.add_variable(start=0.5)
    m.set_nonlinear_objective(("+", ("sin", ("*", x1, x2)), ("^", x1, 2)))
    m.add_nonlinear_constraint(("+", x1, ("^", x2, 2)), ub=1.0)
    return m
