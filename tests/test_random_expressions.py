"""Test derivatives of random expressions against SymPy symbolic derivatives.

This module generates random expression trees over the supported operators,
evaluates them through the evaluator, and checks gradients and Hessians
against ``sympy.diff`` of the reconstructed expression.
"""

import random

import numpy as np
import pytest
import sympy as sp
from numpy.testing import assert_allclose

from nlpdiff import (
    Model,
    NLPEvaluator,
    VariableRef,
    compute_gradient_sparsity,
    evaluate_sympy,
    tape_from_tree,
    tape_to_sympy,
)
from nlpdiff.expression import X

NUM_VARIABLES = 4

# Unary operators defined on the whole real line
UNARY_OPS = ["sin", "cos", "exp", "tanh", "atan", "asinh", "sinh", "abs2", "erf"]

# Operators applied to a positive argument only
POSITIVE_OPS = ["sqrt", "log", "inv"]

BINARY_OPS = ["+", "-", "*", "/", "^"]


def _positive(tree):
    return ("+", ("abs2", tree), 1.0)


def random_unary_tree(base, rng: random.Random):
    """Apply a random unary operator to a tree."""
    if rng.random() < 0.25:
        return (rng.choice(POSITIVE_OPS), _positive(base))
    return (rng.choice(UNARY_OPS), base)


def random_binary_tree(left, right, rng: random.Random):
    """Combine two trees with a random binary operator."""
    op = rng.choice(BINARY_OPS)
    if op == "/":
        return ("/", left, _positive(right))
    if op == "^":
        return ("^", left, rng.choice([2, 3]))
    return (op, left, right)


def generate_random_tree(depth: int, rng: random.Random):
    """Generate a random expression tree of at most ``depth`` operator levels."""
    if depth == 0:
        leaf = VariableRef(rng.randrange(NUM_VARIABLES))
        if rng.random() < 0.3:
            return ("*", round(rng.uniform(-2.0, 2.0), 2), leaf)
        return leaf
    if rng.random() < 0.4:
        return random_unary_tree(generate_random_tree(depth - 1, rng), rng)
    return random_binary_tree(
        generate_random_tree(depth - 1, rng),
        generate_random_tree(depth - 1, rng),
        rng,
    )


def symbolic_gradient(expr: sp.Expr, x: np.ndarray) -> np.ndarray:
    return np.array(
        [evaluate_sympy(sp.diff(expr, X[j]), x) for j in range(NUM_VARIABLES)]
    )


def symbolic_hessian(expr: sp.Expr, x: np.ndarray) -> np.ndarray:
    H = np.zeros((NUM_VARIABLES, NUM_VARIABLES))
    for i in range(NUM_VARIABLES):
        di = sp.diff(expr, X[i])
        for j in range(i + 1):
            H[i, j] = H[j, i] = evaluate_sympy(sp.diff(di, X[j]), x)
    return H


def _random_case(seed: int):
    rng = random.Random(seed)
    tree = generate_random_tree(3, rng)
    x = np.array([rng.uniform(-1.0, 1.0) for _ in range(NUM_VARIABLES)])
    return tree, x


def _evaluator(tree) -> NLPEvaluator:
    m = Model()
    for _ in range(NUM_VARIABLES):
        m.add_variable()
    m.set_nonlinear_objective(tree)
    ev = NLPEvaluator(m)
    ev.initialize({"Grad", "Hess", "HessVec"})
    return ev


@pytest.mark.sparsity
@pytest.mark.parametrize("seed", range(20))
def test_gradient_sparsity_is_conservative(seed):
    """Every variable with a symbolic partial is detected."""
    tree, _ = _random_case(seed)
    tape = tape_from_tree(tree)
    expr = tape_to_sympy(tape)

    symbolic = {
        j for j in range(NUM_VARIABLES) if sp.simplify(sp.diff(expr, X[j])) != 0
    }

    assert symbolic <= compute_gradient_sparsity(tape)


@pytest.mark.hessian
@pytest.mark.parametrize("seed", range(20))
def test_gradient_matches_symbolic(seed):
    tree, x = _random_case(seed)
    ev = _evaluator(tree)
    expr = tape_to_sympy(tape_from_tree(tree))

    assert ev.eval_objective(x) == pytest.approx(
        evaluate_sympy(expr, x), rel=1e-12, abs=1e-12
    )
    assert_allclose(
        ev.eval_gradient(x), symbolic_gradient(expr, x), rtol=1e-9, atol=1e-12
    )


@pytest.mark.hessian
@pytest.mark.parametrize("seed", range(20))
def test_hessian_matches_symbolic(seed):
    """Missing sparsity entries would show up as mismatched values."""
    tree, x = _random_case(seed)
    ev = _evaluator(tree)
    expected = symbolic_hessian(tape_to_sympy(tape_from_tree(tree)), x)

    rows, cols = ev.hessian_structure()
    values = ev.eval_hessian_lagrangian(x, 1.0, [])
    lower = np.zeros((NUM_VARIABLES, NUM_VARIABLES))
    np.add.at(lower, (rows, cols), values)
    dense = lower + lower.T - np.diag(np.diag(lower))

    assert_allclose(dense, expected, rtol=1e-8, atol=1e-10)


@pytest.mark.hessian
@pytest.mark.parametrize("seed", range(10))
def test_hessian_vector_product_matches_symbolic(seed):
    tree, x = _random_case(seed)
    ev = _evaluator(tree)
    H = symbolic_hessian(tape_to_sympy(tape_from_tree(tree)), x)
    v = np.random.default_rng(seed).normal(size=NUM_VARIABLES)

    hv = ev.eval_hessian_vector_product(x, v, 1.0, [])

    assert_allclose(hv, H @ v, rtol=1e-8, atol=1e-10)
