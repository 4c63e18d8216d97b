"""Forward and reverse sweeps over a node tape.

Both sweeps are flat index loops.
The forward sweep runs from the last position down to the root,
so every child is evaluated before its parent.
The reverse sweep runs from the root up,
so every parent has its final adjoint before it is pushed to the children.
Each node has exactly one parent within a tape,
which is why a single assignment per child suffices.
Sharing across tapes happens only through subexpression leaves,
whose adjoints are accumulated into a caller-owned buffer.
"""

import operator

import numpy as np

from nlpdiff.operators import (
    COMPARISON_OPERATORS,
    LOGIC_OPERATORS,
    OPERATORS,
    UNIVARIATE_OPERATORS,
)
from nlpdiff.rings import REAL, Ring
from nlpdiff.tape import NodeType, Tape

_VARIABLE = NodeType.VARIABLE
_VALUE = NodeType.VALUE
_PARAMETER = NodeType.PARAMETER
_SUBEXPRESSION = NodeType.SUBEXPRESSION
_CALL = NodeType.CALL
_CALLUNIVAR = NodeType.CALLUNIVAR
_COMPARISON = NodeType.COMPARISON
_LOGIC = NodeType.LOGIC


def forward_pass(
    storage: list,
    tape: Tape,
    x,
    parameters,
    subexpression_values,
    ring: Ring = REAL,
):
    """Evaluate every node of ``tape`` and return the root value.

    Args:
        storage: Per-node output buffer, at least ``len(tape)`` long.
        tape: The tape to evaluate.
        x: Variable values, indexed by variable index.
        parameters: Nonlinear parameter values, indexed by handle.
        subexpression_values: Values of referenced subexpressions,
            already computed at ``x``.
        ring: Number system to evaluate in.

    Returns:
        The value of the root node (``storage[0]``).
    """
    nodes = tape.nodes
    indptr = tape.children_indptr
    children = tape.children_indices
    const_values = tape.const_values

    with np.errstate(all="ignore"):
        for k in range(len(nodes) - 1, -1, -1):
            node = nodes[k]
            kind = node.type
            if kind == _VARIABLE:
                storage[k] = x[node.index]
            elif kind == _VALUE:
                storage[k] = ring.lift(const_values[node.index])
            elif kind == _PARAMETER:
                storage[k] = ring.lift(parameters[node.index])
            elif kind == _SUBEXPRESSION:
                storage[k] = subexpression_values[node.index]
            elif kind == _CALL:
                first, last = indptr[k], indptr[k + 1]
                storage[k] = _call_value(
                    OPERATORS[node.index], storage, children[first:last], ring
                )
            elif kind == _CALLUNIVAR:
                child = children[indptr[k]]
                storage[k] = ring.univariate(
                    UNIVARIATE_OPERATORS[node.index], storage[child]
                )
            elif kind == _COMPARISON:
                op = COMPARISON_OPERATORS[node.index]
                args = children[indptr[k] : indptr[k + 1]]
                result = ring.compare(op, storage[args[0]], storage[args[1]])
                for i in range(1, len(args) - 1):
                    step = ring.compare(op, storage[args[i]], storage[args[i + 1]])
                    result = ring.logical("&&", result, step)
                storage[k] = result
            elif kind == _LOGIC:
                first = indptr[k]
                storage[k] = ring.logical(
                    LOGIC_OPERATORS[node.index],
                    storage[children[first]],
                    storage[children[first + 1]],
                )
    return storage[0]


def _call_value(op: str, storage: list, args: list[int], ring: Ring):
    if op == "+":
        total = storage[args[0]]
        for i in args[1:]:
            total = total + storage[i]
        return total
    if op == "-":
        return storage[args[0]] - storage[args[1]]
    if op == "*":
        product = storage[args[0]]
        for i in args[1:]:
            product = product * storage[i]
        return product
    if op == "^":
        return ring.power(storage[args[0]], storage[args[1]])
    if op == "/":
        return storage[args[0]] / storage[args[1]]
    if op == "ifelse":
        return ring.select(storage[args[0]], storage[args[1]], storage[args[2]])
    if op == "max":
        return ring.maximum([storage[i] for i in args])
    if op == "min":
        return ring.minimum([storage[i] for i in args])
    raise ValueError(f"Unknown operator '{op}'.")


def reverse_pass(
    output,
    reverse_storage: list,
    forward_storage: list,
    tape: Tape,
    subexpression_adjoints,
    seed,
    ring: Ring = REAL,
) -> None:
    """Propagate ``seed`` from the root of ``tape`` to its leaves.

    ``forward_storage`` must hold the values of a forward sweep
    in the same ring.
    Variable adjoints are added into ``output``;
    subexpression adjoints are added into ``subexpression_adjoints``
    and are not propagated further here.

    Args:
        output: Accumulator indexed by variable index.
        reverse_storage: Per-node adjoint buffer, at least ``len(tape)`` long.
        forward_storage: Per-node values from `forward_pass`.
        tape: The tape to differentiate.
        subexpression_adjoints: Accumulator indexed by subexpression index.
        seed: Adjoint of the root, e.g. 1.0 or a Lagrange multiplier.
        ring: Number system matching ``forward_storage``.
    """
    nodes = tape.nodes
    indptr = tape.children_indptr
    children = tape.children_indices
    zero = ring.lift(0.0)

    reverse_storage[0] = seed
    with np.errstate(all="ignore"):
        for k in range(len(nodes)):
            node = nodes[k]
            kind = node.type
            adjoint = reverse_storage[k]
            if kind == _VARIABLE:
                output[node.index] += adjoint
            elif kind == _SUBEXPRESSION:
                subexpression_adjoints[node.index] += adjoint
            elif kind == _CALL:
                args = children[indptr[k] : indptr[k + 1]]
                _call_adjoints(
                    OPERATORS[node.index],
                    k,
                    adjoint,
                    args,
                    nodes,
                    forward_storage,
                    reverse_storage,
                    ring,
                    zero,
                )
            elif kind == _CALLUNIVAR:
                child = children[indptr[k]]
                partial = ring.univariate_derivative(
                    UNIVARIATE_OPERATORS[node.index], forward_storage[child]
                )
                reverse_storage[child] = adjoint * partial
            elif kind == _COMPARISON or kind == _LOGIC:
                # Piecewise constant: nothing flows to the arguments.
                for i in range(indptr[k], indptr[k + 1]):
                    reverse_storage[children[i]] = zero


def _call_adjoints(
    op: str,
    k: int,
    adjoint,
    args: list[int],
    nodes,
    forward_storage: list,
    reverse_storage: list,
    ring: Ring,
    zero,
) -> None:
    """Assign the adjoints of the arguments of CALL node ``k``."""
    if op == "+":
        for i in args:
            reverse_storage[i] = adjoint
    elif op == "-":
        reverse_storage[args[0]] = adjoint
        reverse_storage[args[1]] = -adjoint
    elif op == "*":
        if len(args) == 2:
            lhs, rhs = args
            reverse_storage[lhs] = adjoint * forward_storage[rhs]
            reverse_storage[rhs] = adjoint * forward_storage[lhs]
            return
        # Prefix and suffix products avoid dividing by a zero factor.
        n = len(args)
        suffix = [None] * n
        running = ring.lift(1.0)
        for j in range(n - 1, -1, -1):
            suffix[j] = running
            running = running * forward_storage[args[j]]
        prefix = ring.lift(1.0)
        for j in range(n):
            reverse_storage[args[j]] = adjoint * (prefix * suffix[j])
            prefix = prefix * forward_storage[args[j]]
    elif op == "^":
        base_idx, exponent_idx = args
        base = forward_storage[base_idx]
        exponent = forward_storage[exponent_idx]
        reverse_storage[base_idx] = adjoint * (
            exponent * ring.power(base, exponent - 1.0)
        )
        if nodes[exponent_idx].type in (_VALUE, _PARAMETER) or ring.primal(base) <= 0:
            reverse_storage[exponent_idx] = zero
        else:
            reverse_storage[exponent_idx] = adjoint * (
                forward_storage[k] * ring.log(base)
            )
    elif op == "/":
        numerator_idx, denominator_idx = args
        denominator = forward_storage[denominator_idx]
        reverse_storage[numerator_idx] = adjoint / denominator
        reverse_storage[denominator_idx] = -(adjoint * forward_storage[k]) / denominator
    elif op == "ifelse":
        condition_idx, true_idx, false_idx = args
        reverse_storage[condition_idx] = zero
        if ring.truth(forward_storage[condition_idx]):
            reverse_storage[true_idx] = adjoint
            reverse_storage[false_idx] = zero
        else:
            reverse_storage[true_idx] = zero
            reverse_storage[false_idx] = adjoint
    elif op == "max" or op == "min":
        better = operator.gt if op == "max" else operator.lt
        chosen = args[0]
        best = ring.primal(forward_storage[chosen])
        for i in args[1:]:
            candidate = ring.primal(forward_storage[i])
            if better(candidate, best):
                chosen, best = i, candidate
        for i in args:
            reverse_storage[i] = adjoint if i == chosen else zero
    else:
        raise ValueError(f"Unknown operator '{op}'.")
