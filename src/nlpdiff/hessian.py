"""Second-order sweeps: colored Hessian slices and Hessian-vector products.

Both run forward-over-reverse:
a forward sweep in the dual ring seeds a direction on the variables,
and the reverse sweep over those dual values returns the gradient
in the value part and the Hessian-vector product in the epsilon part.
A full sparse Hessian costs one such sweep per color.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from numpy.typing import NDArray

from nlpdiff.coloring import ColoringOracle
from nlpdiff.rings import DUAL, Dual
from nlpdiff.sparsity import Linearity
from nlpdiff.subexpressions import SubexpressionCache
from nlpdiff.sweep import forward_pass, reverse_pass
from nlpdiff.tape import Tape


def _empty_coords() -> NDArray[np.int32]:
    return np.zeros(0, dtype=np.int32)


@dataclass(eq=False)
class FunctionStorage:
    """Evaluator-owned state of one objective or constraint tape.

    Attributes:
        tape: The function's tape.
        linearity: Class of the whole tape.
        grad_sparsity: Sorted variables with a potentially nonzero partial,
            including those reached through subexpressions.
        dependents: Subexpressions the tape depends on, in topological order.
        hess_I: Hessian rows, ``hess_I >= hess_J``.
        hess_J: Hessian columns.
        recovery_info: Oracle plan, ``None`` when no Hessian is computed.
        seed_matrix: Oracle seeds, shape ``(local, colors)``.
    """

    tape: Tape
    linearity: Linearity
    grad_sparsity: list[int]
    dependents: list[int]
    hess_I: NDArray[np.int32] = field(default_factory=_empty_coords)
    hess_J: NDArray[np.int32] = field(default_factory=_empty_coords)
    recovery_info: Any = None
    seed_matrix: NDArray[np.float64] = field(
        default_factory=lambda: np.zeros((0, 0), dtype=np.float64)
    )
    want_dual: bool = False

    def __post_init__(self) -> None:
        n = len(self.tape)
        self.forward: list = [0.0] * n
        self.reverse: list = [0.0] * n
        self.dual_forward: list | None = [None] * n if self.want_dual else None
        self.dual_reverse: list | None = [None] * n if self.want_dual else None
        self.value = np.float64(np.nan)

    @property
    def num_hessian_entries(self) -> int:
        return len(self.hess_I)


def hessian_slice(
    out: NDArray[np.float64],
    offset: int,
    storage: FunctionStorage,
    cache: SubexpressionCache,
    x: NDArray[np.float64],
    parameters: Sequence[float],
    scale: float,
    oracle: ColoringOracle,
) -> int:
    """Write ``scale`` times the Hessian entries of one tape into ``out``.

    Runs one dual forward/reverse sweep per color,
    collecting the epsilon parts of the local variable adjoints
    into the compressed ``(local, colors)`` matrix,
    then asks the oracle to expand it.

    Args:
        out: Global Hessian value buffer.
        offset: Position of this tape's first entry in ``out``.
        storage: The tape and its recovery plan.
        cache: Subexpression buffers.
        x: Point of evaluation.
        parameters: Nonlinear parameter values.
        scale: Objective factor or Lagrange multiplier.
        oracle: The oracle that built ``storage.recovery_info``.

    Returns:
        Number of entries written.
    """
    nnz = storage.num_hessian_entries
    if storage.linearity != Linearity.NONLINEAR or nnz == 0:
        return 0

    rinfo = storage.recovery_info
    local_indices = rinfo.local_indices.tolist()
    seed = storage.seed_matrix
    num_colors = seed.shape[1]
    compressed = np.zeros_like(seed)
    dependents = storage.dependents

    x_dual = [Dual(value) for value in x.tolist()]
    for color in range(num_colors):
        for local, g in enumerate(local_indices):
            x_dual[g] = Dual(x[g], seed[local, color])

        cache.forward_dual(x_dual, parameters, dependents)
        forward_pass(
            storage.dual_forward,
            storage.tape,
            x_dual,
            parameters,
            cache.dual_values,
            DUAL,
        )
        cache.clear_dual_adjoints(dependents)
        output: defaultdict[int, Dual] = defaultdict(Dual)
        reverse_pass(
            output,
            storage.dual_reverse,
            storage.dual_forward,
            storage.tape,
            cache.dual_adjoints,
            Dual(1.0),
            DUAL,
        )
        cache.reverse_dual(output, dependents)

        for local, g in enumerate(local_indices):
            compressed[local, color] = output[g].epsilon if g in output else 0.0

    values = oracle.recover(compressed, rinfo)
    out[offset : offset + nnz] = scale * np.asarray(values, dtype=np.float64)
    return nnz


def hessian_vector_product(
    out: NDArray[np.float64],
    x: NDArray[np.float64],
    v: NDArray[np.float64],
    weighted: Sequence[tuple[FunctionStorage, float]],
    cache: SubexpressionCache,
    parameters: Sequence[float],
) -> None:
    """Add ``sum(scale * H(tape) @ v)`` over ``weighted`` into ``out``.

    All subexpressions are swept once in the dual ring;
    their reverse sweeps run after every tape has deposited its adjoints.
    """
    x_dual = [Dual(xi, vi) for xi, vi in zip(x.tolist(), v.tolist(), strict=True)]
    order = cache.order
    cache.forward_dual(x_dual, parameters, order)
    cache.clear_dual_adjoints(order)

    output: defaultdict[int, Dual] = defaultdict(Dual)
    for storage, scale in weighted:
        if storage.linearity != Linearity.NONLINEAR or scale == 0:
            continue
        forward_pass(
            storage.dual_forward,
            storage.tape,
            x_dual,
            parameters,
            cache.dual_values,
            DUAL,
        )
        reverse_pass(
            output,
            storage.dual_reverse,
            storage.dual_forward,
            storage.tape,
            cache.dual_adjoints,
            Dual(scale),
            DUAL,
        )
    cache.reverse_dual(output, order)

    for i, adjoint in output.items():
        out[i] += adjoint.epsilon
