"""Shared subexpressions: per-point memoized values and cross-tape adjoints.

Every subexpression tape lives once in the model and is addressed by index.
The cache evaluates all of them in a single problem-wide topological order,
so each is forward-evaluated exactly once per point
no matter how many tapes reference it.
Adjoints flow the other way: every referencing tape deposits into a shared
accumulator, and a subexpression's own reverse sweep only runs after all of
its referrers have contributed, i.e. in reverse topological order.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import ArrayLike, NDArray

from nlpdiff.rings import DUAL, Dual
from nlpdiff.sparsity import Linearity, order_subexpressions
from nlpdiff.sweep import forward_pass, reverse_pass
from nlpdiff.tape import Tape

if TYPE_CHECKING:
    from nlpdiff.model import Model


class SubexpressionStorage:
    """One subexpression tape with its scratch buffers.

    Dual buffers are only allocated when second-order work was requested.
    """

    def __init__(self, tape: Tape, linearity: Linearity, want_dual: bool = False):
        self.tape = tape
        self.linearity = linearity
        n = len(tape)
        self.forward: list = [0.0] * n
        self.reverse: list = [0.0] * n
        self.dual_forward: list | None = [None] * n if want_dual else None
        self.dual_reverse: list | None = [None] * n if want_dual else None


class SubexpressionCache:
    """Memoized subexpression values for the current point.

    Args:
        storages: One storage per subexpression index;
            ``None`` for subexpressions no tape reaches.
        order: Global topological order, dependencies first.
    """

    def __init__(
        self, storages: Sequence[SubexpressionStorage | None], order: Sequence[int]
    ):
        self.storages = list(storages)
        self.order = list(order)
        num = len(self.storages)
        self.values = np.zeros(num, dtype=np.float64)
        self.adjoints = np.zeros(num, dtype=np.float64)
        self.dual_values: list = [Dual() for _ in range(num)]
        self.dual_adjoints: list = [Dual() for _ in range(num)]
        self.forward_counts = [0] * num

    def __len__(self) -> int:
        return len(self.storages)

    def forward(self, x: NDArray[np.float64], parameters: Sequence[float]) -> None:
        """Evaluate every reachable subexpression at ``x``."""
        for k in self.order:
            storage = self.storages[k]
            self.values[k] = forward_pass(
                storage.forward, storage.tape, x, parameters, self.values
            )
            self.forward_counts[k] += 1

    def reverse(self, output: NDArray[np.float64], dependents: Sequence[int]) -> None:
        """Flush the accumulated adjoints of ``dependents`` into ``output``.

        ``dependents`` must be in topological order;
        it is walked backwards so that every subexpression has received
        the adjoints of all its referrers before its own sweep runs.
        """
        for k in reversed(dependents):
            storage = self.storages[k]
            reverse_pass(
                output,
                storage.reverse,
                storage.forward,
                storage.tape,
                self.adjoints,
                self.adjoints[k],
            )

    def clear_adjoints(self, dependents: Iterable[int]) -> None:
        for k in dependents:
            self.adjoints[k] = 0.0

    def forward_dual(
        self,
        x_dual: Sequence[Dual],
        parameters: Sequence[float],
        dependents: Sequence[int],
    ) -> None:
        """Evaluate ``dependents`` in the dual ring at the seeded point ``x_dual``."""
        for k in dependents:
            storage = self.storages[k]
            self.dual_values[k] = forward_pass(
                storage.dual_forward,
                storage.tape,
                x_dual,
                parameters,
                self.dual_values,
                DUAL,
            )

    def reverse_dual(self, output, dependents: Sequence[int]) -> None:
        """Dual counterpart of `reverse`."""
        for k in reversed(dependents):
            storage = self.storages[k]
            reverse_pass(
                output,
                storage.dual_reverse,
                storage.dual_forward,
                storage.tape,
                self.dual_adjoints,
                self.dual_adjoints[k],
                DUAL,
            )

    def clear_dual_adjoints(self, dependents: Iterable[int]) -> None:
        for k in dependents:
            self.dual_adjoints[k] = Dual()


def evaluate_subexpression(model: Model, index: int, x: ArrayLike) -> float:
    """Value of subexpression ``index`` at ``x``, outside of any evaluator.

    Dependencies are evaluated first with fresh buffers.

    Raises:
        IndexError: If ``index`` is not a subexpression of ``model``.
    """
    subexpressions = model.subexpressions
    if not 0 <= index < len(subexpressions):
        raise IndexError(
            f"Subexpression {index} out of range; the model has {len(subexpressions)}."
        )
    x = np.asarray(x, dtype=np.float64)
    target = subexpressions[index]
    _, (dependencies,) = order_subexpressions([target], subexpressions)
    if index in dependencies:
        raise ValueError(f"Subexpression {index} depends on itself through a cycle.")

    parameters = model.parameters.values
    values = np.zeros(len(subexpressions), dtype=np.float64)
    for k in [*dependencies, index]:
        tape = subexpressions[k]
        values[k] = forward_pass([0.0] * len(tape), tape, x, parameters, values)
    return float(values[index])
