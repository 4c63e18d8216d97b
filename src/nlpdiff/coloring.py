"""Coloring oracle for sparse Hessian recovery.

The evaluator only depends on the `ColoringOracle` protocol:
given a Hessian edge list it needs the output coordinates,
a seed matrix whose columns are the directions of Hessian-vector products,
and a way to expand the compressed products back into the entries.
`StarColoring` is the default oracle.
Star coloring exploits Hessian symmetry for fewer colors than
a distance-2 coloring would need.

Algorithms adapted from SparseMatrixColorings.jl (MIT license)
Copyright (c) 2024 Guillaume Dalle, Alexis Montoison, and contributors
https://github.com/gdalle/SparseMatrixColorings.jl
See also: Dalle & Montoison (2025), https://arxiv.org/abs/2505.07308
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from functools import cached_property
from typing import Any, Protocol

import numpy as np
from numpy.typing import NDArray

from nlpdiff.pattern import ColoredPattern, SparsityPattern


class ColoringOracle(Protocol):
    """Contract between the evaluator and a Hessian coloring algorithm.

    Variables sharing a color must never be joined by an edge,
    so seeding all variables of one color at once yields
    an un-mixed column of second directional derivatives.
    The recovery info must expose ``local_indices``,
    the global variable of each seed matrix row.
    """

    def preprocess(
        self, edgelist: Iterable[tuple[int, int]], num_variables: int
    ) -> tuple[NDArray[np.int32], NDArray[np.int32], Any]:
        """Return ``(hess_I, hess_J, recovery_info)``; coordinates satisfy ``I >= J``."""
        ...

    def seed_matrix(self, recovery_info: Any) -> NDArray[np.float64]:
        """Seed matrix of shape ``(len(local_indices), num_colors)``."""
        ...

    def recover(
        self, compressed: NDArray[np.float64], recovery_info: Any
    ) -> NDArray[np.float64]:
        """Entries in ``hess_I``/``hess_J`` order from the compressed products."""
        ...


@dataclass(frozen=True, eq=False)
class RecoveryInfo:
    """Recovery plan for one tape.

    Attributes:
        local_indices: Global variable index of each local row/column.
        colored: Star coloring of the local symmetric pattern.
        rows: Local row of each output entry.
        cols: Local column of each output entry.
    """

    local_indices: NDArray[np.int64]
    colored: ColoredPattern
    rows: NDArray[np.int32]
    cols: NDArray[np.int32]

    @property
    def num_colors(self) -> int:
        return self.colored.num_colors

    @cached_property
    def _extraction(self) -> tuple[NDArray[np.intp], NDArray[np.intp]]:
        return self.colored.extraction_indices(self.rows, self.cols)


class StarColoring:
    """Default oracle: greedy star coloring with star decompression."""

    def preprocess(
        self, edgelist: Iterable[tuple[int, int]], num_variables: int
    ) -> tuple[NDArray[np.int32], NDArray[np.int32], RecoveryInfo]:
        """Color the edge list and fix the order of the output entries.

        Entries are ordered column-major over the lower triangle.

        Raises:
            ValueError: If an edge is above the diagonal or out of range.
        """
        edges = sorted(set(edgelist), key=lambda ij: (ij[1], ij[0]))
        for i, j in edges:
            if not 0 <= j <= i < num_variables:
                msg = (
                    f"Edge ({i}, {j}) must satisfy 0 <= col <= row < {num_variables}."
                )
                raise ValueError(msg)

        local_indices = np.array(
            sorted({v for edge in edges for v in edge}), dtype=np.int64
        )
        to_local = {int(g): k for k, g in enumerate(local_indices)}
        rows = np.array([to_local[i] for i, _ in edges], dtype=np.int32)
        cols = np.array([to_local[j] for _, j in edges], dtype=np.int32)

        n_local = len(local_indices)
        lower = SparsityPattern.from_coordinates(rows, cols, (n_local, n_local))
        full = lower.symmetrize()
        colors, num_colors = color_symmetric(full)
        rinfo = RecoveryInfo(
            local_indices=local_indices,
            colored=ColoredPattern(full, colors=colors, num_colors=num_colors),
            rows=rows,
            cols=cols,
        )
        hess_I = np.array([i for i, _ in edges], dtype=np.int32)
        hess_J = np.array([j for _, j in edges], dtype=np.int32)
        return hess_I, hess_J, rinfo

    def seed_matrix(self, recovery_info: RecoveryInfo) -> NDArray[np.float64]:
        return recovery_info.colored.seed_matrix.copy()

    def recover(
        self, compressed: NDArray[np.float64], recovery_info: RecoveryInfo
    ) -> NDArray[np.float64]:
        elem_idx, color_idx = recovery_info._extraction
        return np.asarray(compressed)[elem_idx, color_idx]


def color_symmetric(sparsity: SparsityPattern) -> tuple[NDArray[np.int32], int]:
    """Greedy star coloring of a symmetric pattern.

    A star coloring (Gebremedhin et al., 2005) is a distance-1 coloring
    in which every path on 4 vertices uses at least 3 colors.
    Vertices are visited in LargestFirst order.

    Args:
        sparsity: Square, symmetric SparsityPattern.

    Returns:
        Tuple of (colors, num_colors) where:
        - colors: Array of shape (n,) with color assignment for each vertex
        - num_colors: Total number of colors used

    Raises:
        ValueError: If pattern is not square
    """
    if sparsity.m != sparsity.n:
        msg = (
            f"Symmetric coloring requires a square pattern, got shape {sparsity.shape}"
        )
        raise ValueError(msg)

    n = sparsity.n
    if n == 0:
        return np.array([], dtype=np.int32), 0

    adj: list[set[int]] = [set() for _ in range(n)]
    for i, j in zip(sparsity.rows.tolist(), sparsity.cols.tolist(), strict=True):
        if i != j:
            adj[i].add(j)
            adj[j].add(i)

    order = sorted(range(n), key=lambda v: len(adj[v]), reverse=True)
    colors = np.full(n, -1, dtype=np.int32)
    num_colors = 0

    for v in order:
        forbidden = {int(colors[w]) for w in adj[v] if colors[w] >= 0}

        # Giving v the color of u, where u is a colored neighbor of a colored
        # neighbor w, creates a two-colored path x-u-w-v or u-w-v-x whenever
        # u or v already has another neighbor x colored like w.
        for w in adj[v]:
            color_w = colors[w]
            if color_w < 0:
                continue
            for u in adj[w]:
                color_u = colors[u]
                if u == v or color_u < 0 or int(color_u) in forbidden:
                    continue
                if any(x != w and colors[x] == color_w for x in adj[u]) or any(
                    x != w and colors[x] == color_w for x in adj[v]
                ):
                    forbidden.add(int(color_u))

        color = 0
        while color in forbidden:
            color += 1
        colors[v] = color
        num_colors = max(num_colors, color + 1)

    return colors, num_colors
