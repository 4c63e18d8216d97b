"""Pattern data structures for the sparsity->coloring->recovery pipeline."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from functools import cached_property

import numpy as np
from numpy.typing import NDArray
from scipy.sparse import coo_matrix

from nlpdiff._display import colored_repr, colored_str, sparsity_repr, sparsity_str


@dataclass(frozen=True, eq=False)
class SparsityPattern:
    """Sparse matrix pattern storing only structural information (no values).

    Attributes:
        rows: Row indices of non-zero entries, shape ``(nnz,)``
        cols: Column indices of non-zero entries, shape ``(nnz,)``
        shape: Matrix dimensions ``(m, n)``
    """

    rows: NDArray[np.int32]
    cols: NDArray[np.int32]
    shape: tuple[int, int]

    def __post_init__(self) -> None:
        """Validate inputs."""
        if len(self.rows) != len(self.cols):
            msg = f"rows and cols must have same length, got {len(self.rows)} and {len(self.cols)}"
            raise ValueError(msg)

    @property
    def nnz(self) -> int:
        """Number of stored entries (duplicates counted)."""
        return len(self.rows)

    @property
    def m(self) -> int:
        """Number of rows."""
        return self.shape[0]

    @property
    def n(self) -> int:
        """Number of columns."""
        return self.shape[1]

    @property
    def density(self) -> float:
        """Fraction of non-zero entries."""
        total = self.m * self.n
        return self.nnz / total if total > 0 else 0.0

    @cached_property
    def col_to_rows(self) -> dict[int, list[int]]:
        """Mapping from column index to list of row indices with non-zeros.

        Used by star recovery to check color uniqueness within a column.
        """
        result: dict[int, list[int]] = defaultdict(list)
        for row, col in zip(self.rows, self.cols, strict=True):
            result[int(col)].append(int(row))
        return dict(result)

    @classmethod
    def from_coordinates(
        cls,
        rows: NDArray[np.int32] | list[int],
        cols: NDArray[np.int32] | list[int],
        shape: tuple[int, int],
    ) -> SparsityPattern:
        """Create pattern from row and column index arrays."""
        return cls(
            rows=np.asarray(rows, dtype=np.int32),
            cols=np.asarray(cols, dtype=np.int32),
            shape=(int(shape[0]), int(shape[1])),
        )

    @classmethod
    def from_dense(cls, dense: NDArray) -> SparsityPattern:
        """Create pattern from a dense matrix; non-zero entries are pattern positions."""
        dense = np.asarray(dense)
        rows, cols = np.nonzero(dense)
        return cls.from_coordinates(rows, cols, dense.shape)

    def symmetrize(self) -> SparsityPattern:
        """Mirror a triangular pattern into a full symmetric one, without duplicates."""
        entries = set()
        for i, j in zip(self.rows.tolist(), self.cols.tolist(), strict=True):
            entries.add((i, j))
            entries.add((j, i))
        ordered = sorted(entries, key=lambda ij: (ij[1], ij[0]))
        return SparsityPattern.from_coordinates(
            [i for i, _ in ordered], [j for _, j in ordered], self.shape
        )

    def to_scipy(self, data: NDArray | None = None) -> coo_matrix:
        """Convert to a scipy COO matrix; duplicate coordinates are summed on conversion."""
        if data is None:
            data = np.ones(self.nnz, dtype=np.int8)
        return coo_matrix((data, (self.rows, self.cols)), shape=self.shape)

    def todense(self) -> NDArray:
        """Convert to dense numpy array with 1s at pattern positions."""
        result = np.zeros(self.shape, dtype=np.int8)
        if self.nnz > 0:
            result[self.rows, self.cols] = 1
        return result

    def __str__(self) -> str:
        """Render sparsity pattern with header and dot grid."""
        return sparsity_str(self)

    def __repr__(self) -> str:
        """Return compact single-line representation."""
        return sparsity_repr(self)


@dataclass(frozen=True, eq=False, repr=False)
class ColoredPattern:
    """Symmetric coloring of a square Hessian pattern.

    Attributes:
        sparsity: Full symmetric pattern that was colored.
        colors: Color of each row/column, shape ``(n,)``.
        num_colors: Total number of colors used.
    """

    sparsity: SparsityPattern
    colors: NDArray[np.int32]
    num_colors: int

    @cached_property
    def seed_matrix(self) -> NDArray[np.float64]:
        """Seed matrix of shape ``(n, num_colors)``.

        Column ``c`` is the indicator of ``colors == c``,
        used as the direction of the ``c``-th Hessian-vector product.
        """
        seeds = np.zeros((self.sparsity.n, self.num_colors), dtype=np.float64)
        if self.sparsity.n:
            seeds[np.arange(self.sparsity.n), self.colors] = 1.0
        return seeds

    def extraction_indices(
        self, rows: NDArray[np.int32], cols: NDArray[np.int32]
    ) -> tuple[NDArray[np.intp], NDArray[np.intp]]:
        """Where to read each entry ``(i, j)`` in a compressed ``(n, num_colors)`` matrix.

        Returns ``(elem_idx, color_idx)`` such that ``C[elem_idx, color_idx]``
        gives the entries in the order of ``rows``/``cols``.

        - diagonal (``i == j``): ``C[i, colors[i]]``
        - off-diagonal: ``C[j, colors[i]]`` if ``colors[i]`` is unique
          among the neighbors of ``j``; otherwise ``C[i, colors[j]]``.
          Star coloring guarantees at least one direction is valid.
        """
        col_to_rows = self.sparsity.col_to_rows
        elem_idx = np.empty(len(rows), dtype=np.intp)
        color_idx = np.empty(len(rows), dtype=np.intp)

        for k, (i, j) in enumerate(zip(rows.tolist(), cols.tolist(), strict=True)):
            if i == j:
                elem_idx[k] = i
                color_idx[k] = self.colors[i]
                continue
            color_i = self.colors[i]
            unique = all(
                r == i or self.colors[r] != color_i for r in col_to_rows.get(j, [])
            )
            if unique:
                elem_idx[k] = j
                color_idx[k] = color_i
            else:
                elem_idx[k] = i
                color_idx[k] = self.colors[j]
        return elem_idx, color_idx

    def __repr__(self) -> str:
        """Return compact single-line representation."""
        return colored_repr(self)

    def __str__(self) -> str:
        """Render colored pattern with color assignments."""
        return colored_str(self)
