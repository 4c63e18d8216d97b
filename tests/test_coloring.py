"""Tests for star coloring and the default coloring oracle.

Test cases inspired by SparseMatrixColorings.jl (MIT license)
Copyright (c) 2024 Guillaume Dalle, Alexis Montoison, and contributors
https://github.com/gdalle/SparseMatrixColorings.jl
See also: Dalle & Montoison (2025), https://arxiv.org/abs/2505.07308
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from nlpdiff import RecoveryInfo, SparsityPattern, StarColoring, color_symmetric


def _make_pattern(
    rows: list[int], cols: list[int], shape: tuple[int, int]
) -> SparsityPattern:
    """Helper to create SparsityPattern from row/col lists."""
    return SparsityPattern.from_coordinates(rows, cols, shape)


def _make_banded(n: int, half_bandwidth: int) -> SparsityPattern:
    """Symmetric banded matrix with given half-bandwidth."""
    rows, cols = [], []
    for i in range(n):
        for k in range(-half_bandwidth, half_bandwidth + 1):
            j = i + k
            if 0 <= j < n:
                rows.append(i)
                cols.append(j)
    return _make_pattern(rows, cols, (n, n))


def _make_arrow(n: int) -> SparsityPattern:
    """Arrow matrix: diagonal + dense first row/column."""
    rows, cols = [], []
    for i in range(n):
        rows.append(i)
        cols.append(i)
        if i > 0:
            rows += [0, i]
            cols += [i, 0]
    return _make_pattern(rows, cols, (n, n))


def _make_random_symmetric(n: int, density: float, seed: int) -> SparsityPattern:
    rng = np.random.default_rng(seed)
    mask = np.tril(rng.random((n, n)) < density)
    mask |= mask.T
    np.fill_diagonal(mask, True)
    return SparsityPattern.from_dense(mask)


def _is_valid_star_coloring(sparsity: SparsityPattern, colors: np.ndarray) -> bool:
    """Check distance-1 coloring + no 2-colored 4-vertex path."""
    n = sparsity.n
    adj: list[set[int]] = [set() for _ in range(n)]
    for i, j in zip(sparsity.rows.tolist(), sparsity.cols.tolist(), strict=True):
        if i != j:
            adj[i].add(j)
            adj[j].add(i)

    for v in range(n):
        for w in adj[v]:
            if colors[v] == colors[w]:
                return False

    for v1 in range(n):
        for v2 in adj[v1]:
            if v2 <= v1:
                continue
            for v0 in adj[v1]:
                if v0 == v2:
                    continue
                for v3 in adj[v2]:
                    if v3 == v1:
                        continue
                    path_colors = {colors[v0], colors[v1], colors[v2], colors[v3]}
                    if len(path_colors) < 3:
                        return False
    return True


def _random_symmetric_matrix(pattern: SparsityPattern, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    H = np.zeros(pattern.shape)
    for i, j in zip(pattern.rows.tolist(), pattern.cols.tolist(), strict=True):
        if i >= j:
            H[i, j] = H[j, i] = rng.normal()
    return H


# Star coloring


@pytest.mark.coloring
def test_diagonal_one_color():
    sparsity = _make_pattern([0, 1, 2, 3], [0, 1, 2, 3], (4, 4))

    colors, num_colors = color_symmetric(sparsity)

    assert num_colors == 1
    assert np.all(colors == 0)


@pytest.mark.coloring
def test_dense_n_colors():
    sparsity = SparsityPattern.from_dense(np.ones((4, 4)))

    colors, num_colors = color_symmetric(sparsity)

    assert num_colors == 4
    assert len(set(colors.tolist())) == 4


@pytest.mark.coloring
@pytest.mark.parametrize("n", [3, 5, 10])
def test_arrow_two_colors(n):
    """The hub gets its own color; all leaves can share one."""
    sparsity = _make_arrow(n)

    colors, num_colors = color_symmetric(sparsity)

    assert num_colors == 2
    assert _is_valid_star_coloring(sparsity, colors)


@pytest.mark.coloring
@pytest.mark.parametrize(("n", "half_bandwidth"), [(4, 1), (10, 1), (10, 2), (12, 3)])
def test_banded(n, half_bandwidth):
    sparsity = _make_banded(n, half_bandwidth)

    colors, num_colors = color_symmetric(sparsity)

    assert num_colors <= n
    assert _is_valid_star_coloring(sparsity, colors)


@pytest.mark.coloring
@pytest.mark.parametrize("seed", range(8))
def test_random_patterns_are_star_colored(seed):
    sparsity = _make_random_symmetric(12, 0.25, seed)

    colors, num_colors = color_symmetric(sparsity)

    assert colors.shape == (12,)
    assert colors.max() + 1 == num_colors
    assert _is_valid_star_coloring(sparsity, colors)


@pytest.mark.coloring
def test_star_with_tail():
    """The tail vertex must avoid the hub color."""
    rows = [1, 2, 3, 4]
    cols = [0, 0, 0, 1]
    sparsity = _make_pattern(rows, cols, (5, 5)).symmetrize()

    colors, num_colors = color_symmetric(sparsity)

    assert num_colors == 3
    assert _is_valid_star_coloring(sparsity, colors)


@pytest.mark.coloring
def test_empty():
    colors, num_colors = color_symmetric(_make_pattern([], [], (0, 0)))

    assert num_colors == 0
    assert colors.shape == (0,)


@pytest.mark.coloring
def test_non_square_raises():
    with pytest.raises(ValueError, match="requires a square pattern"):
        color_symmetric(_make_pattern([0], [0], (2, 3)))


# Oracle


class TestStarColoring:
    """Preprocessing, seeding and recovery through the oracle interface."""

    edges = [(4, 3), (1, 1), (3, 1), (4, 4), (3, 3), (3, 1)]

    def test_output_coordinates_are_column_major(self):
        hess_I, hess_J, _ = StarColoring().preprocess(self.edges, 6)

        np.testing.assert_array_equal(hess_I, [1, 3, 3, 4, 4])
        np.testing.assert_array_equal(hess_J, [1, 1, 3, 3, 4])
        assert hess_I.dtype == np.int32

    def test_local_indices_skip_unused_variables(self):
        _, _, rinfo = StarColoring().preprocess(self.edges, 6)

        assert isinstance(rinfo, RecoveryInfo)
        np.testing.assert_array_equal(rinfo.local_indices, [1, 3, 4])
        assert rinfo.colored.sparsity.shape == (3, 3)

    def test_seed_matrix_shape(self):
        oracle = StarColoring()
        _, _, rinfo = oracle.preprocess(self.edges, 6)
        seed = oracle.seed_matrix(rinfo)

        assert seed.shape == (3, rinfo.num_colors)
        assert_allclose(seed.sum(axis=1), 1.0)

    def test_seed_matrix_is_a_copy(self):
        oracle = StarColoring()
        _, _, rinfo = oracle.preprocess(self.edges, 6)
        oracle.seed_matrix(rinfo)[:] = 7.0

        assert oracle.seed_matrix(rinfo).max() == 1.0

    @pytest.mark.parametrize("seed", range(5))
    def test_recover_matches_dense_hessian(self, seed):
        full = _make_random_symmetric(8, 0.3, seed)
        edges = [
            (i, j)
            for i, j in zip(full.rows.tolist(), full.cols.tolist(), strict=True)
            if i >= j
        ]
        H = _random_symmetric_matrix(full, seed)
        oracle = StarColoring()
        hess_I, hess_J, rinfo = oracle.preprocess(edges, 8)

        local = rinfo.local_indices
        compressed = H[np.ix_(local, local)] @ oracle.seed_matrix(rinfo)

        assert_allclose(oracle.recover(compressed, rinfo), H[hess_I, hess_J])

    def test_empty_edge_list(self):
        oracle = StarColoring()
        hess_I, hess_J, rinfo = oracle.preprocess([], 3)

        assert len(hess_I) == len(hess_J) == 0
        assert rinfo.num_colors == 0
        assert oracle.recover(np.zeros((0, 0)), rinfo).shape == (0,)

    def test_edge_above_diagonal_raises(self):
        with pytest.raises(ValueError, match="must satisfy"):
            StarColoring().preprocess([(0, 1)], 2)

    def test_edge_out_of_range_raises(self):
        with pytest.raises(ValueError, match="must satisfy"):
            StarColoring().preprocess([(2, 0)], 2)
