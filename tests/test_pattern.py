"""Tests for SparsityPattern and ColoredPattern."""

import numpy as np
import pytest

from nlpdiff import ColoredPattern, SparsityPattern, color_symmetric


class TestValidation:
    """Test input validation."""

    def test_mismatched_rows_cols_raises(self):
        """rows and cols with different lengths raise ValueError."""
        with pytest.raises(ValueError, match="same length"):
            SparsityPattern.from_coordinates([0, 1], [0], (2, 2))


class TestConstruction:
    """Test SparsityPattern construction methods."""

    def test_from_coordinates(self):
        pattern = SparsityPattern.from_coordinates([0, 0, 1, 2], [0, 1, 1, 2], (3, 3))

        assert pattern.shape == (3, 3)
        assert pattern.nnz == 4
        assert pattern.m == 3
        assert pattern.n == 3
        assert pattern.rows.dtype == np.int32
        np.testing.assert_array_equal(pattern.rows, [0, 0, 1, 2])
        np.testing.assert_array_equal(pattern.cols, [0, 1, 1, 2])

    def test_from_coordinates_empty(self):
        pattern = SparsityPattern.from_coordinates([], [], (3, 4))

        assert pattern.shape == (3, 4)
        assert pattern.nnz == 0

    def test_from_dense(self):
        dense = np.array([[1, 0, 1], [0, 1, 0], [1, 1, 0]])
        pattern = SparsityPattern.from_dense(dense)

        assert pattern.nnz == 5
        np.testing.assert_array_equal(pattern.todense(), (dense != 0).astype(np.int8))

    def test_duplicates_are_kept(self):
        """Duplicate coordinates count towards nnz, as in Jacobian structures."""
        pattern = SparsityPattern.from_coordinates([0, 0], [1, 1], (1, 2))

        assert pattern.nnz == 2
        np.testing.assert_array_equal(pattern.todense(), [[0, 1]])


class TestConversion:
    """Test conversion to dense and scipy matrices."""

    def test_todense_empty(self):
        pattern = SparsityPattern.from_coordinates([], [], (2, 3))

        np.testing.assert_array_equal(pattern.todense(), np.zeros((2, 3)))

    def test_to_scipy_default_data(self):
        pattern = SparsityPattern.from_coordinates([0, 1], [1, 0], (2, 2))

        np.testing.assert_array_equal(pattern.to_scipy().toarray(), [[0, 1], [1, 0]])

    def test_to_scipy_sums_duplicates(self):
        pattern = SparsityPattern.from_coordinates([0, 0, 1], [1, 1, 0], (2, 2))
        matrix = pattern.to_scipy(np.array([1.5, 2.0, -1.0]))

        np.testing.assert_allclose(matrix.toarray(), [[0.0, 3.5], [-1.0, 0.0]])


class TestSymmetrize:
    """Mirroring triangular Hessian structures."""

    def test_lower_triangle(self):
        lower = SparsityPattern.from_coordinates([0, 1, 1, 2], [0, 0, 1, 1], (3, 3))
        full = lower.symmetrize()

        expected = np.array([[1, 1, 0], [1, 1, 1], [0, 1, 0]])
        np.testing.assert_array_equal(full.todense(), expected)
        assert full.nnz == 6

    def test_removes_duplicates(self):
        pattern = SparsityPattern.from_coordinates([1, 0, 1], [0, 1, 0], (2, 2))

        assert pattern.symmetrize().nnz == 2

    def test_column_major_order(self):
        full = SparsityPattern.from_coordinates([1, 2], [0, 1], (3, 3)).symmetrize()

        coords = list(zip(full.cols.tolist(), full.rows.tolist(), strict=True))
        assert coords == sorted(coords)


class TestProperties:
    """Test derived properties."""

    def test_density(self):
        pattern = SparsityPattern.from_coordinates([0, 1], [0, 1], (3, 4))
        assert pattern.density == pytest.approx(2 / 12)

    def test_density_zero_size(self):
        pattern = SparsityPattern.from_coordinates([], [], (0, 4))
        assert pattern.density == 0.0

    def test_col_to_rows(self):
        pattern = SparsityPattern.from_coordinates([0, 0, 1, 2], [0, 1, 1, 2], (3, 3))

        assert pattern.col_to_rows == {0: [0], 1: [0, 1], 2: [2]}

    def test_col_to_rows_caching(self):
        pattern = SparsityPattern.from_coordinates([0, 1], [0, 1], (2, 2))

        assert pattern.col_to_rows is pattern.col_to_rows


class TestVisualization:
    """Test string rendering."""

    def test_small_matrix_uses_dots(self):
        pattern = SparsityPattern.from_coordinates([0, 1, 2], [0, 1, 2], (3, 3))
        s = str(pattern)

        assert "SparsityPattern" in s
        assert "3×3" in s
        assert "nnz=3" in s
        assert "●" in s
        assert "⋅" in s

    def test_render_small_diagonal(self):
        pattern = SparsityPattern.from_coordinates([0, 1], [0, 1], (2, 2))

        assert str(pattern).splitlines()[1:] == ["● ⋅", "⋅ ●"]

    def test_empty_matrix(self):
        pattern = SparsityPattern.from_coordinates([], [], (0, 0))

        assert "(empty)" in str(pattern)

    def test_large_matrix_header_only(self):
        pattern = SparsityPattern.from_coordinates([0], [0], (20, 50))

        assert "(too large to display)" in str(pattern)

    def test_repr_compact(self):
        pattern = SparsityPattern.from_coordinates([0, 1], [0, 1], (10, 20))
        r = repr(pattern)

        assert r == "SparsityPattern(shape=(10, 20), nnz=2)"
        assert "\n" not in r


def _colored(dense):
    sparsity = SparsityPattern.from_dense(np.array(dense))
    colors, num_colors = color_symmetric(sparsity)
    return ColoredPattern(sparsity, colors=colors, num_colors=num_colors)


class TestColoredPattern:
    """Seed matrices and extraction indices."""

    def test_seed_matrix_is_color_indicator(self):
        colored = ColoredPattern(
            SparsityPattern.from_dense(np.eye(3)),
            colors=np.array([0, 1, 0], dtype=np.int32),
            num_colors=2,
        )

        np.testing.assert_array_equal(
            colored.seed_matrix, [[1.0, 0.0], [0.0, 1.0], [1.0, 0.0]]
        )

    def test_seed_matrix_empty(self):
        colored = ColoredPattern(
            SparsityPattern.from_coordinates([], [], (0, 0)),
            colors=np.array([], dtype=np.int32),
            num_colors=0,
        )

        assert colored.seed_matrix.shape == (0, 0)

    def test_extraction_recovers_arrow_hessian(self):
        """Compress a symmetric matrix by its seed matrix and read it back."""
        H = np.array(
            [
                [4.0, 1.0, 2.0, 3.0],
                [1.0, 5.0, 0.0, 0.0],
                [2.0, 0.0, 6.0, 0.0],
                [3.0, 0.0, 0.0, 7.0],
            ]
        )
        colored = _colored(H != 0)
        compressed = H @ colored.seed_matrix
        rows, cols = np.tril(H).nonzero()

        elem_idx, color_idx = colored.extraction_indices(
            rows.astype(np.int32), cols.astype(np.int32)
        )

        np.testing.assert_allclose(compressed[elem_idx, color_idx], H[rows, cols])
        assert colored.num_colors == 2

    def test_repr_pluralizes_colors(self):
        assert "1 color)" in repr(_colored(np.eye(3)))
        assert "2 colors)" in repr(_colored(np.ones((2, 2))))

    def test_str_shows_colors(self):
        s = str(_colored(np.eye(2)))

        assert "1 HVP (instead of 2)" in s
        assert s.splitlines()[-2:] == ["0 ⋅", "⋅ 0"]
