"""Tests for outlier removal, grid simplification, jet smoothing and spacing."""

import numpy as np
import pytest

from pointcloud_errors import ConfigurationError, DegenerateInputError
from pointcloud_filters import compute_average_spacing, grid_simplify, jet_smooth, remove_outliers


class TestRemoveOutliers:
    """Test cases for remove_outliers."""

    def test_removes_rounded_percentage(self, sphere, cube_surface):
        """n * p / 100 points are removed, rounded half up."""
        pts, _ = sphere
        assert len(remove_outliers(pts, 5.0, 24)) == 475
        assert len(remove_outliers(cube_surface, 5.0, 24)) == 950
        # 500 * 0.1% = 0.5 -> 1
        assert len(remove_outliers(pts, 0.1, 24)) == 499

    def test_zero_percent_is_noop(self, flat_plane):
        out = remove_outliers(flat_plane, 0.0, 8)
        np.testing.assert_array_equal(out, flat_plane)
        assert out is not flat_plane

    def test_drops_isolated_point_and_keeps_order(self, flat_plane):
        """The far point goes; the others come back in input order."""
        pts = np.vstack([flat_plane[:200], [[10.0, 10.0, 10.0]], flat_plane[200:]])
        before = pts.copy()
        out = remove_outliers(pts, 100.0 / len(pts), 8)
        np.testing.assert_array_equal(out, flat_plane)
        np.testing.assert_array_equal(pts, before)

    def test_invalid_parameters(self, flat_plane):
        with pytest.raises(ConfigurationError):
            remove_outliers(flat_plane, 101.0, 8)
        with pytest.raises(ConfigurationError):
            remove_outliers(flat_plane, -1.0, 8)
        with pytest.raises(ConfigurationError):
            remove_outliers(flat_plane, 5.0, 0)
        with pytest.raises(DegenerateInputError):
            remove_outliers(flat_plane, 5.0, len(flat_plane))
        with pytest.raises(DegenerateInputError):
            remove_outliers(np.zeros((0, 3)), 5.0, 8)

    def test_rejects_bad_shape(self):
        with pytest.raises(ConfigurationError):
            remove_outliers(np.zeros((10, 2)), 5.0, 3)


class TestGridSimplify:
    """Test cases for grid_simplify."""

    def test_one_point_per_cell(self):
        pts = np.array([[0.01, 0.01, 0.01],
                        [0.31, 0.0, 0.0],
                        [0.03, 0.03, 0.03]])
        out = grid_simplify(pts, 0.1)
        np.testing.assert_allclose(out, [[0.02, 0.02, 0.02], [0.31, 0.0, 0.0]])

    def test_first_representative(self):
        pts = np.array([[0.01, 0.01, 0.01],
                        [0.31, 0.0, 0.0],
                        [0.03, 0.03, 0.03]])
        out = grid_simplify(pts, 0.1, representative="first")
        np.testing.assert_array_equal(out, pts[:2])

    def test_idempotent(self, cube_surface):
        once = grid_simplify(cube_surface, 0.1)
        twice = grid_simplify(once, 0.1)
        assert len(once) <= len(cube_surface)
        np.testing.assert_array_equal(once, twice)

    def test_tiny_cells_keep_every_point(self, cube_surface):
        """Cell indices past the int64 range must not fold distinct cells together."""
        out = grid_simplify(cube_surface, 1e-20)
        np.testing.assert_array_equal(out, cube_surface)
        assert len(grid_simplify(cube_surface, 0.05)) <= len(grid_simplify(cube_surface, 0.01))

    def test_cell_index_overflow(self):
        pts = np.array([[1e300, 0.0, 0.0], [0.0, 0.0, 0.0]])
        with pytest.raises(ConfigurationError):
            grid_simplify(pts, 1e-20)

    def test_empty_input(self):
        assert grid_simplify(np.zeros((0, 3)), 0.1).shape == (0, 3)

    def test_invalid_parameters(self, flat_plane):
        for bad in (0.0, -0.1, float("nan")):
            with pytest.raises(ConfigurationError):
                grid_simplify(flat_plane, bad)
        with pytest.raises(ConfigurationError):
            grid_simplify(flat_plane, 0.1, representative="median")


class TestJetSmooth:
    """Test cases for jet_smooth."""

    def test_reduces_noise(self, noisy_plane):
        out = jet_smooth(noisy_plane, nb_neighbors=24, iterations=1)
        assert out.shape == noisy_plane.shape
        assert np.std(out[:, 2]) < np.std(noisy_plane[:, 2])

    def test_zero_iterations_returns_copy(self, noisy_plane):
        out = jet_smooth(noisy_plane, nb_neighbors=8, iterations=0)
        np.testing.assert_array_equal(out, noisy_plane)
        assert out is not noisy_plane

    def test_neighbours_rebuilt_each_pass(self, noisy_plane):
        """Two passes equal two chained single passes."""
        twice = jet_smooth(noisy_plane, nb_neighbors=8, iterations=2)
        chained = jet_smooth(jet_smooth(noisy_plane, nb_neighbors=8, iterations=1),
                             nb_neighbors=8, iterations=1)
        np.testing.assert_array_equal(twice, chained)

    def test_sphere_stays_on_sphere(self, sphere):
        """A quadratic jet reproduces a smooth sphere locally."""
        pts, _ = sphere
        out = jet_smooth(pts, nb_neighbors=8, iterations=2)
        assert np.abs(np.linalg.norm(out, axis=1) - 1.0).max() < 1e-2

    def test_invalid_parameters(self, noisy_plane):
        with pytest.raises(ConfigurationError):
            jet_smooth(noisy_plane, 8, iterations=-1)
        with pytest.raises(ConfigurationError):
            jet_smooth(noisy_plane, 8, degree_fitting=5)
        with pytest.raises(ConfigurationError):
            # 4 points cannot fit the 6 coefficients of a quadratic
            jet_smooth(noisy_plane, 3, degree_fitting=2)
        with pytest.raises(DegenerateInputError):
            jet_smooth(noisy_plane[:5], 8)


class TestAverageSpacing:
    """Test cases for compute_average_spacing."""

    def test_grid_spacing(self, flat_plane):
        assert compute_average_spacing(flat_plane, 1) == pytest.approx(0.05, rel=1e-9)

    def test_scales_linearly(self, cube_surface):
        s1 = compute_average_spacing(cube_surface, 6)
        s2 = compute_average_spacing(2.0 * cube_surface, 6)
        assert s1 > 0.0
        assert s2 == pytest.approx(2.0 * s1, rel=1e-9)

    def test_observer_called(self, cube_surface):
        calls = []
        compute_average_spacing(cube_surface, 6, observer=lambda stage, ms: calls.append((stage, ms)))
        assert len(calls) == 1
        assert calls[0][0] == "compute_average_spacing"
        assert calls[0][1] >= 0.0

    def test_too_many_neighbors(self, flat_plane):
        with pytest.raises(DegenerateInputError):
            compute_average_spacing(flat_plane[:6], 6)
