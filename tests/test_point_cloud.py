"""Tests for point validity, scan-grid extraction and subsampling helpers."""

import numpy as np
import pytest

from scan_registration.exceptions import EmptyCloudError
from scan_registration.utils.point_cloud import (
    as_points,
    bounding_box,
    extract_xyz_vertices,
    random_subsample,
    valid_point_mask,
    valid_points,
)


def test_as_points_shapes():
    assert as_points([]).shape == (0, 3)
    assert as_points([[1, 2, 3]]).dtype == np.float64
    np.testing.assert_array_equal(as_points(np.ones((4, 4))), np.ones((4, 3)))
    with pytest.raises(ValueError):
        as_points(np.ones((4, 2)))


def test_valid_point_mask_and_filtering():
    pts = np.array([[0.0, 0.0, 0.0], [np.nan, 1.0, 1.0], [1.0, np.inf, 0.0], [2.0, 2.0, 2.0]])

    np.testing.assert_array_equal(valid_point_mask(pts), [True, False, False, True])
    np.testing.assert_array_equal(valid_points(pts), pts[[0, 3]])

    with pytest.raises(EmptyCloudError):
        valid_points(pts[1:3])


def test_extract_xyz_vertices_from_xyzw_grid():
    grid = np.arange(4 * 5 * 4, dtype=float).reshape(4, 5, 4)
    grid[1, 2, :3] = np.nan

    pts = extract_xyz_vertices(grid)

    assert pts.shape == (19, 3)
    # Row-major pixel order, W channel dropped
    np.testing.assert_array_equal(pts[0], grid[0, 0, :3])
    np.testing.assert_array_equal(pts[-1], grid[3, 4, :3])


def test_extract_xyz_vertices_downsampling():
    grid = np.zeros((6, 9, 3))

    assert extract_xyz_vertices(grid, downsample_factor=3).shape == (2 * 3, 3)
    assert extract_xyz_vertices(grid.reshape(-1, 3), downsample_factor=2).shape == (27, 3)
    with pytest.raises(ValueError):
        extract_xyz_vertices(grid, downsample_factor=0)


def test_bounding_box_ignores_invalid_points():
    pts = np.array([[0.0, 5.0, -1.0], [np.nan, 100.0, 0.0], [2.0, 1.0, 3.0]])

    lo, hi = bounding_box(pts)

    np.testing.assert_array_equal(lo, [0.0, 1.0, -1.0])
    np.testing.assert_array_equal(hi, [2.0, 5.0, 3.0])


def test_random_subsample():
    pts = np.arange(300, dtype=float).reshape(100, 3)

    # At or below the threshold nothing changes
    assert random_subsample(pts, threshold=100, ratio=0.15) is pts

    rng = np.random.default_rng(0)
    sub = random_subsample(pts, threshold=50, ratio=0.15, rng=rng)
    assert sub.shape == (15, 3)
    # Order preserved, no duplicates
    assert np.all(np.diff(sub[:, 0]) > 0)

    again = random_subsample(pts, threshold=50, ratio=0.15, rng=np.random.default_rng(0))
    np.testing.assert_array_equal(sub, again)
