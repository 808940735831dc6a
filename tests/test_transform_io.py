"""Tests for saving, loading and formatting transforms."""

import numpy as np
import pytest

from scan_registration.alignment.transform_io import (
    format_transform,
    is_rigid,
    load_transform_matrix,
    save_transform_matrix,
)


def _rigid() -> np.ndarray:
    th = np.deg2rad(33.0)
    T = np.eye(4)
    T[:3, :3] = [[np.cos(th), -np.sin(th), 0.0], [np.sin(th), np.cos(th), 0.0], [0.0, 0.0, 1.0]]
    T[:3, 3] = [10.0, -2.5, 0.125]
    return T


def test_save_and_load(tmp_path):
    path = tmp_path / "scan_transform.txt"
    T = _rigid()

    save_transform_matrix(T, path)
    loaded = load_transform_matrix(path)

    np.testing.assert_allclose(loaded, T, atol=1e-15)
    assert path.read_text(encoding="utf-8").startswith("#")


def test_save_rejects_wrong_shape(tmp_path):
    with pytest.raises(ValueError):
        save_transform_matrix(np.eye(3), tmp_path / "bad.txt")


def test_load_rejects_non_rigid(tmp_path):
    path = tmp_path / "scaled.txt"
    np.savetxt(path, np.diag([2.0, 2.0, 2.0, 1.0]))

    with pytest.raises(ValueError, match="not a rigid"):
        load_transform_matrix(path)
    np.testing.assert_array_equal(load_transform_matrix(path, validate=False), np.diag([2.0, 2.0, 2.0, 1.0]))


def test_load_rejects_wrong_shape(tmp_path):
    path = tmp_path / "short.txt"
    np.savetxt(path, np.eye(3))

    with pytest.raises(ValueError, match="Expected 4x4"):
        load_transform_matrix(path)


def test_is_rigid():
    assert is_rigid(_rigid())
    reflection = np.diag([-1.0, 1.0, 1.0, 1.0])
    assert not is_rigid(reflection)
    assert not is_rigid(np.full((4, 4), np.nan))


def test_format_transform_has_four_rows():
    text = format_transform(_rigid())

    assert len(text.splitlines()) == 4
    assert "10.000000" in text
