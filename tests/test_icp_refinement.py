"""
Tests for ICP refinement.

These tests focus on correctness of the recovered transform, the minimum
size threshold and the pluggable correspondence/backend paths on synthetic
data. They exercise the CPU code path; GPU neighbours fall back to the
KD-tree when no device is present.
"""

from pathlib import Path
import types
import sys

import numpy as np
import pytest

# Ensure src is importable
sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.acceleration.gpu_context import GPUContext
from scan_registration.acceleration.hardware_detection import get_gpu_info
from scan_registration.acceleration.proximity_field import ProximityField
from scan_registration.alignment import fine_registration
from scan_registration.alignment.dense_backends import Open3DICPBackend, create_dense_backend
from scan_registration.alignment.fine_registration import ICPRefinementEngine, ICPResult
from scan_registration.alignment.rigid_transform import rotation_angle
from scan_registration.utils.config import ICPConfig


def _make_random_cloud(n: int = 2000, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    # Anisotropic spread to avoid degenerate covariance
    base = rng.normal(size=(n, 3)) * np.array([10.0, 5.0, 2.0])
    base += np.array([100.0, -50.0, 20.0])
    return base.astype(float)


def _rigid(deg: float, t) -> np.ndarray:
    th = np.deg2rad(deg)
    T = np.eye(4)
    T[:3, :3] = np.array(
        [
            [np.cos(th), -np.sin(th), 0.0],
            [np.sin(th), np.cos(th), 0.0],
            [0.0, 0.0, 1.0],
        ]
    )
    T[:3, 3] = t
    return T


def _apply(points: np.ndarray, T: np.ndarray) -> np.ndarray:
    return points @ T[:3, :3].T + T[:3, 3]


def _tight_config(**overrides) -> ICPConfig:
    params = dict(max_iterations=100, transform_epsilon=1e-8, fitness_epsilon=1e-12)
    params.update(overrides)
    return ICPConfig(**params)


def test_icp_recovers_known_transform():
    """ICP should recover a small rigid offset between identical clouds."""
    src = _make_random_cloud(n=2000, seed=1)
    # Rotate about the cloud centre so the offset stays small everywhere
    centre = src.mean(axis=0)
    T_true = _rigid(1.0, [0.2, -0.1, 0.1])
    T_true[:3, 3] += centre - T_true[:3, :3] @ centre
    tgt = _apply(src, T_true)

    result = ICPRefinementEngine(_tight_config()).refine(src, tgt)

    assert isinstance(result, ICPResult)
    assert result.converged
    assert result.n_iterations > 0
    assert result.backend == "sklearn-cpu"
    np.testing.assert_allclose(result.transform[:3, 3], T_true[:3, 3], atol=1e-3)
    assert rotation_angle(result.transform[:3, :3] @ T_true[:3, :3].T) < 1e-4
    assert result.fitness < 1e-6


def test_initial_transform_is_used():
    """Starting at the true pose converges immediately and stays there."""
    src = _make_random_cloud(n=1500, seed=2)
    T_true = _rigid(30.0, [5.0, 2.0, -1.0])
    tgt = _apply(src, T_true)

    result = ICPRefinementEngine(_tight_config()).refine(src, tgt, initial_transform=T_true)

    assert result.converged
    np.testing.assert_allclose(result.transform, T_true, atol=1e-6)


def test_threshold_returns_initial_transform_unchanged():
    """Clouds with no more than min_points valid points skip refinement."""
    src = _make_random_cloud(n=500, seed=3)
    tgt = _apply(src, _rigid(3.0, [1.0, 0.0, 0.0]))
    init = _rigid(1.0, [0.5, 0.5, 0.5])

    result = ICPRefinementEngine(ICPConfig()).refine(src, tgt, initial_transform=init)

    assert result.converged
    assert result.n_iterations == 0
    np.testing.assert_array_equal(result.transform, init)
    assert result.transform is not init


def test_threshold_counts_valid_points_only():
    src = _make_random_cloud(n=1500, seed=4)
    src[:600] = np.nan
    tgt = _make_random_cloud(n=1500, seed=5)

    result = ICPRefinementEngine(ICPConfig(min_points=1000)).refine(src, tgt)

    assert result.n_iterations == 0
    np.testing.assert_array_equal(result.transform, np.eye(4))


def test_empty_clouds_are_folded_into_result():
    result = ICPRefinementEngine().refine(np.empty((0, 3)), np.empty((0, 3)))

    assert result.converged
    np.testing.assert_array_equal(result.transform, np.eye(4))


def test_non_convergence_is_reported_not_raised():
    src = _make_random_cloud(n=2000, seed=6)
    tgt = _apply(src, _rigid(4.0, [1.0, -1.0, 0.5]))

    result = ICPRefinementEngine(_tight_config(max_iterations=1)).refine(src, tgt)

    assert not result.converged
    assert result.n_iterations == 1


def test_no_correspondences_within_cutoff():
    src = _make_random_cloud(n=1500, seed=7)
    tgt = src + 1000.0

    result = ICPRefinementEngine(_tight_config()).refine(src, tgt)

    assert not result.converged
    assert result.n_iterations == 0
    assert result.fitness == float("inf")


def test_large_clouds_are_subsampled(monkeypatch):
    sizes = []
    original = fine_registration.random_subsample

    def spy(points, **kwargs):
        out = original(points, **kwargs)
        sizes.append((len(points), len(out)))
        return out

    monkeypatch.setattr(fine_registration, "random_subsample", spy)

    src = _make_random_cloud(n=3000, seed=8)
    cfg = _tight_config(min_points=100, subsample_threshold=2000, subsample_ratio=0.5, max_iterations=5)
    ICPRefinementEngine(cfg).refine(src, src.copy())

    assert sizes == [(3000, 1500), (3000, 1500)]


def test_outlier_trimming_keeps_closest_correspondences():
    engine = ICPRefinementEngine(ICPConfig(max_correspondence_distance=1.0, outlier_rejection_ratio=0.25))
    distances = np.array([0.1, 0.9, 0.5, 2.0, 0.3, np.inf, 0.7, 0.2, 0.4])

    keep = engine._select(distances)

    # 7 within the cutoff, 25 % of them trimmed -> ceil(5.25) = 6 kept
    np.testing.assert_array_equal(keep, [0, 2, 4, 6, 7, 8])


def test_proximity_correspondences_recover_translation():
    """On a lattice every point owns its finest cell, so pyramid lookups are exact."""
    axis = np.arange(11.0)
    src = np.stack(np.meshgrid(axis, axis, axis, indexing="ij"), axis=-1).reshape(-1, 3)
    t = np.array([0.03, -0.02, 0.01])
    tgt = src + t

    ctx = GPUContext(use_gpu=False, name="test-icp")
    engine = ICPRefinementEngine(
        _tight_config(correspondence="proximity", max_correspondence_distance=0.5),
        context=ctx,
        proximity_levels=5,
    )
    result = engine.refine(src, tgt)

    assert result.backend == "proximity-numpy"
    assert result.n_iterations > 0
    np.testing.assert_allclose(result.transform[:3, 3], t, atol=1e-3)


def test_gpu_neighbors_fall_back_to_cpu():
    src = _make_random_cloud(n=1500, seed=10)
    tgt = src + np.array([0.1, 0.0, 0.0])

    result = ICPRefinementEngine(_tight_config(), use_gpu_neighbors=True).refine(src, tgt)

    if not get_gpu_info().available:
        assert result.backend == "sklearn-cpu"
    np.testing.assert_allclose(result.transform[:3, 3], [0.1, 0.0, 0.0], atol=1e-3)


class _FixedBackend:
    name = "fixed"

    def __init__(self, transform):
        self.transform = transform
        self.calls = []

    def align(self, source, target, init):
        self.calls.append((len(source), len(target), init.copy()))
        return self.transform, True, 0.25


def test_external_backend_is_delegated_to():
    src = _make_random_cloud(n=1200, seed=11)
    T = _rigid(2.0, [1.0, 2.0, 3.0])
    backend = _FixedBackend(T)
    init = _rigid(0.0, [0.1, 0.1, 0.1])

    result = ICPRefinementEngine(ICPConfig(), dense_backend=backend).refine(src, src, initial_transform=init)

    assert result.backend == "fixed"
    assert result.converged
    assert result.fitness == 0.25
    np.testing.assert_array_equal(result.transform, T)
    assert len(backend.calls) == 1
    np.testing.assert_array_equal(backend.calls[0][2], init)


def test_internal_backend_selection():
    assert create_dense_backend(ICPConfig(backend="internal")) is None


def test_open3d_backend_recovers_transform():
    pytest.importorskip("open3d")

    src = _make_random_cloud(n=2000, seed=12)
    T_true = _rigid(0.0, [0.2, -0.1, 0.1])
    tgt = _apply(src, T_true)

    engine = ICPRefinementEngine(_tight_config(backend="open3d"))
    result = engine.refine(src, tgt)

    assert result.backend == "open3d"
    assert result.converged
    np.testing.assert_allclose(result.transform[:3, 3], T_true[:3, 3], atol=1e-3)


def test_proximity_padding_reaches_the_pyramid(monkeypatch):
    built = []

    class RecordingField(ProximityField):
        def build(self, points):
            built.append(self)
            return super().build(points)

    monkeypatch.setattr(fine_registration, "ProximityField", RecordingField)

    axis = np.arange(11.0)
    src = np.stack(np.meshgrid(axis, axis, axis, indexing="ij"), axis=-1).reshape(-1, 3)
    cfg = _tight_config(correspondence="proximity", max_correspondence_distance=0.5, max_iterations=2)

    for padding in (0.02, 0.25):
        engine = ICPRefinementEngine(
            cfg,
            context=GPUContext(use_gpu=False, name="test-padding"),
            proximity_levels=3,
            proximity_padding=padding,
        )
        engine.refine(src, src.copy())

    default_field, padded_field = built
    # Largest side is 10, so the origin moves out by padding * 10
    np.testing.assert_allclose(default_field.domain.origin, [-0.2, -0.2, -0.2])
    np.testing.assert_allclose(padded_field.domain.origin, [-2.5, -2.5, -2.5])


def test_controller_engine_uses_configured_padding():
    from scan_registration.alignment.controller import AlignmentController
    from scan_registration.utils.config import AppConfig, GPUConfig, ProximityConfig

    config = AppConfig(gpu=GPUConfig(enabled=False), proximity=ProximityConfig(levels=3, padding=0.1))
    with AlignmentController(config) as controller:
        assert controller.engine.proximity_padding == 0.1
        assert controller.engine.proximity_levels == 3


class _FakeOpen3D:
    """Just enough of the open3d namespace to run Open3DICPBackend.align."""

    def __init__(self):
        self.events = []
        fake = self

        class VerbosityContextManager:
            def __init__(self, level):
                self.level = level

            def __enter__(self):
                fake.events.append(("quiet", self.level))

            def __exit__(self, *exc):
                fake.events.append(("loud", self.level))

        def registration_icp(source, target, max_dist, init, estimation, criteria):
            fake.events.append(("icp", sys.stdout))
            return types.SimpleNamespace(transformation=init, fitness=0.9, inlier_rmse=0.1)

        self.utility = types.SimpleNamespace(
            VerbosityContextManager=VerbosityContextManager,
            VerbosityLevel=types.SimpleNamespace(Error="error"),
            Vector3dVector=lambda arr: arr,
        )
        self.geometry = types.SimpleNamespace(PointCloud=types.SimpleNamespace)
        self.pipelines = types.SimpleNamespace(
            registration=types.SimpleNamespace(
                registration_icp=registration_icp,
                ICPConvergenceCriteria=lambda **kwargs: kwargs,
                TransformationEstimationPointToPoint=lambda with_scaling: with_scaling,
            )
        )


def test_open3d_backend_silences_open3d_without_touching_stdout():
    backend = Open3DICPBackend.__new__(Open3DICPBackend)
    backend._o3d = _FakeOpen3D()
    backend.max_correspondence_distance = 1.0
    backend.max_iterations = 10
    backend.relative_fitness = 1e-6
    backend.relative_rmse = 1e-6
    stdout = sys.stdout

    T, converged, fitness = backend.align(np.zeros((5, 3)), np.zeros((5, 3)), np.eye(4))

    assert [e[0] for e in backend._o3d.events] == ["quiet", "icp", "loud"]
    assert backend._o3d.events[0][1] == "error"
    assert backend._o3d.events[1][1] is stdout
    assert converged
    assert fitness == pytest.approx(0.01)
    np.testing.assert_array_equal(T, np.eye(4))
