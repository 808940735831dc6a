"""
External dense-ICP backends.

The refinement engine normally runs its own iterative loop. A backend lets
that loop be delegated to a third-party implementation instead; any object
with an `align(source, target, init) -> (transform, converged, fitness)`
method and a `name` attribute qualifies.

Available:
- open3d: point-to-point ICP from Open3D (if installed)
"""

from __future__ import annotations

from typing import Optional, Protocol, Tuple

import numpy as np

from ..utils.config import ICPConfig
from ..utils.logging import setup_logger

logger = setup_logger(__name__)


class DenseRegistrationBackend(Protocol):
    name: str

    def align(
        self,
        source: np.ndarray,
        target: np.ndarray,
        init: np.ndarray,
    ) -> Tuple[np.ndarray, bool, float]:
        ...


class Open3DICPBackend:
    """Point-to-point ICP delegated to Open3D."""

    name = "open3d"

    def __init__(
        self,
        max_correspondence_distance: float = 1.0,
        max_iterations: int = 150,
        relative_fitness: float = 1e-6,
        relative_rmse: float = 1e-6,
    ):
        try:
            import open3d as o3d  # type: ignore
        except Exception as e:
            raise ImportError("Open3D is required for the open3d ICP backend") from e

        self._o3d = o3d
        self.max_correspondence_distance = max_correspondence_distance
        self.max_iterations = max_iterations
        self.relative_fitness = relative_fitness
        self.relative_rmse = relative_rmse

    @classmethod
    def from_config(cls, config: ICPConfig) -> "Open3DICPBackend":
        return cls(
            max_correspondence_distance=config.max_correspondence_distance,
            max_iterations=config.max_iterations,
            relative_fitness=config.fitness_epsilon,
            relative_rmse=config.fitness_epsilon,
        )

    def _to_pcd(self, points: np.ndarray):
        pcd = self._o3d.geometry.PointCloud()
        pcd.points = self._o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64))
        return pcd

    def align(
        self,
        source: np.ndarray,
        target: np.ndarray,
        init: np.ndarray,
    ) -> Tuple[np.ndarray, bool, float]:
        """
        Run Open3D point-to-point ICP.

        Returns:
            Tuple of (transform 4 x 4, converged, fitness). Open3D reports no
            explicit convergence flag; a run is treated as converged when any
            correspondence survived (fitness > 0). The returned fitness is the
            inlier RMSE squared, comparable with the internal engine.
        """
        reg = self._o3d.pipelines.registration
        criteria = reg.ICPConvergenceCriteria(
            relative_fitness=self.relative_fitness,
            relative_rmse=self.relative_rmse,
            max_iteration=self.max_iterations,
        )

        # Open3D writes warnings from C++ straight to the console; silence them for this call only
        with self._o3d.utility.VerbosityContextManager(self._o3d.utility.VerbosityLevel.Error):
            result = reg.registration_icp(
                self._to_pcd(source),
                self._to_pcd(target),
                self.max_correspondence_distance,
                np.asarray(init, dtype=np.float64),
                reg.TransformationEstimationPointToPoint(False),
                criteria,
            )

        converged = float(result.fitness) > 0.0
        fitness = float(result.inlier_rmse) ** 2 if converged else float("inf")
        logger.debug(
            "Open3D ICP: overlap %.3f, inlier RMSE %.6f",
            float(result.fitness),
            float(result.inlier_rmse),
        )
        return np.asarray(result.transformation, dtype=np.float64).copy(), converged, fitness


def create_dense_backend(config: ICPConfig) -> Optional[DenseRegistrationBackend]:
    """
    Backend selected by `config.backend`, or None for the internal loop.

    A missing optional library falls back to the internal loop with a warning.
    """
    if config.backend == "internal":
        return None
    if config.backend == "open3d":
        try:
            return Open3DICPBackend.from_config(config)
        except ImportError as e:
            logger.warning(f"{e}; falling back to the internal ICP loop.")
            return None
    raise ValueError(f"Unknown ICP backend: {config.backend}")
