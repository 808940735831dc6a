"""
ICP Refinement Implementation

This module implements the Iterative Closest Point (ICP) algorithm used to
refine a coarse (fiducial) alignment of two dense scans.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Tuple
import time

import numpy as np

from .dense_backends import DenseRegistrationBackend, create_dense_backend
from .rigid_transform import (
    MIN_POINT_PAIRS,
    RigidTransformEstimator,
    apply_transformation,
    rotation_angle,
)
from ..acceleration.gpu_context import GPUContext
from ..acceleration.gpu_neighbors import create_gpu_neighbors
from ..acceleration.proximity_field import DEFAULT_PADDING, MAX_LEVELS, ProximityField
from ..utils.config import ICPConfig
from ..utils.point_cloud import as_points, random_subsample, valid_point_mask
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

# Distances above this from a GPU neighbour search are treated as a backend fault
_IMPLAUSIBLE_DISTANCE = 1e5

Matcher = Callable[[np.ndarray], Tuple[np.ndarray, np.ndarray]]


@dataclass
class ICPResult:
    """
    Outcome of a refinement run.

    Attributes:
        transform: Final 4x4 source -> target transform.
        fitness: Mean squared distance of the retained correspondences at the
            final pose (inf when none were found, nan when ICP was skipped).
        converged: False when the iteration limit was hit or correspondences
            ran out.
        n_iterations: Iterations performed (0 when skipped or run externally).
        backend: Correspondence / ICP backend that produced the result.
    """

    transform: np.ndarray
    fitness: float
    converged: bool
    n_iterations: int
    backend: str = "none"


class ICPRefinementEngine:
    """
    Point-to-point ICP over two dense clouds.

    The ICP algorithm iteratively:
    1. Finds closest point correspondences
    2. Rejects correspondences beyond the distance cutoff and trims the worst
    3. Estimates the incremental rigid transform
    4. Composes it onto the running transform and re-applies to the source
    5. Repeats until convergence
    """

    def __init__(
        self,
        config: Optional[ICPConfig] = None,
        context: Optional[GPUContext] = None,
        dense_backend: Optional[DenseRegistrationBackend] = None,
        use_gpu_neighbors: bool = False,
        proximity_levels: int = MAX_LEVELS,
        proximity_padding: float = DEFAULT_PADDING,
    ):
        """
        Args:
            config: ICP parameters; defaults to ICPConfig().
            context: GPU context used for the proximity pyramid. Created lazily
                (CPU) on first proximity use when omitted.
            dense_backend: External ICP implementation; when omitted one is
                created from `config.backend`.
            use_gpu_neighbors: If True, attempt GPU nearest neighbours
                (cuML) with automatic CPU fallback.
            proximity_levels: Pyramid depth for `correspondence="proximity"`.
            proximity_padding: Bounding-box margin of the pyramid, as a fraction
                of the largest side of the target cloud.
        """
        self.config = config or ICPConfig()
        self.context = context
        self.dense_backend = dense_backend if dense_backend is not None else create_dense_backend(self.config)
        self.use_gpu_neighbors = use_gpu_neighbors
        self.proximity_levels = proximity_levels
        self.proximity_padding = proximity_padding
        self.estimator = RigidTransformEstimator()
        self._last_backend: str = "none"

    def refine(
        self,
        source,
        target,
        initial_transform: Optional[np.ndarray] = None,
    ) -> ICPResult:
        """
        Refine `initial_transform` so that source lands on target.

        Args:
            source: Source point cloud (N x 3); NaN rows are ignored.
            target: Target point cloud (M x 3); NaN rows are ignored.
            initial_transform: Initial transformation matrix (4 x 4) or None.

        Returns:
            ICPResult. When either cloud holds no more than `min_points` valid
            points the initial transform is returned unchanged and reported
            as converged.
        """
        cfg = self.config
        transform = np.eye(4) if initial_transform is None else np.array(initial_transform, dtype=np.float64)

        source = as_points(source)
        target = as_points(target)
        source = source[valid_point_mask(source)]
        target = target[valid_point_mask(target)]

        if len(source) <= cfg.min_points or len(target) <= cfg.min_points:
            logger.info(
                "Skipping ICP: need more than %d valid points per cloud (source=%d, target=%d).",
                cfg.min_points,
                len(source),
                len(target),
            )
            return ICPResult(transform=transform, fitness=float("nan"), converged=True, n_iterations=0)

        rng = np.random.default_rng(cfg.random_seed)
        source = random_subsample(source, threshold=cfg.subsample_threshold, ratio=cfg.subsample_ratio, rng=rng)
        target = random_subsample(target, threshold=cfg.subsample_threshold, ratio=cfg.subsample_ratio, rng=rng)

        logger.info(
            "Starting ICP alignment with %d source points and %d target points.",
            len(source),
            len(target),
        )

        if self.dense_backend is not None:
            return self._refine_external(source, target, transform)
        return self._iterate(source, target, transform)

    def _refine_external(self, source: np.ndarray, target: np.ndarray, transform: np.ndarray) -> ICPResult:
        backend = self.dense_backend
        start = time.time()
        T, converged, fitness = backend.align(source, target, transform)
        logger.info(
            "%s ICP finished in %.4f s (converged=%s, fitness=%.6f).",
            backend.name,
            time.time() - start,
            converged,
            fitness,
        )
        return ICPResult(transform=T, fitness=fitness, converged=converged, n_iterations=0, backend=backend.name)

    # ------------------------ Correspondences ------------------------
    def _build_matcher(self, target: np.ndarray) -> Tuple[Matcher, str]:
        """Return (matcher, backend_name); matcher maps points to (matched target points, distances)."""
        if self.config.correspondence == "proximity":
            if self.context is None:
                self.context = GPUContext(use_gpu=False, name="icp-proximity")
            field = ProximityField(
                self.context,
                levels=self.proximity_levels,
                padding=self.proximity_padding,
            ).build(target)
            backend = "proximity-" + ("cupy" if self.context.is_gpu else "numpy")
            return field.query, backend

        nbrs = create_gpu_neighbors(n_neighbors=1, use_gpu=self.use_gpu_neighbors).fit(target)

        def match(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
            distances, indices = nbrs.kneighbors(points)
            return target[indices.ravel()], distances.ravel()

        return match, nbrs.backend_

    def _select(self, distances: np.ndarray) -> np.ndarray:
        """Indices of retained correspondences: within the cutoff, minus the worst fraction."""
        keep = np.flatnonzero(np.isfinite(distances) & (distances < self.config.max_correspondence_distance))
        ratio = self.config.outlier_rejection_ratio
        if ratio > 0.0 and len(keep) > MIN_POINT_PAIRS:
            n_keep = max(MIN_POINT_PAIRS, int(np.ceil(len(keep) * (1.0 - ratio))))
            if n_keep < len(keep):
                order = np.argsort(distances[keep], kind="stable")
                keep = np.sort(keep[order[:n_keep]])
        return keep

    def _fitness(self, points: np.ndarray, matcher: Matcher) -> float:
        _, distances = matcher(points)
        keep = self._select(distances)
        if len(keep) == 0:
            logger.warning("No valid correspondences found for fitness computation.")
            return float("inf")
        return float(np.mean(distances[keep] ** 2))

    # ------------------------ Main loop ------------------------
    def _iterate(self, source: np.ndarray, target: np.ndarray, initial_transform: np.ndarray) -> ICPResult:
        cfg = self.config
        transform = initial_transform.copy()
        current_source = apply_transformation(source, transform)
        previous_fitness = float("inf")

        build_start = time.time()
        matcher, backend = self._build_matcher(target)
        self._last_backend = backend
        logger.debug(
            "Correspondence structure built in %.4f s (backend=%s).",
            time.time() - build_start,
            backend,
        )

        converged = False
        n_iterations = 0
        icp_start = time.time()

        for iteration in range(cfg.max_iterations):
            matched, distances = matcher(current_source)

            # Basic sanity checks for GPU distances; fall back to CPU on obvious issues.
            if backend == "cuml":
                if not np.all(np.isfinite(distances)) or float(np.max(distances)) > _IMPLAUSIBLE_DISTANCE:
                    logger.warning(
                        "ICP GPU neighbors produced non-finite or implausible distances; "
                        "restarting ICP with CPU KD-Tree."
                    )
                    self.use_gpu_neighbors = False
                    return self._iterate(source, target, initial_transform)

            keep = self._select(distances)
            if len(keep) < MIN_POINT_PAIRS:
                logger.warning("Not enough valid correspondences found. Stopping ICP.")
                break

            delta_transform, _ = self.estimator.estimate(current_source[keep], matched[keep])

            # Compose on the left and re-apply to the ORIGINAL source to avoid drift
            transform = delta_transform @ transform
            current_source = apply_transformation(source, transform)

            fitness = float(np.mean(distances[keep] ** 2))
            trans_step = float(np.linalg.norm(delta_transform[:3, 3]))
            rot_step = rotation_angle(delta_transform)
            n_iterations = iteration + 1

            logger.debug(
                "Iteration %d: fitness=%.6f, |Δt|=%.6e, Δθ=%.6e rad, %d correspondences",
                n_iterations,
                fitness,
                trans_step,
                rot_step,
                len(keep),
            )

            if trans_step < cfg.transform_epsilon and rot_step < cfg.transform_epsilon:
                logger.info(
                    "ICP converged after %d iterations (motion below %.3e).",
                    n_iterations,
                    cfg.transform_epsilon,
                )
                converged = True
                break

            if abs(previous_fitness - fitness) < cfg.fitness_epsilon:
                logger.info(
                    "ICP converged after %d iterations (fitness change < %.3e).",
                    n_iterations,
                    cfg.fitness_epsilon,
                )
                converged = True
                break

            previous_fitness = fitness
        else:
            logger.info("ICP did not converge after %d iterations.", cfg.max_iterations)

        final_fitness = self._fitness(current_source, matcher)
        logger.info(
            "ICP finished in %.4f s (%d iterations, backend=%s). Final fitness: %.6f",
            time.time() - icp_start,
            n_iterations,
            backend,
            final_fitness,
        )
        return ICPResult(
            transform=transform,
            fitness=final_fitness,
            converged=converged,
            n_iterations=n_iterations,
            backend=backend,
        )
