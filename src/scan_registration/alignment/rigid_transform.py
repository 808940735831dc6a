"""
Closed-form Rigid Transform Estimation

Least-squares rotation + translation between two ordered point lists
(absolute orientation without scale). The solver is written against stacks of
problems so that the exhaustive fiducial search can evaluate thousands of
three-point candidates in a single vectorised call; the single-pair entry
point is the one-element case of the same code path.
"""

from typing import Tuple

import numpy as np

from ..exceptions import DegenerateGeometryError, InsufficientPointsError
from ..utils.point_cloud import as_points, valid_point_mask
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

MIN_POINT_PAIRS = 3


def solve_rigid_batch(
    sources: np.ndarray,
    targets: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Solve a stack of absolute-orientation problems.

    Args:
        sources: (B, n, 3) source points, all finite.
        targets: (B, n, 3) paired target points, all finite.

    Returns:
        Tuple of (transforms (B, 4, 4), errors (B,)). The error of each problem
        is the sum of Euclidean distances between transformed source points
        and their paired targets.
    """
    sources = np.asarray(sources, dtype=np.float64)
    targets = np.asarray(targets, dtype=np.float64)

    source_centroid = sources.mean(axis=1)
    target_centroid = targets.mean(axis=1)

    source_centered = sources - source_centroid[:, None, :]
    target_centered = targets - target_centroid[:, None, :]

    # N = sum_i p_i q_i^T
    N = np.einsum("bni,bnj->bij", source_centered, target_centered)

    U, _, Vt = np.linalg.svd(N)
    V = np.transpose(Vt, (0, 2, 1))
    Ut = np.transpose(U, (0, 2, 1))

    # K = diag(1, 1, det(U V^T)) keeps R a proper rotation
    K = np.tile(np.eye(3), (len(N), 1, 1))
    K[:, 2, 2] = np.where(np.linalg.det(U @ Vt) < 0.0, -1.0, 1.0)

    R = V @ K @ Ut
    t = target_centroid - np.einsum("bij,bj->bi", R, source_centroid)

    transforms = np.tile(np.eye(4), (len(N), 1, 1))
    transforms[:, :3, :3] = R
    transforms[:, :3, 3] = t

    moved = np.einsum("bij,bnj->bni", R, sources) + t[:, None, :]
    errors = np.linalg.norm(moved - targets, axis=2).sum(axis=1)

    return transforms, errors


def is_degenerate(points: np.ndarray, tolerance: float = 1e-9) -> bool:
    """True when the points are coincident or collinear (rank < 2 after centring)."""
    pts = as_points(points)
    if len(pts) < MIN_POINT_PAIRS:
        return True
    centered = pts - pts.mean(axis=0)
    s = np.linalg.svd(centered, compute_uv=False)
    if s[0] <= tolerance:
        return True
    return bool(s[1] <= tolerance * s[0])


def apply_transformation(points: np.ndarray, transform: np.ndarray) -> np.ndarray:
    """
    Apply a 4x4 rigid transform to a set of points.

    Invalid (NaN) rows stay NaN.

    Args:
        points: Point cloud (N x 3).
        transform: Transformation matrix (4 x 4).

    Returns:
        Transformed point cloud (N x 3).
    """
    points = as_points(points)
    if points.size == 0:
        return points
    R = transform[:3, :3]
    t = transform[:3, 3]
    return points @ R.T + t


def compose(first: np.ndarray, then: np.ndarray) -> np.ndarray:
    """Transform equivalent to applying `first` and afterwards `then`."""
    return np.asarray(then) @ np.asarray(first)


def rotation_angle(R: np.ndarray) -> float:
    """Rotation angle (radians) of a 3x3 rotation matrix."""
    R = np.asarray(R)[:3, :3]
    # Clamp argument to arccos to valid range to avoid NaNs
    cos_theta = max(min((float(np.trace(R)) - 1.0) * 0.5, 1.0), -1.0)
    return float(np.arccos(cos_theta))


class RigidTransformEstimator:
    """
    Least-squares rigid transform between paired point lists.

    Steps:
    1. Drop pairs in which either point is invalid
    2. Subtract the centroids of both lists
    3. Factor the cross-covariance N = sum p q^T with an SVD, N = U S V^T
    4. R = V K U^T with K = diag(1, 1, det(U V^T)) guarding against reflections
    5. T = target_centroid - R source_centroid
    """

    def __init__(self, check_degeneracy: bool = False, degeneracy_tolerance: float = 1e-9):
        """
        Args:
            check_degeneracy: If True, raise DegenerateGeometryError when the
                source points are collinear or coincident. Off by default; the
                SVD still produces a rotation in that case, it is just not
                meaningful.
            degeneracy_tolerance: Relative singular-value threshold for the check.
        """
        self.check_degeneracy = check_degeneracy
        self.degeneracy_tolerance = degeneracy_tolerance

    def estimate(self, source, target) -> Tuple[np.ndarray, float]:
        """
        Estimate the rigid transform mapping `source` onto `target`.

        Args:
            source: Ordered source points (N x 3).
            target: Ordered target points (N x 3), paired by index with source.

        Returns:
            Tuple of (transformation matrix 4 x 4, residual error).

        Raises:
            ValueError: If the lists differ in length.
            InsufficientPointsError: If fewer than three valid pairs remain.
            DegenerateGeometryError: If check_degeneracy is on and the source
                points are collinear or coincident.
        """
        source = as_points(source)
        target = as_points(target)
        if len(source) != len(target):
            raise ValueError(
                f"Point lists must have equal length, got {len(source)} and {len(target)}"
            )

        mask = valid_point_mask(source) & valid_point_mask(target)
        n_valid = int(np.sum(mask))
        if n_valid < MIN_POINT_PAIRS:
            raise InsufficientPointsError(n_valid, MIN_POINT_PAIRS)

        source = source[mask]
        target = target[mask]

        if self.check_degeneracy and is_degenerate(source, self.degeneracy_tolerance):
            raise DegenerateGeometryError(
                f"{n_valid} source points are collinear or coincident"
            )

        transforms, errors = solve_rigid_batch(source[None], target[None])
        logger.debug("Rigid fit on %d pairs, residual %.6e", n_valid, errors[0])
        return transforms[0], float(errors[0])

    def estimate_batch(self, sources: np.ndarray, targets: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Estimate transforms for a stack of equally sized, fully valid problems.

        Args:
            sources: (B, n, 3) source points.
            targets: (B, n, 3) target points.

        Returns:
            Tuple of (transforms (B, 4, 4), errors (B,)).
        """
        sources = np.asarray(sources, dtype=np.float64)
        targets = np.asarray(targets, dtype=np.float64)
        if sources.shape != targets.shape or sources.ndim != 3 or sources.shape[2] != 3:
            raise ValueError(
                f"Expected matching (B, n, 3) stacks, got {sources.shape} and {targets.shape}"
            )
        if sources.shape[1] < MIN_POINT_PAIRS:
            raise InsufficientPointsError(sources.shape[1], MIN_POINT_PAIRS)
        if len(sources) == 0:
            return np.empty((0, 4, 4)), np.empty(0)
        return solve_rigid_batch(sources, targets)
