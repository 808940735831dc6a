"""
Point Cloud Utilities

Shared helpers for handling point sets and scan grids. Missing depth samples
are encoded as NaN coordinates; every computation that assumes finite geometry
goes through these helpers so invalid points are excluded consistently.
"""

from typing import Optional, Tuple

import numpy as np

from ..exceptions import EmptyCloudError


def as_points(points) -> np.ndarray:
    """Return `points` as a float64 (N, 3) array.

    Accepts (N, 3) or (N, 4) arrays (the W column is dropped) and any
    sequence of 3-tuples.
    """
    arr = np.asarray(points, dtype=np.float64)
    if arr.size == 0:
        return np.empty((0, 3), dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] < 3:
        raise ValueError(f"Expected Nx3 array, got shape {arr.shape}")
    return arr[:, :3]


def valid_point_mask(points: np.ndarray) -> np.ndarray:
    """Boolean mask of rows whose three coordinates are all finite.

    Examples:
        >>> valid_point_mask(np.array([[0, 0, 0], [np.nan, 1, 1]]))
        array([ True, False])
    """
    points = as_points(points)
    return np.all(np.isfinite(points), axis=1)


def valid_points(points: np.ndarray) -> np.ndarray:
    """Drop invalid rows; raise EmptyCloudError when nothing is left."""
    points = as_points(points)
    mask = valid_point_mask(points)
    if not np.any(mask):
        raise EmptyCloudError(f"No valid points among {len(points)} samples")
    return points[mask]


def extract_xyz_vertices(grid: np.ndarray, downsample_factor: int = 1) -> np.ndarray:
    """Extract the valid XYZ samples from a scan grid.

    Args:
        grid: (H, W, 3) XYZ or (H, W, 4) XYZW per-pixel buffer. Already flat
            (N, 3|4) arrays are accepted as well.
        downsample_factor: Row and column step used when walking the grid.

    Returns:
        (M, 3) array of finite points in row-major pixel order.
    """
    if downsample_factor < 1:
        raise ValueError(f"downsample_factor must be >= 1, got {downsample_factor}")

    arr = np.asarray(grid, dtype=np.float64)
    if arr.ndim == 3:
        if arr.shape[2] < 3:
            raise ValueError(f"Scan grid needs at least 3 channels, got shape {arr.shape}")
        arr = arr[::downsample_factor, ::downsample_factor, :3].reshape(-1, 3)
    elif arr.ndim == 2:
        arr = as_points(arr)[::downsample_factor]
    else:
        raise ValueError(f"Unsupported scan buffer shape {arr.shape}")

    return arr[valid_point_mask(arr)]


def bounding_box(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Axis-aligned (min, max) corners of the valid points."""
    pts = valid_points(points)
    return pts.min(axis=0), pts.max(axis=0)


def random_subsample(
    points: np.ndarray,
    *,
    threshold: int,
    ratio: float,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Randomly keep `ratio` of the points when the cloud exceeds `threshold`.

    Clouds at or below the threshold are returned unchanged. Sampling is
    without replacement and preserves the original point order.
    """
    n = len(points)
    if n <= threshold:
        return points
    n_keep = max(1, int(n * ratio))
    if rng is None:
        rng = np.random.default_rng()
    idx = np.sort(rng.choice(n, n_keep, replace=False))
    return points[idx]
