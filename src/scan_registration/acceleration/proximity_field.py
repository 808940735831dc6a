"""
Proximity Field (voxel pyramid)

A multi-resolution structure answering "which surface point is near this
location" for a dense point cloud. It is built the way a raster pipeline
would build it, so the same code runs on CuPy (GPU) or NumPy (CPU) through an
explicit GPUContext:

1. The cloud's bounding box (padded by 2 % of its largest side) is mapped onto
   a cube of `3**(levels-1)` cells per axis, the finest raster.
2. Every point is rasterised into its finest cell; a depth test keeps, per
   cell, the point closest to the cell centre (one representative per cell).
3. Coarser levels are produced bottom-up: each cell of level k looks at its
   3x3x3 child block in level k+1 and keeps the child representative closest
   to its own centre.
4. The pyramid is then filled top-down: empty cells inherit the
   representative of their parent, so every finest cell answers a query with
   an approximate nearest surface point.

Each level is exposed as a 2D texture of shape (w*w, w, 4): row = z*w + y,
column = x, channels = world XYZ of the representative plus an occupancy flag.
Empty texels hold (NaN, NaN, NaN, 0).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from .gpu_context import ArrayType, GPUContext
from .hardware_detection import check_gpu_memory
from ..utils.point_cloud import as_points, valid_point_mask, valid_points

logger = logging.getLogger(__name__)

MAX_LEVELS = 5
SUBDIVISION = 3
DEFAULT_PADDING = 0.02
TEXEL_DTYPE = np.float64


@dataclass(frozen=True, eq=False)
class VoxelDomain:
    """
    Affine mapping between world coordinates and the pyramid's finest raster.

    voxel = (world - origin) * scale

    Attributes:
        origin: Padded bounding-box minimum (3,).
        extent: Side length of the padded cube in world units.
        levels: Number of pyramid levels.
        width: Cells per axis at the finest level, 3**(levels-1).
        scale: Cells per world unit at the finest level.
    """

    origin: np.ndarray
    extent: float
    levels: int
    width: int
    scale: float
    bounds_min: np.ndarray = field(repr=False)
    bounds_max: np.ndarray = field(repr=False)

    @classmethod
    def from_points(cls, points: np.ndarray, levels: int = MAX_LEVELS, padding: float = DEFAULT_PADDING) -> "VoxelDomain":
        """Derive the domain from the bounding box of the valid points."""
        pts = valid_points(points)
        return cls.from_bounds(pts.min(axis=0), pts.max(axis=0), levels=levels, padding=padding)

    @classmethod
    def from_bounds(
        cls,
        bounds_min,
        bounds_max,
        levels: int = MAX_LEVELS,
        padding: float = DEFAULT_PADDING,
    ) -> "VoxelDomain":
        lo = np.asarray(bounds_min, dtype=np.float64)
        hi = np.asarray(bounds_max, dtype=np.float64)
        bounds_min, bounds_max = np.minimum(lo, hi), np.maximum(lo, hi)
        levels = clamp_levels(levels)

        side = float(np.max(bounds_max - bounds_min))
        if side <= 0.0:
            # A single distinct point still needs a non-empty domain
            side = 1.0
        origin = bounds_min - padding * side
        extent = (1.0 + 2.0 * padding) * side
        width = SUBDIVISION ** (levels - 1)

        return cls(
            origin=origin,
            extent=extent,
            levels=levels,
            width=width,
            scale=width / extent,
            bounds_min=bounds_min,
            bounds_max=bounds_max,
        )

    @property
    def matrix(self) -> np.ndarray:
        """4x4 world -> voxel transform."""
        s = self.scale
        M = np.diag([s, s, s, 1.0])
        M[:3, 3] = -self.origin * s
        return M

    @property
    def inverse_matrix(self) -> np.ndarray:
        """4x4 voxel -> world transform."""
        M = np.diag([1.0 / self.scale] * 3 + [1.0])
        M[:3, 3] = self.origin
        return M

    def level_width(self, level: int) -> int:
        return SUBDIVISION ** level

    def to_voxel(self, points: np.ndarray) -> np.ndarray:
        return (as_points(points) - self.origin) * self.scale

    def to_world(self, voxels: np.ndarray) -> np.ndarray:
        return np.asarray(voxels, dtype=np.float64) / self.scale + self.origin

    def same_bounds(self, other: Optional["VoxelDomain"]) -> bool:
        return (
            other is not None
            and self.levels == other.levels
            and np.allclose(self.bounds_min, other.bounds_min)
            and np.allclose(self.bounds_max, other.bounds_max)
        )


@dataclass
class ProximityScore:
    """Quality of a candidate alignment measured against the pyramid."""

    inlier_ratio: float
    mean_distance: float
    n_valid: int


def clamp_levels(levels: int) -> int:
    return int(min(max(1, int(levels)), MAX_LEVELS))


# ------------------------ Kernels ------------------------
# Every kernel takes the owning GPUContext explicitly.


def _voxel_coords(ctx: GPUContext, points: ArrayType, domain: VoxelDomain) -> ArrayType:
    xp = ctx.xp
    origin = xp.asarray(domain.origin)
    return (points - origin) * domain.scale


def _cell_indices(ctx: GPUContext, voxels: ArrayType, factor: float, width: int) -> ArrayType:
    xp = ctx.xp
    return xp.clip(xp.floor(voxels / factor), 0, width - 1).astype(xp.int64)


def rasterize(ctx: GPUContext, points: ArrayType, domain: VoxelDomain) -> ArrayType:
    """
    Rasterise finite points into the finest level with a nearest-to-centre depth test.

    Returns:
        (w, w, w, 4) grid indexed [z, y, x, channel].
    """
    ctx.check_owner()
    xp = ctx.xp
    w = domain.width

    voxels = _voxel_coords(ctx, points, domain)
    idx = _cell_indices(ctx, voxels, 1.0, w)
    depth = xp.sum((voxels - (idx + 0.5)) ** 2, axis=1)
    cell = (idx[:, 2] * w + idx[:, 1]) * w + idx[:, 0]

    # Sort by cell, then by depth; the first entry of each run wins
    order = xp.lexsort(xp.stack([depth, cell.astype(depth.dtype)]))
    cell_sorted = cell[order]
    first = xp.ones(len(order), dtype=bool)
    first[1:] = cell_sorted[1:] != cell_sorted[:-1]
    winners = order[first]

    grid = ctx.full((w * w * w, 4), np.nan, dtype=TEXEL_DTYPE)
    grid[:, 3] = 0.0
    grid[cell[winners], :3] = points[winners]
    grid[cell[winners], 3] = 1.0
    return grid.reshape(w, w, w, 4)


def coarsen(ctx: GPUContext, fine: ArrayType, domain: VoxelDomain) -> ArrayType:
    """
    Resample a level at one third of its resolution.

    Each output cell keeps, among its 3x3x3 child block, the representative
    nearest to its own centre.
    """
    ctx.check_owner()
    xp = ctx.xp
    w = fine.shape[0] // SUBDIVISION
    factor = domain.width / w

    children = fine.reshape(w, SUBDIVISION, w, SUBDIVISION, w, SUBDIVISION, 4)
    children = children.transpose(0, 2, 4, 1, 3, 5, 6).reshape(w, w, w, SUBDIVISION ** 3, 4)

    centers_1d = (xp.arange(w, dtype=TEXEL_DTYPE) + 0.5) * factor
    zz, yy, xx = xp.meshgrid(centers_1d, centers_1d, centers_1d, indexing="ij")
    centers = xp.stack([xx, yy, zz], axis=-1)

    child_voxels = _voxel_coords(ctx, children[..., :3], domain)
    dist = xp.sum((child_voxels - centers[:, :, :, None, :]) ** 2, axis=-1)
    dist = xp.where(xp.isnan(dist), xp.inf, dist)

    # All-empty blocks pick child 0, which is itself empty
    best = xp.argmin(dist, axis=3)
    coarse = xp.take_along_axis(children, best[..., None, None], axis=3)[..., 0, :]
    return xp.ascontiguousarray(coarse)


def fill(ctx: GPUContext, levels: List[ArrayType]) -> List[ArrayType]:
    """Fill empty cells coarse-to-fine from their parent representative."""
    ctx.check_owner()
    xp = ctx.xp
    filled = [levels[0]]
    for grid in levels[1:]:
        parent = filled[-1]
        up = parent.repeat(SUBDIVISION, axis=0).repeat(SUBDIVISION, axis=1).repeat(SUBDIVISION, axis=2)
        empty = grid[..., 3] == 0.0
        filled.append(xp.where(empty[..., None], up, grid))
    return filled


def lookup(ctx: GPUContext, grid: ArrayType, points: ArrayType, domain: VoxelDomain) -> Tuple[ArrayType, ArrayType]:
    """
    Read the representative for each query point from a (filled) level.

    Returns:
        (representatives (N, 3), distances (N,)); invalid queries give NaN / inf.
    """
    ctx.check_owner()
    xp = ctx.xp
    w = grid.shape[0]
    factor = domain.width / w

    valid = xp.all(xp.isfinite(points), axis=1)
    safe = xp.where(valid[:, None], points, xp.asarray(domain.origin))
    idx = _cell_indices(ctx, _voxel_coords(ctx, safe, domain), factor, w)

    texels = grid[idx[:, 2], idx[:, 1], idx[:, 0]]
    reps = xp.where(valid[:, None], texels[:, :3], xp.nan)
    dist = xp.sqrt(xp.sum((reps - points) ** 2, axis=1))
    dist = xp.where(xp.isnan(dist), xp.inf, dist)
    return reps, dist


# ------------------------ Public structure ------------------------


class ProximityField:
    """
    GPU-resident voxel pyramid over one dense point cloud.

    The structure is an explicit, owned resource: it is created with the
    GPUContext of the thread that will use it and must be rebuilt whenever the
    underlying cloud changes.

    Example:
        >>> ctx = GPUContext(use_gpu=False)
        >>> field = ProximityField(ctx, levels=4)
        >>> field.build(target_points)
        >>> reps, dist = field.query(source_points, transform=T)
    """

    def __init__(self, context: GPUContext, levels: int = MAX_LEVELS, padding: float = DEFAULT_PADDING):
        self.context = context
        self.levels = clamp_levels(levels)
        self.padding = padding
        self.domain: Optional[VoxelDomain] = None
        self._raw: List[ArrayType] = []
        self._filled: List[ArrayType] = []
        self.n_points = 0

    @property
    def is_built(self) -> bool:
        return bool(self._filled)

    @property
    def width(self) -> int:
        return SUBDIVISION ** (self.levels - 1)

    @property
    def transform(self) -> np.ndarray:
        """World -> voxel matrix of the current build."""
        self._require_built()
        return self.domain.matrix

    def _require_built(self) -> None:
        if not self.is_built:
            raise RuntimeError("ProximityField has not been built; call build() first")

    def _estimate_gb(self) -> float:
        texels = sum((SUBDIVISION ** k) ** 3 for k in range(self.levels))
        return 2 * texels * 4 * np.dtype(TEXEL_DTYPE).itemsize / 1024**3

    def build(self, points) -> "ProximityField":
        """
        Rebuild the pyramid from a dense cloud.

        Raises:
            EmptyCloudError: If the cloud has no valid points.
        """
        ctx = self.context
        ctx.check_owner()

        pts = valid_points(points)
        domain = VoxelDomain.from_points(pts, levels=self.levels, padding=self.padding)
        if not domain.same_bounds(self.domain):
            logger.debug(
                "Proximity domain updated: origin=%s extent=%.6g scale=%.6g",
                np.array2string(domain.origin, precision=4),
                domain.extent,
                domain.scale,
            )

        if ctx.is_gpu:
            ok, _ = check_gpu_memory(self._estimate_gb())
            if not ok:
                ctx.disable_gpu("not enough free memory for the proximity pyramid")

        dev_points = ctx.asarray(pts, dtype=TEXEL_DTYPE)
        finest = rasterize(ctx, dev_points, domain)
        raw = [finest]
        for _ in range(self.levels - 1):
            raw.insert(0, coarsen(ctx, raw[0], domain))

        self.domain = domain
        self._raw = raw
        self._filled = fill(ctx, raw)
        self.n_points = len(pts)

        occupied = int(ctx.to_cpu(finest[..., 3]).sum())
        logger.debug(
            "Built %d-level proximity pyramid from %d points (%d/%d finest cells occupied, backend=%s)",
            self.levels,
            self.n_points,
            occupied,
            domain.width ** 3,
            "cupy" if ctx.is_gpu else "numpy",
        )
        return self

    def texture(self, level: int, filled: bool = False) -> np.ndarray:
        """
        Host copy of a level as a (w*w, w, 4) texture.

        Args:
            level: 0 (coarsest, one cell) to levels-1 (finest).
            filled: Return the coarse-to-fine filled texture instead of the raw one.
        """
        self._require_built()
        if not 0 <= level < self.levels:
            raise IndexError(f"level must be in [0, {self.levels - 1}], got {level}")
        grid = (self._filled if filled else self._raw)[level]
        w = grid.shape[0]
        return self.context.to_cpu(grid).reshape(w * w, w, 4)

    def query(self, points, transform: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Approximate nearest representative surface point for every query.

        Args:
            points: Query points (N x 3); NaN rows are allowed.
            transform: Optional 4x4 candidate transform applied to the queries first.

        Returns:
            (representatives (N, 3), distances (N,)) on the host.
        """
        self._require_built()
        ctx = self.context
        pts = as_points(points)
        if transform is not None:
            pts = pts @ transform[:3, :3].T + transform[:3, 3]
        if len(pts) == 0:
            return np.empty((0, 3)), np.empty(0)

        reps, dist = lookup(ctx, self._filled[-1], ctx.asarray(pts, dtype=TEXEL_DTYPE), self.domain)
        return ctx.to_cpu(reps), ctx.to_cpu(dist)

    def proximity_map(self, grid: np.ndarray, transform: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Per-pixel proximity map for a scan grid.

        Args:
            grid: (H, W, 3|4) XYZ(W) buffer with NaN for missing samples.
            transform: Optional 4x4 transform applied to the scan first.

        Returns:
            (H, W, 4) array: representative XYZ and distance per pixel.
        """
        arr = np.asarray(grid, dtype=np.float64)
        if arr.ndim != 3 or arr.shape[2] < 3:
            raise ValueError(f"Expected (H, W, 3|4) scan grid, got shape {arr.shape}")
        h, w = arr.shape[:2]
        reps, dist = self.query(arr[..., :3].reshape(-1, 3), transform=transform)
        out = np.empty((h * w, 4), dtype=np.float64)
        out[:, :3] = reps
        out[:, 3] = dist
        return out.reshape(h, w, 4)

    def score(self, points, transform: Optional[np.ndarray] = None, max_distance: float = 1.0) -> ProximityScore:
        """
        Fraction of valid query points lying within `max_distance` of a representative.
        """
        pts = as_points(points)
        mask = valid_point_mask(pts)
        n_valid = int(mask.sum())
        if n_valid == 0:
            return ProximityScore(inlier_ratio=0.0, mean_distance=float("inf"), n_valid=0)

        _, dist = self.query(pts[mask], transform=transform)
        inliers = dist < max_distance
        mean_distance = float(dist[inliers].mean()) if np.any(inliers) else float("inf")
        return ProximityScore(
            inlier_ratio=float(inliers.mean()),
            mean_distance=mean_distance,
            n_valid=n_valid,
        )
