"""
Fiducial Correspondence Search

Finds the rigid transform between two small, unordered fiducial sets by
exhaustive search: every target triple (a < b < c) is paired with every
ordered 3-permutation of source indices, each three-point correspondence is
solved in closed form, and the lowest residual wins. Cost grows with
|target|^3 x |source|^3, so this is strictly for fiducial counts in the tens.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from itertools import combinations, permutations
from typing import List, Tuple

import numpy as np

from .rigid_transform import RigidTransformEstimator
from ..utils.point_cloud import as_points, valid_point_mask
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

# Static lookup of every ordered 3-index permutation of range(16), lexicographic.
# Row-filtering it for smaller sets keeps the lexicographic order.
_STATIC_TABLE_SIZE = 16
_STATIC_PERMUTATIONS = np.array(list(permutations(range(_STATIC_TABLE_SIZE), 3)), dtype=np.intp)


@lru_cache(maxsize=64)
def permutation_table(n: int, k: int = 3) -> np.ndarray:
    """
    Ordered k-permutations of range(n) in lexicographic order.

    Args:
        n: Number of source points.
        k: Permutation length (only 3 is served from the static table).

    Returns:
        (P, k) integer array; read-only.
    """
    if k == 3 and n <= _STATIC_TABLE_SIZE:
        table = _STATIC_PERMUTATIONS[np.all(_STATIC_PERMUTATIONS < n, axis=1)]
    else:
        table = np.array(list(permutations(range(n), k)), dtype=np.intp).reshape(-1, k)
    table.setflags(write=False)
    return table


@dataclass
class CorrespondenceMapping:
    """
    Result of a fiducial correspondence search.

    Attributes:
        pairs: (source_index, target_index) pairs, indices into the caller's lists.
        transform: 4x4 rigid transform implied by the pairs (identity when empty).
        error: Residual of the chosen pairs (inf when no mapping was possible).
        tie_count: Number of different transforms reached by candidates whose
            error lies within the tie tolerance of the best one (the chosen
            one included). Many triples recovering the same transform count once.
    """

    pairs: List[Tuple[int, int]] = field(default_factory=list)
    transform: np.ndarray = field(default_factory=lambda: np.eye(4))
    error: float = float("inf")
    tie_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.pairs

    @property
    def ambiguous(self) -> bool:
        """Different transforms reached the best error; the first found was kept."""
        return self.tie_count > 1

    @property
    def source_indices(self) -> List[int]:
        return [s for s, _ in self.pairs]

    @property
    def target_indices(self) -> List[int]:
        return [t for _, t in self.pairs]


class CorrespondenceSearch:
    """Exhaustive triple/permutation search over two small fiducial sets."""

    def __init__(
        self,
        estimator: RigidTransformEstimator | None = None,
        tie_tolerance: float = 1e-6,
        max_points: int = 32,
        transform_tolerance: float = 1e-6,
    ):
        """
        Args:
            estimator: Rigid transform solver used for every candidate.
            tie_tolerance: Candidates within this of the best error count as ties;
                among ties the first found (triple order, then permutation
                order) is kept.
            max_points: Refuse inputs larger than this; the search is
                combinatorial and must not be applied to dense clouds.
            transform_tolerance: Tied candidates whose transforms agree to
                within this are the same mapping.
        """
        self.estimator = estimator or RigidTransformEstimator()
        self.tie_tolerance = tie_tolerance
        self.max_points = max_points
        self.transform_tolerance = transform_tolerance

    def search(self, source, target) -> CorrespondenceMapping:
        """
        Find the best three-point correspondence between two unordered sets.

        Args:
            source: Source fiducials (N x 3), any order; NaN rows are ignored.
            target: Target fiducials (M x 3), any order; NaN rows are ignored.

        Returns:
            CorrespondenceMapping. Empty (identity transform, infinite error)
            when either set has fewer than three valid points.
        """
        source = as_points(source)
        target = as_points(target)

        if max(len(source), len(target)) > self.max_points:
            raise ValueError(
                f"Correspondence search is limited to {self.max_points} fiducials, "
                f"got {len(source)} source and {len(target)} target points"
            )

        # Work on valid points only but report indices into the caller's lists
        source_index = np.flatnonzero(valid_point_mask(source))
        target_index = np.flatnonzero(valid_point_mask(target))
        if min(len(source_index), len(target_index)) <= 2:
            logger.debug(
                "Correspondence search skipped: %d valid source, %d valid target fiducials",
                len(source_index),
                len(target_index),
            )
            return CorrespondenceMapping()

        src = source[source_index]
        tgt = target[target_index]
        perms = permutation_table(len(src), 3)
        source_stack = src[perms]

        best_error = float("inf")
        best_transform = np.eye(4)
        best_perm = None
        best_triple = None
        # Distinct transforms within tolerance of the running best, with their lowest error
        tied_transforms = np.empty((0, 4, 4))
        tied_errors = np.empty(0)

        for triple in combinations(range(len(tgt)), 3):
            target_stack = np.broadcast_to(tgt[list(triple)], source_stack.shape)
            transforms, errors = self.estimator.estimate_batch(source_stack, target_stack)

            # First candidate, in permutation order, that ties this triple's minimum
            i = int(np.flatnonzero(errors <= errors.min() + self.tie_tolerance)[0])
            candidate = float(errors[i])

            # Only a strictly better triple replaces the first one found
            if candidate < best_error - self.tie_tolerance:
                best_error = candidate
                best_transform = transforms[i]
                best_perm = perms[i]
                best_triple = triple
                keep = tied_errors <= best_error + self.tie_tolerance
                tied_transforms = tied_transforms[keep]
                tied_errors = tied_errors[keep]

            for k in np.flatnonzero(errors <= best_error + self.tie_tolerance):
                tied_transforms, tied_errors = self._add_tie(tied_transforms, tied_errors, transforms[k], errors[k])

        tie_count = len(tied_transforms)

        pairs = [
            (int(source_index[s]), int(target_index[t]))
            for s, t in zip(best_perm, best_triple)
        ]
        mapping = CorrespondenceMapping(
            pairs=pairs,
            transform=best_transform.copy(),
            error=best_error,
            tie_count=tie_count,
        )
        logger.debug(
            "Correspondence search over %d x %d fiducials: error %.6e, pairs %s, ties %d",
            len(src),
            len(tgt),
            best_error,
            pairs,
            tie_count,
        )
        return mapping

    def _add_tie(
        self,
        tied_transforms: np.ndarray,
        tied_errors: np.ndarray,
        transform: np.ndarray,
        error: float,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Add `transform` unless an equal one (up to transform_tolerance) is already kept."""
        same = np.all(np.isclose(tied_transforms, transform, atol=self.transform_tolerance), axis=(1, 2))
        if np.any(same):
            tied_errors[same] = np.minimum(tied_errors[same], error)
            return tied_transforms, tied_errors
        return (
            np.concatenate([tied_transforms, transform[None]]),
            np.append(tied_errors, error),
        )
