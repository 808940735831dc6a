"""
GPU-accelerated nearest neighbor search wrapper.

Provides a unified 1-NN/k-NN interface for ICP correspondence search that can
utilize:
- GPU: cuML NearestNeighbors (Linux only)
- CPU: sklearn KD-tree (fallback)
"""

import logging
from typing import Literal, Optional, Tuple

import numpy as np
from sklearn.neighbors import NearestNeighbors as SklearnNN

from .hardware_detection import GPUInfo, get_gpu_info

logger = logging.getLogger(__name__)


class GPUNearestNeighbors:
    """
    Nearest neighbor search with automatic CPU fallback.

    Strategy:
    - GPU + cuML: cuML brute-force/KD search on the device
    - Otherwise: sklearn KD-tree with NumPy arrays (CPU baseline)

    Parameters
    ----------
    n_neighbors : int, default=1
        Number of neighbors to return per query
    algorithm : {'auto', 'ball_tree', 'kd_tree', 'brute'}, default='kd_tree'
        Algorithm used by the sklearn backend
    leaf_size : int, default=30
        Leaf size passed to the sklearn tree
    use_gpu : bool, default=True
        Whether to attempt GPU acceleration

    Attributes
    ----------
    gpu_available_ : bool
        Whether GPU is being used
    backend_ : str
        Backend in use: 'cuml' or 'sklearn-cpu'
    """

    def __init__(
        self,
        n_neighbors: int = 1,
        algorithm: Literal['auto', 'ball_tree', 'kd_tree', 'brute'] = 'kd_tree',
        leaf_size: int = 30,
        use_gpu: bool = True,
    ):
        self.n_neighbors = n_neighbors
        self.algorithm = algorithm
        self.leaf_size = leaf_size
        self.use_gpu = use_gpu

        self._model = None
        self._gpu_info: Optional[GPUInfo] = None
        self.gpu_available_ = False
        self.backend_ = 'sklearn-cpu'
        self._n_samples = 0

    def _initialize_backend(self) -> None:
        """Decide between cuML and sklearn."""
        if not self.use_gpu:
            logger.debug("GPU disabled by configuration, using CPU KD-tree")
            return

        self._gpu_info = get_gpu_info()
        if not self._gpu_info.available:
            logger.debug(f"GPU unavailable ({self._gpu_info.error_message}), using CPU KD-tree")
            return

        try:
            from cuml.neighbors import NearestNeighbors as CuMLNN
        except ImportError:
            logger.info("cuML not installed, nearest neighbours stay on the CPU KD-tree")
            return

        self.backend_ = 'cuml'
        self.gpu_available_ = True
        self._model = CuMLNN(n_neighbors=self.n_neighbors)
        logger.info(f"Using cuML nearest neighbours on GPU: {self._gpu_info.device_name}")

    def fit(self, X: np.ndarray) -> 'GPUNearestNeighbors':
        """
        Index the reference point set.

        Parameters
        ----------
        X : np.ndarray, shape (n_samples, 3)
            Reference points

        Returns
        -------
        self : GPUNearestNeighbors
        """
        if self._model is None:
            self._initialize_backend()

        if self.backend_ == 'cuml':
            import cupy as cp
            # Fit on float32 for better numerical behaviour on GPU
            self._model.fit(cp.asarray(X, dtype=cp.float32))
        else:
            self._model = SklearnNN(
                n_neighbors=self.n_neighbors,
                algorithm=self.algorithm,
                leaf_size=self.leaf_size,
            )
            self._model.fit(X)

        self._n_samples = len(X)
        return self

    def kneighbors(
        self,
        X: np.ndarray,
        n_neighbors: Optional[int] = None,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Find the nearest reference points for each query.

        Returns
        -------
        distances : np.ndarray, shape (n_queries, n_neighbors)
        indices : np.ndarray, shape (n_queries, n_neighbors)
        """
        if self._n_samples == 0:
            raise ValueError("Model must be fitted before calling kneighbors")

        if n_neighbors is None:
            n_neighbors = self.n_neighbors

        if self.backend_ == 'cuml':
            import cupy as cp

            distances, indices = self._model.kneighbors(
                cp.asarray(X, dtype=cp.float32), n_neighbors=n_neighbors
            )
            return cp.asnumpy(distances), cp.asnumpy(indices)

        return self._model.kneighbors(X, n_neighbors)

    @property
    def n_samples_fit_(self) -> int:
        """Number of samples in the fitted data."""
        if self._n_samples == 0:
            raise ValueError("Model not fitted")
        return self._n_samples


def create_gpu_neighbors(n_neighbors: int = 1, use_gpu: bool = True) -> GPUNearestNeighbors:
    """
    Factory for a nearest neighbour index.

    Examples
    --------
    >>> nn = create_gpu_neighbors(n_neighbors=1, use_gpu=False)
    >>> nn.fit(target_points)
    >>> distances, indices = nn.kneighbors(source_points)
    """
    return GPUNearestNeighbors(n_neighbors=n_neighbors, use_gpu=use_gpu)
