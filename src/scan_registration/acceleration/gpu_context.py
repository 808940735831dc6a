"""
Explicit GPU compute context.

Provides transparent NumPy/CuPy switching for the proximity pyramid and other
GPU-facing kernels. Unlike a process-wide backend, a GPUContext is an owned
resource: it is created once per alignment session, on the thread that will
submit all GPU work, and every GPU-facing call receives it as an explicit
argument. Calls from any other thread are rejected.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Union

import numpy as np

from .hardware_detection import get_gpu_info
from ..exceptions import GPUContextError

logger = logging.getLogger(__name__)

# Any to support cupy.ndarray without import
ArrayType = Union[np.ndarray, Any]


class GPUContext:
    """
    Array backend bound to the thread that created it.

    Example:
        >>> ctx = GPUContext(use_gpu=True)   # CuPy if available, else NumPy
        >>> grid = ctx.zeros((27, 9, 4))
        >>> host = ctx.to_cpu(grid)
    """

    def __init__(self, use_gpu: bool = True, name: Optional[str] = None):
        """
        Args:
            use_gpu: Whether to use GPU if available (default: True)
            name: Label used in log messages.
        """
        self.use_gpu = use_gpu
        self.name = name or "gpu-context"
        self._owner = threading.get_ident()
        self._owner_name = threading.current_thread().name
        self._gpu_available = False
        self._cp = None

        if use_gpu:
            self._initialize_gpu()

    def _initialize_gpu(self) -> None:
        gpu_info = get_gpu_info()
        if not gpu_info.available:
            logger.info(f"{self.name}: GPU not available ({gpu_info.error_message}), using CPU backend")
            return

        try:
            import cupy as cp
        except ImportError as e:
            logger.warning(f"{self.name}: failed to import CuPy: {e}, using CPU backend")
            return

        self._cp = cp
        self._gpu_available = True
        logger.info(
            f"{self.name}: GPU backend initialized on {gpu_info.device_name} "
            f"({gpu_info.memory_gb:.1f} GB), owned by thread {self._owner_name}"
        )

    # ------------------------ Ownership ------------------------
    @property
    def owner_thread_name(self) -> str:
        return self._owner_name

    def is_owner(self) -> bool:
        return threading.get_ident() == self._owner

    def check_owner(self) -> None:
        """Raise GPUContextError when called from a thread other than the owner."""
        if not self.is_owner():
            raise GPUContextError(
                f"{self.name} is owned by thread '{self._owner_name}' and cannot be used "
                f"from '{threading.current_thread().name}'"
            )

    # ------------------------ Backend ------------------------
    @property
    def xp(self):
        """Array module (numpy or cupy)."""
        if self._gpu_available and self._cp is not None:
            return self._cp
        return np

    @property
    def is_gpu(self) -> bool:
        return self._gpu_available

    def disable_gpu(self, reason: str) -> None:
        """Fall back to NumPy for the rest of this context's life."""
        if self._gpu_available:
            logger.warning(f"{self.name}: disabling GPU backend ({reason}), continuing on CPU")
        self._gpu_available = False

    def asarray(self, arr: ArrayType, dtype=None) -> ArrayType:
        """Move `arr` onto this context's backend."""
        self.check_owner()
        if dtype is not None:
            return self.xp.asarray(arr, dtype=dtype)
        return self.xp.asarray(arr)

    def to_cpu(self, arr: ArrayType) -> np.ndarray:
        """Synchronous read-back to a NumPy array."""
        self.check_owner()
        if self._cp is not None and isinstance(arr, self._cp.ndarray):
            return self._cp.asnumpy(arr)
        return np.asarray(arr)

    def full(self, shape, fill_value, dtype=np.float32) -> ArrayType:
        self.check_owner()
        return self.xp.full(shape, fill_value, dtype=dtype)

    def zeros(self, shape, dtype=np.float32) -> ArrayType:
        self.check_owner()
        return self.xp.zeros(shape, dtype=dtype)

    def __repr__(self) -> str:
        backend = "cupy" if self.is_gpu else "numpy"
        return f"GPUContext(name={self.name!r}, backend={backend}, owner={self._owner_name!r})"
