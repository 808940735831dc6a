"""
GPU hardware detection and capability assessment.

Provides GPU availability detection with graceful CPU fallback. Detection is
cached process-wide because it is a property of the machine, not of any
alignment session; GPU *state* (arrays, pyramids) lives in GPUContext instead.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GPUInfo:
    """GPU device information."""

    available: bool
    device_count: int
    device_name: Optional[str] = None
    memory_gb: Optional[float] = None
    cuda_version: Optional[str] = None
    compute_capability: Optional[tuple] = None
    error_message: Optional[str] = None


def detect_gpu() -> GPUInfo:
    """
    Detect GPU availability and capabilities.

    Attempts to import CuPy and query CUDA devices. Falls back gracefully
    to CPU-only mode if GPU is unavailable or CuPy is not installed.

    Returns:
        GPUInfo with device details, or unavailable marker with error message
    """
    try:
        import cupy as cp
    except ImportError as e:
        logger.info(f"CuPy not installed - GPU acceleration disabled: {e}")
        return GPUInfo(available=False, device_count=0, error_message="CuPy not installed")

    try:
        if not cp.cuda.is_available():
            logger.info("CUDA not available - GPU acceleration disabled")
            return GPUInfo(available=False, device_count=0, error_message="CUDA runtime not available")

        device_count = cp.cuda.runtime.getDeviceCount()
        if device_count == 0:
            logger.info("No CUDA devices found - GPU acceleration disabled")
            return GPUInfo(available=False, device_count=0, error_message="No CUDA devices detected")

        device = cp.cuda.Device(0)
        # Compute capability comes back as a string such as "86"
        cc_str = str(device.compute_capability)
        compute_capability = (int(cc_str[0]), int(cc_str[1:] or 0))
        device_name = cp.cuda.runtime.getDeviceProperties(0)["name"].decode("utf-8")

        info = GPUInfo(
            available=True,
            device_count=device_count,
            device_name=device_name,
            memory_gb=device.mem_info[1] / 1024**3,
            cuda_version=str(cp.cuda.runtime.runtimeGetVersion()),
            compute_capability=compute_capability,
        )
        logger.info(
            f"GPU detected: {info.device_name} ({info.memory_gb:.1f} GB, "
            f"compute {compute_capability[0]}.{compute_capability[1]})"
        )
        return info

    except Exception as e:
        logger.warning(f"GPU detection failed - GPU acceleration disabled: {e}")
        return GPUInfo(available=False, device_count=0, error_message=str(e))


def check_gpu_memory(required_gb: float) -> tuple[bool, Optional[float]]:
    """
    Check if GPU has sufficient free memory.

    Args:
        required_gb: Required memory in gigabytes

    Returns:
        Tuple of (has_sufficient_memory, available_gb)
    """
    if not get_gpu_info().available:
        return False, None

    try:
        import cupy as cp

        free_gb = cp.cuda.Device(0).mem_info[0] / 1024**3
    except Exception as e:
        logger.warning(f"Failed to check GPU memory: {e}")
        return False, None

    has_sufficient = free_gb >= required_gb
    if not has_sufficient:
        logger.warning(
            f"Insufficient GPU memory: {free_gb:.1f} GB available, {required_gb:.3f} GB required"
        )
    return has_sufficient, free_gb


_gpu_info_cache: Optional[GPUInfo] = None
_gpu_info_lock = threading.Lock()


def get_gpu_info() -> GPUInfo:
    """
    Get cached GPU information.

    Detects GPU on first call and caches result for subsequent calls. Safe to
    call from several worker threads at once.
    """
    global _gpu_info_cache

    with _gpu_info_lock:
        if _gpu_info_cache is None:
            _gpu_info_cache = detect_gpu()
        return _gpu_info_cache


def clear_gpu_cache() -> None:
    """Clear the GPU info cache, forcing re-detection on next get_gpu_info() call."""
    global _gpu_info_cache
    with _gpu_info_lock:
        _gpu_info_cache = None
