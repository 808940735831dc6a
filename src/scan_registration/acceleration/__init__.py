"""
Acceleration Module

This module provides the GPU-facing infrastructure of the registration code:
- GPU detection with graceful CPU fallback (hardware_detection.py)
- Thread-owned NumPy/CuPy compute context (gpu_context.py)
- Nearest neighbour search on cuML or sklearn (gpu_neighbors.py)
- Voxel-pyramid proximity field (proximity_field.py)
"""

from .hardware_detection import (
    GPUInfo,
    detect_gpu,
    get_gpu_info,
    check_gpu_memory,
    clear_gpu_cache,
)
from .gpu_context import GPUContext
from .gpu_neighbors import (
    GPUNearestNeighbors,
    create_gpu_neighbors,
)
from .proximity_field import (
    MAX_LEVELS,
    ProximityField,
    ProximityScore,
    VoxelDomain,
)

__all__ = [
    # GPU detection
    "GPUInfo",
    "detect_gpu",
    "get_gpu_info",
    "check_gpu_memory",
    "clear_gpu_cache",
    # Compute context
    "GPUContext",
    # Neighbours
    "GPUNearestNeighbors",
    "create_gpu_neighbors",
    # Proximity pyramid
    "MAX_LEVELS",
    "ProximityField",
    "ProximityScore",
    "VoxelDomain",
]
