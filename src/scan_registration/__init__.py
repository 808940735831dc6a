"""
Scan Registration Package

A Python package for rigidly aligning pairs of 3D scans. Sparse fiducial
landmarks give an immediate coarse alignment through an exhaustive
correspondence search; dense per-pixel XYZ buffers are then refined with an
Iterative Closest Point (ICP) loop, optionally guided by a GPU voxel pyramid.
All computation runs behind a coalescing controller on a dedicated worker
thread so interactive input never queues up work.
"""

__version__ = "0.1.0"
__author__ = "Yared Bekele"
__email__ = "yared.bekele@sintef.no"

from .exceptions import (
    RegistrationError,
    InsufficientPointsError,
    DegenerateGeometryError,
    EmptyCloudError,
    GPUContextError,
)
from .alignment import *
from .acceleration import *
from .utils import *

__all__ = [
    "exceptions",
    "alignment",
    "acceleration",
    "utils",
]
