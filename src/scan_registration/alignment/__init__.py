"""
Spatial Alignment Module

This module provides tools for rigidly aligning two scans: a closed-form
rigid fit, an exhaustive fiducial correspondence search, ICP refinement of
dense clouds and a coalescing controller that runs them off the caller's
thread.
"""

from .rigid_transform import (
    RigidTransformEstimator,
    apply_transformation,
    compose,
    rotation_angle,
)
from .correspondence_search import CorrespondenceMapping, CorrespondenceSearch
from .fine_registration import ICPRefinementEngine, ICPResult
from .dense_backends import DenseRegistrationBackend, Open3DICPBackend, create_dense_backend
from .controller import AlignmentController, AlignmentRequest, AlignmentResult, Channel
from .transform_io import (
    format_transform,
    save_transform_matrix,
    load_transform_matrix,
)

__all__ = [
    "RigidTransformEstimator",
    "apply_transformation",
    "compose",
    "rotation_angle",
    "CorrespondenceMapping",
    "CorrespondenceSearch",
    "ICPRefinementEngine",
    "ICPResult",
    "DenseRegistrationBackend",
    "Open3DICPBackend",
    "create_dense_backend",
    "AlignmentController",
    "AlignmentRequest",
    "AlignmentResult",
    "Channel",
    "format_transform",
    "save_transform_matrix",
    "load_transform_matrix",
]
