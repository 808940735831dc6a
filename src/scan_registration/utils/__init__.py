"""
Utility Functions Module

Common helpers used across the scan registration package.
- Logging setup and package-wide log level
- Typed YAML configuration
- Point cloud validity masks, scan-grid extraction and subsampling
"""

from .logging import setup_logger, set_package_log_level
from .config import AppConfig, load_config
from .point_cloud import (
    as_points,
    valid_point_mask,
    valid_points,
    extract_xyz_vertices,
    bounding_box,
    random_subsample,
)

__all__ = [
    "setup_logger",
    "set_package_log_level",
    "AppConfig",
    "load_config",
    "as_points",
    "valid_point_mask",
    "valid_points",
    "extract_xyz_vertices",
    "bounding_box",
    "random_subsample",
]
