"""
Transform persistence utilities

Saves and loads a 4x4 rigid transform as plain text so it can be stored
alongside a scan, and formats it for log output.
"""

from pathlib import Path
from typing import Union

import numpy as np

from ..utils.logging import setup_logger

logger = setup_logger(__name__)

_ROTATION_TOLERANCE = 1e-6


def format_transform(transform: np.ndarray, precision: int = 6) -> str:
    """Render a 4x4 matrix as four aligned text rows."""
    T = np.asarray(transform, dtype=np.float64)
    return np.array2string(T, precision=precision, suppress_small=True, floatmode="fixed")


def is_rigid(transform: np.ndarray, tolerance: float = _ROTATION_TOLERANCE) -> bool:
    """True when `transform` is 4x4, has an orthonormal rotation block with det +1 and last row [0, 0, 0, 1]."""
    T = np.asarray(transform, dtype=np.float64)
    if T.shape != (4, 4) or not np.all(np.isfinite(T)):
        return False
    R = T[:3, :3]
    return (
        np.allclose(R.T @ R, np.eye(3), atol=tolerance)
        and abs(np.linalg.det(R) - 1.0) < tolerance
        and np.allclose(T[3], [0.0, 0.0, 0.0, 1.0], atol=tolerance)
    )


def save_transform_matrix(transform: np.ndarray, output_file: Union[str, Path]) -> None:
    """Save a transformation matrix to a text file.

    Args:
        transform: 4x4 transformation matrix
        output_file: Path to output file
    """
    transform = np.asarray(transform, dtype=np.float64)
    if transform.shape != (4, 4):
        raise ValueError(f"Transform must be 4x4 matrix, got {transform.shape}")
    np.savetxt(output_file, transform, fmt='%.18e', header='4x4 rigid transformation matrix (source -> target)')
    logger.info(f"Saved transformation matrix to {output_file}")


def load_transform_matrix(input_file: Union[str, Path], validate: bool = True) -> np.ndarray:
    """Load a transformation matrix from a text file.

    Args:
        input_file: Path to input file
        validate: Reject matrices that are not proper rigid transforms

    Returns:
        4x4 transformation matrix

    Raises:
        ValueError: If the file does not hold a (rigid) 4x4 matrix
    """
    transform = np.loadtxt(input_file)
    if transform.shape != (4, 4):
        raise ValueError(f"Expected 4x4 matrix, got shape {transform.shape}")
    if validate and not is_rigid(transform):
        raise ValueError(f"Matrix in {input_file} is not a rigid transform")
    logger.info(f"Loaded transformation matrix from {input_file}")
    return transform
