"""
Configuration management for scan-registration.

Provides a typed pydantic model and YAML loader with sensible defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Literal, Any, Dict

from pydantic import BaseModel, Field, ValidationError
import yaml


# -----------------------
# Typed config structures
# -----------------------


class ICPConfig(BaseModel):
    max_iterations: int = Field(default=150, ge=1)
    transform_epsilon: float = Field(
        default=1e-3,
        description="Translation (units) and rotation (radians) step below which ICP is converged",
    )
    fitness_epsilon: float = Field(
        default=1e-3,
        description="Change in mean squared correspondence distance below which ICP is converged",
    )
    max_correspondence_distance: float = Field(default=1.0, gt=0.0)
    outlier_rejection_ratio: float = Field(
        default=0.1,
        ge=0.0,
        lt=1.0,
        description="Fraction of the farthest correspondences trimmed each iteration",
    )
    min_points: int = Field(
        default=1000,
        description="Refinement runs only when both clouds hold more valid points than this",
    )
    subsample_threshold: int = Field(
        default=10000,
        description="Clouds larger than this are randomly subsampled before ICP",
    )
    subsample_ratio: float = Field(default=0.15, gt=0.0, le=1.0)
    correspondence: Literal["nearest", "proximity"] = Field(
        default="nearest",
        description="'nearest' uses a KD-tree, 'proximity' uses the voxel pyramid built on the target",
    )
    backend: Literal["internal", "open3d"] = Field(
        default="internal",
        description="'open3d' delegates the iterative loop to Open3D's point-to-point ICP",
    )
    random_seed: Optional[int] = Field(default=0)


class CorrespondenceConfig(BaseModel):
    tie_tolerance: float = Field(
        default=1e-6,
        description="Candidate mappings whose error is within this of the best count as ties",
    )
    max_points: int = Field(
        default=32,
        description="Upper bound on fiducial count; the exhaustive search is never run on dense clouds",
    )


class ProximityConfig(BaseModel):
    levels: int = Field(default=5, ge=1, le=5, description="Number of pyramid levels (finest raster is 3**(levels-1))")
    padding: float = Field(default=0.02, ge=0.0, description="Bounding-box margin as a fraction of its largest side")


class ControllerConfig(BaseModel):
    scan_downsample_factor: int = Field(
        default=1,
        ge=1,
        description="Row/column step when extracting dense clouds from scan grids",
    )
    result_queue_size: int = Field(default=0, description="0 = unbounded result queue")
    join_timeout: float = Field(default=5.0, description="Seconds to wait for the worker on stop()")


class GPUConfig(BaseModel):
    enabled: bool = Field(default=True, description="Enable GPU acceleration if available (graceful CPU fallback)")
    use_for_neighbors: bool = Field(default=False, description="Use GPU nearest neighbours for ICP correspondences")
    use_for_proximity: bool = Field(default=True, description="Build the proximity pyramid on the GPU when available")


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    file: Optional[str] = Field(default=None)


class AppConfig(BaseModel):
    icp: ICPConfig = Field(default_factory=ICPConfig)
    correspondence: CorrespondenceConfig = Field(default_factory=CorrespondenceConfig)
    proximity: ProximityConfig = Field(default_factory=ProximityConfig)
    controller: ControllerConfig = Field(default_factory=ControllerConfig)
    gpu: GPUConfig = Field(default_factory=GPUConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# -----------------------
# Loader
# -----------------------


def _project_root() -> Path:
    """
    Resolve the repository root directory.

    File is at: repo_root/src/scan_registration/utils/config.py
    parents sequence:
      0 -> .../src/scan_registration/utils
      1 -> .../src/scan_registration
      2 -> .../src
      3 -> repo_root
    """
    return Path(__file__).resolve().parents[3]


def load_config(path: Optional[str | Path] = None, *, allow_missing: bool = True) -> AppConfig:
    """
    Load configuration from YAML into a typed AppConfig.

    Search order when path is None:
    1) repo_root/config/default.yaml
    2) if missing and allow_missing=True: return default AppConfig()

    Args:
        path: Explicit YAML file path.
        allow_missing: If True, returns defaults when file missing; otherwise raises.

    Returns:
        AppConfig instance
    """
    cfg_path: Path
    if path is None:
        cfg_path = _project_root() / "config" / "default.yaml"
    else:
        cfg_path = Path(path)

    if not cfg_path.exists():
        if allow_missing:
            return AppConfig()
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    with cfg_path.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    try:
        return AppConfig.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration in {cfg_path}: {e}") from e
