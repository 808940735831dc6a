"""Tests for YAML configuration loading."""

import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.utils.config import load_config, AppConfig, ICPConfig


def test_default_config_matches_documented_defaults():
    """config/default.yaml carries the recognised ICP defaults."""
    cfg = load_config(None)

    assert cfg.icp.max_iterations == 150
    assert cfg.icp.transform_epsilon == pytest.approx(1e-3)
    assert cfg.icp.fitness_epsilon == pytest.approx(1e-3)
    assert cfg.icp.max_correspondence_distance == 1.0
    assert cfg.icp.outlier_rejection_ratio == pytest.approx(0.1)
    assert cfg.icp.min_points == 1000
    assert cfg.icp.subsample_threshold == 10000
    assert cfg.icp.subsample_ratio == pytest.approx(0.15)
    assert cfg.proximity.levels == 5


def test_pydantic_defaults_agree_with_yaml():
    assert load_config(None).model_dump() == AppConfig().model_dump()


def test_missing_file_handling(tmp_path):
    missing = tmp_path / "nope.yaml"

    assert isinstance(load_config(missing), AppConfig)
    with pytest.raises(FileNotFoundError):
        load_config(missing, allow_missing=False)


def test_partial_yaml_overrides(tmp_path):
    path = tmp_path / "custom.yaml"
    path.write_text(
        "icp:\n"
        "  max_iterations: 20\n"
        "  correspondence: proximity\n"
        "proximity:\n"
        "  levels: 3\n"
        "gpu:\n"
        "  enabled: false\n",
        encoding="utf-8",
    )

    cfg = load_config(path)

    assert cfg.icp.max_iterations == 20
    assert cfg.icp.correspondence == "proximity"
    assert cfg.icp.fitness_epsilon == pytest.approx(1e-3)
    assert cfg.proximity.levels == 3
    assert cfg.gpu.enabled is False


def test_empty_yaml_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    assert load_config(path).model_dump() == AppConfig().model_dump()


@pytest.mark.parametrize(
    "body",
    [
        "icp:\n  outlier_rejection_ratio: 1.5\n",
        "icp:\n  backend: pcl\n",
        "proximity:\n  levels: 7\n",
        "controller:\n  scan_downsample_factor: 0\n",
    ],
)
def test_invalid_values_raise_value_error(tmp_path, body):
    path = tmp_path / "bad.yaml"
    path.write_text(body, encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(path)


def test_icp_config_direct_construction():
    cfg = ICPConfig(max_iterations=5, backend="open3d")

    assert cfg.max_iterations == 5
    assert cfg.backend == "open3d"
    assert cfg.random_seed == 0
