"""
Example script for aligning two scans

Loads fiducials (and optionally dense scans) from .npy/.txt files, runs them
through the AlignmentController and saves the resulting transform.
"""

import sys
import argparse
import logging
import queue
import numpy as np
from pathlib import Path

# Add the src to the path to import modules
sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.alignment import (
    AlignmentController,
    Channel,
    format_transform,
    save_transform_matrix,
)
from scan_registration.acceleration.hardware_detection import detect_gpu
from scan_registration.utils.config import load_config, AppConfig
from scan_registration.utils.logging import setup_logger, set_package_log_level


def _load_points(path: str) -> np.ndarray:
    """Load an (N, 3) point list or (H, W, 3|4) scan grid from .npy or text."""
    p = Path(path)
    if p.suffix == ".npy":
        return np.load(p)
    return np.loadtxt(p, ndmin=2)


def main():
    """
    Main function to run a fiducial or dense alignment.
    """
    parser = argparse.ArgumentParser(description="Scan Registration")
    parser.add_argument("--source-fiducials", type=str, required=True, help="Source fiducial list (.npy or text, N x 3)")
    parser.add_argument("--target-fiducials", type=str, required=True, help="Target fiducial list (.npy or text, M x 3)")
    parser.add_argument("--source-scan", type=str, default=None, help="Dense source cloud or scan grid (.npy)")
    parser.add_argument("--target-scan", type=str, default=None, help="Dense target cloud or scan grid (.npy)")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file (defaults to config/default.yaml)",
    )
    parser.add_argument("--output", type=str, default=None, help="Write the resulting 4x4 transform to this file")
    parser.add_argument("--timeout", type=float, default=600.0, help="Seconds to wait for the result")
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for the ICP subsampling RNG (overrides icp.random_seed).",
    )
    args = parser.parse_args()

    # Load configuration
    cfg: AppConfig = load_config(args.config)
    if args.seed is not None:
        cfg.icp.random_seed = args.seed

    # Setup logging from config
    log_level = getattr(logging, cfg.logging.level.upper(), logging.INFO)
    logger = setup_logger(__name__, level=log_level, log_file=cfg.logging.file)
    set_package_log_level(log_level)

    logger.info("Scan Registration")
    logger.info("=================")

    if cfg.gpu.enabled:
        gpu_info = detect_gpu()
        if gpu_info.available:
            logger.info(f"GPU Acceleration: ENABLED ({gpu_info.device_name}, {gpu_info.memory_gb:.2f} GB)")
        else:
            logger.warning(
                f"GPU Acceleration: ENABLED in config but GPU not available ({gpu_info.error_message}), will use CPU fallback"
            )
    else:
        logger.info("GPU Acceleration: DISABLED (CPU only)")

    source_fiducials = _load_points(args.source_fiducials)
    target_fiducials = _load_points(args.target_fiducials)
    dense = args.source_scan is not None and args.target_scan is not None
    if (args.source_scan is None) != (args.target_scan is None):
        logger.error("Dense alignment needs both --source-scan and --target-scan.")
        return 1

    with AlignmentController(cfg) as controller:
        if dense:
            controller.set_source_scan(_load_points(args.source_scan))
            controller.set_target_scan(_load_points(args.target_scan))
            controller.submit(Channel.DENSE, source_fiducials, target_fiducials)
        else:
            controller.submit(Channel.FIDUCIAL, source_fiducials, target_fiducials)

        try:
            result = controller.get_result(timeout=args.timeout)
        except queue.Empty:
            logger.error(f"No alignment result within {args.timeout:.0f} s.")
            return 1

    if not result.ok:
        logger.error(f"Alignment failed: {result.failure}")
        return 1

    logger.info(f"{result.channel.value.capitalize()} alignment (converged={result.converged}, error={result.error:.6f}):")
    logger.info("\n" + format_transform(result.transform))
    if result.mapping is not None and not result.mapping.is_empty:
        logger.info(f"Fiducial pairs (source, target): {result.mapping.pairs}")
        if result.mapping.ambiguous:
            logger.warning(f"{result.mapping.tie_count} fiducial mappings tie; the first found was used.")

    if args.output:
        save_transform_matrix(result.transform, args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
