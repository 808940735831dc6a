"""Tests for logger setup and package-wide log levels."""

import logging

from scan_registration.utils.logging import set_package_log_level, setup_logger


def test_setup_logger_adds_handlers_once(tmp_path):
    log_file = tmp_path / "logs" / "alignment.log"

    logger = setup_logger("scan_registration.test_once", level=logging.DEBUG, log_file=str(log_file))
    again = setup_logger("scan_registration.test_once")

    assert again is logger
    assert len(logger.handlers) == 2
    assert log_file.parent.is_dir()


def test_package_level_reaches_module_loggers():
    import scan_registration.alignment.fine_registration  # noqa: F401

    icp_logger = logging.getLogger("scan_registration.alignment.fine_registration")
    outsider = setup_logger("scan_registration_other.module")
    try:
        set_package_log_level(logging.DEBUG)

        assert icp_logger.isEnabledFor(logging.DEBUG)
        assert all(h.level == logging.DEBUG for h in icp_logger.handlers)
        assert outsider.level == logging.INFO
    finally:
        set_package_log_level(logging.INFO)
