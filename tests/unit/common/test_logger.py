"""Tests for logging setup."""

import logging
import uuid

import pytest

from erpflow.common.logger import configure_from_settings, get_logger, setup_logger
from erpflow.core.config import Settings


def unique_name():
    return f"erpflow-test-{uuid.uuid4().hex[:8]}"


class TestSetupLogger:
    """Test logger configuration."""

    def test_console_logger(self):
        logger = setup_logger(unique_name(), level="debug")

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], logging.StreamHandler)

    def test_file_logging(self, tmp_path):
        name = unique_name()
        logger = setup_logger(name, log_dir=str(tmp_path / "logs"), file_logging=True, console_logging=False)

        logger.info("policy engine started")
        for handler in logger.handlers:
            handler.flush()

        log_file = tmp_path / "logs" / f"{name}.log"
        assert log_file.exists()
        assert "policy engine started" in log_file.read_text()

    def test_invalid_level(self):
        with pytest.raises(ValueError, match="Invalid log level"):
            setup_logger(unique_name(), level="LOUD")

    def test_no_duplicate_handlers(self):
        name = unique_name()
        setup_logger(name)

        assert len(setup_logger(name).handlers) == 1

    def test_get_logger(self):
        name = unique_name()

        assert get_logger(name) is setup_logger(name)


class TestConfigureFromSettings:
    """Test settings-driven configuration."""

    def test_uses_settings_level(self, tmp_path):
        settings = Settings(_env_file=None, log_level="WARNING", log_dir=str(tmp_path))

        logger = configure_from_settings(settings)

        assert logger.name == "erpflow"
        assert logger.level == logging.WARNING
