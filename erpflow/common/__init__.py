"""Common utilities for erpflow."""

from .logger import configure_from_settings, setup_logger, get_logger


__all__ = ["configure_from_settings", "get_logger", "setup_logger"]
