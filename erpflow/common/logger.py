"""Logging setup for erpflow.

Library modules only call ``logging.getLogger(__name__)``; the host
application calls ``configure_from_settings`` (or ``setup_logger``) once
to attach handlers to the ``erpflow`` logger tree.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
ISO_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _resolve_level(level: str) -> int:
    try:
        return _LEVELS[level.strip().upper()]
    except KeyError:
        raise ValueError(
            f"Invalid log level: {level}. Must be one of: {', '.join(_LEVELS)}"
        ) from None


def _rotating_file_handler(path: Path, max_bytes: int, backup_count: int) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )


def setup_logger(
    name: str,
    log_dir: str = "/var/log/erpflow",
    level: str = "INFO",
    log_format: Optional[str] = None,
    date_format: Optional[str] = None,
    file_logging: bool = False,
    console_logging: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """Attach console and/or rotating file handlers to a logger.

    The level is applied on every call; handlers are attached only the
    first time a logger is configured.

    Args:
        name: Logger name; the file handler writes ``<log_dir>/<name>.log``
        log_dir: Directory for log files
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (case-insensitive)
        log_format: Record format (``DEFAULT_FORMAT`` when omitted)
        date_format: Timestamp format (ISO 8601 when omitted)
        file_logging: Write to a rotating log file
        console_logging: Write to stderr
        max_bytes: Size at which the log file rotates
        backup_count: Rotated files to keep

    Returns:
        The configured logger

    Raises:
        ValueError: If ``level`` is not a known level name
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level))
    if logger.handlers:
        return logger

    formatter = logging.Formatter(log_format or DEFAULT_FORMAT, datefmt=date_format or ISO_DATE_FORMAT)
    handlers = []
    if file_logging:
        handlers.append(_rotating_file_handler(Path(log_dir) / f"{name}.log", max_bytes, backup_count))
    if console_logging:
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def configure_from_settings(settings) -> logging.Logger:
    """Configure the ``erpflow`` logger from ``log_level``, ``log_dir`` and ``log_to_file``."""
    return setup_logger(
        "erpflow",
        log_dir=settings.log_dir,
        level=settings.log_level,
        file_logging=settings.log_to_file,
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
