"""Centralized logging configuration."""

import logging
import sys
from pathlib import Path
from typing import Iterable, Optional
from rich.logging import RichHandler
from rich.console import Console

from .validators import redact_paths

# Rejected paths and queries are logged here as well as to the module logger.
SECURITY_LOGGER = "sessionq.security"


class RedactingFilter(logging.Filter):
    """Replace internal absolute paths in log messages with ``<root>``."""

    def __init__(self, paths: Iterable[str]):
        super().__init__()
        self.paths = [str(p) for p in paths if p]

    def filter(self, record: logging.LogRecord) -> bool:
        if self.paths:
            message = record.getMessage()
            redacted = redact_paths(message, self.paths)
            if redacted != message:
                record.msg = redacted
                record.args = None
        return True


def security_event(message: str) -> None:
    """Record a rejected path or query on the security logger."""
    logging.getLogger(SECURITY_LOGGER).warning(message)


def setup_logger(
    name: str = "sessionq",
    level: str = "INFO",
    log_file: Optional[str] = None,
    rich_console: bool = True,
    redact: Iterable[str] = (),
    security_log_file: Optional[str] = None
) -> logging.Logger:
    """
    Setup logging for the engine with optional file output and rich formatting.

    Modules log through ``logging.getLogger(__name__)``; their records
    propagate to the ``sessionq`` logger configured here. Every handler
    redacts the ``redact`` paths. Security events also go to
    ``security_log_file`` when one is given.
    """

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    logger.handlers.clear()

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    redacting = RedactingFilter(redact)

    if rich_console:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            markup=False
        )
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)

    console_handler.addFilter(redacting)
    logger.addHandler(console_handler)

    if log_file:
        logger.addHandler(_file_handler(log_file, formatter, redacting))

    security = logging.getLogger(SECURITY_LOGGER)
    security.handlers.clear()
    if security_log_file:
        security.addHandler(_file_handler(security_log_file, formatter, redacting))

    return logger


def _file_handler(path: str, formatter: logging.Formatter,
                  redacting: RedactingFilter) -> logging.FileHandler:
    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(log_path)
    handler.setFormatter(formatter)
    handler.addFilter(redacting)
    return handler


class LoggerMixin:
    """Mixin class to add logging capabilities to any class."""

    @property
    def logger(self) -> logging.Logger:
        """Get logger instance for this class."""
        return logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")
