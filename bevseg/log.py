"""Logging setup for the segmentation core.

All modules log through children of the ``bevseg`` logger, so one call to
``setup_logger`` (done by the pipeline from the ``logging`` config section)
controls level and handlers for the whole package.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "bevseg"

_DEFAULT_FORMAT = (
    "%(levelname)-8s - %(asctime)s - %(filename)s:%(lineno)d - "
    "%(funcName)s() - %(message)s"
)
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    level: int | str = logging.INFO,
    log_file: Optional[str | Path] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """Attach console (and optional file) handlers to a logger.

    Args:
        name: Logger name, normally the package root.
        level: Logging level as int or name ("DEBUG", "INFO", ...).
        log_file: Optional path; parent directories are created.
        format_string: Optional custom format. Defaults to
            ``LEVEL - date time - file:line - func() - message``.

    Returns:
        The configured logger. Calling this again only updates the level.
    """
    logger = logging.getLogger(name)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger.setLevel(level)

    # Avoid stacking handlers when several segmenters are built in one process
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    formatter = logging.Formatter(format_string or _DEFAULT_FORMAT, datefmt=_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the package root.

    Module loggers carry no handlers of their own; records propagate to the
    ``bevseg`` logger configured by ``setup_logger``.
    """
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
