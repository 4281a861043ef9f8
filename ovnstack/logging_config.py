"""Unified logging configuration for ovnstack entry points.

Usage:
    from ovnstack.logging_config import setup_logging, get_logger

    logger = setup_logging("ovnstack", level="DEBUG")
    logger.info("Starting OVN")
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

__all__ = [
    "COMPACT_FORMAT",
    "DATE_FORMAT",
    "DEFAULT_FORMAT",
    "get_logger",
    "setup_logging",
]

DEFAULT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
COMPACT_FORMAT = "%(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _coerce_level(level: int | str) -> int:
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        return resolved
    return level


def setup_logging(
    name: str = "ovnstack",
    level: int | str = logging.INFO,
    log_file: str | Path | None = None,
    console: bool = True,
    fmt: str = DEFAULT_FORMAT,
) -> logging.Logger:
    """Configure and return a logger.

    Idempotent: handlers are only attached the first time a given
    logger/destination pair is seen.
    """
    logger = logging.getLogger(name)
    logger.setLevel(_coerce_level(level))
    formatter = logging.Formatter(fmt, datefmt=DATE_FORMAT)

    if console and not any(
        type(h) is logging.StreamHandler for h in logger.handlers
    ):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        known = {
            Path(h.baseFilename) for h in logger.handlers
            if isinstance(h, logging.FileHandler)
        }
        if path.resolve() not in known:
            file_handler = logging.FileHandler(path)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a child of the ovnstack logger."""
    if name == "ovnstack" or name.startswith("ovnstack."):
        return logging.getLogger(name)
    return logging.getLogger(f"ovnstack.{name}")
