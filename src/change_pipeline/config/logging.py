"""Logging setup for the service process."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach one stream handler to the package logger; repeated calls only adjust the level."""
    package_logger = logging.getLogger("change_pipeline")
    package_logger.setLevel(level.upper())
    if not any(getattr(handler, "_change_pipeline", False) for handler in package_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._change_pipeline = True  # type: ignore[attr-defined]
        package_logger.addHandler(handler)
    return package_logger
