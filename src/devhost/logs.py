"""Logging setup and logger naming for devhost."""

from __future__ import annotations

import logging

LOGGER_ROOT = "devhost"

_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
_DATEFMT = "%H:%M:%S"


def configure_logging(debug: bool = False) -> None:
    """
    Configure the ``devhost`` logger hierarchy once per process.

    Args:
        debug: If True, child process output (logged at DEBUG) is shown too.
    """
    root = logging.getLogger(LOGGER_ROOT)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
        root.addHandler(handler)
    root.propagate = False


def get_resource_logger(resource_name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_ROOT}.resources.{resource_name}")


def get_step_logger(step_name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_ROOT}.pipeline.{step_name}")
