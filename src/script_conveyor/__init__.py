"""Top level package for the script conveyor service.

This module configures a default logger so that informational messages emitted
by the scheduler, the iteration controller and the agents appear on the
console when the application is started via ``uvicorn`` or the
``script-conveyor`` command.  The configuration only runs when the
``script_conveyor`` logger does not yet have any handlers, allowing downstream
applications to override the logging setup if desired.
"""

from __future__ import annotations

import logging

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _configure_default_logging() -> None:
    """Ensure the package has a console logger for informational messages."""

    logger = logging.getLogger("script_conveyor")
    if logger.handlers:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    logger.addHandler(handler)

    logger.setLevel(logging.INFO)
    # Records also reach the root logger.
    logger.propagate = True


_configure_default_logging()

__all__ = ["DEFAULT_LOG_FORMAT"]
