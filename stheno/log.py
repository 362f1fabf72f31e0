"""Logging setup for the command line.

Library modules only create ``logging.getLogger(__name__)`` loggers; the
CLI calls ``configure_logging`` once at startup.
"""

from __future__ import annotations

import logging

LOG_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str | int = "INFO") -> None:
    """Install a single stream handler on the ``stheno`` logger.

    Args:
        level: Level name (``"DEBUG"``, ``"INFO"``...) or numeric level.
            Unknown names fall back to INFO.
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    else:
        resolved = level

    logger = logging.getLogger("stheno")
    logger.setLevel(resolved)
    for handler in list(logger.handlers):
        if getattr(handler, "_stheno_handler", False):
            logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    handler._stheno_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
