"""Logging configuration for the hub process."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger.

    Args:
        level: Level name such as ``DEBUG`` or ``INFO``; unknown names fall back to INFO.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO

    root = logging.getLogger()
    root.setLevel(numeric)
    if not any(getattr(handler, "_exprsn", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._exprsn = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    # uvicorn access logs are noisy at INFO under host-based routing
    logging.getLogger("uvicorn.access").setLevel(max(numeric, logging.WARNING))
