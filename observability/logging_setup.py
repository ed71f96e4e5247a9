"""Console logging configuration for scripts and services embedding the toolkit."""

from __future__ import annotations

import logging
import sys

import config

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def _is_console_handler(handler: logging.Handler) -> bool:
    return isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout


def setup_logging(level: str | int | None = None) -> logging.Handler:
    """Configure the root logger with a stdout StreamHandler.

    Calling it again only updates the level; no second console handler is
    added.

    Args:
        level: Level name or number. Defaults to ``config.LOG_LEVEL``.

    Returns:
        The console handler.
    """
    if level is None:
        level = config.LOG_LEVEL
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers:
        if _is_console_handler(handler):
            handler.setLevel(level)
            return handler

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)
    return console
