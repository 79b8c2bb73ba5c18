"""Centralized logging configuration for the LMS services."""

from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Iterable, List


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Loggers that emit one line per request or per subprocess poll.
_CHATTY_LOGGERS = ("uvicorn.access", "multipart", "httpx")


def configure_logging(
    level: int = logging.INFO,
    *,
    handlers: Iterable[logging.Handler] | None = None,
    quiet_chatty: bool = True,
) -> Logger:
    """Configure the root logger, replacing handlers installed by earlier calls."""

    logger = logging.getLogger()
    logger.setLevel(level)

    for existing in [h for h in logger.handlers if getattr(h, "_lms_managed", False)]:
        logger.removeHandler(existing)

    installed: List[logging.Handler]
    if handlers is None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        installed = [stream_handler]
    else:
        installed = list(handlers)

    for handler in installed:
        setattr(handler, "_lms_managed", True)
        logger.addHandler(handler)

    if quiet_chatty:
        for name in _CHATTY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return logger


def get_log_file_path(storage_root: Path) -> Path:
    """Return the default path for the application log file."""

    return storage_root / "lms.log"


def build_log_handlers(storage_root: Path) -> List[logging.Handler]:
    """Return a file handler under *storage_root* plus a stream handler."""

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(get_log_file_path(storage_root), encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    return [file_handler, stream_handler]


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "build_log_handlers",
    "configure_logging",
    "get_log_file_path",
]
