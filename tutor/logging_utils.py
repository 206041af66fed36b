"""Logging setup shared by the web server and the CLI."""

from __future__ import annotations

import logging
import os
from logging import Logger
from pathlib import Path
from typing import Iterable, List


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL_ENV = "TUTOR_LOG_LEVEL"

# Per-request chatter from these libraries drowns the session events.
_QUIET_LOGGERS = ("httpx", "httpcore", "multipart")


def resolve_log_level(value: str | int | None = None, *, default: int = logging.INFO) -> int:
    """Return a numeric level from *value* or ``TUTOR_LOG_LEVEL``."""

    if value is None:
        value = os.environ.get(LOG_LEVEL_ENV)
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    candidate = logging.getLevelName(str(value).strip().upper())
    return candidate if isinstance(candidate, int) else default


def _handler_key(handler: logging.Handler) -> tuple:
    return type(handler), getattr(handler, "baseFilename", None)


def build_log_handlers(storage_root: Path) -> List[logging.Handler]:
    """Return a stream handler plus a file handler writing below *storage_root*."""

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(get_log_file_path(storage_root), encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    return [file_handler, stream_handler]


def configure_logging(
    level: int | None = None,
    *,
    handlers: Iterable[logging.Handler] | None = None,
) -> Logger:
    """Configure the root logger once; repeated calls only adjust the level."""

    logger = logging.getLogger()
    logger.setLevel(resolve_log_level(level))

    if handlers is None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        handlers = [stream_handler]

    present = {_handler_key(existing) for existing in logger.handlers}
    for handler in handlers:
        if _handler_key(handler) in present:
            handler.close()
            continue
        logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return logger


def get_log_file_path(storage_root: Path) -> Path:
    """Return the default path for the application log file."""

    return storage_root / "sprach_tutor.log"


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "build_log_handlers",
    "configure_logging",
    "get_log_file_path",
    "resolve_log_level",
]
