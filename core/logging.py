"""Centralized logging setup for the conversations service."""

import logging
import os
import sys
from contextvars import ContextVar
from logging.handlers import WatchedFileHandler
from typing import Optional


# Set per request by the middleware in main.py, read by utils.logging_helpers
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

LOG_FORMAT = "[%(asctime)s.%(msecs)03d] [%(levelname)-5s] [%(name)-20s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("urllib3", "httpx", "httpcore", "pusher", "sqlalchemy.engine")


def _has_handler(
    root: logging.Logger, handler_type: type, *, filename: Optional[str] = None
) -> bool:
    for handler in root.handlers:
        if type(handler) is not handler_type:
            continue
        if filename is None or getattr(handler, "baseFilename", None) == filename:
            return True
    return False


def _attach_file_handler(
    root: logging.Logger, path: str, level: int, formatter: logging.Formatter
) -> None:
    path = os.path.abspath(path)
    try:
        log_dir = os.path.dirname(path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        if not _has_handler(root, WatchedFileHandler, filename=path):
            file_handler = WatchedFileHandler(path)
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
    except OSError as exc:
        root.warning("Failed to configure APP_LOG_PATH logging for %s: %s", path, exc)


def configure_logging(*, environment: str, log_level: str) -> int:
    """Install the stdout (and optional file) handler on the root logger.

    Safe to call more than once; handlers are only added when missing.
    Returns the numeric level that was applied.
    """
    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if not _has_handler(root, logging.StreamHandler):
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    app_log_path = os.getenv("APP_LOG_PATH", "").strip()
    if app_log_path:
        _attach_file_handler(root, app_log_path, level, formatter)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # Route uvicorn through the root handler so every line shares one format
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True
        uv_logger.setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    if environment == "development":
        root.debug("Logging configured at %s", logging.getLevelName(level))

    return level
