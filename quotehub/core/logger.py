"""
Logging Module

loguru sinks for the quote engine. Every record carries the quote request
and the provider it belongs to: ``request_context`` scopes a request id to
the current task and the tasks it spawns, ``bind`` pins a provider id.
"""

import os
import sys
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from loguru import logger

NO_CONTEXT = "-"
CONTEXT_FIELDS = ("request_id", "provider_id")

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[request_id]}</magenta> <yellow>{extra[provider_id]}</yellow> | "
    "<cyan>{message}</cyan>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "request={extra[request_id]} provider={extra[provider_id]} | "
    "{message}"
)


class Logger:
    """
    Logger manager

    Configures the loguru sinks once per process from QUOTEHUB_LOG_LEVEL,
    QUOTEHUB_LOGS_DIR and QUOTEHUB_DEBUG.
    """

    _instance: Optional["Logger"] = None
    _lock = threading.Lock()
    _initialized: bool = False

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self._setup_logger()
            Logger._initialized = True

    def _setup_logger(self) -> None:
        log_level = os.getenv("QUOTEHUB_LOG_LEVEL", "INFO").upper()
        debug = os.getenv("QUOTEHUB_DEBUG", "false").lower() == "true"
        logs_dir = Path(os.getenv("QUOTEHUB_LOGS_DIR", "logs"))
        logs_dir.mkdir(parents=True, exist_ok=True)

        logger.remove()
        logger.configure(extra={field: NO_CONTEXT for field in CONTEXT_FIELDS})
        logger.add(
            sys.stderr,
            format=CONSOLE_FORMAT,
            level="DEBUG" if debug else log_level,
            colorize=True,
        )
        logger.add(
            str(logs_dir / f"quotehub_{datetime.now():%Y%m%d_%H%M%S}.log"),
            format=FILE_FORMAT,
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
            compression="gz",
        )

    def bind(self, **context):
        """loguru logger with fixed context, e.g. ``bind(provider_id="life_secure")``"""
        return logger.bind(**context)

    @contextmanager
    def request_context(self, request_id: str) -> Iterator[None]:
        """Tag every record logged inside the block with ``request_id``.

        Backed by contextvars, so tasks created inside the block inherit it.
        """
        with logger.contextualize(request_id=request_id):
            yield

    def info(self, message: str, **kwargs) -> None:
        logger.opt(depth=1).info(message, **kwargs)

    def debug(self, message: str, **kwargs) -> None:
        logger.opt(depth=1).debug(message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        logger.opt(depth=1).warning(message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        logger.opt(depth=1).error(message, **kwargs)


def get_logger(*_args, **_kwargs) -> Logger:
    """Return the logger singleton"""
    return Logger()
