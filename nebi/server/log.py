"""Logging configuration using loguru.

Intercepts stdlib logging so that uvicorn, sqlalchemy, httpx, etc. all
flow through loguru.  Two output formats are supported: a colored text
format for humans and one JSON object per line for log shippers.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class _InterceptHandler(logging.Handler):
    """Bridge stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        # Map stdlib level name -> loguru level
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk the call stack so loguru reports the real call-site
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Configure loguru as the sole logging sink.

    *fmt* is ``"text"`` (colored, human readable) or ``"json"`` (loguru's
    ``serialize=True`` records).  Call once at process startup.
    """
    level = level.upper()

    logger.remove()
    if fmt == "json":
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=TEXT_FORMAT)

    # Intercept all stdlib logging
    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    # Quiet down noisy libraries
    for name in ("uvicorn.access", "httpx", "httpcore", "casbin"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging initialised (level={}, format={})", level, fmt)
