"""Logging configuration using loguru.

Intercepts stdlib logging so that alembic and sqlalchemy output flows
through loguru with the same format as weft's own messages.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger


class _InterceptHandler(logging.Handler):
    """Bridge stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
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


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru as the sole logging sink for a CLI invocation.

    At INFO and above only the message is printed, since these lines are
    the command's user-facing output.  DEBUG adds timestamps and call sites.
    """
    level = level.upper()

    logger.remove()
    if level == "DEBUG" or level == "TRACE":
        fmt = (
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        )
    else:
        fmt = "<level>{message}</level>"
    logger.add(sys.stderr, level=level, format=fmt)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    # alembic logs every migration step at INFO
    for name in ("alembic.runtime.migration", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging initialised (level={})", level)
