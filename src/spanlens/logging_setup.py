"""Logging setup for CLI entry points (library modules only call getLogger)."""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from typing import Optional

from spanlens.config.settings import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"


class MillisecondsFormatter(logging.Formatter):
    """Formatter that prints timestamps with millisecond precision."""

    def formatTime(self, record, datefmt=None):  # noqa: N802 - must match parent class method name
        ct = datetime.fromtimestamp(record.created)
        return ct.strftime(datefmt or "%Y-%m-%d %H:%M:%S") + f",{int(record.msecs):03d}"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Attach a single console handler to the `spanlens` logger.

    Safe to call more than once: existing handlers are replaced, not stacked.
    """
    logger = logging.getLogger("spanlens")
    resolved = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    logger.setLevel(resolved)
    logger.propagate = False

    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved)
    handler.setFormatter(MillisecondsFormatter(LOG_FORMAT))
    logger.addHandler(handler)
    return logger
