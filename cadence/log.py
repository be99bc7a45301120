# cadence/log.py

from __future__ import annotations

import logging
from typing import Optional, TextIO

LOGGER_NAME = "cadence"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class _PackageHandler(logging.StreamHandler):
    """Marks the handler installed by configure_logging."""


def configure_logging(level: int = logging.WARNING, stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Route every ``cadence.*`` logger to one stream handler at ``level``.

    Calling it again replaces the handler, so the level and stream of the
    latest call win.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for existing in [h for h in logger.handlers if isinstance(h, _PackageHandler)]:
        logger.removeHandler(existing)

    handler = _PackageHandler(stream)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def verbosity_to_level(verbose: int) -> int:
    """Map a repeated ``-v`` count to a logging level."""
    if verbose >= 2:
        return logging.DEBUG
    if verbose == 1:
        return logging.INFO
    return logging.WARNING
