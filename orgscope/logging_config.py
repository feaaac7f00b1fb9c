from __future__ import annotations

import logging


def configure_app_logging(level: str = "INFO") -> None:
    """
    Set the level of the `orgscope` logger tree.

    Handlers are left to the host application; set `ORGSCOPE_LOG_LEVEL=DEBUG`
    to see cache tier hits and misses.
    """

    normalized = level.upper()
    logger = logging.getLogger("orgscope")
    logger.setLevel(normalized)
    logger.propagate = True
