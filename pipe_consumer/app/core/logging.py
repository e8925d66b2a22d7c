"""Loguru sink setup shared by the CLI and tests."""
from __future__ import annotations

import sys

from loguru import logger

HUMAN_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "{extra[event]} {message} {extra}"
)


def configure_logging(level: str = "INFO", *, serialize: bool = False) -> None:
    """Replace loguru's default handler with one stderr sink."""
    logger.remove()
    logger.configure(extra={"event": ""})
    if serialize:
        logger.add(sys.stderr, level=level.upper(), serialize=True)
    else:
        logger.add(sys.stderr, level=level.upper(), format=HUMAN_FORMAT)
