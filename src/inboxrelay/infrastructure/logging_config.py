"""Loguru sink configuration for the worker processes."""

from __future__ import annotations

import sys

from loguru import logger

from inboxrelay.infrastructure.settings import Settings

HUMAN_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level> | {extra}"
)


def configure_logging(settings: Settings) -> None:
    """Replace the default sink with one stderr sink.

    JSON mode emits one object per record (time, level, message and the
    bound ``extra`` fields such as mailbox_id and email), ready for a log
    shipper. Every record carries the instance id.
    """
    logger.remove()
    logger.configure(extra={"instance_id": settings.instance_id})
    if settings.log_json:
        logger.add(sys.stderr, level=settings.log_level.upper(), serialize=True)
    else:
        logger.add(sys.stderr, level=settings.log_level.upper(), format=HUMAN_FORMAT)
