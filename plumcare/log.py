"""
Logging setup.

Modules log through loguru's shared ``logger``; this only decides where
records go and at which level.
"""
import sys
from typing import Optional

from loguru import logger

from plumcare.config import settings


def configure_logging(level: Optional[str] = None, json: Optional[bool] = None) -> None:
    """
    Replace loguru's default sink with a single stderr sink.

    Args:
        level: Minimum level (defaults to settings.log_level)
        json: Emit serialized JSON records (defaults to settings.log_json)
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.log_level).upper(),
        serialize=settings.log_json if json is None else json,
    )
