"""
Logging configuration
"""

import logging
import sys
from typing import Optional
from core.config import settings, Settings

# Third-party loggers that flood DEBUG output during long runs
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "asyncio")


def setup_logging(config: Optional[Settings] = None, level: Optional[str] = None) -> int:
    """
    Configure application logging once for a migration process.

    Args:
        config: Settings to read LOG_LEVEL from
        level: Overrides LOG_LEVEL, e.g. "DEBUG" for a single troubleshooting run

    Returns:
        The numeric level applied to the root logger
    """
    config = config or settings
    level_name = (level or config.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ],
        force=True
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {logging.getLevelName(log_level)} level ({config.ENVIRONMENT})")
    return log_level
