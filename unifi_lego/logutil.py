"""
Logging setup for unifi-lego.

All modules log through children of the package logger. Errors are rendered
to the user by the console manager, so the stream handler only lets records
below ERROR through.
"""

import logging
import os

LOG_LEVEL_ENV = "UNIFI_LEGO_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger("unifi_lego")


class _BelowErrorFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.ERROR


def init_logging(level: str | None = None) -> None:
    """Configure the package logger.

    Precedence: ``UNIFI_LEGO_LOG_LEVEL`` environment variable, then the
    explicit ``level`` argument, then INFO.

    Args:
        level: Log level name, usually taken from ``system.log_level``
    """
    level_name = (os.environ.get(LOG_LEVEL_ENV) or level or DEFAULT_LOG_LEVEL).upper()
    numeric_level = getattr(logging, level_name, None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logger.setLevel(numeric_level)

    # Avoid stacking handlers when called more than once
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(_BelowErrorFilter())
    logger.addHandler(handler)
    logger.propagate = False
