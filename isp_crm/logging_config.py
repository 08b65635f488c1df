"""
Logging configuration.

Configures the standard library logging tree once, at application start,
from the ``log_level`` and ``log_format`` settings. Modules obtain their
loggers through :func:`get_logger`.
"""

import logging
import logging.config
from typing import Optional

SIMPLE_FORMAT = "%(levelname)s - %(name)s - %(message)s"

DETAILED_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"

JSON_FORMAT = (
    '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", '
    '"module": "%(filename)s", "line": %(lineno)d, "message": "%(message)s"}'
)

FORMATS = {
    "simple": SIMPLE_FORMAT,
    "detailed": DETAILED_FORMAT,
    "json": JSON_FORMAT,
}

# Third-party libraries are kept quieter than our own modules.
MODULE_LOG_LEVELS = {
    "sqlalchemy": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "sqlalchemy.pool": "WARNING",
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "uvicorn": "INFO",
    "uvicorn.access": "WARNING",
}


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    Configure logging for the application.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL. Defaults to settings.
        log_format: simple, detailed or json. Defaults to settings.
    """
    from isp_crm.config import settings

    level = (log_level or settings.log_level).upper()
    fmt = FORMATS.get(log_format or settings.log_format, DETAILED_FORMAT)

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": fmt},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": level,
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "isp_crm": {"level": level, "handlers": ["console"], "propagate": False},
            **{name: {"level": lvl} for name, lvl in MODULE_LOG_LEVELS.items()},
        },
        "root": {"level": level, "handlers": ["console"]},
    }
    logging.config.dictConfig(config)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
