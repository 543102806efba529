# storefront/core/logging_config.py

from logging.config import dictConfig
from typing import Optional

from storefront.core.config import settings

# Third-party loggers that are chatty at INFO: request lines, polling, job wakeups
QUIET_LOGGERS = ("apscheduler", "httpx", "httpcore", "aiogram", "sqlalchemy.engine")


def build_logging_config(level: Optional[str] = None) -> dict:
    level = (level or settings.LOG_LEVEL).upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "uvicorn": {"handlers": ["console"], "level": "INFO", "propagate": False},
            "storefront": {"handlers": ["console"], "level": level, "propagate": False},
            **{
                name: {"handlers": ["console"], "level": "WARNING", "propagate": False}
                for name in QUIET_LOGGERS
            },
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
    }


def setup_logging(level: Optional[str] = None):
    """Applies the logging configuration. ``level`` overrides LOG_LEVEL for our own loggers."""
    dictConfig(build_logging_config(level))
