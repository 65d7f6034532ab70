"""Logging configuration."""
from __future__ import annotations

import logging.config

from src.core.config import settings


def setup_logging(level: str | None = None) -> None:
    """Configure root and library loggers once at startup."""

    log_level = (level or settings.LOG_LEVEL).upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "root": {"handlers": ["console"], "level": log_level},
            "loggers": {
                "sqlalchemy.engine": {"level": "WARNING"},
                "apscheduler": {"level": "INFO"},
                "uvicorn.access": {"level": "WARNING"},
            },
        }
    )
