"""Process-wide logging setup for the survey service.

Every module logs through `logging.getLogger(__name__)` with snake_case event
names and ``key=value`` context; this module installs the single stdout
handler they all propagate to. Noisy library loggers are held at WARNING.
"""
from __future__ import annotations
import logging
from logging.config import dictConfig

_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"

_DICT_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {"default": {"format": _FORMAT}},
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "level": "DEBUG",
            "formatter": "default",
            "stream": "ext://sys.stdout",
        }
    },
    "root": {"level": "INFO", "handlers": ["console"]},
    "loggers": {
        "uvicorn": {"level": "INFO", "handlers": ["console"], "propagate": False},
        "uvicorn.error": {"level": "INFO", "handlers": ["console"], "propagate": False},
        "uvicorn.access": {"level": "INFO", "handlers": ["console"], "propagate": False},
        # one line per consumer request otherwise
        "httpx": {"level": "WARNING"},
        "sqlalchemy.engine": {"level": "WARNING"},
    },
}


def configure_logging(level: str | None = None) -> None:
    """Install the console handler once, then apply `level` to the app loggers.

    When the root logger already has handlers (reloaders, pytest capture) the
    handler setup is skipped and only the level changes.
    """
    root = logging.getLogger()
    if not root.handlers:
        dictConfig(_DICT_CONFIG)
    if level:
        logging.getLogger("hoa_survey").setLevel(level.upper())
