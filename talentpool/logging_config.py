"""Logging setup driven by LoggingSettings.

Module loggers are plain ``logging.getLogger(__name__)``; this module only
configures the root handlers once per process.
"""
from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone

from .config import settings

_STANDARD_ATTRS = set(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; extra= fields are merged into the object."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def setup_logging(*, level: str | None = None, force: bool = False) -> None:
    """Configure root logging from settings.

    Args:
        level: Override for LOG_LEVEL
        force: Reconfigure even if handlers are already installed
    """
    root = logging.getLogger()
    if root.handlers and not force:
        return

    formatter = "json" if settings.logging.format == "json" else "text"
    handlers: dict[str, dict] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": formatter,
        },
    }
    if settings.logging.file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": formatter,
            "filename": settings.logging.file,
            "encoding": "utf-8",
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": JsonFormatter},
                "text": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                    "datefmt": "%H:%M:%S",
                },
            },
            "handlers": handlers,
            "root": {
                "level": (level or settings.logging.level).upper(),
                "handlers": list(handlers),
            },
            "loggers": {
                # SQL echo is controlled by DB_ECHO, keep the engine quiet otherwise
                "sqlalchemy.engine": {"level": "WARNING"},
            },
        }
    )
