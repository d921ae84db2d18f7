"""Logging configuration helpers."""

from __future__ import annotations

import json
import logging
import logging.config
from typing import Any

from .config import LoggingSettings


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _structured_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for structured JSON logs."""
    return {"()": JsonFormatter}


def _plain_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for human readable logs."""
    return {
        "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
    }


def _build_handlers(settings: LoggingSettings) -> dict[str, dict[str, Any]]:
    handlers: dict[str, dict[str, Any]] = {}
    if not settings.quiet:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "level": settings.level.upper(),
        }
    if settings.file is not None:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": "default",
            "level": settings.level.upper(),
            "filename": str(settings.file),
            "mode": "a",
            "encoding": "utf-8",
        }
    if not handlers:
        # quiet without a log file discards everything
        handlers["null"] = {"class": "logging.NullHandler"}
    return handlers


def configure_logging(settings: LoggingSettings) -> None:
    """Configure application logging according to provided settings."""
    formatter = _structured_formatter() if settings.structured else _plain_formatter()
    handlers = _build_handlers(settings)

    dict_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": formatter,
        },
        "handlers": handlers,
        "root": {
            "handlers": list(handlers),
            "level": settings.level.upper(),
        },
        "loggers": {
            # keep per-request HTTP chatter out of the forwarding log
            "httpx": {"level": "WARNING"},
        },
    }

    logging.config.dictConfig(dict_config)


__all__ = ["JsonFormatter", "configure_logging"]
