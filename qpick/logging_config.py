"""Logging setup: readable console output plus JSON log files.

Dispatcher and delivery code attach notification context (``event_key``,
``product_id``, ``area_key`` and friends) through ``get_logger``. The JSON
files carry those as top-level keys so one trigger can be followed across
lines; the console shows them as a ``key=value`` suffix.
"""

import logging
import sys
from pathlib import Path

from pythonjsonlogger import jsonlogger

from qpick.config import settings
from qpick.utils.clock import isoformat, utcnow

# Context keys promoted to top-level fields
CONTEXT_FIELDS = ("event_key", "product_id", "store_id", "area_key", "subscriber_id")

# Chatty third-party loggers kept at WARNING
QUIET_LOGGERS = ("urllib3", "httpx", "httpcore", "asyncio")


class NotifyJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with UTC timestamp, level, source and notification context."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = isoformat(utcnow())
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["source"] = f"{record.filename}:{record.lineno}"

        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_record[key] = value


class ContextConsoleFormatter(logging.Formatter):
    """Plain text with any notification context appended."""

    def format(self, record):
        line = super().format(record)
        context = " ".join(
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        )
        return f"{line} [{context}]" if context else line


def setup_logging(log_dir: str | Path | None = None) -> logging.Logger:
    """Configure the root logger.

    Args:
        log_dir: Directory for app.log / error.log; defaults to ``settings.log_dir``
    """
    logs_dir = Path(log_dir or settings.log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        ContextConsoleFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = NotifyJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    app_handler = logging.FileHandler(logs_dir / "app.log", encoding="utf-8")
    app_handler.setFormatter(json_formatter)
    root_logger.addHandler(app_handler)

    error_handler = logging.FileHandler(logs_dir / "error.log", encoding="utf-8")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


class ContextLogger(logging.LoggerAdapter):
    """Merges fixed context into every record; per-call ``extra`` wins."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, **context) -> ContextLogger:
    """Logger that stamps ``context`` (e.g. event_key, product_id) on each record."""
    return ContextLogger(logging.getLogger(name), context)
