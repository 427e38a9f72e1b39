"""Structured logging helpers."""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict

from .config import Config

_RESERVED_ATTRS = {
    "name",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "msg",
    "args",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "levelname",
    "message",
}


class JsonFormatter(logging.Formatter):
    """Minimal JSON formatter for structured logs."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        base: Dict[str, Any] = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            base["stack"] = self.formatStack(record.stack_info)
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED_ATTRS:
                continue
            base[key] = value
        return json.dumps(base, ensure_ascii=False, default=str)


class ContextFormatter(logging.Formatter):
    """Plain formatter that appends ``extra`` fields as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if not key.startswith("_") and key not in _RESERVED_ATTRS and key != "asctime"
        ]
        if context:
            return f"{message} | {' '.join(context)}"
        return message


def configure_logging(config: Config) -> None:
    """Configure global logging based on the provided config."""

    level = "DEBUG" if config.debug else config.log_level.upper()
    discovery_level = "DEBUG" if config.debug else (config.discovery_log_level or config.log_level).upper()
    session_level = "DEBUG" if config.debug else (config.session_log_level or config.log_level).upper()
    if config.log_format == "json":
        formatter: Dict[str, Any] = {
            "()": f"{__name__}.JsonFormatter",
        }
    else:
        formatter = {
            "()": f"{__name__}.ContextFormatter",
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            "datefmt": "%Y-%m-%dT%H:%M:%S%z",
        }

    def _logger(logger_level: str) -> Dict[str, Any]:
        return {"level": logger_level, "handlers": ["console"], "propagate": False}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": formatter,
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": "DEBUG",
                }
            },
            "loggers": {
                "yeelight": _logger(level),
                "yeelight.metrics": _logger(level),
                "yeelight.registry": _logger(level),
                "yeelight.discovery": _logger(discovery_level),
                "yeelight.discovery.protocol": _logger(discovery_level),
                "yeelight.session": _logger(session_level),
                "yeelight.dispatcher": _logger(session_level),
                "yeelight.connection": _logger(session_level),
            },
            "root": {"level": level, "handlers": ["console"]},
        }
    )


def get_logger(name: str) -> logging.Logger:
    """Return a namespaced logger for the requested subsystem."""

    return logging.getLogger(name)
