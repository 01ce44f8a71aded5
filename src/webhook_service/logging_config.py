"""Structured key=value logging (one line per event)."""
from __future__ import annotations

import logging
import sys

import structlog


def _escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def escape_newlines(logger, method_name, event_dict):
    """Escape control characters in string values, tracebacks included."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _escape(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = [_escape(item) if isinstance(item, str) else item for item in value]
        elif isinstance(value, dict):
            event_dict[key] = {k: _escape(v) if isinstance(v, str) else v for k, v in value.items()}
    return event_dict


class SingleLineFormatter(logging.Formatter):
    """Keeps stdlib records (aiohttp access log etc.) on a single line."""

    def format(self, record):
        return super().format(record).replace("\n", "\\n").replace("\r", "\\r")


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level.upper())

    access_logger = logging.getLogger("aiohttp.access")
    access_logger.handlers = []
    access_logger.propagate = True

    # timestamp=... level=info logger=webhook_service.scheduler event="..." delivery_id=...
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            # must follow format_exc_info so tracebacks are escaped too
            escape_newlines,
            structlog.processors.KeyValueRenderer(
                key_order=["timestamp", "level", "logger", "event"],
                drop_missing=True,
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
