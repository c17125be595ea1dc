"""Structured logging configuration.

Every log line is one JSON object on stdout. The request id set by the
``RequestIDMiddleware`` travels through a context variable, so records emitted
deep inside services (serial allocation, push delivery) still carry it.
structlog loggers share the same context through ``structlog.contextvars``.
"""
from __future__ import annotations

import json
import logging as _logging
import os
import sys
import time
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

DEFAULT_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SERVICE_NAME = "qssun-backoffice"

# Extra attributes lifted from ``extra=`` / bind_context into the JSON line
CONTEXT_FIELDS = ("request_id", "date_key", "user_id", "sheet_id", "trace_id", "span_id")

# Driver loggers that are chatty at INFO
_QUIET_LOGGERS = ("aiosqlite", "aiomysql", "asyncio", "urllib3")

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RequestContextFilter(_logging.Filter):
    """Stamp the current request id on records that do not carry one."""

    def filter(self, record: _logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            request_id = request_id_var.get()
            if request_id:
                record.request_id = request_id
        return True


class JsonFormatter(_logging.Formatter):
    def format(self, record) -> str:  # noqa: D401 - record is LogRecord
        line: Dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for attr in CONTEXT_FIELDS:
            value = getattr(record, attr, None)
            if value is not None:
                line[attr] = value
        if record.exc_info:
            line["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(line, ensure_ascii=False, default=str)


def configure_logging(level: Optional[str] = None) -> None:
    """Install the JSON handler on the root logger and configure structlog."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    handler = _logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestContextFilter())
    root = _logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel((level or DEFAULT_LEVEL).upper())
    for name in _QUIET_LOGGERS:
        _logging.getLogger(name).setLevel(_logging.WARNING)


def set_request_id(request_id: Optional[str]):
    """Make ``request_id`` current for stdlib and structlog loggers; returns a reset token."""
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id_var.set(request_id)


def reset_request_id(token) -> None:
    request_id_var.reset(token)
    structlog.contextvars.unbind_contextvars("request_id")


def bind_context(logger, **kwargs: Any):
    """Attach fields such as ``date_key`` to every record logged through the result."""
    if not kwargs:
        return logger
    if isinstance(logger, _logging.LoggerAdapter):
        return _logging.LoggerAdapter(logger.logger, extra={**(logger.extra or {}), **kwargs})
    return _logging.LoggerAdapter(logger, extra=kwargs)


__all__ = [
    "configure_logging",
    "bind_context",
    "set_request_id",
    "reset_request_id",
    "request_id_var",
    "JsonFormatter",
]
