"""Structured logging configuration for the bridge.

This module provides a structured logging setup using Python's standard
logging module with optional JSON formatting for production environments.
Security events carry ``source`` and ``category`` context fields so they can
be filtered out of the stream.
"""

import json
import logging
import logging.config
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from bridge.app.core.config import get_settings


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs log records as JSON objects for consumption by log aggregation
    systems.
    """

    # Contextual fields for request tracking and security auditing
    CONTEXT_FIELDS = [
        "request_id",    # X-Request-ID of the HTTP request
        "source",        # Remote address of the caller
        "method",        # JSON-RPC method
        "session_id",    # Session or stream subscriber id
        "category",      # Security event category (authentication, rate_limit, ...)
        "outcome",       # Authentication outcome
        "tool",          # Capability name
    ]

    _RESERVED = {
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source_location": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self._RESERVED and key not in self.CONTEXT_FIELDS
        }
        if extra:
            log_data["extra"] = extra

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that adds default values for the context fields.

    Lets the ``structured`` text format reference ``%(source)s`` and friends
    without every call site passing them.
    """

    CONTEXT_DEFAULTS = {field: None for field in JSONFormatter.CONTEXT_FIELDS}

    def filter(self, record: logging.LogRecord) -> bool:
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config(log_level: Optional[str] = None, log_format: Optional[str] = None) -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    settings = get_settings()
    log_format = (log_format or settings.log_format).lower()
    log_level = (log_level or settings.log_level).upper()

    formatters: Dict[str, Any] = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - source=%(source)s - category=%(category)s - method=%(method)s"
        },
    }

    if log_format == "json":
        formatters["json"] = {"()": "bridge.app.core.logging.JSONFormatter"}
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": default_formatter,
            "stream": sys.stdout,
            "filters": ["context"],
        },
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {"()": "bridge.app.core.logging.ContextFilter"},
        },
        "handlers": handlers,
        "loggers": {
            "bridge": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config(log_level, log_format))
    # Access lines come from RequestIdMiddleware when access_logging is on
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str = "bridge") -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def get_log_context(
    source: Optional[str] = None,
    category: Optional[str] = None,
    method: Optional[str] = None,
    request_id: Optional[str] = None,
    session_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Create a log context dictionary for use with the ``extra`` parameter.

    Example:
        >>> logger.warning(
        ...     "Rate limit exceeded",
        ...     extra=get_log_context(source="10.0.0.5", category="rate_limit"),
        ... )
    """
    context = {
        "source": source,
        "category": category,
        "method": method,
        "request_id": request_id,
        "session_id": session_id,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
