"""
Structured logging for dbpool.

Provides a logger that attaches contextual fields to every record, a JSON
formatter, and a helper to configure the root logger. The context is kept
in a context variable, so each asyncio task sees its own fields.
"""

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

_log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("dbpool_log_context", default={})

_RESERVED_ATTRS = frozenset([
    "msg", "args", "exc_info", "exc_text", "structured_data",
    "message", "levelname", "levelno", "pathname", "filename",
    "module", "name", "lineno", "funcName", "created",
    "asctime", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "stack_info", "taskName",
])


class StructuredLogRecord(logging.LogRecord):
    """LogRecord that carries the current logging context."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.structured_data = dict(_log_context.get())


class StructuredLogger(logging.Logger):
    """Logger that creates StructuredLogRecord instances."""

    def makeRecord(self, name, level, fn, lno, msg, args, exc_info, func=None, extra=None, sinfo=None):
        """Create a StructuredLogRecord instance."""
        record = StructuredLogRecord(name, level, fn, lno, msg, args, exc_info, func, sinfo)
        if extra is not None:
            for key in extra:
                if key in ["message", "asctime", "levelname", "levelno"]:
                    raise KeyError(f"Attempt to overwrite {key} in LogRecord")
                record.__dict__[key] = extra[key]
        return record


class JSONFormatter(logging.Formatter):
    """Formatter that outputs JSON strings."""

    def __init__(self, include_timestamp: bool = True, include_level: bool = True, include_name: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_level = include_level
        self.include_name = include_name

    def format(self, record: logging.LogRecord) -> str:
        """Format the record as JSON."""
        log_data: Dict[str, Any] = {}

        if self.include_timestamp:
            log_data["timestamp"] = datetime.now(timezone.utc).isoformat()
        if self.include_level:
            log_data["level"] = record.levelname
        if self.include_name:
            log_data["logger"] = record.name

        log_data["message"] = record.getMessage()

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "structured_data"):
            log_data.update(record.structured_data)

        # Fields passed through ``extra=``
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class LoggingContext:
    """Context manager for adding fields to every log record inside it."""

    def __init__(self, **kwargs):
        self.new_data = kwargs
        self._token: Optional[contextvars.Token] = None

    def __enter__(self):
        data = dict(_log_context.get())
        data.update(self.new_data)
        self._token = _log_context.set(data)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


def get_logger(name: str) -> logging.Logger:
    """Get a structured logger with the given name."""
    logging.setLoggerClass(StructuredLogger)
    return logging.getLogger(name)


def configure_logging(
    level: Union[int, str] = logging.INFO,
    json_format: bool = True,
    include_timestamp: bool = True,
    include_level: bool = True,
    include_name: bool = True,
    handlers: Optional[list] = None,
) -> None:
    """Configure the logging system.

    Args:
        level: The logging level to use
        json_format: Whether to use JSON formatting
        include_timestamp: Whether to include timestamps in logs
        include_level: Whether to include log levels in logs
        include_name: Whether to include logger names in logs
        handlers: Additional handlers to add to the root logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)

    if json_format:
        formatter = JSONFormatter(
            include_timestamp=include_timestamp,
            include_level=include_level,
            include_name=include_name,
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if handlers:
        for handler in handlers:
            root_logger.addHandler(handler)

    logging.setLoggerClass(StructuredLogger)


def get_context_data() -> Dict[str, Any]:
    """Get the current logging context data."""
    return dict(_log_context.get())


def clear_context() -> None:
    """Clear the current logging context."""
    _log_context.set({})
