"""
Structured Logger
=================

Logging setup for the lakesync replication pipeline.

Features:
- Plain text or JSON-formatted records
- Thread-local context (stream, run_id, ...) attached to every record
- Optional file output next to the console handler
"""

import json
import logging
import os
import sys
import threading
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s%(context_suffix)s"

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'asctime', 'taskName', 'sync_context', 'context_suffix'
}

# Thread-local storage for context
_context = threading.local()


def current_context() -> Dict:
    """Copy of the calling thread's log context."""
    return dict(getattr(_context, "data", {}))


@contextmanager
def log_context(**kwargs):
    """
    Add key/value pairs to every record logged by this thread within scope.

    Usage:
        with log_context(stream="shop.orders", run_id="20240101T000000Z-ab12cd34"):
            logger.info("Reading")  # carries stream and run_id
    """
    if not hasattr(_context, "data"):
        _context.data = {}

    old_data = _context.data.copy()
    _context.data.update(kwargs)

    try:
        yield
    finally:
        _context.data = old_data


class ContextFilter(logging.Filter):
    """Copies the thread-local context onto each record as ``sync_context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = current_context()
        record.sync_context = context
        record.context_suffix = (
            " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]" if context else ""
        )
        return True


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        context = getattr(record, "sync_context", None)
        if context is None:
            context = current_context()
        if context:
            log_entry["context"] = context

        # Add extra fields
        if self.include_extra:
            extra_keys = set(record.__dict__.keys()) - _RESERVED_ATTRS
            for key in extra_keys:
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_to_file: bool = False,
    log_path: str = "logs/sync.log",
    stream=None,
) -> logging.Logger:
    """
    Configure the root logger.

    Replaces handlers installed by a previous call, so it is safe to call
    once per CLI invocation.

    Args:
        level: Level name (DEBUG, INFO, ...)
        json_format: Emit JSON records instead of plain text
        log_to_file: Also write records to ``log_path``
        log_path: Log file location
        stream: Console stream (defaults to stderr)

    Returns:
        The root logger
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))

    for handler in list(root.handlers):
        if getattr(handler, "_lakesync_handler", False):
            root.removeHandler(handler)
            handler.close()

    formatter = JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT)

    console_handler = logging.StreamHandler(stream or sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ContextFilter())
    console_handler._lakesync_handler = True
    root.addHandler(console_handler)

    if log_to_file:
        directory = os.path.dirname(log_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(ContextFilter())
        file_handler._lakesync_handler = True
        root.addHandler(file_handler)

    return root
