"""Structured logging configuration with reconciliation context.

This module provides structured JSON logging with:
- Correlation IDs for tracing one callback across log lines
- Contextual fields (order, buyer, gateway transaction)
- Consistent log formatting
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

# Context variables for correlation tracking
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
order_id_var: ContextVar[Optional[str]] = ContextVar("order_id", default=None)
buyer_id_var: ContextVar[Optional[str]] = ContextVar("buyer_id", default=None)
transaction_id_var: ContextVar[Optional[str]] = ContextVar("transaction_id", default=None)

_CONTEXT_FIELDS = ("correlation_id", "order_id", "buyer_id", "transaction_id")

_RESERVED_ATTRS = frozenset((
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    *_CONTEXT_FIELDS,
))


class ContextFilter(logging.Filter):
    """Logging filter that adds reconciliation context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        record.order_id = order_id_var.get()
        record.buyer_id = buyer_id_var.get()
        record.transaction_id = transaction_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields from record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure structured logging for the reconciliation service.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(correlation_id)s order=%(order_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    context_filter = ContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)


@contextmanager
def reconciliation_context(
    order_id: Optional[str] = None,
    buyer_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Iterator[str]:
    """Bind reconciliation identifiers to every log line emitted inside."""
    correlation_id = correlation_id or str(uuid.uuid4())
    tokens = [
        (correlation_id_var, correlation_id_var.set(correlation_id)),
        (order_id_var, order_id_var.set(order_id)),
        (buyer_id_var, buyer_id_var.set(buyer_id)),
        (transaction_id_var, transaction_id_var.set(transaction_id)),
    ]
    try:
        yield correlation_id
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
