"""Structured logging with correlation IDs.

Every record emitted while a request is served carries that request's
correlation ID, so a checkout, the webhook that settles it and any polling in
between can be followed across log lines. Identifiers passed through
``extra`` (``payment_id``, ``charge_id`` and the like) land under ``context``.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "correlation_id",
}

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore")


def get_correlation_id() -> str:
    """Return the current correlation ID, creating one if none is bound."""
    cid = correlation_id_var.get()
    if cid is None:
        cid = str(uuid.uuid4())
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    correlation_id_var.set(None)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """Renders each record as a single JSON object.

    Keys: ``timestamp``, ``level``, ``logger``, ``message``,
    ``correlation_id``, ``source``, plus ``context`` for extra fields and
    ``exception`` when the record carries one.
    """

    def __init__(self, include_stack_trace: bool = True, include_extra_fields: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "source": f"{record.pathname}:{record.lineno} in {record.funcName}",
        }

        if self.include_extra_fields:
            context = {
                key: _jsonable(value)
                for key, value in record.__dict__.items()
                if key not in _RECORD_ATTRS
            }
            if context:
                entry["context"] = context

        if record.exc_info and self.include_stack_trace:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "stack_trace": traceback.format_exception(exc_type, exc_value, exc_tb) if exc_tb else None,
            }

        return json.dumps(entry, default=str)


class CorrelationIdFilter(logging.Filter):
    """Stamps the bound correlation ID onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
) -> None:
    """Route all logging to stdout, as JSON unless ``json_format`` is off.

    Replaces any handlers already on the root logger, so calling it twice
    does not duplicate output.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(include_stack_trace=include_stack_trace))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s [%(correlation_id)s] %(message)s")
        )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **context: Any,
) -> None:
    """Log at error level, attaching ``exception``'s traceback when given."""
    logger.error(message, exc_info=exception, extra=context)


def log_warning(logger: logging.Logger, message: str, **context: Any) -> None:
    logger.warning(message, extra=context)


def log_info(logger: logging.Logger, message: str, **context: Any) -> None:
    logger.info(message, extra=context)
