"""
Structured JSON logging configuration.
"""

import json
import logging
import os
import sys
from collections.abc import Mapping, MutableMapping
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from sigcore.config import get_settings

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Context variable for correlation ID
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Standard LogRecord attributes; logging refuses ``extra`` keys that shadow them.
RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "asctime", "taskName",
})


def safe_extra(extra: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``extra`` with keys that shadow LogRecord attributes prefixed ``extra_``."""
    return {(f"extra_{k}" if k in RESERVED_ATTRS else k): v for k, v in extra.items()}


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter.

    Every non-standard attribute attached through ``extra=...`` ends up as a
    top-level key of the emitted JSON object.
    """

    _RESERVED = RESERVED_ATTRS

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        extra_data = getattr(record, "extra_data", None)
        fields = dict(extra_data) if isinstance(extra_data, dict) else {}
        fields.update((k, v) for k, v in record.__dict__.items() if k not in self._RESERVED and k != "extra_data")

        for k, v in fields.items():
            if k in log_data:
                log_data[f"extra_{k}"] = v
            else:
                log_data[k] = v

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter whose ``extra`` keys can never clash with LogRecord attributes."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = kwargs.get("extra")
        if extra:
            kwargs["extra"] = safe_extra(extra)
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically __name__).

    Returns:
        Configured logger, wrapped so reserved ``extra`` keys are renamed
        instead of raising.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    return ContextLogger(logger, {})


def setup_logging() -> None:
    """Configure structured JSON logging on the root logger."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level.upper())
    root_logger.handlers = [handler]

    # SQLAlchemy is opt-in verbose via SQLALCHEMY_LOG_LEVEL=INFO/DEBUG
    sqlalchemy_level = os.getenv("SQLALCHEMY_LOG_LEVEL", "").strip().upper() or "WARNING"
    for name in ("sqlalchemy.engine", "sqlalchemy.pool", "sqlalchemy.dialects"):
        logging.getLogger(name).setLevel(sqlalchemy_level)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("python_multipart").setLevel(logging.WARNING)
    logging.getLogger("python_multipart.multipart").setLevel(logging.WARNING)


def log_with_context(
    logger: logging.Logger | logging.LoggerAdapter,
    level: int,
    message: str,
    **extra: Any,
) -> None:
    """Log a message with extra context data."""
    logger.log(level, message, extra={"extra_data": extra})
