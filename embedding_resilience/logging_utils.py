"""
Structured JSON logging for the embedding service.

Operator-facing events (retries, throttling, circuit transitions, partial
batches) carry their details as ``extra=`` fields so they can be queried in
Log Analytics or any other JSON log pipeline.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# LogRecord attributes that are never copied into the JSON payload
_RESERVED_ATTRS = frozenset(
    {
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
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class StructuredJsonFormatter(logging.Formatter):
    """
    Formats each record as a single-line JSON object.

    Fields: timestamp (UTC ISO 8601), level, logger, message, exception when
    present, and every custom attribute passed through ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                payload[key] = value
            except (TypeError, ValueError):
                payload[key] = str(value)

        return json.dumps(payload, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = "embedding_resilience",
) -> logging.Logger:
    """
    Install the JSON formatter on a stdout handler.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: the package logger,
            ``None`` for the root logger)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())

    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def get_embedding_logger(name: str) -> logging.Logger:
    """Return ``embedding_resilience.<name>`` (e.g. 'dispatch', 'worker')."""
    return logging.getLogger(f"embedding_resilience.{name}")


class EmbeddingLoggerAdapter(logging.LoggerAdapter):
    """
    Adds fixed context (server_id, collection_id, service_name, ...) to
    every record emitted through it.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs
