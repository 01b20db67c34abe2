import logging
import json
import os
import sys
import contextvars
from datetime import datetime, timezone


# Set by the correlation middleware for the lifetime of a request
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")

# Fields passed via logger.info("event", extra={...}) that end up in the JSON entry
EXTRA_FIELDS = (
    "method", "path", "status", "duration_ms", "client_ip",
    "error", "error_type", "job_id", "transaction_id", "attempt",
    "max_attempts", "queue_length", "retry_in", "removed", "course_id",
)


class CorrelationFilter(logging.Filter):
    """Stamp every record with the current request's correlation ID"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = correlation_id_var.get("")
        return True


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter with correlation ID injection"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        if getattr(record, "correlation_id", None):
            entry["correlation_id"] = record.correlation_id

        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        # Source location for warnings and errors
        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.filename}:{record.lineno}"

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for local development"""

    def __init__(self):
        super().__init__(
            '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
            datefmt='%H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = {key: getattr(record, key) for key in EXTRA_FIELDS if hasattr(record, key)}
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


def setup_logger(name: str = "lms_server", level: str = None, log_format: str = None) -> logging.Logger:
    """
    Setup application logger.

    JSON output on stdout when the format is "json" (production log drains),
    human-readable lines otherwise. Without explicit arguments LOG_LEVEL and
    LOG_FORMAT are read from the environment. Child loggers (lms_server.*)
    propagate here.
    """
    logger = logging.getLogger(name)

    # Explicit settings replace the handler; otherwise keep the existing one
    if logger.handlers and level is None and log_format is None:
        return logger
    for existing in list(logger.handlers):
        logger.removeHandler(existing)

    level = level or os.getenv("LOG_LEVEL", "INFO")
    log_format = log_format or os.getenv("LOG_FORMAT", "text")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    if log_format.lower() == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(SimpleFormatter())
    handler.addFilter(CorrelationFilter())

    logger.addHandler(handler)
    return logger


# Create default logger instance
logger = setup_logger()


def get_logger(name: str = None) -> logging.Logger:
    """Get a logger under the application namespace"""
    if name:
        if not name.startswith("lms_server"):
            name = f"lms_server.{name}"
        return logging.getLogger(name)
    return logger
