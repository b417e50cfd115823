"""
Centralized logging configuration.
Provides structured logging so every pipeline stage can be correlated by
request id, correlation id and order id.
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

from orders_service.config import ORDER_SETTINGS

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.
    Converts log records to JSON format for easy parsing and analysis.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Add extra fields if present
        extra_data = getattr(record, 'extra_data', None)
        if extra_data:
            log_entry.update(extra_data)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ContextFormatter(logging.Formatter):
    """Human readable console format with the structured fields appended."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extra_data = getattr(record, 'extra_data', None)
        if not extra_data:
            return base
        fields = " ".join(f"{k}={v}" for k, v in extra_data.items() if k != "service")
        return f"{base} | {fields}"


class StructuredLogger:
    """
    Wrapper around standard logger to provide structured logging methods.

    Bound fields (see ``bind``) are stamped onto every entry; keyword fields
    passed to a single call override them.
    """

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self.context: Dict[str, Any] = dict(context or {})

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Return a child logger carrying ``fields`` on every entry."""
        merged = {**self.context, **{k: v for k, v in fields.items() if v is not None}}
        return StructuredLogger(self.logger.name, merged)

    def _log_with_extra(self, level: int, message: str, **kwargs):
        """Log with extra structured data."""
        exc_info = kwargs.pop("exc_info", None)
        extra_data = {"service": ORDER_SETTINGS["service_name"], **self.context}
        extra_data.update({k: v for k, v in kwargs.items() if v is not None})
        self.logger.log(level, message, exc_info=exc_info, extra={'extra_data': extra_data})

    def log(self, level: str | int, message: str, **kwargs):
        """Generic entry point: ``log("WARN", "message", orderId=...)``."""
        if isinstance(level, str):
            level = _LEVELS.get(level.upper(), logging.INFO)
        self._log_with_extra(level, message, **kwargs)

    def info(self, message: str, **kwargs):
        """Log info level with structured data."""
        self._log_with_extra(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning level with structured data."""
        self._log_with_extra(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log error level with structured data."""
        self._log_with_extra(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs):
        """Log debug level with structured data."""
        self._log_with_extra(logging.DEBUG, message, **kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Setup application logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for JSON log output
        enable_console: Whether to log to console
    """

    # Ensure logs directory exists
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    # Base configuration
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": JSONFormatter,
            },
            "standard": {
                "()": ContextFormatter,
                "fmt": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            }
        },
        "handlers": {},
        "loggers": {
            "orders_service": {
                "level": log_level,
                "handlers": [],
                "propagate": True
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": [],
                "propagate": False
            },
            "sqlalchemy.engine": {
                "level": "WARNING",  # Reduce SQL query noise
                "handlers": [],
                "propagate": False
            }
        },
        "root": {
            "level": log_level,
            "handlers": []
        }
    }

    # Console handler
    if enable_console:
        config["handlers"]["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "standard",
            "level": log_level
        }
        config["loggers"]["uvicorn"]["handlers"].append("console")
        config["loggers"]["sqlalchemy.engine"]["handlers"].append("console")
        config["root"]["handlers"].append("console")

    # File handler with JSON formatting
    if log_file:
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
            "formatter": "json",
            "level": log_level
        }
        config["loggers"]["uvicorn"]["handlers"].append("file")
        config["loggers"]["sqlalchemy.engine"]["handlers"].append("file")
        config["root"]["handlers"].append("file")

    # Apply configuration
    logging.config.dictConfig(config)


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        StructuredLogger instance
    """
    if not name.startswith("orders_service"):
        name = f"orders_service.{name}"
    return StructuredLogger(name)


# Performance logging
def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """
    Log performance metrics.

    Args:
        operation: Operation name
        duration_ms: Duration in milliseconds
        additional_data: Additional context data
    """
    perf_logger = get_logger("performance")
    data = {"duration_ms": duration_ms}
    if additional_data:
        data.update(additional_data)

    perf_logger.debug(
        f"Performance: {operation}",
        operation=operation,
        **data
    )
