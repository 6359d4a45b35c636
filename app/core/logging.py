"""Structured logging configuration for the Reconstruction Engine."""

import logging
import sys
from typing import Any

# Context fields promoted to top-level keys when passed via ``extra``
CONTEXT_FIELDS = ("job_id", "strategy", "provider", "chunk_index")


class StructuredFormatter(logging.Formatter):
    """Key=value structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured output."""
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "module": record.module,
            "function": record.funcName,
            "message": record.getMessage(),
        }

        for field_name in CONTEXT_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

        if hasattr(record, "extra_data"):
            log_data.update(record.extra_data)

        parts = [f"{k}={v}" for k, v in log_data.items()]
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _level_for_env(env: str) -> int:
    if env == "dev":
        return logging.DEBUG
    if env == "test":
        return logging.WARNING
    return logging.INFO


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Only configure if not already configured
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)

        try:
            from app.core.config import get_settings

            logger.setLevel(_level_for_env(get_settings().RECON_ENV))
        except Exception:
            # Default to INFO if settings not available
            logger.setLevel(logging.INFO)

    return logger


def log_with_context(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """
    Log with additional context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Context fields; job_id, strategy, provider and chunk_index
            become top-level keys, anything else lands in extra_data
    """
    extra: dict[str, Any] = {}
    for field_name in CONTEXT_FIELDS:
        if field_name in kwargs:
            extra[field_name] = kwargs.pop(field_name)
    extra["extra_data"] = kwargs

    logger.log(level, msg, extra=extra)
