"""Logging for netsynth.

Every module logs under the ``netsynth`` logger. Iterations that fail inside
a loop (node-split pairs, leave-one-out and cumulative steps) and soft
problems (dropped contrasts, unconverged chains) go through ``log_failure``
and ``log_warning``, which attach the operation name and context both to the
message and as structured fields for the JSON format.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from netsynth.config import Settings

logger = logging.getLogger("netsynth")

STANDARD_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with ``operation`` and ``context`` when present."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, DATE_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        operation = getattr(record, "operation", None)
        if operation:
            payload["operation"] = operation
        context = getattr(record, "context", None)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _formatter(format_style: str) -> logging.Formatter:
    if format_style == "json":
        return JsonFormatter()
    if format_style != "standard":
        raise ValueError(f"Unknown log format '{format_style}'. Must be one of: standard, json")
    return logging.Formatter(STANDARD_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(
    level: int | str = logging.INFO,
    log_file: str | None = None,
    format_style: str = "standard",
) -> logging.Logger:
    """
    Configure the netsynth logger.

    Args:
        level: Logging level, as a number or a name such as "DEBUG"
        log_file: Optional file to write records to as well as stderr
        format_style: "standard" for human-readable lines, "json" for one
            object per record

    Returns:
        The configured ``netsynth`` logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    formatter = _formatter(format_style)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def configure_from_settings(settings: Settings) -> logging.Logger:
    """Apply the ``log_level`` and ``log_format`` of a ``Settings`` instance."""
    return setup_logging(level=settings.log_level, format_style=settings.log_format)


def get_logger(name: str) -> logging.Logger:
    """Child logger for one component, e.g. ``get_logger("network")``."""
    return logging.getLogger(f"netsynth.{name}")


def _emit(
    log: logging.Logger,
    level: int,
    operation: str,
    text: str,
    context: dict[str, Any] | None,
) -> None:
    message = f"{operation}: {text}"
    if context:
        message += " | " + ", ".join(f"{k}={v}" for k, v in context.items())
    log.log(level, message, extra={"operation": operation, "context": dict(context or {})})


def log_failure(
    log: logging.Logger,
    operation: str,
    error: Exception | str,
    context: dict[str, Any] | None = None,
    level: int = logging.ERROR,
) -> None:
    """
    Record a failed operation or loop iteration.

    Args:
        log: Logger to use
        operation: Name of the operation, e.g. "node split"
        error: Exception raised, or a description of the failure
        context: Identifying values such as the study or treatment pair
        level: Logging level (default: ERROR)
    """
    kind = type(error).__name__ if isinstance(error, Exception) else "Error"
    _emit(log, level, operation, f"failed: [{kind}] {error}", context)


def log_warning(
    log: logging.Logger,
    operation: str,
    message: str,
    context: dict[str, Any] | None = None,
) -> None:
    """Record a result that is returned but should be inspected."""
    _emit(log, logging.WARNING, operation, message, context)


# Default configuration until callers or settings reconfigure it
setup_logging(level=logging.WARNING)
