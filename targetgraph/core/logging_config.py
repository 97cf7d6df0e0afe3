"""
Structured Logging Configuration

Every log line is a single JSON object. While a run executes, its run id is
held in a context variable and stamped onto each line as ``correlation_id``
so interleaved runs can be told apart in one log stream.
"""

import json
import logging
import os
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, List, Optional

# Set to the run id by each run task; asyncio copies it into child tasks
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

NOISY_LOGGERS = ("httpx", "httpcore", "openai")


class StructuredFormatter(logging.Formatter):
    """Render a LogRecord as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        run_id = correlation_id_var.get()
        if run_id:
            entry["correlation_id"] = run_id

        fields = getattr(record, "extra_fields", None)
        if isinstance(fields, dict):
            entry.update(fields)

        if record.exc_info and record.exc_info[1] is not None:
            error = record.exc_info[1]
            entry["error_type"] = type(error).__name__
            entry["error"] = str(error)
            entry["traceback"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_structured_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> List[logging.Handler]:
    """
    Route the root logger through :class:`StructuredFormatter`.

    Existing root handlers are replaced, so calling this twice is safe.

    Returns:
        The handlers installed on the root logger
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handlers: List[logging.Handler] = []
    if enable_console:
        handlers.append(logging.StreamHandler())
    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    formatter = StructuredFormatter()
    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    # Per-request HTTP lines drown out phase events below WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return handlers


def configure_logging(config) -> List[logging.Handler]:
    """Apply ``log_level`` and ``log_file`` from a Config."""
    return setup_structured_logging(config.get('log_level', 'INFO'), config.get('log_file'))


def get_correlation_id() -> str:
    """Current run id; outside a run a fresh id is minted for this context."""
    current = correlation_id_var.get()
    if current is None:
        current = f"adhoc-{uuid.uuid4().hex[:12]}"
        correlation_id_var.set(current)
    return current


def set_correlation_id(correlation_id: Optional[str]) -> None:
    correlation_id_var.set(correlation_id)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **extra_fields
) -> None:
    """
    Emit ``message`` (a snake_case event name) with structured fields.

    Example:
        >>> log_with_context(logger, "warning", "source_degraded",
        ...                  source="reactome", phase="P2", health="yellow")
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    if logger.isEnabledFor(numeric):
        logger.log(numeric, message, extra={"extra_fields": extra_fields})


def log_execution_time(logger: logging.Logger):
    """Decorator timing an async callable; failures are logged and re-raised."""
    def decorator(func):
        name = func.__qualname__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                log_with_context(
                    logger, "warning", "call_failed",
                    function=name,
                    duration_ms=round((time.perf_counter() - started) * 1000, 1),
                    error_type=type(e).__name__,
                )
                raise
            log_with_context(
                logger, "debug", "call_completed",
                function=name,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )
            return result
        return wrapper
    return decorator
