"""
Retry with exponential backoff for source calls.

Both the decorator and the call-site helper are thin wrappers around one
tenacity ``AsyncRetrying`` factory. Retries always happen inside the
caller's own ``asyncio.wait_for``, so backoff can never outlive a phase
deadline.
"""

import asyncio
import logging
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .exceptions import MCPServerError, is_transient_error
from .logging_config import log_with_context

logger = logging.getLogger(__name__)


class RetryConfig:
    """
    Backoff policy.

    Values are clamped: 1-10 attempts, first wait 0.1-5 s, wait cap 1-60 s,
    multiplier 1-5. ``retry_on`` adds exception types retried on top of the
    transient errors recognised by :func:`is_transient_error`.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_wait: float = 1.0,
        max_wait: float = 10.0,
        multiplier: float = 2.0,
        retry_on: Optional[Tuple[Type[Exception], ...]] = None
    ):
        self.max_attempts = int(min(10, max(1, max_attempts)))
        self.initial_wait = min(5.0, max(0.1, initial_wait))
        self.max_wait = min(60.0, max(1.0, max_wait))
        self.multiplier = min(5.0, max(1.0, multiplier))
        self.retry_on = tuple(retry_on or ())

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.max_wait, self.initial_wait * self.multiplier ** (attempt - 1))

    def __repr__(self) -> str:
        return (f"RetryConfig(max_attempts={self.max_attempts}, initial_wait={self.initial_wait}, "
                f"max_wait={self.max_wait}, multiplier={self.multiplier})")


DEFAULT_RETRY_CONFIG = RetryConfig()

# Interactive lookups (resolver, seed search) run under multi-second timeouts
FAST_RETRY_CONFIG = RetryConfig(max_attempts=2, initial_wait=0.1, max_wait=1.0)


def should_retry_exception(exception: BaseException,
                           retry_on: Tuple[Type[Exception], ...] = ()) -> bool:
    """Retry transient source failures; never cancellation or bad requests."""
    if not isinstance(exception, Exception):
        # CancelledError and friends
        return False
    if isinstance(exception, MCPServerError):
        return exception.is_retryable()
    if retry_on and isinstance(exception, retry_on):
        return True
    return is_transient_error(exception)


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def _retrying(cfg: RetryConfig, name: str) -> AsyncRetrying:
    def wait(state: RetryCallState) -> float:
        return cfg.backoff(state.attempt_number)

    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        log_with_context(
            logger, "warning", "retry_scheduled",
            operation=name,
            attempt=state.attempt_number,
            max_attempts=cfg.max_attempts,
            wait_seconds=round(cfg.backoff(state.attempt_number), 2),
            error_type=type(error).__name__,
        )

    return AsyncRetrying(
        stop=stop_after_attempt(cfg.max_attempts),
        wait=wait,
        retry=retry_if_exception(lambda e: should_retry_exception(e, cfg.retry_on)),
        before_sleep=before_sleep,
        sleep=_sleep,
        reraise=True,
    )


async def retry_async_operation(
    operation: Callable,
    *args,
    config: Optional[RetryConfig] = None,
    operation_name: Optional[str] = None,
    **kwargs
) -> Any:
    """
    Await ``operation(*args, **kwargs)``, retrying transient failures.

    The last exception is re-raised unchanged once attempts run out or a
    non-retryable error occurs.

    Example:
        >>> pathways = await retry_async_operation(
        ...     client.call_tool,
        ...     "find_pathways_by_gene",
        ...     {"gene": "IL6", "species": "Homo sapiens"},
        ...     config=FAST_RETRY_CONFIG,
        ...     operation_name="reactome.find_pathways_by_gene",
        ... )
    """
    cfg = config or DEFAULT_RETRY_CONFIG
    name = operation_name or getattr(operation, '__qualname__', None) or repr(operation)

    attempts = 0
    try:
        async for attempt in _retrying(cfg, name):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                result = await operation(*args, **kwargs)
                if attempts > 1:
                    log_with_context(logger, "info", "retry_recovered", operation=name, attempts=attempts)
                return result
    except Exception as e:
        if attempts >= cfg.max_attempts and should_retry_exception(e, cfg.retry_on):
            log_with_context(
                logger, "warning", "retry_exhausted",
                operation=name, attempts=attempts, error_type=type(e).__name__,
            )
        raise


def async_retry_with_backoff(config: Optional[RetryConfig] = None) -> Callable:
    """
    Decorator form of :func:`retry_async_operation`.

    Example:
        >>> @async_retry_with_backoff(FAST_RETRY_CONFIG)
        ... async def search(text: str):
        ...     return await client.call_tool("search_diseases", {"query": text})
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await retry_async_operation(
                func, *args,
                config=config,
                operation_name=getattr(func, '__qualname__', None),
                **kwargs,
            )
        return wrapper
    return decorator
