"""
Unit tests for retry logic with exponential backoff.

Tests retry configurations, retry conditions and the decorator and
call-site retry helpers.
"""

import pytest
import asyncio
from unittest.mock import AsyncMock

from targetgraph.core.retry import (
    RetryConfig,
    DEFAULT_RETRY_CONFIG,
    FAST_RETRY_CONFIG,
    should_retry_exception,
    async_retry_with_backoff,
    retry_async_operation,
)
from targetgraph.core.exceptions import (
    DatabaseConnectionError,
    DatabaseTimeoutError,
    MCPServerError,
    DataValidationError,
)


@pytest.mark.unit
class TestRetryConfig:
    """Test retry configuration."""

    def test_default_retry_config(self):
        config = RetryConfig()
        assert config.max_attempts == 3
        assert config.initial_wait == 1.0
        assert config.max_wait == 10.0
        assert config.multiplier == 2.0

    def test_values_are_clamped(self):
        config = RetryConfig(max_attempts=50, initial_wait=0.0, max_wait=500, multiplier=0.5)
        assert config.max_attempts == 10
        assert config.initial_wait == 0.1
        assert config.max_wait == 60.0
        assert config.multiplier == 1.0

    def test_backoff_grows_and_caps(self):
        config = RetryConfig(initial_wait=1.0, max_wait=5.0, multiplier=2.0)
        assert config.backoff(1) == 1.0
        assert config.backoff(2) == 2.0
        assert config.backoff(3) == 4.0
        assert config.backoff(4) == 5.0

    def test_fast_config_is_short(self):
        assert FAST_RETRY_CONFIG.max_attempts == 2
        assert FAST_RETRY_CONFIG.max_wait <= DEFAULT_RETRY_CONFIG.max_wait


@pytest.mark.unit
class TestShouldRetry:

    def test_transient_errors_retry(self):
        assert should_retry_exception(DatabaseConnectionError("reactome", "refused"))
        assert should_retry_exception(DatabaseTimeoutError("reactome", 1.0, "q"))
        assert should_retry_exception(TimeoutError())

    def test_non_retryable_errors(self):
        assert not should_retry_exception(DataValidationError("bad"))
        assert not should_retry_exception(MCPServerError("string", -32602, "invalid params"))
        assert not should_retry_exception(ValueError("nope"))

    def test_extra_retry_on_types(self):
        assert not should_retry_exception(KeyError("x"))
        assert should_retry_exception(KeyError("x"), (KeyError,))

    def test_cancellation_never_retries(self):
        assert not should_retry_exception(asyncio.CancelledError())


@pytest.mark.unit
class TestAsyncRetryDecorator:

    async def test_success_first_attempt(self):
        func = AsyncMock(return_value="ok")
        decorated = async_retry_with_backoff(FAST_RETRY_CONFIG)(func)
        assert await decorated("IL6") == "ok"
        func.assert_awaited_once_with("IL6")

    async def test_non_retryable_raises_immediately(self):
        func = AsyncMock(side_effect=DataValidationError("bad shape"))
        func.__name__ = "search"
        decorated = async_retry_with_backoff(FAST_RETRY_CONFIG)(func)
        with pytest.raises(DataValidationError):
            await decorated()
        assert func.await_count == 1


@pytest.mark.unit
class TestRetryAsyncOperation:

    async def test_retries_then_succeeds(self, monkeypatch):
        sleep = AsyncMock()
        monkeypatch.setattr("targetgraph.core.retry.asyncio.sleep", sleep)
        operation = AsyncMock(side_effect=[DatabaseConnectionError("reactome", "reset"), ["R-HSA-1"]])

        result = await retry_async_operation(
            operation, "IL6", config=RetryConfig(max_attempts=3), operation_name="find_pathways"
        )

        assert result == ["R-HSA-1"]
        assert operation.await_count == 2
        sleep.assert_awaited_once_with(1.0)

    async def test_gives_up_after_max_attempts(self, monkeypatch):
        monkeypatch.setattr("targetgraph.core.retry.asyncio.sleep", AsyncMock())
        operation = AsyncMock(side_effect=DatabaseTimeoutError("biomcp", 1.0, "articles"))

        with pytest.raises(DatabaseTimeoutError):
            await retry_async_operation(operation, config=RetryConfig(max_attempts=2))
        assert operation.await_count == 2

    async def test_non_retryable_is_not_retried(self):
        operation = AsyncMock(side_effect=MCPServerError("chembl", -32601, "method not found"))
        with pytest.raises(MCPServerError):
            await retry_async_operation(operation)
        assert operation.await_count == 1
