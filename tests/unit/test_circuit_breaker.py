"""
Unit tests for the per-source circuit breaker.
"""

import asyncio
import pytest
from targetgraph.core.circuit_breaker import (
    CircuitState,
    CircuitBreakerConfig,
    CircuitBreaker,
    CircuitBreakerManager
)
from targetgraph.core.exceptions import DatabaseConnectionError, DatabaseUnavailableError, DataValidationError
from targetgraph.core.metrics import REGISTRY


async def failing():
    raise DatabaseConnectionError("reactome", "connection refused")


async def succeeding():
    return "success"


@pytest.mark.unit
class TestCircuitBreakerConfig:
    def test_default_config(self):
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.success_threshold == 2
        assert config.timeout == 60.0

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0)


@pytest.mark.unit
class TestCircuitBreaker:
    @pytest.fixture
    def breaker(self):
        return CircuitBreaker("reactome", CircuitBreakerConfig(failure_threshold=2, success_threshold=1, timeout=0))

    def test_initial_state(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.is_closed

    async def test_successful_call(self, breaker):
        result = await breaker.call(succeeding)
        assert result == "success"
        assert breaker.get_stats()["total_successes"] == 1

    async def test_opens_after_transient_failures(self):
        breaker = CircuitBreaker("reactome", CircuitBreakerConfig(failure_threshold=2, timeout=60))
        for _ in range(2):
            with pytest.raises(DatabaseConnectionError):
                await breaker.call(failing)
        assert breaker.is_open

        with pytest.raises(DatabaseUnavailableError) as exc:
            await breaker.call(succeeding)
        assert exc.value.retry_after >= 1
        assert breaker.get_stats()["rejected_calls"] == 1

    async def test_non_transient_errors_do_not_open(self, breaker):
        async def bad_shape():
            raise DataValidationError("bad payload")

        for _ in range(3):
            with pytest.raises(DataValidationError):
                await breaker.call(bad_shape)
        assert breaker.is_closed

    async def test_half_open_probe_closes(self, breaker):
        for _ in range(2):
            with pytest.raises(DatabaseConnectionError):
                await breaker.call(failing)
        assert breaker.is_open

        # timeout=0: the next call is a half-open probe
        assert await breaker.call(succeeding) == "success"
        assert breaker.is_closed

    async def test_success_resets_failure_streak(self):
        breaker = CircuitBreaker("string", CircuitBreakerConfig(failure_threshold=2, timeout=60))
        with pytest.raises(DatabaseConnectionError):
            await breaker.call(failing)
        await breaker.call(succeeding)
        with pytest.raises(DatabaseConnectionError):
            await breaker.call(failing)
        assert breaker.is_closed
        assert breaker.get_stats()["failure_count"] == 1

    async def test_failed_probe_reopens(self, breaker):
        for _ in range(2):
            with pytest.raises(DatabaseConnectionError):
                await breaker.call(failing)

        with pytest.raises(DatabaseConnectionError):
            await breaker.call(failing)
        assert breaker.is_open

    def test_metrics_gauge_follows_state(self):
        breaker = CircuitBreaker("opentargets")
        breaker._transition(CircuitState.OPEN)
        assert REGISTRY.get_sample_value("targetgraph_breaker_state", {"source": "opentargets"}) == 2
        breaker.reset()
        assert REGISTRY.get_sample_value("targetgraph_breaker_state", {"source": "opentargets"}) == 0

    async def test_cancellation_is_not_a_failure(self, breaker):
        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await breaker.call(cancelled)
        assert breaker.get_stats()["total_failures"] == 0


@pytest.mark.unit
class TestCircuitBreakerManager:
    @pytest.fixture
    def manager(self):
        return CircuitBreakerManager()

    def test_add_breaker(self, manager):
        breaker = manager.add_breaker("string")
        assert breaker.name == "string"
        with pytest.raises(ValueError):
            manager.add_breaker("string")

    async def test_call_creates_breaker_lazily(self, manager):
        assert manager.get_breaker("chembl") is None
        assert await manager.call("chembl", succeeding) == "success"
        assert manager.get_all_stats()["chembl"]["total_calls"] == 1

    def test_reset_all(self, manager):
        breaker = manager.get_or_create("biomcp")
        breaker._state = CircuitState.OPEN
        manager.reset_all()
        assert breaker.is_closed
