"""
Per-source circuit breakers.

A source that keeps failing with transient errors is short-circuited for
``timeout`` seconds: calls raise ``DatabaseUnavailableError`` immediately,
which the pipeline treats like any other degraded source. After the
timeout a limited number of probe calls decide whether to close again.

    CLOSED --failure_threshold transient failures--> OPEN
    OPEN --timeout elapsed--> HALF_OPEN
    HALF_OPEN --success_threshold successes--> CLOSED
    HALF_OPEN --transient failure--> OPEN
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .exceptions import DatabaseUnavailableError, is_transient_error
from .logging_config import log_with_context
from .metrics import record_breaker_state

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


STATE_GAUGE_VALUES = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


@dataclass
class CircuitBreakerConfig:
    """
    Attributes:
        failure_threshold: Consecutive transient failures that open the circuit
        success_threshold: Probe successes needed to close it again
        timeout: Seconds to stay open before probing
        half_open_max_calls: Probes allowed in flight at once
    """
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: float = 60.0
    half_open_max_calls: int = 1

    def __post_init__(self):
        for name in ('failure_threshold', 'success_threshold', 'half_open_max_calls'):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.timeout < 0:
            raise ValueError("timeout must be >= 0")


class CircuitBreaker:
    """
    Breaker for one source.

    Only errors for which :func:`is_transient_error` holds count against
    the source; bad requests and programming errors pass through without
    changing state, and cancellation is ignored entirely.
    """

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._lock = asyncio.Lock()
        self._state = CircuitState.CLOSED
        self._opened_at: Optional[float] = None
        self._consecutive_failures = 0
        self._probe_successes = 0
        self._probes_in_flight = 0
        self._counters = {"calls": 0, "failures": 0, "successes": 0, "rejected": 0}

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._consecutive_failures,
            "total_calls": self._counters["calls"],
            "total_failures": self._counters["failures"],
            "total_successes": self._counters["successes"],
            "rejected_calls": self._counters["rejected"],
        }

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        self._transition(CircuitState.CLOSED)

    def _transition(self, state: CircuitState) -> None:
        previous = self._state
        self._state = state
        self._consecutive_failures = 0
        self._probe_successes = 0
        self._probes_in_flight = 0
        self._opened_at = time.monotonic() if state is CircuitState.OPEN else None
        record_breaker_state(self.name, STATE_GAUGE_VALUES[state])
        if previous is not state:
            log_with_context(
                logger,
                "warning" if state is CircuitState.OPEN else "info",
                "breaker_state_changed",
                source=self.name,
                previous=previous.value,
                state=state.value,
                reopen_after_seconds=self.config.timeout if state is CircuitState.OPEN else None,
            )

    def _seconds_until_probe(self) -> float:
        if self._opened_at is None:
            return 0.0
        return self.config.timeout - (time.monotonic() - self._opened_at)

    async def _admit(self) -> bool:
        async with self._lock:
            if self._state is CircuitState.OPEN:
                if self._seconds_until_probe() > 0:
                    return False
                self._transition(CircuitState.HALF_OPEN)
            if self._state is CircuitState.CLOSED:
                return True
            if self._probes_in_flight >= self.config.half_open_max_calls:
                return False
            self._probes_in_flight += 1
            return True

    async def _settle(self, error: Optional[BaseException]) -> None:
        async with self._lock:
            probing = self._state is CircuitState.HALF_OPEN
            if probing:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)
            if isinstance(error, asyncio.CancelledError):
                return

            self._counters["calls"] += 1
            if error is None:
                self._counters["successes"] += 1
                if probing:
                    self._probe_successes += 1
                    if self._probe_successes >= self.config.success_threshold:
                        self._transition(CircuitState.CLOSED)
                else:
                    self._consecutive_failures = 0
                return

            self._counters["failures"] += 1
            if not is_transient_error(error):
                return
            if probing:
                self._transition(CircuitState.OPEN)
                return
            self._consecutive_failures += 1
            if self._consecutive_failures >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await ``func(*args, **kwargs)`` through the breaker.

        Raises:
            DatabaseUnavailableError: While the circuit is open
        """
        if not await self._admit():
            self._counters["rejected"] += 1
            remaining = self._seconds_until_probe()
            raise DatabaseUnavailableError(
                server_name=self.name,
                reason="Circuit breaker is OPEN",
                retry_after=max(1, int(remaining)) if self._opened_at is not None else None,
            )

        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError as e:
            await asyncio.shield(self._settle(e))
            raise
        except Exception as e:
            await self._settle(e)
            raise
        await self._settle(None)
        return result


class CircuitBreakerManager:
    """One lazily created breaker per source name, sharing a default config."""

    def __init__(self, default_config: Optional[CircuitBreakerConfig] = None):
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()

    def add_breaker(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        """
        Raises:
            ValueError: If ``name`` already has a breaker
        """
        if name in self._breakers:
            raise ValueError(f"Circuit breaker '{name}' already exists")
        self._breakers[name] = CircuitBreaker(name, config or self._default_config)
        return self._breakers[name]

    def get_breaker(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def get_or_create(self, name: str) -> CircuitBreaker:
        return self._breakers.get(name) or self.add_breaker(name)

    async def call(self, name: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        return await self.get_or_create(name).call(func, *args, **kwargs)

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_stats() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
