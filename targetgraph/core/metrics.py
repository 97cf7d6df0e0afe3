"""
Prometheus Metrics

Counters and histograms for source calls, phases and runs. All collectors
live in a package registry so embedding applications can expose them
without polluting the process-wide default registry.
"""

from prometheus_client import (
    Counter, Histogram, Gauge, CollectorRegistry
)

REGISTRY = CollectorRegistry()


# ============================================================================
# Source Call Metrics
# ============================================================================

source_calls_total = Counter(
    'targetgraph_source_calls_total',
    'Total number of external source calls',
    ['source', 'operation', 'outcome'],
    registry=REGISTRY
)

source_call_duration_seconds = Histogram(
    'targetgraph_source_call_duration_seconds',
    'External source call duration in seconds',
    ['source', 'operation'],
    registry=REGISTRY
)

source_fallbacks_total = Counter(
    'targetgraph_source_fallbacks_total',
    'Calls answered by the REST fallback instead of MCP',
    ['source', 'operation'],
    registry=REGISTRY
)


# ============================================================================
# Phase & Run Metrics
# ============================================================================

phase_duration_seconds = Histogram(
    'targetgraph_phase_duration_seconds',
    'Pipeline phase duration in seconds',
    ['phase', 'partial'],
    registry=REGISTRY
)

runs_total = Counter(
    'targetgraph_runs_total',
    'Total number of evidence runs by outcome',
    ['outcome'],
    registry=REGISTRY
)

active_runs = Gauge(
    'targetgraph_active_runs',
    'Number of evidence runs currently executing',
    registry=REGISTRY
)

llm_calls_total = Counter(
    'targetgraph_llm_calls_total',
    'Structured LLM calls by schema and outcome',
    ['schema', 'outcome'],
    registry=REGISTRY
)

breaker_state = Gauge(
    'targetgraph_breaker_state',
    'Circuit breaker state per source (0 closed, 1 half-open, 2 open)',
    ['source'],
    registry=REGISTRY
)


def record_source_call(source: str, operation: str, outcome: str, duration: float) -> None:
    """
    Record one source call.

    Args:
        source: Source name (opentargets, reactome, ...)
        operation: Client operation (search_diseases, ...)
        outcome: success, error, timeout or fallback
        duration: Call duration in seconds
    """
    source_calls_total.labels(source=source, operation=operation, outcome=outcome).inc()
    source_call_duration_seconds.labels(source=source, operation=operation).observe(duration)


def record_fallback(source: str, operation: str) -> None:
    source_fallbacks_total.labels(source=source, operation=operation).inc()


def record_phase(phase: str, duration: float, partial: bool) -> None:
    phase_duration_seconds.labels(phase=phase, partial=str(partial).lower()).observe(duration)


def record_run_outcome(outcome: str) -> None:
    """Outcome is one of completed, cancelled, budget_exceeded, failed."""
    runs_total.labels(outcome=outcome).inc()


def record_llm_call(schema: str, outcome: str) -> None:
    llm_calls_total.labels(schema=schema, outcome=outcome).inc()


def record_breaker_state(source: str, value: int) -> None:
    breaker_state.labels(source=source).set(value)
