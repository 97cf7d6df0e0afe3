"""
Run Context & Lifecycle

Everything one evidence run owns (graph store, source health, per-target
accumulators, event sequence) lives on a RunContext that is passed through
every phase. RunManager starts runs as asyncio tasks, enforces at most one
active run per session and cancels runs on interrupt, staleness or when the
hard budget is spent.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set

from ..models.data_models import (
    SOURCE_NAMES,
    Anchor,
    GraphEdge,
    GraphNode,
    GraphPatch,
    PhaseStatus,
    QueryPlan,
    RunErrorEvent,
    RunRequest,
    StreamEvent,
)
from .bridge import analyze_bridge, bridge_signature
from .config import Config, get_config
from .exceptions import PhaseExecutionError, RunBudgetExceededError, SessionBusyError, format_error_for_logging
from .graph_store import GraphStore, sankey_rows
from .logging_config import log_with_context, set_correlation_id
from .metrics import active_runs, record_run_outcome

logger = logging.getLogger(__name__)

HEALTH_ORDER = {'green': 0, 'yellow': 1, 'red': 2}


@dataclass
class LiteratureCounts:
    article_count: int = 0
    trial_count: int = 0


class RunContext:
    """
    Mutable state of a single run.

    Only the run's own task mutates it. Events are queued in emission order
    with a per-run sequence number; once closed, further emits are dropped.
    """

    def __init__(self, run_id: str, request: RunRequest, config: Optional[Config] = None):
        self.run_id = run_id
        self.request = request
        self.config = config or get_config()
        self.started_at = time.monotonic()

        self.store = GraphStore()
        self.source_health: Dict[str, str] = {name: 'green' for name in SOURCE_NAMES}
        self.plan: Optional[QueryPlan] = None
        self.pct = 0.0
        self.partial_phases: Set[str] = set()

        self.disease_id = ''
        self.disease_name = request.query
        self.target_node_ids: List[str] = []
        self.symbol_by_node: Dict[str, str] = {}
        self.pathways_by_target: Dict[str, Set[str]] = {}
        self.drugs_by_target: Dict[str, Set[str]] = {}
        self.interactions_by_target: Dict[str, int] = {}
        self.literature_by_target: Dict[str, LiteratureCounts] = {}

        self._queue: asyncio.Queue = asyncio.Queue()
        self._seq = 0
        self._closed = False
        self._bridge_signature = None

    # -------------------------------------------------------------------------
    # Derived state
    # -------------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    @property
    def phase_timeout(self) -> float:
        return self.config.phase_timeout_ms / 1000

    @property
    def anchors(self) -> List[Anchor]:
        return list(self.plan.anchors) if self.plan else []

    def counts(self) -> Dict[str, int]:
        stats = self.store.stats()
        return {
            'targets': len(self.target_node_ids),
            'pathways': stats['pathways'],
            'drugs': stats['drugs'],
            'interactions': sum(self.interactions_by_target.values()),
        }

    def add_target(self, node_id: str, symbol: str) -> None:
        if node_id in self.symbol_by_node:
            return
        self.target_node_ids.append(node_id)
        self.symbol_by_node[node_id] = symbol
        self.pathways_by_target[node_id] = set()
        self.drugs_by_target[node_id] = set()

    def target_for_symbol(self, symbol: str) -> Optional[str]:
        for node_id in self.target_node_ids:
            if self.symbol_by_node.get(node_id) == symbol:
                return node_id
        return None

    # -------------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------------

    def emit(self, event: str, data: Any = None) -> None:
        if self._closed:
            return
        self._queue.put_nowait(StreamEvent(event=event, run_id=self.run_id, seq=self._seq, data=data))
        self._seq += 1

    def status(self, phase: str, message: str, pct: float,
               counts: Optional[Dict[str, int]] = None, partial: bool = False) -> None:
        """Emit a phase status; pct never decreases within a run."""
        self.pct = max(self.pct, float(pct))
        if partial:
            self.partial_phases.add(phase)
        self.emit('status', PhaseStatus(
            phase=phase,
            message=message,
            pct=self.pct,
            counts=counts if counts is not None else self.counts(),
            source_health=dict(self.source_health),
            partial=partial,
            elapsed_ms=self.elapsed_ms,
            timeout_ms=self.config.phase_timeout_ms,
        ).model_dump())

    def error(self, phase: str, message: str, recoverable: bool = True) -> None:
        self.emit('error', RunErrorEvent(phase=phase, message=message, recoverable=recoverable).model_dump())

    def degrade(self, source: str, state: str, phase: str, reason: str = '') -> None:
        """Downgrade a source's health; health never recovers within a run."""
        current = self.source_health.get(source, 'green')
        if HEALTH_ORDER[state] <= HEALTH_ORDER[current]:
            return
        self.source_health[source] = state
        log_with_context(
            logger,
            "warning",
            "source_degraded",
            run_id=self.run_id,
            source=source,
            phase=phase,
            health=state,
            reason=reason,
        )

    # -------------------------------------------------------------------------
    # Graph updates
    # -------------------------------------------------------------------------

    def merge(self, nodes: Sequence[GraphNode], edges: Sequence[GraphEdge] = ()) -> GraphPatch:
        """
        Merge into the store and emit a patch of what actually changed.

        The bridge analysis is re-evaluated after every non-empty patch.
        """
        changed, added = self.store.merge(nodes, edges)
        patch = GraphPatch(nodes=changed, edges=added, stats=self.store.stats())
        if changed or added:
            self.emit('graph_patch', patch.model_dump())
            self.refresh_bridge()
        return patch

    def refresh_bridge(self) -> None:
        nodes, edges = self.store.snapshot()
        analysis = analyze_bridge(self.request.query, self.anchors, nodes, edges)
        if analysis.status == 'pending':
            return
        signature = bridge_signature(analysis)
        if signature == self._bridge_signature:
            return
        self._bridge_signature = signature
        self.emit('bridge', analysis.model_dump())

    def emit_sankey(self) -> None:
        nodes, edges = self.store.snapshot()
        self.emit('sankey', {'rows': [row.model_dump() for row in sankey_rows(nodes, edges)]})

    # -------------------------------------------------------------------------
    # Consumption
    # -------------------------------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def next_event(self) -> Optional[StreamEvent]:
        return await self._queue.get()


# =============================================================================
# Session registry
# =============================================================================

@dataclass
class RunHandle:
    """A started run: its context, task and event stream."""
    run_id: str
    session_id: Optional[str]
    context: RunContext
    started_at: float = field(default_factory=time.monotonic)
    task: Optional[asyncio.Task] = None

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()

    async def events(self) -> AsyncIterator[StreamEvent]:
        """
        Yield events until the run finishes.

        Leaving the iteration early counts as a consumer disconnect and
        cancels the run.
        """
        finished = False
        try:
            while True:
                event = await self.context.next_event()
                if event is None:
                    finished = True
                    return
                yield event
        finally:
            if not finished:
                self.cancel()

    async def collect(self) -> List[StreamEvent]:
        return [event async for event in self.events()]


class SessionRegistry:
    """At most one active run per session id."""

    def __init__(self, stale_after_ms: int):
        self.stale_after = stale_after_ms / 1000
        self._active: Dict[str, RunHandle] = {}

    def evict_stale(self) -> None:
        now = time.monotonic()
        for session_id, handle in list(self._active.items()):
            if handle.done:
                del self._active[session_id]
            elif now - handle.started_at > self.stale_after:
                log_with_context(
                    logger,
                    "warning",
                    "stale_run_evicted",
                    session_id=session_id,
                    run_id=handle.run_id,
                )
                handle.cancel()
                del self._active[session_id]

    def acquire(self, handle: RunHandle) -> None:
        if handle.session_id is None:
            return
        self.evict_stale()
        current = self._active.get(handle.session_id)
        if current is not None:
            raise SessionBusyError(handle.session_id, current.run_id)
        self._active[handle.session_id] = handle

    def release(self, handle: RunHandle) -> None:
        if handle.session_id is None:
            return
        current = self._active.get(handle.session_id)
        if current is not None and current.run_id == handle.run_id:
            del self._active[handle.session_id]

    def active(self, session_id: str) -> Optional[RunHandle]:
        return self._active.get(session_id)


# =============================================================================
# Run manager
# =============================================================================

class RunManager:
    """
    Starts evidence runs and owns their lifecycle.

    Example:
        >>> manager = RunManager(orchestrator)
        >>> handle = manager.start("session-1", RunRequest(query="asthma and IL6"))
        >>> async for event in handle.events():
        ...     print(event.event, event.data)
    """

    def __init__(self, orchestrator, config: Optional[Config] = None,
                 budget_seconds: Optional[float] = None):
        self.orchestrator = orchestrator
        self.config = config or get_config()
        self.budget_seconds = budget_seconds or self.config.effective_run_budget_ms / 1000
        self.sessions = SessionRegistry(self.config.session_run_stale_ms)

    def start(self, session_id: Optional[str], request: RunRequest) -> RunHandle:
        """
        Register and launch a run.

        Raises:
            SessionBusyError: A run is already active for ``session_id``
        """
        run_id = f"run-{uuid.uuid4().hex[:12]}"
        session_id = session_id or request.session_id
        handle = RunHandle(
            run_id=run_id,
            session_id=session_id,
            context=RunContext(run_id, request, self.config),
        )
        self.sessions.acquire(handle)
        handle.task = asyncio.create_task(self._execute(handle))
        return handle

    def interrupt(self, session_id: str) -> bool:
        """Cancel the session's active run; False when there is none."""
        handle = self.sessions.active(session_id)
        if handle is None or handle.done:
            return False
        log_with_context(logger, "info", "run_interrupted", session_id=session_id, run_id=handle.run_id)
        handle.cancel()
        return True

    async def _execute(self, handle: RunHandle) -> None:
        ctx = handle.context
        set_correlation_id(ctx.run_id)
        active_runs.inc()
        log_with_context(
            logger,
            "info",
            "run_started",
            run_id=ctx.run_id,
            session_id=handle.session_id,
            query=ctx.request.query[:120],
            budget_seconds=self.budget_seconds,
        )
        outcome = 'failed'
        try:
            await asyncio.wait_for(self.orchestrator.run(ctx), timeout=self.budget_seconds)
            outcome = 'completed'
            log_with_context(logger, "info", "run_completed", run_id=ctx.run_id, elapsed_ms=ctx.elapsed_ms)
        except asyncio.TimeoutError:
            outcome = 'budget_exceeded'
            error = RunBudgetExceededError(ctx.run_id, self.budget_seconds)
            log_with_context(logger, "error", "run_budget_exceeded", **format_error_for_logging(error))
            ctx.error('fatal', error.message, recoverable=False)
        except asyncio.CancelledError:
            outcome = 'cancelled'
            log_with_context(logger, "info", "run_cancelled", run_id=ctx.run_id, elapsed_ms=ctx.elapsed_ms)
            raise
        except PhaseExecutionError as e:
            log_with_context(logger, "error", "run_failed", **format_error_for_logging(e))
            ctx.error(e.phase, str(e.original_error or e.message), recoverable=False)
        finally:
            record_run_outcome(outcome)
            active_runs.dec()
            self.sessions.release(handle)
            ctx.close()
