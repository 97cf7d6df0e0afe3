"""
Batch Query Utilities

Settle-all fan-out for per-item source calls: every item in a batch runs
concurrently, one failing or slow item never aborts its siblings, and the
outcome of each item (value, error, timeout, skipped) is reported back so
callers can count degradations instead of dropping them.

Key helpers:
- settle_all(): run one batch concurrently with an optional per-item timeout
- iter_batches(): consecutive batches under a shared phase deadline
- parallel_query(): named independent calls, settled together
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

from ..core.exceptions import format_error_for_logging
from ..core.logging_config import log_with_context

logger = logging.getLogger(__name__)


@dataclass
class Settled:
    """Outcome of one batch item."""
    item: Any
    value: Any = None
    error: Optional[BaseException] = None
    timed_out: bool = False
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.timed_out and not self.skipped


async def _settle_one(query_func: Callable[[Any], Awaitable[Any]], item: Any,
                      timeout: Optional[float]) -> Settled:
    try:
        if timeout is None:
            value = await query_func(item)
        else:
            value = await asyncio.wait_for(query_func(item), timeout=max(0.0, timeout))
        return Settled(item=item, value=value)
    except asyncio.TimeoutError as e:
        return Settled(item=item, error=e, timed_out=True)
    except Exception as e:
        return Settled(item=item, error=e)


async def settle_all(
    query_func: Callable[[Any], Awaitable[Any]],
    items: Sequence[Any],
    timeout: Optional[float] = None,
) -> List[Settled]:
    """
    Run ``query_func`` for every item concurrently and settle each one.

    Args:
        query_func: Async function called once per item
        items: Items for this batch
        timeout: Per-item timeout in seconds (None for no limit)

    Returns:
        One Settled per item, in input order

    Example:
        >>> outcomes = await settle_all(reactome.find_pathways_by_gene, ["IL6", "TNF"], timeout=4.5)
        >>> failed = [o.item for o in outcomes if not o.ok]
    """
    if not items:
        return []

    outcomes = await asyncio.gather(*(_settle_one(query_func, item, timeout) for item in items))

    operation = getattr(query_func, '__name__', 'query')
    for outcome in outcomes:
        if outcome.ok:
            continue
        fields = format_error_for_logging(outcome.error) if outcome.error else {}
        log_with_context(
            logger,
            "warning",
            "batch_item_failed",
            operation=operation,
            item=str(outcome.item),
            timed_out=outcome.timed_out,
            **fields,
        )
    return list(outcomes)


async def iter_batches(
    query_func: Callable[[Any], Awaitable[Any]],
    items: Sequence[Any],
    batch_size: int,
    per_item_timeout: Optional[float] = None,
    deadline: Optional[float] = None,
) -> AsyncIterator[List[Settled]]:
    """
    Yield settled batches of ``items`` one after another.

    ``deadline`` is a ``time.monotonic()`` instant shared by the whole
    phase: each item's timeout is clamped to the remaining budget, and once
    the deadline passes the remaining items are yielded as skipped.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    for start in range(0, len(items), batch_size):
        batch = items[start:start + batch_size]
        timeout = per_item_timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log_with_context(
                    logger,
                    "info",
                    "batch_budget_exhausted",
                    skipped_items=len(items) - start,
                )
                yield [Settled(item=item, skipped=True) for item in items[start:]]
                return
            timeout = remaining if timeout is None else min(timeout, remaining)

        yield await settle_all(query_func, batch, timeout)


async def parallel_query(
    queries: Dict[str, Callable[[], Awaitable[Any]]],
    timeout: Optional[float] = None,
) -> Dict[str, Settled]:
    """
    Execute independent named calls in parallel and settle each one.

    Example:
        >>> results = await parallel_query({
        ...     "disease": lambda: opentargets.search_diseases("asthma", 8),
        ...     "drug": lambda: chembl.search_drug_candidates("asthma", 8),
        ... }, timeout=5.0)
    """
    if not queries:
        return {}

    names = list(queries)
    outcomes = await settle_all(lambda name: queries[name](), names, timeout)

    success_count = sum(1 for outcome in outcomes if outcome.ok)
    logger.debug(f"Parallel query complete: {success_count}/{len(names)} successful")
    return dict(zip(names, outcomes))
