"""
Source Client Manager

Builds every source client from a Config, shares one httpx.AsyncClient,
cache and circuit-breaker manager between them, and probes source health.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from ..mcp_clients import (
    BioMCPClient,
    ChEMBLClient,
    MCPHttpClient,
    OpenTargetsClient,
    ReactomeClient,
    STRINGClient,
)
from .caching import MemoryCache, build_cache
from .circuit_breaker import CircuitBreakerConfig, CircuitBreakerManager
from .config import Config, get_config
from .exceptions import TargetGraphException, format_error_for_logging

logger = logging.getLogger(__name__)

T = TypeVar('T')

PROBE_TIMEOUT = 16.0
SNAPSHOT_TTL = 90.0


class SourceClientManager:
    """Unified manager for all source clients."""

    def __init__(self, config: Optional[Config] = None,
                 http: Optional[httpx.AsyncClient] = None,
                 cache: Optional[MemoryCache] = None):
        """
        Initialize the source client manager.

        Args:
            config: Configuration (defaults to the global config)
            http: Shared HTTP client; created and owned here when omitted
            cache: Shared result cache; built from config when omitted
        """
        self.config = config or get_config()
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.http_timeout),
            follow_redirects=True,
            headers={"User-Agent": "targetgraph/0.1"},
        )
        self.cache = cache or build_cache(self.config)
        self.breakers = CircuitBreakerManager(CircuitBreakerConfig(
            failure_threshold=self.config.breaker_failure_threshold,
            timeout=self.config.breaker_timeout,
        ))
        self.clients = self._initialize_clients()
        self._snapshot: Optional[Dict[str, Any]] = None
        self._snapshot_at = 0.0

    def _mcp(self, name: str, url_key: str) -> MCPHttpClient:
        return MCPHttpClient(name, self.config[url_key], self.http, timeout=self.config.http_timeout)

    def _initialize_clients(self) -> Dict[str, Any]:
        common = dict(
            http=self.http,
            cache=self.cache,
            breakers=self.breakers,
            transport_mode=self.config.mcp_transport_mode,
        )
        return {
            'opentargets': OpenTargetsClient(
                mcp=self._mcp('opentargets', 'opentargets_mcp_url'),
                graphql_url=self.config.opentargets_graphql_url,
                **common,
            ),
            'reactome': ReactomeClient(
                mcp=self._mcp('reactome', 'reactome_mcp_url'),
                content_url=self.config.reactome_content_url,
                **common,
            ),
            'string': STRINGClient(
                mcp=self._mcp('string', 'string_mcp_url'),
                api_url=self.config.string_api_url,
                max_added_nodes=self.config.string_max_added_nodes,
                max_added_edges=self.config.string_max_added_edges,
                max_neighbors_per_seed=self.config.string_max_neighbors_per_seed,
                **common,
            ),
            'chembl': ChEMBLClient(
                mcp=self._mcp('chembl', 'chembl_mcp_url'),
                api_url=self.config.chembl_api_url,
                **common,
            ),
            'biomcp': BioMCPClient(
                mcp=self._mcp('biomcp', 'biomcp_url'),
                europepmc_url=self.config.europepmc_url,
                clinicaltrials_url=self.config.clinicaltrials_url,
                **common,
            ),
        }

    @property
    def opentargets(self) -> OpenTargetsClient:
        return self.clients['opentargets']

    @property
    def reactome(self) -> ReactomeClient:
        return self.clients['reactome']

    @property
    def string(self) -> STRINGClient:
        return self.clients['string']

    @property
    def chembl(self) -> ChEMBLClient:
        return self.clients['chembl']

    @property
    def biomcp(self) -> BioMCPClient:
        return self.clients['biomcp']

    async def close(self) -> None:
        """Close the shared HTTP client if this manager created it."""
        if self._owns_http:
            await self.http.aclose()

    @asynccontextmanager
    async def session(self):
        """Context manager for the HTTP client lifecycle."""
        try:
            yield self
        finally:
            await self.close()

    async def safe_call(
        self,
        source: str,
        operation: Callable[[], Awaitable[T]],
        default: T,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Await ``operation``; on any source error or timeout return ``default``.

        Used by callers that must never fail because a source is down.
        """
        try:
            if timeout is None:
                return await operation()
            return await asyncio.wait_for(operation(), timeout=timeout)
        except (TargetGraphException, asyncio.TimeoutError) as e:
            logger.warning(
                f"{source} call degraded to empty result: {type(e).__name__}",
                extra=format_error_for_logging(e),
            )
            return default

    async def _probe(self, name: str, probe: Callable[[], Awaitable[int]], noun: str) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            count = await asyncio.wait_for(probe(), timeout=PROBE_TIMEOUT)
            state = 'green' if count > 0 else 'red'
            detail = f"sample probe returned {count} {noun}"
        except (TargetGraphException, asyncio.TimeoutError) as e:
            logger.warning(f"Health check failed for {name}", extra=format_error_for_logging(e))
            state = 'red'
            detail = str(e) or type(e).__name__
        return {
            'state': state,
            'detail': detail,
            'latency_ms': int((time.perf_counter() - started) * 1000),
        }

    async def health_check(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Probe each source with a small known query.

        Snapshots are reused for 90 seconds unless ``force_refresh`` is set.
        """
        now = time.monotonic()
        if not force_refresh and self._snapshot and now - self._snapshot_at <= SNAPSHOT_TTL:
            return self._snapshot

        async def literature_count() -> int:
            bundle = await self.biomcp.get_literature_and_trials("obesity", "IL6", "metformin")
            return len(bundle.articles) + len(bundle.trials)

        async def network_edges() -> int:
            network = await self.string.get_interaction_network(["IL6", "TNF"], 0.4, 8)
            return len(network.edges)

        async def count(awaitable: Awaitable[Any]) -> int:
            return len(await awaitable)

        rows = await asyncio.gather(
            self._probe('opentargets', lambda: count(self.opentargets.search_diseases("obesity", 2)), "disease hit(s)"),
            self._probe('reactome', lambda: count(self.reactome.find_pathways_by_gene("IL6")), "pathway hit(s)"),
            self._probe('string', network_edges, "edge(s)"),
            self._probe('chembl', lambda: count(self.chembl.search_drug_candidates("metformin", 3)), "molecule hit(s)"),
            self._probe('biomcp', literature_count, "evidence snippet(s)"),
        )

        self._snapshot = {
            'transport_mode': self.config.mcp_transport_mode,
            'sources': dict(zip(self.clients.keys(), rows)),
            'breakers': self.breakers.get_all_stats(),
        }
        self._snapshot_at = now
        return self._snapshot

    def __repr__(self) -> str:
        return f"SourceClientManager(mode='{self.config.mcp_transport_mode}', sources={list(self.clients)})"
