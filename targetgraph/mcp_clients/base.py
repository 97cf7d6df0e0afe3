"""
Base clients for MCP-over-HTTP JSON-RPC and REST fallbacks.

Every source client talks to its MCP server first and falls back to the
public REST/GraphQL API of the same database when the MCP call fails.
Transport behavior is controlled by ``mcp_transport_mode``:

- ``auto``: MCP first, REST fallback on any source error
- ``prefer_mcp``: MCP only (with retry), no REST fallback
- ``fallback_only``: skip MCP, REST only

Failures surface as the TargetGraph exception hierarchy; callers decide
whether an error degrades a phase.
"""

import asyncio
import itertools
import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ..core.caching import CacheKey, MemoryCache
from ..core.circuit_breaker import CircuitBreakerManager
from ..core.exceptions import (
    DatabaseConnectionError,
    DatabaseError,
    DatabaseTimeoutError,
    DatabaseUnavailableError,
    DataValidationError,
    MCPServerError,
)
from ..core.logging_config import log_with_context
from ..core.metrics import record_fallback, record_source_call
from ..core.retry import FAST_RETRY_CONFIG, RetryConfig, retry_async_operation

logger = logging.getLogger(__name__)

# Shape errors raised while turning a payload into models
PAYLOAD_ERRORS = (ValidationError, ValueError, TypeError, KeyError)

MCP_PROTOCOL_VERSION = "2025-03-26"
CLIENT_INFO = {"name": "targetgraph", "version": "0.1.0"}


def parse_possible_json(raw: str) -> Any:
    """
    Parse tool text that is JSON, or ends with a JSON object/array after prose.

    Raises:
        json.JSONDecodeError: If no JSON payload can be recovered
    """
    trimmed = raw.strip()
    if not trimmed:
        return {}

    try:
        return json.loads(trimmed)
    except json.JSONDecodeError:
        pass

    for pattern in (r"\{[\s\S]*\}$", r"\[[\s\S]*\]$"):
        match = re.search(pattern, trimmed)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                continue

    raise json.JSONDecodeError("Unable to parse MCP JSON payload", trimmed[:160], 0)


def raise_for_http_status(server_name: str, response: httpx.Response, operation: str) -> None:
    """Translate HTTP error statuses into the exception hierarchy."""
    status = response.status_code
    if status < 400:
        return

    if status in (429, 503):
        retry_after = response.headers.get("retry-after")
        raise DatabaseUnavailableError(
            server_name=server_name,
            reason=f"HTTP {status} for {operation}",
            retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    if status >= 500:
        raise DatabaseConnectionError(
            server_name=server_name,
            message=f"HTTP {status} from {server_name}",
            details={"operation": operation},
        )
    raise DataValidationError(
        f"{server_name} rejected {operation} with HTTP {status}",
        field=operation,
        value=status,
    )


# =============================================================================
# MCP over HTTP
# =============================================================================

class MCPHttpClient:
    """
    JSON-RPC client for a streamable-HTTP MCP server.

    The MCP session is initialized lazily on the first tool call and
    re-established once if the server forgets it.
    """

    def __init__(self, server_name: str, endpoint: str, http: httpx.AsyncClient,
                 timeout: float = 30.0):
        self.server_name = server_name
        self.endpoint = endpoint
        self.http = http
        self.timeout = timeout
        self._ids = itertools.count(1)
        self._session_id: Optional[str] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id
        return headers

    async def _post(self, payload: Dict[str, Any], operation: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self.http.post(
                self.endpoint,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise DatabaseTimeoutError(
                server_name=self.server_name,
                timeout=self.timeout,
                query=operation,
            ) from e
        except httpx.RequestError as e:
            raise DatabaseConnectionError(
                server_name=self.server_name,
                message=f"Connection error: {e}",
                details={"operation": operation, "error_type": type(e).__name__},
            ) from e

        session_id = response.headers.get("mcp-session-id")
        if session_id:
            self._session_id = session_id

        if response.status_code == 404 and self._session_id:
            # Session expired on the server side
            self._session_id = None
            self._initialized = False
            raise DatabaseConnectionError(
                server_name=self.server_name,
                message="MCP session expired",
                details={"operation": operation},
            )

        raise_for_http_status(self.server_name, response, operation)

        if "id" not in payload or response.status_code == 202 or not response.content:
            return None

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            return self._read_event_stream(response.text, payload["id"])
        return response.json()

    @staticmethod
    def _read_event_stream(body: str, request_id: int) -> Optional[Dict[str, Any]]:
        """Pick the JSON-RPC response matching ``request_id`` out of an SSE body."""
        data_lines: List[str] = []
        messages: List[Dict[str, Any]] = []
        for line in body.splitlines() + [""]:
            if line.startswith("data:"):
                data_lines.append(line[5:].strip())
            elif not line.strip() and data_lines:
                messages.append(json.loads("\n".join(data_lines)))
                data_lines = []

        for message in messages:
            if isinstance(message, dict) and message.get("id") == request_id:
                return message
        return messages[-1] if messages else None

    async def initialize(self) -> None:
        """Perform the MCP initialize handshake once per session."""
        async with self._init_lock:
            if self._initialized:
                return
            await self._post({
                "jsonrpc": "2.0",
                "id": next(self._ids),
                "method": "initialize",
                "params": {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": CLIENT_INFO,
                },
            }, "initialize")
            await self._post({"jsonrpc": "2.0", "method": "notifications/initialized"},
                             "notifications/initialized")
            self._initialized = True
            logger.debug(f"{self.server_name} MCP session initialized")

    async def call_tool_raw(self, tool_name: str, params: Dict[str, Any]) -> str:
        """
        Call an MCP tool and return its joined text content.

        Raises:
            DatabaseConnectionError: If the server cannot be reached
            DatabaseTimeoutError: If the request times out
            MCPServerError: If the server returns an error response
        """
        await self.initialize()

        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "tools/call",
            "params": {"name": tool_name, "arguments": params},
        }

        try:
            response = await self._post(request, tool_name)
        except json.JSONDecodeError as e:
            raise MCPServerError(
                server_name=self.server_name,
                error_code=-32700,
                error_message=f"Invalid JSON response: {e}",
                tool_name=tool_name,
            ) from e
        except ValueError as e:
            # httpx raises ValueError subclasses for undecodable bodies
            raise MCPServerError(
                server_name=self.server_name,
                error_code=-32700,
                error_message=f"Invalid response body: {e}",
                tool_name=tool_name,
            ) from e

        if not response:
            raise DatabaseConnectionError(
                server_name=self.server_name,
                message="Server returned no JSON-RPC response",
                details={"tool": tool_name},
            )

        if "error" in response:
            error_data = response["error"] or {}
            raise MCPServerError(
                server_name=self.server_name,
                error_code=error_data.get("code"),
                error_message=error_data.get("message", "Unknown error"),
                tool_name=tool_name,
            )

        result = response.get("result") or {}
        content = result.get("content") if isinstance(result, dict) else None
        texts = [
            item.get("text", "")
            for item in (content or [])
            if isinstance(item, dict) and item.get("type") == "text"
        ]

        if isinstance(result, dict) and result.get("isError"):
            raise MCPServerError(
                server_name=self.server_name,
                error_code=-32603,
                error_message=(texts[0] if texts else "") or f"{self.server_name} reported isError for {tool_name}",
                tool_name=tool_name,
            )

        return "\n".join(texts)

    async def call_tool(self, tool_name: str, params: Dict[str, Any]) -> Any:
        """Call an MCP tool and parse its text content as JSON."""
        raw = await self.call_tool_raw(tool_name, params)
        try:
            return parse_possible_json(raw)
        except json.JSONDecodeError as e:
            raise MCPServerError(
                server_name=self.server_name,
                error_code=-32700,
                error_message=f"Invalid JSON tool payload: {e.msg}",
                tool_name=tool_name,
            ) from e

    async def call_tool_with_retry(
        self,
        tool_name: str,
        params: Dict[str, Any],
        retry_config: Optional[RetryConfig] = None
    ) -> Any:
        """Call an MCP tool with exponential backoff on transient errors."""
        return await retry_async_operation(
            self.call_tool,
            tool_name,
            params,
            config=retry_config or FAST_RETRY_CONFIG,
            operation_name=f"{self.server_name}.{tool_name}",
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(server='{self.server_name}', endpoint='{self.endpoint}')"


# =============================================================================
# Source Client Base
# =============================================================================

class SourceClient:
    """
    Base class for one external source.

    Subclasses implement typed operations by passing an MCP coroutine
    factory and a REST coroutine factory to :meth:`_fetch`, which applies
    caching, transport mode, circuit breaking and metrics.
    """

    source_name = "source"

    def __init__(
        self,
        http: httpx.AsyncClient,
        cache: MemoryCache,
        breakers: CircuitBreakerManager,
        mcp: Optional[MCPHttpClient] = None,
        transport_mode: str = "auto",
        retry_config: Optional[RetryConfig] = None,
    ):
        self.http = http
        self.cache = cache
        self.breakers = breakers
        self.mcp = mcp
        self.transport_mode = transport_mode
        self.retry_config = retry_config or FAST_RETRY_CONFIG

    async def _fetch(
        self,
        operation: str,
        params: Dict[str, Any],
        via_mcp: Optional[Callable[[], Awaitable[Any]]],
        via_rest: Optional[Callable[[], Awaitable[Any]]],
        cache_if: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Cached, breaker-guarded call following the transport mode."""
        key = CacheKey.source_call(self.source_name, operation, params)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        value = await self._guarded(operation, via_mcp, via_rest)
        if cache_if is None or cache_if(value):
            await self.cache.set(key, value)
        return value

    async def _guarded(
        self,
        operation: str,
        via_mcp: Optional[Callable[[], Awaitable[Any]]],
        via_rest: Optional[Callable[[], Awaitable[Any]]],
    ) -> Any:
        """Breaker-guarded call following the transport mode, uncached."""
        return await self.breakers.call(
            self.source_name, self._dispatch, operation, via_mcp, via_rest
        )

    async def _dispatch(
        self,
        operation: str,
        via_mcp: Optional[Callable[[], Awaitable[Any]]],
        via_rest: Optional[Callable[[], Awaitable[Any]]],
    ) -> Any:
        started = time.perf_counter()
        use_mcp = via_mcp is not None and self.mcp is not None and self.transport_mode != "fallback_only"
        use_rest = via_rest is not None and self.transport_mode != "prefer_mcp"

        if use_mcp:
            try:
                try:
                    value = await via_mcp()
                except PAYLOAD_ERRORS as e:
                    raise self._malformed(operation, e) from e
                record_source_call(self.source_name, operation, "success", time.perf_counter() - started)
                return value
            except DatabaseError as e:
                if not use_rest:
                    record_source_call(self.source_name, operation, _outcome(e), time.perf_counter() - started)
                    raise
                logger.debug(f"{self.source_name}.{operation} MCP failed, using REST fallback: {e}")

        if not use_rest:
            raise DatabaseUnavailableError(
                server_name=self.source_name,
                reason=f"no transport available for {operation} in mode {self.transport_mode}",
            )

        try:
            try:
                value = await retry_async_operation(
                    via_rest,
                    config=self.retry_config,
                    operation_name=f"{self.source_name}.{operation}",
                )
            except PAYLOAD_ERRORS as e:
                raise self._malformed(operation, e) from e
        except DatabaseError as e:
            record_source_call(self.source_name, operation, _outcome(e), time.perf_counter() - started)
            raise
        record_fallback(self.source_name, operation)
        record_source_call(self.source_name, operation, "fallback", time.perf_counter() - started)
        return value

    def _malformed(self, operation: str, error: Exception) -> MCPServerError:
        log_with_context(
            logger, "warning", "payload_rejected",
            source=self.source_name, operation=operation, error_type=type(error).__name__,
        )
        return MCPServerError(
            server_name=self.source_name,
            error_code=-32700,
            error_message=f"Malformed {operation} payload: {error}",
            tool_name=operation,
        )

    async def _mcp_call(self, tool_name: str, params: Dict[str, Any]) -> Any:
        if self.transport_mode == "prefer_mcp":
            return await self.mcp.call_tool_with_retry(tool_name, params, self.retry_config)
        return await self.mcp.call_tool(tool_name, params)

    async def _mcp_call_raw(self, tool_name: str, params: Dict[str, Any]) -> str:
        return await self.mcp.call_tool_raw(tool_name, params)

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a REST endpoint and decode JSON, translating transport errors."""
        return await self._request("GET", url, params=params)

    async def post_json(self, url: str, payload: Dict[str, Any]) -> Any:
        """POST JSON to a REST endpoint and decode the JSON reply."""
        return await self._request("POST", url, json=payload)

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self.http.request(
                method, url, headers={"Accept": "application/json"}, **kwargs
            )
        except httpx.TimeoutException as e:
            raise DatabaseTimeoutError(
                server_name=self.source_name,
                timeout=_timeout_seconds(self.http),
                query=f"{method} {url}",
            ) from e
        except httpx.RequestError as e:
            raise DatabaseConnectionError(
                server_name=self.source_name,
                message=f"Connection error: {e}",
                details={"url": url, "error_type": type(e).__name__},
            ) from e

        raise_for_http_status(self.source_name, response, f"{method} {url}")
        try:
            return response.json()
        except ValueError as e:
            raise MCPServerError(
                server_name=self.source_name,
                error_code=-32700,
                error_message=f"Invalid JSON from {url}: {e}",
            ) from e

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(mode='{self.transport_mode}', mcp={self.mcp!r})"


def _outcome(error: Exception) -> str:
    return "timeout" if isinstance(error, DatabaseTimeoutError) else "error"


def _timeout_seconds(http: httpx.AsyncClient) -> float:
    read = http.timeout.read
    return float(read) if read is not None else 0.0


def as_list(value: Any) -> List[Any]:
    """Payload field as a list; anything else becomes empty."""
    return value if isinstance(value, list) else []


def dig(payload: Any, *path: str) -> Any:
    """Walk nested dicts; missing keys or non-dicts yield None."""
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current
