"""
TargetGraph exception hierarchy.

Source failures (``DatabaseError`` and subclasses) are what the pipeline
degrades on; validation, configuration and run errors describe problems
that a retry will not fix.
"""

from typing import Any, Dict, Optional

# JSON-RPC codes for requests the server will reject again
NON_RETRYABLE_RPC_CODES = frozenset({-32600, -32601, -32602, -32603})
CONNECTION_RESET_MARKERS = ("ECONNRESET", "CONNECTION RESET")


def _compact(**fields: Any) -> Dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


def _mentions_reset(text: str) -> bool:
    upper = text.upper()
    return any(marker in upper for marker in CONNECTION_RESET_MARKERS)


class TargetGraphException(Exception):
    """
    Root of every error raised by this package.

    ``details`` holds structured context and is rendered after the message,
    e.g. ``"reactome is unavailable: down (server=reactome, reason=down)"``.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def __str__(self):
        if not self.details:
            return self.message
        rendered = ", ".join(f"{key}={value}" for key, value in self.details.items())
        return f"{self.message} ({rendered})"


# =============================================================================
# Source errors
# =============================================================================

class DatabaseError(TargetGraphException):
    """An external source (MCP server, REST API or the LLM endpoint) failed."""


class DatabaseConnectionError(DatabaseError):
    """The source could not be reached or answered with a server error."""

    def __init__(self, server_name: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, {**(details or {}), 'server': server_name})
        self.server_name = server_name


class DatabaseTimeoutError(DatabaseError):
    """A source call ran past its timeout."""

    def __init__(self, server_name: str, timeout: float, query: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"{server_name} query timed out after {timeout}s: {query}",
            {**(details or {}), 'server': server_name, 'timeout_seconds': timeout, 'query': query},
        )
        self.server_name = server_name
        self.timeout = timeout
        self.query = query


class DatabaseUnavailableError(DatabaseError):
    """
    The source refuses calls for now.

    Covers rate limiting, HTTP 503, an open circuit breaker and an LLM
    cooldown. ``retry_after`` is the suggested wait in seconds when known.
    """

    def __init__(self, server_name: str, reason: str, retry_after: Optional[int] = None):
        super().__init__(
            f"{server_name} is unavailable: {reason}",
            _compact(server=server_name, reason=reason, retry_after_seconds=retry_after or None),
        )
        self.server_name = server_name
        self.retry_after = retry_after


class MCPServerError(DatabaseError):
    """An MCP server answered with a JSON-RPC error or an ``isError`` result."""

    def __init__(self, server_name: str, error_code: Optional[int], error_message: str,
                 tool_name: Optional[str] = None):
        code = f" [{error_code}]" if error_code else ""
        where = f" in {tool_name}" if tool_name else ""
        details = {'server': server_name, 'error_code': error_code, 'error_message': error_message}
        if tool_name:
            details['tool'] = tool_name
        super().__init__(f"{server_name} MCP error{code}{where}: {error_message}", details)
        self.server_name = server_name
        self.error_code = error_code
        self.error_message = error_message
        self.tool_name = tool_name

    def is_retryable(self) -> bool:
        # Resets surface as -32603 but go away on a second attempt
        if _mentions_reset(self.error_message):
            return True
        return self.error_code not in NON_RETRYABLE_RPC_CODES


# =============================================================================
# Validation errors
# =============================================================================

class DataValidationError(TargetGraphException):
    """A payload or value failed validation; retrying returns the same data."""

    def __init__(self, message: str, field: Optional[str] = None,
                 value: Optional[Any] = None, expected: Optional[str] = None,
                 fallback_available: bool = False):
        super().__init__(message, _compact(
            field=field or None,
            value=None if value is None else str(value),
            expected=expected or None,
            fallback_available=True if fallback_available else None,
        ))
        self.field = field
        self.value = value
        self.expected = expected
        self.fallback_available = fallback_available


class SchemaValidationError(DataValidationError):
    """
    Structured output (LLM JSON) did not match its pydantic schema or named
    ids that were not in the input. Callers keep the deterministic result.
    """

    def __init__(self, schema_name: str, reason: str):
        super().__init__(
            f"Structured output rejected by schema {schema_name}: {reason}",
            field=schema_name,
            expected=schema_name,
            fallback_available=True,
        )
        self.schema_name = schema_name
        self.reason = reason


# =============================================================================
# Configuration errors
# =============================================================================

class ConfigurationError(TargetGraphException):
    """Configuration is invalid."""

    def __init__(self, config_key: str, message: str, config_file: Optional[str] = None):
        super().__init__(message, _compact(config_key=config_key, config_file=config_file))
        self.config_key = config_key
        self.config_file = config_file


class MissingConfigurationError(ConfigurationError):
    """A configuration key was requested that is not defined."""

    def __init__(self, config_key: str, config_file: Optional[str] = None):
        suffix = f" in {config_file}" if config_file else ""
        super().__init__(config_key, f"Missing required configuration: {config_key}{suffix}", config_file)


# =============================================================================
# Run lifecycle errors
# =============================================================================

class RunError(TargetGraphException):
    """Base class for evidence run lifecycle errors."""

    def __init__(self, run_id: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, {**(details or {}), 'run_id': run_id})
        self.run_id = run_id


class SessionBusyError(RunError):
    """A session already has an active run; interrupt it before starting another."""

    def __init__(self, session_id: str, active_run_id: str):
        super().__init__(
            active_run_id,
            f"Active run exists for session {session_id}. Interrupt it first.",
            {'session_id': session_id},
        )
        self.session_id = session_id
        self.active_run_id = active_run_id


class RunBudgetExceededError(RunError):
    def __init__(self, run_id: str, budget_seconds: float):
        super().__init__(
            run_id,
            f"Run {run_id} exceeded its {budget_seconds:.0f}s budget",
            {'budget_seconds': budget_seconds},
        )
        self.budget_seconds = budget_seconds


class PhaseExecutionError(RunError):
    """
    A phase body raised something other than a source error.

    Source failures never end up here: they degrade the phase instead.
    """

    def __init__(self, run_id: str, phase: str, original_error: Optional[Exception] = None):
        details: Dict[str, Any] = {'phase': phase}
        if original_error is not None:
            details['original_error'] = str(original_error)
            details['original_error_type'] = type(original_error).__name__
        super().__init__(run_id, f"Run {run_id} failed in phase {phase}", details)
        self.phase = phase
        self.original_error = original_error


# =============================================================================
# Helpers
# =============================================================================

TRANSIENT_TYPES = (
    DatabaseConnectionError,
    DatabaseTimeoutError,
    DatabaseUnavailableError,
    ConnectionError,
    TimeoutError,
)


def is_transient_error(error: Exception) -> bool:
    """Whether ``error`` may succeed on a later attempt."""
    if isinstance(error, MCPServerError):
        return error.is_retryable()
    if isinstance(error, TRANSIENT_TYPES):
        return True
    return _mentions_reset(str(error))


def format_error_for_logging(error: Exception) -> Dict[str, Any]:
    """
    Flatten an exception into fields for ``extra=``.

    Example:
        >>> logger.warning("source call failed", extra=format_error_for_logging(e))
    """
    info: Dict[str, Any] = {
        'error_type': type(error).__name__,
        'error_message': str(error),
        'is_transient': is_transient_error(error),
    }
    if isinstance(error, TargetGraphException):
        info.update(error.details)
    return info
