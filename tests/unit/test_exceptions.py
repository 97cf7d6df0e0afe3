"""
Unit tests for the exception hierarchy.

Covers source errors, validation errors, run lifecycle errors and the
helper functions used by retry and logging.
"""

import pytest
from targetgraph.core.exceptions import (
    TargetGraphException,
    DatabaseError,
    DatabaseConnectionError,
    DatabaseTimeoutError,
    DatabaseUnavailableError,
    MCPServerError,
    DataValidationError,
    SchemaValidationError,
    ConfigurationError,
    MissingConfigurationError,
    RunError,
    SessionBusyError,
    RunBudgetExceededError,
    PhaseExecutionError,
    is_transient_error,
    format_error_for_logging,
)


@pytest.mark.unit
class TestBaseExceptions:
    """Test base exception classes."""

    def test_base_exception_basic(self):
        error = TargetGraphException("Test error")
        assert str(error) == "Test error"
        assert error.message == "Test error"
        assert error.details == {}

    def test_base_exception_with_details(self):
        details = {"server": "reactome", "query": "IL6"}
        error = TargetGraphException("Test error", details=details)
        assert "Test error" in str(error)
        assert "server=reactome" in str(error)
        assert "query=IL6" in str(error)

    def test_database_error_inheritance(self):
        error = DatabaseError("DB error")
        assert isinstance(error, TargetGraphException)


@pytest.mark.unit
class TestSourceErrors:
    """Test source-related exception classes."""

    def test_connection_error(self):
        error = DatabaseConnectionError(
            server_name="opentargets",
            message="Connection refused",
            details={"url": "http://localhost:7010/mcp"},
        )
        assert error.server_name == "opentargets"
        assert "Connection refused" in str(error)
        assert "server=opentargets" in str(error)
        assert error.details["url"] == "http://localhost:7010/mcp"

    def test_timeout_error(self):
        error = DatabaseTimeoutError(server_name="reactome", timeout=4.5, query="find_pathways_by_gene(IL6)")
        assert error.timeout == 4.5
        assert "4.5" in str(error)
        assert "reactome" in str(error)
        assert error.details["timeout_seconds"] == 4.5

    def test_unavailable_error_with_retry_after(self):
        error = DatabaseUnavailableError(server_name="openai", reason="rate limited", retry_after=25)
        assert error.retry_after == 25
        assert error.details["retry_after_seconds"] == 25
        assert "rate limited" in str(error)

    def test_mcp_error_message(self):
        error = MCPServerError("string", -32000, "upstream failure", tool_name="get_interaction_network")
        assert "[-32000]" in error.message
        assert "get_interaction_network" in error.message

    @pytest.mark.parametrize("code,retryable", [
        (-32600, False),
        (-32601, False),
        (-32602, False),
        (-32000, True),
        (None, True),
    ])
    def test_mcp_error_retryable_codes(self, code, retryable):
        assert MCPServerError("chembl", code, "failure").is_retryable() is retryable

    def test_mcp_connection_reset_is_retryable(self):
        error = MCPServerError("chembl", -32603, "read ECONNRESET")
        assert error.is_retryable()


@pytest.mark.unit
class TestValidationErrors:

    def test_schema_validation_error(self):
        error = SchemaValidationError("targetgraph_ranking", "unknown target id(s): X")
        assert isinstance(error, DataValidationError)
        assert error.schema_name == "targetgraph_ranking"
        assert error.reason == "unknown target id(s): X"
        assert error.fallback_available

    def test_missing_configuration(self):
        error = MissingConfigurationError("openai_api_key", "config.json")
        assert isinstance(error, ConfigurationError)
        assert "openai_api_key" in error.message
        assert error.details["config_file"] == "config.json"


@pytest.mark.unit
class TestRunErrors:

    def test_session_busy(self):
        error = SessionBusyError("session-1", "run-abc")
        assert isinstance(error, RunError)
        assert error.active_run_id == "run-abc"
        assert error.details["session_id"] == "session-1"
        assert "Interrupt it first" in error.message

    def test_budget_exceeded(self):
        error = RunBudgetExceededError("run-abc", 600)
        assert "600s budget" in error.message
        assert error.details["run_id"] == "run-abc"

    def test_phase_execution_wraps_original(self):
        original = KeyError("missing")
        error = PhaseExecutionError("run-abc", "P3", original)
        assert error.phase == "P3"
        assert error.original_error is original
        assert error.details["original_error_type"] == "KeyError"


@pytest.mark.unit
class TestHelpers:

    @pytest.mark.parametrize("error,expected", [
        (DatabaseConnectionError("reactome", "refused"), True),
        (DatabaseTimeoutError("reactome", 1.0, "q"), True),
        (DatabaseUnavailableError("reactome", "down"), True),
        (TimeoutError(), True),
        (ConnectionResetError(), True),
        (MCPServerError("reactome", -32602, "bad params"), False),
        (DataValidationError("bad"), False),
        (ValueError("socket: connection reset by peer"), True),
        (ValueError("plain"), False),
    ])
    def test_is_transient_error(self, error, expected):
        assert is_transient_error(error) is expected

    def test_format_error_for_logging(self):
        error = DatabaseTimeoutError("biomcp", 45.0, "article_searcher")
        info = format_error_for_logging(error)
        assert info["error_type"] == "DatabaseTimeoutError"
        assert info["is_transient"] is True
        assert info["server"] == "biomcp"
        assert info["timeout_seconds"] == 45.0

    def test_format_plain_exception(self):
        info = format_error_for_logging(RuntimeError("boom"))
        assert info == {"error_type": "RuntimeError", "error_message": "boom", "is_transient": False}
