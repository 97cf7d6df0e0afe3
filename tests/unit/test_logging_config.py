"""
Unit tests for structured JSON logging.
"""

import io
import json
import logging

import pytest

from targetgraph.core.config import Config
from targetgraph.core.logging_config import (
    StructuredFormatter,
    configure_logging,
    correlation_id_var,
    get_correlation_id,
    log_execution_time,
    log_with_context,
    set_correlation_id,
)


@pytest.fixture
def captured():
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    logger = logging.getLogger("targetgraph.tests.logging")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    token = correlation_id_var.set(None)
    yield logger, stream
    correlation_id_var.reset(token)
    logger.removeHandler(handler)


def lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


@pytest.mark.unit
class TestStructuredLogging:

    def test_fields_and_run_id(self, captured):
        logger, stream = captured
        set_correlation_id("run-42")

        log_with_context(logger, "warning", "source_degraded", source="reactome", phase="P2")

        entry = lines(stream)[0]
        assert entry["event"] == "source_degraded"
        assert entry["level"] == "WARNING"
        assert entry["correlation_id"] == "run-42"
        assert entry["source"] == "reactome"
        assert entry["phase"] == "P2"

    def test_exception_details(self, captured):
        logger, stream = captured
        try:
            raise ValueError("bad weights")
        except ValueError:
            logger.exception("ranking_failed")

        entry = lines(stream)[0]
        assert entry["error_type"] == "ValueError"
        assert "bad weights" in entry["traceback"]

    def test_level_filtering(self, captured):
        logger, stream = captured
        logger.setLevel(logging.INFO)
        log_with_context(logger, "debug", "batch_item_failed", item="IL6")
        assert stream.getvalue() == ""

    def test_adhoc_correlation_id_is_stable(self, captured):
        first = get_correlation_id()
        assert first.startswith("adhoc-")
        assert get_correlation_id() == first

    async def test_execution_time_decorator(self, captured):
        logger, stream = captured

        @log_execution_time(logger)
        async def resolve(query):
            if not query:
                raise KeyError("empty")
            return query.upper()

        assert await resolve("asthma") == "ASTHMA"
        with pytest.raises(KeyError):
            await resolve("")

        completed, failed = lines(stream)
        assert completed["event"] == "call_completed"
        assert completed["duration_ms"] >= 0
        assert failed["event"] == "call_failed"
        assert failed["error_type"] == "KeyError"

    def test_configure_from_config(self, root_logger, tmp_path):
        log_file = tmp_path / "logs" / "runs.jsonl"
        config = Config(env="testing", overrides={"log_level": "WARNING", "log_file": str(log_file)})

        handlers = configure_logging(config)
        logging.getLogger("targetgraph.tests.root").warning("run_completed")
        for handler in handlers:
            handler.flush()

        assert root_logger.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
        assert json.loads(log_file.read_text().splitlines()[-1])["event"] == "run_completed"
