"""
Unit tests for logging configuration.

Tests structured JSON logging, the text formatter, handler setup for
desktop and CI sessions, and the timing helpers.
"""

import asyncio
import io
import json
import logging
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

from workbench.core.config import Config
from workbench.core.logging_config import (
    ContextAdapter,
    RunContextFilter,
    StructuredFormatter,
    TextFormatter,
    get_logger,
    log_performance,
    log_process_call,
    run_context,
    setup_logging,
)


def _record(msg="Test message", level=logging.INFO, **extra):
    record = logging.LogRecord(
        name="workbench.test",
        level=level,
        pathname="",
        lineno=0,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """Test cases for StructuredFormatter."""

    def test_format_basic_log_record(self):
        """Test formatting basic log record."""
        formatter = StructuredFormatter("session-123")

        log_data = json.loads(formatter.format(_record()))

        assert log_data["level"] == "INFO"
        assert log_data["component"] == "workbench.test"
        assert log_data["session_id"] == "session-123"
        assert log_data["message"] == "Test message"
        assert log_data["timestamp"].endswith("Z")

    def test_format_with_metadata_and_context(self):
        """Test metadata and context fields are carried over."""
        formatter = StructuredFormatter("session-123")
        record = _record(
            level=logging.ERROR,
            metadata={"path": "runs/index.json"},
            run_id="run-1",
            test_name="login",
        )

        log_data = json.loads(formatter.format(record))

        assert log_data["metadata"] == {"path": "runs/index.json"}
        assert log_data["run_id"] == "run-1"
        assert log_data["test_name"] == "login"

    def test_unset_context_fields_omitted(self):
        """Test context fields bound to None are left out."""
        formatter = StructuredFormatter("session-123")

        log_data = json.loads(formatter.format(_record(run_id=None, status="failed")))

        assert "run_id" not in log_data
        assert log_data["status"] == "failed"

    def test_format_with_exception(self):
        """Test exceptions are rendered into the entry."""
        formatter = StructuredFormatter("session-123")
        try:
            raise ValueError("boom")
        except ValueError:
            record = _record(level=logging.ERROR)
            record.exc_info = sys.exc_info()

        log_data = json.loads(formatter.format(record))

        assert "ValueError: boom" in log_data["exception"]


class TestTextFormatter:
    """Test cases for TextFormatter."""

    def test_run_id_preferred_over_session(self):
        """Test that the run id is shown when present."""
        formatter = TextFormatter("session-abcdefgh")

        with_run = formatter.format(_record(run_id="12345678-aaaa"))
        without_run = formatter.format(_record())

        assert "(run: 12345678)" in with_run
        assert "(session: session-)" in without_run

    def test_test_name_follows_run_id(self):
        """Test the test name is shown beside the run id."""
        formatter = TextFormatter("session")

        message = formatter.format(_record(run_id="12345678-aaaa", test_name="create-sales-order"))

        assert "(run: 12345678 create-sales-order)" in message

    def test_metadata_rendered(self):
        """Test metadata is appended as key=value pairs."""
        formatter = TextFormatter("session")

        message = formatter.format(_record(metadata={"a": 1, "b": "x"}))

        assert "a=1 | b=x" in message


class TestSetupLogging:
    """Test cases for setup_logging."""

    def test_ci_mode_console_only(self):
        """Test CI sessions log JSON to the console only."""
        config = Config()
        stream = io.StringIO()

        root = setup_logging(config, "session-1", stream=stream)
        logging.getLogger("workbench.sample").warning("hello")

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        assert json.loads(stream.getvalue().strip().splitlines()[-1])["message"] == "hello"

    @patch.dict(os.environ, {"CI": "false", "QA_WORKBENCH_LOG_LEVEL": "DEBUG"})
    def test_desktop_adds_file_handlers(self, isolated_environment):
        """Test desktop sessions add the rotating and debug log files."""
        config = Config()

        root = setup_logging(config, "session-12345678", stream=io.StringIO())

        assert len(root.handlers) == 3
        assert (isolated_environment / "logs" / "qa-workbench.log").exists()
        assert (isolated_environment / "logs" / "debug" / "debug-session-.log").exists()


class TestLoggerHelpers:
    """Test cases for get_logger and the timing helpers."""

    def test_get_logger_without_context(self):
        """Test plain loggers are returned without context."""
        assert isinstance(get_logger("workbench.plain"), logging.Logger)

    def test_get_logger_with_context(self):
        """Test context is merged into every record."""
        adapter = get_logger("workbench.ctx", run_id="run-9")
        assert isinstance(adapter, ContextAdapter)

        msg, kwargs = adapter.process("hi", {"extra": {"metadata": {"k": 1}}})

        assert kwargs["extra"]["run_id"] == "run-9"
        assert kwargs["extra"]["metadata"] == {"k": 1}

    def test_log_performance(self):
        """Test performance entries carry operation and duration."""
        logger = MagicMock()

        log_performance(logger, "trace_relocation", 1.5, trace_count=2)

        args, kwargs = logger.info.call_args
        assert "trace_relocation completed in 1.50s" in args[0]
        assert kwargs["extra"]["metadata"]["trace_count"] == 2

    def test_log_process_call_levels(self):
        """Test failures are logged at warning level."""
        logger = MagicMock()

        log_process_call(logger, "npm install", 2.0, 0)
        log_process_call(logger, "npm install", 2.0, None)

        assert logger.log.call_args_list[0][0][0] == logging.DEBUG
        assert logger.log.call_args_list[1][0][0] == logging.WARNING
        assert logger.log.call_args_list[1][1]["extra"]["metadata"]["success"] is False


class TestRunContext:
    """Test cases for run_context and RunContextFilter."""

    def _last_entry(self, stream):
        return json.loads(stream.getvalue().strip().splitlines()[-1])

    def test_bound_fields_reach_records(self):
        """Test records logged inside a run context carry its fields."""
        stream = io.StringIO()
        setup_logging(Config(), "session-1", stream=stream)
        logger = logging.getLogger("workbench.sample")

        with run_context(run_id="run-1", test_name="create-sales-order"):
            logger.warning("inside")
        entry = self._last_entry(stream)
        logger.warning("outside")

        assert entry["run_id"] == "run-1"
        assert entry["test_name"] == "create-sales-order"
        assert "run_id" not in self._last_entry(stream)

    def test_explicit_extra_wins(self):
        """Test fields passed with the call are not overwritten."""
        context_filter = RunContextFilter()
        record = _record(run_id="explicit")

        with run_context(run_id="bound", test_name="login"):
            assert context_filter.filter(record) is True

        assert record.run_id == "explicit"
        assert record.test_name == "login"

    def test_nested_contexts_merge(self):
        """Test inner contexts add to the outer fields and are undone on exit."""
        context_filter = RunContextFilter()

        with run_context(run_id="run-1"):
            with run_context(status="failed"):
                inner = _record()
                context_filter.filter(inner)
            outer = _record()
            context_filter.filter(outer)

        assert (inner.run_id, inner.status) == ("run-1", "failed")
        assert outer.run_id == "run-1"
        assert not hasattr(outer, "status")

    @pytest.mark.asyncio
    async def test_tasks_keep_their_own_run(self):
        """Test concurrent tasks each log with the run they were started in."""
        context_filter = RunContextFilter()
        seen = {}

        async def run(run_id):
            with run_context(run_id=run_id):
                await asyncio.sleep(0.01)
                record = _record()
                context_filter.filter(record)
                seen[run_id] = record.run_id

        await asyncio.gather(run("a"), run("b"))

        assert seen == {"a": "a", "b": "b"}
