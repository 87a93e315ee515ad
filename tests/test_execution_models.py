"""
Unit tests for run request, record and event models.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from workbench.core.exceptions import InvalidTransitionError
from workbench.execution.models import (
    CloudSessionMeta,
    RunEvent,
    RunEventType,
    RunMode,
    RunRecord,
    RunRequest,
    RunStatus,
)


def _record(**kwargs):
    return RunRecord(run_id="run-1", test_name="login", spec_rel_path="tests/login.spec.ts", **kwargs)


class TestRunRequest:
    """Test cases for RunRequest."""

    def test_defaults(self):
        """Test a minimal request runs locally."""
        request = RunRequest(workspace_path="/ws", spec_path_or_test_name="login")

        assert request.run_mode == RunMode.LOCAL
        assert request.dataset_filter is None

    def test_empty_spec_rejected(self):
        """Test blank test names are rejected."""
        with pytest.raises(PydanticValidationError):
            RunRequest(workspace_path="/ws", spec_path_or_test_name="   ")

    def test_unknown_fields_rejected(self):
        """Test unexpected fields are rejected."""
        with pytest.raises(PydanticValidationError):
            RunRequest(workspace_path="/ws", spec_path_or_test_name="login", retries=3)


class TestRunRecord:
    """Test cases for RunRecord."""

    def test_new_record_is_running(self):
        """Test new records start running without a finish time."""
        record = _record()

        assert record.status == RunStatus.RUNNING
        assert record.is_terminal is False
        assert record.finished_at is None
        assert record.started_at.endswith("Z")

    def test_finish_sets_finished_at(self):
        """Test finishing stamps the finish time."""
        record = _record().finish(RunStatus.FAILED, finished_at="2024-01-01T00:00:00.000Z")

        assert record.status == RunStatus.FAILED
        assert record.is_terminal is True
        assert record.finished_at == "2024-01-01T00:00:00.000Z"

    def test_terminal_status_is_final(self):
        """Test a terminal record cannot change status again."""
        record = _record().finish(RunStatus.PASSED)

        with pytest.raises(InvalidTransitionError) as exc_info:
            record.finish(RunStatus.FAILED)

        assert exc_info.value.context["from_status"] == "passed"

    def test_finish_requires_terminal_status(self):
        """Test a record cannot be finished as running or skipped."""
        with pytest.raises(InvalidTransitionError):
            _record().finish(RunStatus.RUNNING)
        with pytest.raises(InvalidTransitionError):
            _record().finish(RunStatus.SKIPPED)

    def test_run_id_is_immutable(self):
        """Test the run id cannot be reassigned."""
        record = _record()

        with pytest.raises(AttributeError):
            record.run_id = "run-2"
        record.report_path = "allure-report/run-1/index.html"

    def test_camel_case_round_trip(self):
        """Test persisted documents validate back into records."""
        record = _record(cloud_session_meta=CloudSessionMeta(session_id="s" * 40))

        data = record.to_json_dict()

        assert data["cloudSessionMeta"] == {"sessionId": "s" * 40}
        assert RunRecord.model_validate(data).cloud_session_meta.session_id == "s" * 40


class TestRunEvent:
    """Test cases for RunEvent."""

    def test_factories(self):
        """Test event factory methods."""
        assert RunEvent.log("r", "line").type == RunEventType.LOG
        assert RunEvent.error("r", "bad").message == "bad"
        assert RunEvent.started("r").status == "started"

    def test_finished_keeps_null_exit_code(self):
        """Test finished events always carry an exit code key."""
        data = RunEvent.finished("r", RunStatus.FAILED, None).to_dict()

        assert data["type"] == "finished"
        assert data["status"] == "failed"
        assert data["exitCode"] is None
        assert "exitCode" not in RunEvent.log("r", "x").to_dict()


class TestCloudSessionMeta:
    def test_is_empty(self):
        assert CloudSessionMeta().is_empty() is True
        assert CloudSessionMeta(build_id="b").is_empty() is False
