"""
Data models for test runs.

Defines Pydantic models for run requests, persisted run records and the
event stream emitted while a run progresses.
"""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..analysis.models import AssertionFailure, CamelModel, utc_now_iso
from ..core.exceptions import InvalidTransitionError


class RunMode(str, Enum):
    """Where the browser runs."""

    LOCAL = "local"
    CLOUD = "cloud"


class RunStatus(str, Enum):
    """Run lifecycle status."""

    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = (RunStatus.PASSED, RunStatus.FAILED)


class RunEventType(str, Enum):
    LOG = "log"
    ERROR = "error"
    STATUS = "status"
    FINISHED = "finished"


class RunRequest(BaseModel):
    """Input for one run. Never persisted."""

    model_config = ConfigDict(extra="forbid")

    workspace_path: str = Field(..., description="Workspace root directory")
    spec_path_or_test_name: str = Field(
        ..., description="Spec file path or logical test name"
    )
    run_mode: RunMode = Field(RunMode.LOCAL, description="Local or cloud execution")
    target_descriptor: Optional[str] = Field(
        None, description="Cloud browser/device target descriptor"
    )
    dataset_filter: Optional[List[str]] = Field(
        None, description="Dataset row ids to run"
    )

    @field_validator("spec_path_or_test_name")
    @classmethod
    def validate_spec(cls, v):
        if not v or not v.strip():
            raise ValueError("Spec path or test name cannot be empty")
        return v


class CloudSessionMeta(CamelModel):
    """Identifiers of a remote browser-grid session."""

    session_id: Optional[str] = None
    build_id: Optional[str] = None
    dashboard_url: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.session_id or self.build_id or self.dashboard_url)


class RunRecord(CamelModel):
    """
    Persisted record of one run.

    ``status`` leaves ``running`` only through :meth:`finish`, which also
    stamps ``finished_at``.
    """

    run_id: str
    test_name: str
    spec_rel_path: str
    status: RunStatus = RunStatus.RUNNING
    started_at: str = Field(default_factory=utc_now_iso)
    finished_at: Optional[str] = None
    source: RunMode = RunMode.LOCAL
    trace_paths: List[str] = Field(default_factory=list)
    report_path: Optional[str] = None
    cloud_session_meta: Optional[CloudSessionMeta] = None
    assertion_failures: Optional[List[AssertionFailure]] = None

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "run_id" and getattr(self, "run_id", None) is not None:
            raise AttributeError("run_id cannot be changed once a record exists")
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(self, status: RunStatus, finished_at: Optional[str] = None) -> "RunRecord":
        """
        Move the record from ``running`` to a terminal status.

        Raises:
            InvalidTransitionError: if the record already left ``running`` or
                ``status`` is not terminal
        """
        status = RunStatus(status)
        if self.status != RunStatus.RUNNING or status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"Cannot move run {self.run_id} from {self.status.value} to {status.value}",
                run_id=self.run_id,
                from_status=self.status.value,
                to_status=status.value,
            )
        self.status = status
        self.finished_at = finished_at or utc_now_iso()
        return self


class RunEvent(CamelModel):
    """One notification on a run's event stream."""

    type: RunEventType
    run_id: str
    message: Optional[str] = None
    status: Optional[str] = None
    exit_code: Optional[int] = None
    timestamp: str = Field(default_factory=utc_now_iso)

    @classmethod
    def log(cls, run_id: str, message: str) -> "RunEvent":
        return cls(type=RunEventType.LOG, run_id=run_id, message=message)

    @classmethod
    def error(cls, run_id: str, message: str) -> "RunEvent":
        return cls(type=RunEventType.ERROR, run_id=run_id, message=message)

    @classmethod
    def started(cls, run_id: str) -> "RunEvent":
        return cls(type=RunEventType.STATUS, run_id=run_id, status="started")

    @classmethod
    def finished(cls, run_id: str, status: RunStatus, exit_code: Optional[int]) -> "RunEvent":
        return cls(
            type=RunEventType.FINISHED,
            run_id=run_id,
            status=RunStatus(status).value,
            exit_code=exit_code,
        )

    def to_dict(self) -> dict:
        """Event as sent to listeners; ``exitCode`` is kept even when None."""
        data = self.to_json_dict()
        if self.type == RunEventType.FINISHED:
            data["exitCode"] = self.exit_code
        return data
