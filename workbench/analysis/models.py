"""
Data models for failure forensics and locator health.

Persisted with camelCase field names so the files stay readable by the
Node side of the workbench.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json_dict(self) -> Dict[str, Any]:
        """Dictionary in the persisted (camelCase) form."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class LocatorType(str, Enum):
    """Locator strategies recognised by the workbench."""

    ROLE = "role"
    LABEL = "label"
    TEXT = "text"
    PLACEHOLDER = "placeholder"
    TESTID = "testid"
    CSS = "css"
    XPATH = "xpath"
    D365_CONTROLNAME = "d365-controlname"


class LocatorState(str, Enum):
    """Health states of a locator."""

    HEALTHY = "healthy"
    WARNING = "warning"
    FAILING = "failing"
    UNTESTED = "untested"


class SourceLocation(CamelModel):
    file: str
    line: int = 0
    column: int = 0

    @classmethod
    def unknown(cls) -> "SourceLocation":
        return cls(file="unknown", line=0, column=0)


class ErrorDetails(CamelModel):
    message: str = ""
    stack: str = ""
    location: SourceLocation = Field(default_factory=SourceLocation.unknown)


class FailedLocator(CamelModel):
    """Best guess at the locator a failed step was waiting on."""

    locator: str
    type: LocatorType
    locator_key: str


class AssertionFailure(CamelModel):
    """Best guess at the assertion that failed and its values."""

    assertion_type: str
    target: str
    expected: Optional[str] = None
    actual: Optional[str] = None


class FailureArtifact(CamelModel):
    """Structured record of why one test failed."""

    test_name: str
    full_title: str
    status: str
    error: ErrorDetails = Field(default_factory=ErrorDetails)
    duration: float = 0
    retry_count: int = 0
    timestamp: str = Field(default_factory=utc_now_iso)
    run_id: Optional[str] = None
    screenshot: Optional[str] = None
    trace: Optional[str] = None
    failed_locator: Optional[FailedLocator] = None
    assertion_failure: Optional[AssertionFailure] = None


class LocatorStatus(CamelModel):
    """Current health of one locator, keyed by its locator key."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    state: LocatorState = LocatorState.UNTESTED
    note: Optional[str] = None
    updated_at: str = Field(default_factory=utc_now_iso)
    last_test: Optional[str] = None
