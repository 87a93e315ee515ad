"""Failure forensics and locator health for QA Workbench."""

from .models import (
    AssertionFailure,
    FailedLocator,
    FailureArtifact,
    LocatorState,
    LocatorStatus,
    LocatorType,
)
from .heuristics import guess_assertion_failure, guess_failed_locator

__all__ = [
    "AssertionFailure",
    "FailedLocator",
    "FailureArtifact",
    "LocatorState",
    "LocatorStatus",
    "LocatorType",
    "guess_assertion_failure",
    "guess_failed_locator",
]
