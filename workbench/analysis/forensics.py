"""
Failure forensics reporter hook.

The generated Node reporter shim pipes one JSON payload per finished test
into ``python -m workbench.analysis.forensics``. For failed and timed-out
tests this writes ``<bundleDir>/<identity>_failure.json``. The hook runs
inside the test engine's process tree, possibly for several tests at once,
and never lets an error escape: a broken extraction must not fail the test.
"""

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from ..core.config import Config
from ..core.logging_config import setup_logging
from ..persistence.store import read_json, write_json_atomic
from ..workspace.layout import WorkspaceLayout, identity_from_location
from .heuristics import (
    guess_assertion_failure,
    guess_failed_locator,
    parse_stack_location,
    strip_ansi,
    title_slug,
)
from .models import ErrorDetails, FailureArtifact, SourceLocation

logger = logging.getLogger(__name__)

FAILED_OUTCOMES = ("failed", "timedOut")


class FailureForensicsExtractor:
    """Turns a finished-test payload into a failure artifact on disk."""

    def __init__(self, workspace_path: Optional[str] = None):
        root = workspace_path or os.getenv("WORKBENCH_WORKSPACE") or os.getcwd()
        self.layout = WorkspaceLayout(root)

    def resolve_identity(self, payload: Dict[str, Any]) -> str:
        location = payload.get("location") or {}
        file_path = location.get("file") if isinstance(location, dict) else None
        if file_path:
            return identity_from_location(file_path)
        return title_slug(payload.get("title") or "")

    def resolve_bundle_dir(self, payload: Dict[str, Any], identity: str) -> Path:
        location = payload.get("location") or {}
        file_path = location.get("file") if isinstance(location, dict) else None
        if file_path:
            bundle_dir = Path(file_path).parent
            if not bundle_dir.is_absolute():
                bundle_dir = self.layout.root / bundle_dir
        else:
            bundle_dir = self.layout.bundle_dir(identity)
        bundle_dir.mkdir(parents=True, exist_ok=True)
        return bundle_dir

    @staticmethod
    def _location(value: Any) -> Optional[SourceLocation]:
        if not isinstance(value, dict) or not value.get("file"):
            return None
        try:
            return SourceLocation.model_validate(value)
        except ValueError:
            logger.debug("Ignoring malformed location")
            return None

    def _error_details(self, payload: Dict[str, Any]) -> ErrorDetails:
        error = payload.get("error") or {}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        message = strip_ansi(error.get("message"))
        stack = strip_ansi(error.get("stack"))

        # error location, then the test's own location, then the stack
        location = (
            self._location(error.get("location"))
            or self._location(payload.get("location"))
            or parse_stack_location(stack)
            or SourceLocation.unknown()
        )
        return ErrorDetails(message=message, stack=stack, location=location)

    def _attachment(self, payload: Dict[str, Any], kind: str) -> Optional[str]:
        for attachment in payload.get("attachments") or []:
            if not isinstance(attachment, dict) or not attachment.get("path"):
                continue
            name = str(attachment.get("name") or "")
            content_type = str(attachment.get("contentType") or "")
            if kind == "screenshot" and (name == "screenshot" or content_type.startswith("image/")):
                return self.layout.relative_if_inside(attachment["path"])
            if kind == "trace" and (name == "trace" or attachment["path"].endswith(".zip")):
                return self.layout.relative_if_inside(attachment["path"])
        return None

    def build_artifact(self, payload: Dict[str, Any], identity: str) -> FailureArtifact:
        """Assemble the artifact; heuristic guesses are optional extras."""
        error = self._error_details(payload)

        title_path = [t for t in (payload.get("titlePath") or []) if t]
        full_title = " > ".join(title_path) or str(payload.get("title") or identity)

        artifact = FailureArtifact(
            test_name=identity,
            full_title=full_title,
            status=str(payload.get("status") or "failed"),
            error=error,
            duration=payload.get("duration") or 0,
            retry_count=payload.get("retry") or 0,
            run_id=payload.get("runId") or os.getenv("WORKBENCH_RUN_ID") or None,
            screenshot=self._attachment(payload, "screenshot"),
            trace=self._attachment(payload, "trace"),
        )

        try:
            artifact.failed_locator = guess_failed_locator(error.message, error.stack)
        except Exception:
            logger.warning("Locator extraction failed", exc_info=True)

        try:
            artifact.assertion_failure = guess_assertion_failure(error.message, error.stack)
        except Exception:
            logger.warning("Assertion extraction failed", exc_info=True)

        return artifact

    def handle(self, payload: Dict[str, Any]) -> Optional[Path]:
        """
        Write the failure artifact for a finished test.

        Returns the artifact path, or ``None`` for passing or skipped tests
        and for any failure along the way.
        """
        status = payload.get("status")
        if status not in FAILED_OUTCOMES:
            return None

        try:
            identity = self.resolve_identity(payload)
            bundle_dir = self.resolve_bundle_dir(payload, identity)
            artifact = self.build_artifact(payload, identity)
            path = self.layout.failure_artifact_path(identity, bundle_dir)
            write_json_atomic(path, artifact.to_json_dict())
        except Exception:
            logger.error(
                "Failed to write failure artifact",
                exc_info=True,
                extra={"metadata": {"title": payload.get("title")}},
            )
            return None

        logger.info(
            f"Failure artifact written for {identity}",
            extra={
                "test_name": identity,
                "metadata": {
                    "path": str(path),
                    "failed_locator": artifact.failed_locator.locator_key if artifact.failed_locator else None,
                    "assertion": artifact.assertion_failure.assertion_type if artifact.assertion_failure else None,
                },
            },
        )
        return path


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def read_failure_artifact(
    layout: WorkspaceLayout,
    test_name: str,
    bundle_dir: Optional[Path] = None,
    run_id: Optional[str] = None,
    started_at: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Load a test's failure artifact if it belongs to the given run.

    An artifact stamped with another run id is stale. Unstamped artifacts
    (older hook versions, hand-written files) are stale when written before
    ``started_at``. Without ``run_id`` and ``started_at`` any artifact is
    returned.
    """
    data = read_json(layout.failure_artifact_path(test_name, bundle_dir), default=None)
    if not isinstance(data, dict):
        return None

    stamped = data.get("runId")
    if run_id and stamped:
        if stamped != run_id:
            logger.info(
                f"Ignoring failure artifact of an earlier run for {test_name}",
                extra={"run_id": run_id, "metadata": {"artifact_run_id": stamped}},
            )
            return None
        return data

    since = _parse_timestamp(started_at)
    if since is not None:
        written = _parse_timestamp(data.get("timestamp"))
        if written is None or written < since:
            logger.info(
                f"Ignoring failure artifact written before the run started for {test_name}",
                extra={"run_id": run_id, "metadata": {"timestamp": data.get("timestamp")}},
            )
            return None
    return data


def main(stdin=None) -> int:
    """Reporter hook entry point: one JSON payload on stdin, always exits 0."""
    try:
        config = Config()
        # stderr keeps the engine's own stdout stream clean
        setup_logging(config, str(uuid.uuid4()), stream=sys.stderr)
    except Exception as e:
        print(f"forensics: logging setup failed: {e}", file=sys.stderr)

    try:
        raw = (stdin or sys.stdin).read()
        payload = json.loads(raw) if raw.strip() else {}
        if not isinstance(payload, dict):
            raise ValueError("payload must be a JSON object")
    except (ValueError, OSError) as e:
        logger.error(f"Unreadable forensics payload: {e}")
        return 0

    try:
        FailureForensicsExtractor(payload.get("workspace")).handle(payload)
    except Exception:
        logger.error("Forensics hook failed", exc_info=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
