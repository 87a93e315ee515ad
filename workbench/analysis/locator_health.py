"""
Locator health registry and the failure feedback that downgrades it.

``locators/status.json`` maps ``<type>:<locator>`` keys to status records.
The feedback path only ever marks a locator ``failing``; promotion back to
``healthy`` is left to whoever validates locators.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..persistence.store import JsonMapStore
from ..workspace.layout import WorkspaceLayout
from .forensics import read_failure_artifact
from .models import LocatorState, LocatorStatus, utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_NOTE_LENGTH = 200


def locator_key(locator_type: str, locator: str) -> str:
    """Registry key of a locator expression."""
    return f"{locator_type}:{locator.strip()}"


class LocatorStatusRegistry:
    """Read and write access to a workspace's locator statuses."""

    def __init__(self, layout: WorkspaceLayout, store: Optional[JsonMapStore] = None):
        self.layout = layout
        self.store = store or JsonMapStore(layout.locator_status_path)

    def set_status(
        self,
        key: str,
        state: Union[LocatorState, str],
        note: Optional[str] = None,
        test_name: Optional[str] = None,
    ) -> LocatorStatus:
        """
        Persist a status for ``key``, creating the entry on first reference.

        Keys other than the four status fields already on the entry are kept.
        """
        status = LocatorStatus(
            state=LocatorState(state),
            note=note,
            updated_at=utc_now_iso(),
            last_test=test_name,
        )
        document = status.to_json_dict()
        # Explicit None clears a stale note from an earlier failure
        document.setdefault("note", None)
        stored = self.store.upsert(key, document, merge=True)
        logger.info(
            f"Locator status set: {key} -> {status.state.value}",
            extra={"metadata": {"locator_key": key, "test_name": test_name}},
        )
        return LocatorStatus.model_validate(stored)

    def get(self, key: str) -> Optional[LocatorStatus]:
        document = self.store.read_one(key)
        if document is None:
            return None
        try:
            return LocatorStatus.model_validate(document)
        except PydanticValidationError:
            logger.warning(f"Malformed locator status for {key}")
            return None

    def read_all(self) -> Dict[str, LocatorStatus]:
        statuses = {}
        for key, document in self.store.items().items():
            try:
                statuses[key] = LocatorStatus.model_validate(document)
            except PydanticValidationError:
                logger.warning(f"Malformed locator status for {key}")
        return statuses


class LocatorHealthFeedback:
    """Marks the locator named by a failure artifact as failing."""

    def __init__(
        self,
        layout: WorkspaceLayout,
        registry: Optional[LocatorStatusRegistry] = None,
        note_max_length: int = DEFAULT_NOTE_LENGTH,
    ):
        self.layout = layout
        self.registry = registry or LocatorStatusRegistry(layout)
        self.note_max_length = note_max_length

    def build_note(self, test_name: str, message: str) -> str:
        return f"Failed in test '{test_name}': {(message or '')[: self.note_max_length]}"

    def on_test_failed(
        self,
        test_name: str,
        bundle_dir: Optional[Path] = None,
        run_id: Optional[str] = None,
        started_at: Optional[str] = None,
    ) -> Optional[LocatorStatus]:
        """
        Downgrade the locator the test's failure artifact names.

        With ``run_id``/``started_at`` an artifact left by an earlier run is
        ignored. Returns the new status, or ``None`` when there is no
        artifact for this run or it names no locator.
        """
        data = read_failure_artifact(self.layout, test_name, bundle_dir, run_id=run_id, started_at=started_at)
        if data is None:
            logger.debug(f"No failure artifact for {test_name}")
            return None

        # Read leniently; artifacts may come from an older hook version
        failed_locator = data.get("failedLocator")
        key = failed_locator.get("locatorKey") if isinstance(failed_locator, dict) else None
        if not key:
            return None

        error = data.get("error") if isinstance(data.get("error"), dict) else {}
        note = self.build_note(test_name, str(error.get("message") or ""))
        return self.registry.set_status(
            key,
            LocatorState.FAILING,
            note=note,
            test_name=test_name,
        )
