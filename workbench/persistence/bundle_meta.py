"""Per-test metadata stored beside each bundle (``<identity>.meta.json``)."""

import logging
from typing import Any, Dict, List, Optional

from ..analysis.models import utc_now_iso
from ..workspace.layout import WorkspaceLayout
from .store import JsonFileStore

logger = logging.getLogger(__name__)


class PerTestMetaStore:
    """
    Last-run summary of each logical test, independent of any one run.

    Updates merge into the existing file so keys written by other tools
    (descriptions, tags, dataset bindings) survive.
    """

    def __init__(self, layout: WorkspaceLayout):
        self.layout = layout
        self.store = JsonFileStore(self._path_for, known_keys=layout.test_identities)

    def _path_for(self, identity: str):
        return self.layout.meta_path(identity)

    def record_run(self, identity: str, run_id: str, status: str, run_at: Optional[str] = None) -> Dict[str, Any]:
        """Stamp ``lastRunAt``, ``lastStatus`` and ``lastRunId`` for a test."""
        now = utc_now_iso()
        existing = self.store.read_one(identity) or {}
        changes: Dict[str, Any] = {
            "lastRunAt": run_at or now,
            "lastStatus": status,
            "lastRunId": run_id,
            "updatedAt": now,
        }
        if not existing.get("name"):
            changes["name"] = identity
        if not existing.get("createdAt"):
            changes["createdAt"] = now

        meta = self.store.upsert(identity, changes, merge=True)
        logger.debug(
            f"Updated metadata for {identity}",
            extra={"run_id": run_id, "metadata": {"status": status}},
        )
        return meta

    def get(self, identity: str) -> Optional[Dict[str, Any]]:
        return self.store.read_one(identity)

    def read_all(self) -> List[Dict[str, Any]]:
        """Metadata of every test in the workspace that has been run."""
        return self.store.read_all()
