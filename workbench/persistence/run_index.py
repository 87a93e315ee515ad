"""Workspace-scoped ledger of run records (``runs/index.json``)."""

import logging
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..execution.models import RunRecord
from .store import DocumentStore, JsonCollectionStore

logger = logging.getLogger(__name__)


class RunIndexStore:
    """
    Run history of one workspace, newest first.

    Records are upserted by ``runId`` and the collection is re-sorted by
    ``startedAt`` descending on every write.
    """

    def __init__(self, index_path: Path, store: Optional[DocumentStore] = None):
        self.index_path = Path(index_path)
        self.store = store or JsonCollectionStore(
            self.index_path,
            collection="runs",
            id_field="runId",
            sort_field="startedAt",
            descending=True,
        )

    def upsert(self, record: RunRecord) -> RunRecord:
        self.store.upsert(record.run_id, record.to_json_dict())
        logger.debug(
            "Run record saved",
            extra={"run_id": record.run_id, "metadata": {"status": record.status.value}},
        )
        return record

    def list(self, limit: Optional[int] = None) -> List[RunRecord]:
        records = []
        for document in self.store.read_all():
            try:
                records.append(RunRecord.model_validate(document))
            except PydanticValidationError as e:
                logger.warning(
                    f"Skipping malformed run record: {e.error_count()} error(s)",
                    extra={"metadata": {"run_id": document.get("runId")}},
                )
        return records[:limit] if limit else records

    def get(self, run_id: str) -> Optional[RunRecord]:
        document = self.store.read_one(run_id)
        if document is None:
            return None
        return RunRecord.model_validate(document)
