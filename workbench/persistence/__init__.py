"""Workspace persistence for QA Workbench."""

from .store import (
    DocumentStore,
    JsonCollectionStore,
    JsonMapStore,
    JsonFileStore,
    read_json,
    write_json_atomic,
)
from .run_index import RunIndexStore
from .bundle_meta import PerTestMetaStore

__all__ = [
    "DocumentStore",
    "JsonCollectionStore",
    "JsonMapStore",
    "JsonFileStore",
    "read_json",
    "write_json_atomic",
    "RunIndexStore",
    "PerTestMetaStore",
]
