"""
Embedded document stores backed by JSON files.

All workspace state (run index, per-test metadata, locator statuses) goes
through the small ``DocumentStore`` interface so orchestration code never
touches file formats directly. Writes are whole-file read-modify-write and
assume a single writer per file.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..core.exceptions import FileOperationError

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


def write_json_atomic(path: Path, data: Any) -> None:
    """
    Write JSON through a temp file in the same directory, then replace.

    Raises:
        FileOperationError: if the directory or file cannot be written
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.write("\n")
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except OSError as e:
        raise FileOperationError(
            f"Failed to write {path}: {e}", file_path=str(path), operation="write"
        ) from e


def read_json(path: Path, default: Any = None) -> Any:
    """Read a JSON file, returning ``default`` when missing or unreadable."""
    path = Path(path)
    if not path.exists():
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(
            f"Ignoring unreadable JSON file {path}: {e}",
            extra={"metadata": {"path": str(path)}},
        )
        return default


class DocumentStore(ABC):
    """Narrow storage interface: upsert, read all, read one."""

    @abstractmethod
    def upsert(self, key: str, document: Document, merge: bool = False) -> Document:
        """Insert or replace (or merge into) the document stored at ``key``."""

    @abstractmethod
    def read_all(self) -> List[Document]:
        """All documents in the store's natural order."""

    @abstractmethod
    def read_one(self, key: str) -> Optional[Document]:
        """The document at ``key`` or ``None``."""


def _merged(existing: Optional[Document], document: Document, merge: bool) -> Document:
    if merge and existing:
        combined = dict(existing)
        combined.update(document)
        return combined
    return dict(document)


class JsonCollectionStore(DocumentStore):
    """
    Array of documents under one top-level key, e.g. ``{"runs": [...]}``.

    Documents are identified by ``id_field`` and, when ``sort_field`` is
    given, kept sorted on it (descending by default) after every upsert.
    """

    def __init__(
        self,
        path: Path,
        collection: str,
        id_field: str,
        sort_field: Optional[str] = None,
        descending: bool = True,
    ):
        self.path = Path(path)
        self.collection = collection
        self.id_field = id_field
        self.sort_field = sort_field
        self.descending = descending

    def _load(self) -> Dict[str, Any]:
        data = read_json(self.path, default=None)
        if isinstance(data, list):
            # Bare array form
            data = {self.collection: data}
        if not isinstance(data, dict) or not isinstance(data.get(self.collection), list):
            data = {self.collection: []}
        return data

    def upsert(self, key: str, document: Document, merge: bool = False) -> Document:
        data = self._load()
        items: List[Document] = [d for d in data[self.collection] if isinstance(d, dict)]

        stored = None
        for index, item in enumerate(items):
            if item.get(self.id_field) == key:
                stored = _merged(item, document, merge)
                stored[self.id_field] = key
                items[index] = stored
                break
        if stored is None:
            stored = dict(document)
            stored[self.id_field] = key
            items.append(stored)

        if self.sort_field:
            items.sort(key=lambda d: str(d.get(self.sort_field) or ""), reverse=self.descending)

        data[self.collection] = items
        write_json_atomic(self.path, data)
        return stored

    def read_all(self) -> List[Document]:
        return [d for d in self._load()[self.collection] if isinstance(d, dict)]

    def read_one(self, key: str) -> Optional[Document]:
        for item in self.read_all():
            if item.get(self.id_field) == key:
                return item
        return None


class JsonMapStore(DocumentStore):
    """Object keyed by document key, e.g. ``locators/status.json``."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> Dict[str, Document]:
        data = read_json(self.path, default={})
        return data if isinstance(data, dict) else {}

    def upsert(self, key: str, document: Document, merge: bool = False) -> Document:
        data = self._load()
        existing = data.get(key) if isinstance(data.get(key), dict) else None
        stored = _merged(existing, document, merge)
        data[key] = stored
        write_json_atomic(self.path, data)
        return stored

    def read_all(self) -> List[Document]:
        return [dict(v, key=k) for k, v in self._load().items() if isinstance(v, dict)]

    def read_one(self, key: str) -> Optional[Document]:
        value = self._load().get(key)
        return value if isinstance(value, dict) else None

    def items(self) -> Dict[str, Document]:
        return {k: v for k, v in self._load().items() if isinstance(v, dict)}


class JsonFileStore(DocumentStore):
    """One JSON file per document, located by ``path_for(key)``."""

    def __init__(self, path_for: Callable[[str], Path], known_keys: Optional[Callable[[], List[str]]] = None):
        self.path_for = path_for
        self.known_keys = known_keys

    def upsert(self, key: str, document: Document, merge: bool = False) -> Document:
        path = self.path_for(key)
        existing = read_json(path, default=None)
        stored = _merged(existing if isinstance(existing, dict) else None, document, merge)
        write_json_atomic(path, stored)
        return stored

    def read_all(self) -> List[Document]:
        if self.known_keys is None:
            return []
        documents = []
        for key in self.known_keys():
            document = self.read_one(key)
            if document is not None:
                documents.append(document)
        return documents

    def read_one(self, key: str) -> Optional[Document]:
        value = read_json(self.path_for(key), default=None)
        return value if isinstance(value, dict) else None
