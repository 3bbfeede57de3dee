# harness/storage/document_store.py
"""
Document store used as the Dataset backing.

Stands in for the document database driver: collections live inside a
namespace (one namespace per engine id) so one engine can never open or
drop another engine's collections.
"""
from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List

from harness.utils.errors import StorageFailure
from harness.utils.filesystem import FileSystem
from harness.utils.keyed_lock import KeyedLock
from harness.utils.logger import logs


class Collection(ABC):
    @abstractmethod
    def insert(self, doc: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def find(self) -> List[Dict[str, Any]]:
        """All documents in insertion order (a snapshot)."""
        ...

    @abstractmethod
    def count(self) -> int:
        ...

    @abstractmethod
    def drop(self) -> None:
        ...


class DocumentStore(ABC):
    @abstractmethod
    def collection(self, namespace: str, name: str) -> Collection:
        ...

    @abstractmethod
    def drop_namespace(self, namespace: str) -> None:
        ...

    @abstractmethod
    def namespaces(self) -> List[str]:
        ...


# ============================================================
# In-memory backend
# ============================================================
class _MemoryCollection(Collection):
    def __init__(self, docs: List[Dict[str, Any]], lock: threading.Lock):
        self._docs = docs
        self._lock = lock

    def insert(self, doc: Dict[str, Any]) -> None:
        with self._lock:
            self._docs.append(dict(doc))

    def find(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(d) for d in self._docs]

    def count(self) -> int:
        with self._lock:
            return len(self._docs)

    def drop(self) -> None:
        with self._lock:
            self._docs.clear()


class MemoryDocumentStore(DocumentStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}

    def collection(self, namespace: str, name: str) -> Collection:
        with self._lock:
            docs = self._data.setdefault(namespace, {}).setdefault(name, [])
        return _MemoryCollection(docs, self._lock)

    def drop_namespace(self, namespace: str) -> None:
        with self._lock:
            collections = self._data.pop(namespace, {})
            for docs in collections.values():
                docs.clear()

    def namespaces(self) -> List[str]:
        with self._lock:
            return sorted(ns for ns, cols in self._data.items() if any(cols.values()))


# ============================================================
# File backend: <root>/<namespace>/<name>.jsonl
# ============================================================
class _FileCollection(Collection):
    def __init__(self, path: Path, namespace: str, locks: KeyedLock):
        self.path = path
        self.namespace = namespace
        self._locks = locks

    def insert(self, doc: Dict[str, Any]) -> None:
        line = json.dumps(doc, ensure_ascii=False, default=str)
        with self._locks.hold(self.namespace):
            try:
                FileSystem.durable_append(self.path, line)
            except OSError as e:
                raise StorageFailure(f"dataset write failed: {e}") from e

    def find(self) -> List[Dict[str, Any]]:
        with self._locks.hold(self.namespace):
            if not self.path.exists():
                return []
            try:
                lines = self.path.read_text(encoding="utf-8").splitlines()
            except OSError as e:
                raise StorageFailure(f"dataset read failed: {e}") from e

        docs = []
        for n, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                docs.append(json.loads(line))
            except ValueError:
                logs.warning(f"[DocumentStore] skip unreadable line {n} in {self.path}")
        return docs

    def count(self) -> int:
        return len(self.find())

    def drop(self) -> None:
        with self._locks.hold(self.namespace):
            FileSystem.remove(self.path)


class FileDocumentStore(DocumentStore):
    def __init__(self, root: str | Path):
        self.root = Path(root)
        # one lock per namespace, shared by all of its collections
        self._locks = KeyedLock()

    def collection(self, namespace: str, name: str) -> Collection:
        path = self.root / namespace / f"{name}.jsonl"
        return _FileCollection(path, namespace, self._locks)

    def drop_namespace(self, namespace: str) -> None:
        with self._locks.hold(namespace):
            try:
                FileSystem.remove(self.root / namespace)
            except OSError as e:
                raise StorageFailure(f"dataset drop failed: {e}", engine_id=namespace) from e

    def namespaces(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())
