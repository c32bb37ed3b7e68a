"""
Abstract vector store interface with exact (brute-force) backends.

- BruteForceVectorStore: full cosine scan over an in-memory matrix, optional
  JSON persistence flushed by a dirty flag and a background timer.
- PartitionedVectorStore: independent brute-force stores keyed by one
  metadata field; searches either one partition or all of them.

HNSWIndex (rag.hnsw) implements the same interface for approximate search.
Follows the abstract base + factory function pattern.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import numpy as np

from codebase_rag.errors import DimensionMismatchError

LOG = logging.getLogger("rag.vector_store")

STORE_FORMAT_VERSION = 1
DEFAULT_PARTITION = "default"


@dataclass
class VectorEntry:
    """A vector plus the metadata used for filtering."""

    id: str
    vector: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "embedding": list(self.vector), "metadata": self.metadata}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "VectorEntry":
        return cls(id=d["id"], vector=[float(x) for x in d["embedding"]], metadata=dict(d.get("metadata") or {}))


@dataclass
class VectorSearchResult:
    """A single search result from the vector store."""

    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


def matches_filter(metadata: dict[str, Any], filter_metadata: Optional[dict[str, Any]]) -> bool:
    """True when every filter key is present in metadata with an equal value."""
    if not filter_metadata:
        return True
    for key, value in filter_metadata.items():
        if key not in metadata or metadata[key] != value:
            return False
    return True


def check_vector(vector: Sequence[float], dimension: Optional[int], where: str = "vector") -> np.ndarray:
    """Convert to float64 and enforce length and finiteness. Raises on violation."""
    arr = np.asarray(vector, dtype=np.float64)
    if arr.ndim != 1:
        raise ValueError(f"{where} must be one-dimensional, got shape {arr.shape}")
    if dimension is not None and arr.shape[0] != dimension:
        raise DimensionMismatchError(dimension, arr.shape[0], where=where)
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{where} contains non-finite values")
    return arr


class VectorStore(ABC):
    """
    Abstract interface for vector storage and similarity search.

    Every entry in one store has the same dimension. Adding a vector of a
    different length, or searching with one, raises DimensionMismatchError.
    """

    #: File (or directory) name used when a ChunkIndex persists this store.
    persist_name: str = "vectors.json"

    @abstractmethod
    def add(self, id: str, vector: Sequence[float], metadata: Optional[dict[str, Any]] = None) -> None:
        """Insert or replace one entry."""

    def add_batch(self, entries: Iterable[VectorEntry]) -> None:
        for entry in entries:
            self.add(entry.id, entry.vector, entry.metadata)

    @abstractmethod
    def search(
        self,
        query: Sequence[float],
        k: int = 10,
        filter_metadata: Optional[dict[str, Any]] = None,
    ) -> list[VectorSearchResult]:
        """Return up to k results sorted by non-increasing score."""

    @abstractmethod
    def delete(self, id: str) -> bool:
        """Remove an entry. Returns False when the id is unknown."""

    @abstractmethod
    def delete_by_filter(self, filter_metadata: dict[str, Any]) -> int:
        """Remove every entry matching all filter keys; return how many."""

    @abstractmethod
    def get(self, id: str) -> Optional[VectorEntry]:
        ...

    def has(self, id: str) -> bool:
        return self.get(id) is not None

    @abstractmethod
    def count(self) -> int:
        """Return the number of entries in the store."""

    @abstractmethod
    def clear(self) -> None:
        ...

    @abstractmethod
    def dimension(self) -> Optional[int]:
        """Fixed vector length, or None until the first insert fixes it."""

    def save(self, path: str | Path | None = None) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not support persistence")

    def load(self, path: str | Path | None = None) -> bool:
        raise NotImplementedError(f"{type(self).__name__} does not support persistence")

    def close(self) -> None:
        """Release resources. Override if needed."""
        pass


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload), encoding="utf-8")
    os.replace(tmp, path)


class BruteForceVectorStore(VectorStore):
    """
    Exact cosine-similarity search by full scan.

    When ``persist_path`` is set the store loads it on construction, marks
    itself dirty on every mutation and flushes after ``autosave_interval``
    seconds on a daemon timer. dispose() performs a final flush and is
    idempotent.
    """

    def __init__(
        self,
        dimension: Optional[int] = None,
        persist_path: str | Path | None = None,
        autosave_interval: float = 30.0,
    ) -> None:
        self._dimension = dimension
        self._entries: dict[str, VectorEntry] = {}
        self._persist_path = Path(persist_path) if persist_path else None
        self._autosave_interval = autosave_interval
        self._lock = threading.RLock()
        self._dirty = False
        self._timer: Optional[threading.Timer] = None
        self._disposed = False
        # search cache, rebuilt lazily after mutation
        self._ids: list[str] = []
        self._matrix: Optional[np.ndarray] = None
        self._norms: Optional[np.ndarray] = None

        if self._persist_path is not None and self._persist_path.exists():
            self.load()

    # ── mutation ──────────────────────────────────────────────────────────

    def add(self, id: str, vector: Sequence[float], metadata: Optional[dict[str, Any]] = None) -> None:
        arr = check_vector(vector, self._dimension)
        with self._lock:
            if self._dimension is None:
                self._dimension = int(arr.shape[0])
            self._entries[id] = VectorEntry(id=id, vector=arr.tolist(), metadata=dict(metadata or {}))
            self._mark_dirty()

    def delete(self, id: str) -> bool:
        with self._lock:
            if self._entries.pop(id, None) is None:
                return False
            self._mark_dirty()
            return True

    def delete_by_filter(self, filter_metadata: dict[str, Any]) -> int:
        with self._lock:
            doomed = [eid for eid, e in self._entries.items() if matches_filter(e.metadata, filter_metadata)]
            for eid in doomed:
                del self._entries[eid]
            if doomed:
                self._mark_dirty()
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._mark_dirty()

    # ── queries ───────────────────────────────────────────────────────────

    def _rebuild_cache(self) -> None:
        self._ids = list(self._entries)
        if self._ids:
            self._matrix = np.array([self._entries[i].vector for i in self._ids], dtype=np.float64)
            self._norms = np.linalg.norm(self._matrix, axis=1)
        else:
            self._matrix = None
            self._norms = None

    def search(
        self,
        query: Sequence[float],
        k: int = 10,
        filter_metadata: Optional[dict[str, Any]] = None,
    ) -> list[VectorSearchResult]:
        if k <= 0:
            return []
        with self._lock:
            if self._dimension is None:
                return []
            q = check_vector(query, self._dimension, where="query")
            if self._matrix is None and self._entries:
                self._rebuild_cache()
            if self._matrix is None:
                return []

            if filter_metadata:
                rows = [i for i, eid in enumerate(self._ids) if matches_filter(self._entries[eid].metadata, filter_metadata)]
                if not rows:
                    return []
                matrix = self._matrix[rows]
                norms = self._norms[rows]
                ids = [self._ids[i] for i in rows]
            else:
                matrix, norms, ids = self._matrix, self._norms, self._ids

            q_norm = float(np.linalg.norm(q))
            denom = norms * q_norm
            scores = np.divide(matrix @ q, denom, out=np.zeros(len(ids)), where=denom > 0)

            order = np.argsort(-scores, kind="stable")[:k]
            return [
                VectorSearchResult(id=ids[i], score=float(scores[i]), metadata=dict(self._entries[ids[i]].metadata))
                for i in order
            ]

    def get(self, id: str) -> Optional[VectorEntry]:
        return self._entries.get(id)

    def count(self) -> int:
        return len(self._entries)

    def dimension(self) -> Optional[int]:
        return self._dimension

    def ids(self) -> list[str]:
        return list(self._entries)

    def memory_usage(self) -> int:
        """Approximate bytes held: 8 per vector component plus id and metadata text."""
        total = 0
        for entry in self._entries.values():
            total += len(entry.vector) * 8 + len(entry.id) + len(json.dumps(entry.metadata))
        return total

    @property
    def dirty(self) -> bool:
        return self._dirty

    # ── persistence ───────────────────────────────────────────────────────

    def _mark_dirty(self) -> None:
        self._matrix = None
        self._norms = None
        self._dirty = True
        if self._persist_path is None or self._disposed or self._autosave_interval <= 0:
            return
        if self._timer is None:
            self._timer = threading.Timer(self._autosave_interval, self._autosave)
            self._timer.daemon = True
            self._timer.start()

    def _autosave(self) -> None:
        with self._lock:
            self._timer = None
            if self._dirty and not self._disposed:
                try:
                    self.save()
                except OSError as exc:
                    LOG.warning("Autosave to %s failed: %s", self._persist_path, exc)

    def save(self, path: str | Path | None = None) -> None:
        target = Path(path) if path else self._persist_path
        if target is None:
            raise ValueError("No persistence path configured for this vector store")
        with self._lock:
            payload = {
                "version": STORE_FORMAT_VERSION,
                "dimension": self._dimension,
                "vectors": [e.to_dict() for e in self._entries.values()],
            }
            _write_json_atomic(target, payload)
            if target == self._persist_path:
                self._dirty = False
        LOG.debug("Saved %d vectors to %s", len(payload["vectors"]), target)

    def load(self, path: str | Path | None = None) -> bool:
        """
        Replace the contents with a persisted store.

        Returns False (contents untouched) when the file is missing or
        corrupt; corruption is logged as a warning.
        """
        source = Path(path) if path else self._persist_path
        if source is None or not source.exists():
            return False
        try:
            data = json.loads(source.read_text(encoding="utf-8"))
            entries = [VectorEntry.from_dict(v) for v in data.get("vectors", [])]
            dimension = data.get("dimension") or (len(entries[0].vector) if entries else None)
            for e in entries:
                check_vector(e.vector, dimension, where=f"stored vector {e.id!r}")
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            LOG.warning("Ignoring corrupt vector store %s: %s", source, exc)
            return False
        if self._dimension is not None and dimension is not None and int(dimension) != self._dimension:
            LOG.warning("Ignoring vector store %s: dimension %s, expected %d", source, dimension, self._dimension)
            return False

        with self._lock:
            if dimension is not None:
                self._dimension = int(dimension)
            self._entries = {e.id: e for e in entries}
            self._matrix = None
            self._norms = None
            self._dirty = False
        LOG.info("Loaded %d vectors from %s", len(entries), source)
        return True

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._dirty and self._persist_path is not None:
                self.save()
            self._disposed = True

    def close(self) -> None:
        self.dispose()


_UNSAFE_NAME_RE = re.compile(r"[^\w.+#-]")


class PartitionedVectorStore(VectorStore):
    """
    Shards entries into brute-force stores by one metadata field.

    Entries without the partition key land in the "default" partition.
    Search pins a single partition when the filter names the partition key,
    otherwise fans out and merges by score.
    """

    persist_name = "vectors"

    def __init__(
        self,
        partition_key: str = "language",
        dimension: Optional[int] = None,
        persist_dir: str | Path | None = None,
        autosave_interval: float = 30.0,
    ) -> None:
        self._partition_key = partition_key
        self._dimension = dimension
        self._persist_dir = Path(persist_dir) if persist_dir else None
        self._autosave_interval = autosave_interval
        self._partitions: dict[str, BruteForceVectorStore] = {}

        if self._persist_dir is not None:
            self._discover(self._persist_dir)

    @property
    def partition_key(self) -> str:
        return self._partition_key

    def _partition_file(self, name: str, directory: Optional[Path] = None) -> Optional[Path]:
        base = directory or self._persist_dir
        if base is None:
            return None
        return base / f"{_UNSAFE_NAME_RE.sub('_', name)}.json"

    def _discover(self, directory: Path) -> int:
        if not directory.is_dir():
            return 0
        found = 0
        for path in sorted(directory.glob("*.json")):
            store = BruteForceVectorStore(
                dimension=self._dimension,
                persist_path=path if directory == self._persist_dir else None,
                autosave_interval=self._autosave_interval,
            )
            if directory != self._persist_dir and not store.load(path):
                continue
            if self._dimension is None:
                self._dimension = store.dimension()
            self._partitions[self._stored_partition_name(store, path)] = store
            found += 1
        LOG.debug("Discovered %d partitions in %s", found, directory)
        return found

    def _stored_partition_name(self, store: BruteForceVectorStore, path: Path) -> str:
        # file names are sanitized; the entries keep the real partition value
        ids = store.ids()
        if not ids:
            return path.stem
        return self._partition_for(store.get(ids[0]).metadata)

    def _partition_for(self, metadata: dict[str, Any]) -> str:
        value = metadata.get(self._partition_key)
        return DEFAULT_PARTITION if value is None or value == "" else str(value)

    def _get_or_create(self, name: str) -> BruteForceVectorStore:
        store = self._partitions.get(name)
        if store is None:
            store = BruteForceVectorStore(
                dimension=self._dimension,
                persist_path=self._partition_file(name),
                autosave_interval=self._autosave_interval,
            )
            self._partitions[name] = store
        return store

    def add(self, id: str, vector: Sequence[float], metadata: Optional[dict[str, Any]] = None) -> None:
        metadata = dict(metadata or {})
        arr = check_vector(vector, self._dimension)
        if self._dimension is None:
            self._dimension = int(arr.shape[0])
        target = self._partition_for(metadata)
        # an id moving between partitions must not leave a stale copy behind
        for name, store in self._partitions.items():
            if name != target and store.has(id):
                store.delete(id)
        self._get_or_create(target).add(id, arr, metadata)

    def search(
        self,
        query: Sequence[float],
        k: int = 10,
        filter_metadata: Optional[dict[str, Any]] = None,
    ) -> list[VectorSearchResult]:
        if self._dimension is None or k <= 0:
            return []
        check_vector(query, self._dimension, where="query")

        if filter_metadata and self._partition_key in filter_metadata:
            store = self._partitions.get(str(filter_metadata[self._partition_key]))
            return store.search(query, k, filter_metadata) if store else []

        merged: list[VectorSearchResult] = []
        for store in self._partitions.values():
            merged.extend(store.search(query, k, filter_metadata))
        merged.sort(key=lambda r: r.score, reverse=True)
        return merged[:k]

    def delete(self, id: str) -> bool:
        for store in self._partitions.values():
            if store.delete(id):
                return True
        return False

    def delete_by_filter(self, filter_metadata: dict[str, Any]) -> int:
        if self._partition_key in filter_metadata:
            store = self._partitions.get(str(filter_metadata[self._partition_key]))
            return store.delete_by_filter(filter_metadata) if store else 0
        return sum(store.delete_by_filter(filter_metadata) for store in self._partitions.values())

    def get(self, id: str) -> Optional[VectorEntry]:
        for store in self._partitions.values():
            entry = store.get(id)
            if entry is not None:
                return entry
        return None

    def count(self) -> int:
        return sum(store.count() for store in self._partitions.values())

    def clear(self) -> None:
        for store in self._partitions.values():
            store.clear()

    def dimension(self) -> Optional[int]:
        return self._dimension

    def partition_names(self) -> list[str]:
        return sorted(self._partitions)

    def partition_stats(self) -> dict[str, int]:
        return {name: self._partitions[name].count() for name in sorted(self._partitions)}

    def memory_usage(self) -> int:
        return sum(store.memory_usage() for store in self._partitions.values())

    def save(self, path: str | Path | None = None) -> None:
        directory = Path(path) if path else self._persist_dir
        if directory is None:
            raise ValueError("No persistence directory configured for this vector store")
        directory.mkdir(parents=True, exist_ok=True)
        for name, store in self._partitions.items():
            store.save(self._partition_file(name, directory))

    def load(self, path: str | Path | None = None) -> bool:
        directory = Path(path) if path else self._persist_dir
        if directory is None or not directory.is_dir():
            return False
        for store in self._partitions.values():
            store.dispose()
        self._partitions = {}
        return self._discover(directory) > 0

    def dispose(self) -> None:
        for store in self._partitions.values():
            store.dispose()

    def close(self) -> None:
        self.dispose()


def build_vector_store(backend: str = "memory", **kwargs: Any) -> VectorStore:
    """
    Factory: create a VectorStore of the requested type.

    Args:
        backend: "memory" (brute force), "partitioned" or "hnsw"
        **kwargs: Backend-specific configuration

    Raises:
        ValueError: Unknown backend
    """
    if backend in ("memory", "brute_force"):
        return BruteForceVectorStore(**kwargs)
    if backend == "partitioned":
        return PartitionedVectorStore(**kwargs)
    if backend == "hnsw":
        from codebase_rag.rag.hnsw import HNSWIndex

        return HNSWIndex(**kwargs)
    raise ValueError(f"Unknown vector store backend: {backend!r}. Supported: 'memory', 'partitioned', 'hnsw'")
