"""
Chunk index: owns chunk records, the file -> chunk-id map and index statistics.

Ingest path: read file -> reject binary -> chunk -> embed -> vector store.
Re-indexing a path first drops every chunk and vector previously stored for
it; there is no incremental diffing inside a file.

Persisted layout (under index_path):
    chunks.json        chunk records without embeddings
    file-index.json    path -> [chunk id, ...]
    stats.json         last computed IndexStats
    embedder.json      embedding model name, dimension and fitted state
    vectors.json       BruteForceVectorStore  (or vectors/ for partitioned,
    hnsw.json          HNSWIndex               whichever store is configured)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from codebase_rag.errors import DimensionMismatchError, IndexingInProgressError
from codebase_rag.events import EventBus
from codebase_rag.parsers.chunker import TEXT_LANGUAGE, Chunker, LineChunker
from codebase_rag.parsers.scanner import is_binary_content, read_source, walk_files
from codebase_rag.rag.embedding_provider import EmbeddingProvider
from codebase_rag.rag.models import CodeChunk, FileIndexResult, IndexStats, estimate_tokens
from codebase_rag.rag.vector_store import VectorStore, check_vector

LOG = logging.getLogger("rag.chunk_index")

CHUNKS_FILE = "chunks.json"
FILE_INDEX_FILE = "file-index.json"
STATS_FILE = "stats.json"
EMBEDDER_FILE = "embedder.json"


def prepare_text_for_embedding(chunk: CodeChunk) -> str:
    """Chunk content prefixed with its name, signature and documentation lines."""
    parts: list[str] = []
    if chunk.metadata.get("name"):
        parts.append(f"Name: {chunk.metadata['name']}")
    if chunk.metadata.get("signature"):
        parts.append(f"Signature: {chunk.metadata['signature']}")
    if chunk.metadata.get("docstring"):
        parts.append(f"Documentation: {chunk.metadata['docstring']}")
    parts.append(chunk.content)
    return "\n".join(parts)


def vector_metadata(chunk: CodeChunk) -> dict:
    return {
        "filePath": chunk.file_path,
        "type": str(chunk.type),
        "language": chunk.language,
        "startLine": chunk.start_line,
        "name": chunk.metadata.get("name") or "",
    }


def _write_json(path: Path, payload) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload), encoding="utf-8")
    tmp.replace(path)


class ChunkIndex:
    """
    Chunk store plus the vector store that indexes it.

    Not safe for concurrent mutation; index_codebase() refuses to start while
    another run on the same instance is in flight.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        store: VectorStore,
        chunker: Optional[Chunker] = None,
        index_path: str | Path | None = None,
        events: Optional[EventBus] = None,
        max_file_size: int = 1_000_000,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self._chunker = chunker or LineChunker()
        self._index_dir = Path(index_path) if index_path else None
        self._events = events or EventBus()
        self._max_file_size = max_file_size

        self._chunks: dict[str, CodeChunk] = {}
        self._file_index: dict[str, list[str]] = {}
        self._indexing = False
        self._dirty = False
        self._last_updated = datetime.now(timezone.utc).isoformat()

    # ── accessors ─────────────────────────────────────────────────────────

    @property
    def embedder(self) -> EmbeddingProvider:
        return self._embedder

    @property
    def store(self) -> VectorStore:
        return self._store

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def index_dir(self) -> Optional[Path]:
        return self._index_dir

    @property
    def is_indexing(self) -> bool:
        return self._indexing

    def __len__(self) -> int:
        return len(self._chunks)

    def iter_chunks(self) -> Iterator[CodeChunk]:
        return iter(list(self._chunks.values()))

    def get_chunk(self, chunk_id: str) -> Optional[CodeChunk]:
        return self._chunks.get(chunk_id)

    def get_file_chunks(self, file_path: str) -> list[CodeChunk]:
        return [self._chunks[cid] for cid in self._file_index.get(file_path, []) if cid in self._chunks]

    def indexed_files(self) -> list[str]:
        return sorted(self._file_index)

    # ── ingest ────────────────────────────────────────────────────────────

    def remove_file(self, file_path: str) -> int:
        """Drop every chunk and vector stored for a path. Returns the chunk count removed."""
        ids = self._file_index.pop(file_path, [])
        for cid in ids:
            self._chunks.pop(cid, None)
            self._store.delete(cid)
        if ids:
            self._touch()
        return len(ids)

    def index_file(self, file_path: str | Path, content: Optional[str] = None) -> FileIndexResult:
        """
        Index one file, replacing whatever was stored for its path.

        Unreadable or binary files are reported as failures rather than
        raised. A vector of the wrong dimension is a configuration error and
        propagates.
        """
        started = time.perf_counter()
        key = Path(file_path).as_posix()

        def _elapsed() -> float:
            return (time.perf_counter() - started) * 1000.0

        try:
            if content is None:
                content = read_source(Path(file_path))
            if is_binary_content(content):
                return FileIndexResult(key, success=False, error="Binary file", duration_ms=_elapsed())

            chunks = self._chunker.chunk_file(content, key)
            vectors = self._embedder.embed_batch([prepare_text_for_embedding(c) for c in chunks])
            dimension = self._store.dimension()
            for chunk, vector in zip(chunks, vectors):
                check_vector(vector, dimension, where=f"embedding for {chunk.id}")

            self.remove_file(key)
            ids = self._store_chunks(chunks, vectors)
            self._file_index[key] = ids
            self._touch()
        except DimensionMismatchError:
            raise
        except Exception as exc:
            LOG.warning("Failed to index %s: %s", key, exc)
            return FileIndexResult(key, success=False, error=str(exc), duration_ms=_elapsed())

        LOG.debug("Indexed %s: %d chunks", key, len(ids))
        return FileIndexResult(key, success=True, chunk_count=len(ids), duration_ms=_elapsed())

    def _store_chunks(self, chunks: list[CodeChunk], vectors: list[list[float]]) -> list[str]:
        # all or nothing: a failed add removes the chunks written before it
        ids: list[str] = []
        try:
            for chunk, vector in zip(chunks, vectors):
                chunk.embedding = vector
                self._store.add(chunk.id, vector, vector_metadata(chunk))
                self._chunks[chunk.id] = chunk
                ids.append(chunk.id)
        except Exception:
            for cid in ids:
                self._chunks.pop(cid, None)
                self._store.delete(cid)
            raise
        return ids

    def _accept(self, path: Path) -> bool:
        if self._chunker.detect_language(str(path)) == TEXT_LANGUAGE:
            return False
        try:
            return path.stat().st_size <= self._max_file_size
        except OSError as exc:
            LOG.warning("Cannot stat %s: %s", path, exc)
            return False

    async def index_codebase(
        self,
        root: str | Path,
        include_patterns: Optional[list[str]] = None,
        exclude_patterns: Optional[list[str]] = None,
    ) -> IndexStats:
        """
        Walk a directory tree and index every source file, one at a time.

        Chunks are keyed by posix paths relative to ``root``. Progress is
        published on the event bus; control is yielded to the event loop
        between files.

        Raises:
            IndexingInProgressError: another index_codebase() is still running.
        """
        if self._indexing:
            raise IndexingInProgressError("Indexing already in progress")
        self._indexing = True
        root = Path(root)
        try:
            LOG.info("Indexing %s", root)
            self._events.emit("index:start", {"rootPath": str(root)})

            files = walk_files(root, include_patterns, exclude_patterns, accept=self._accept)
            self._events.emit("index:files_found", {"count": len(files)})

            contents: dict[Path, Optional[str]] = {}
            if self._embedder.requires_corpus:
                for path in files:
                    try:
                        contents[path] = read_source(path)
                    except OSError:
                        contents[path] = None
                self._embedder.initialize([c for c in contents.values() if c and not is_binary_content(c)])

            failed = 0
            for processed, path in enumerate(files, start=1):
                rel = path.relative_to(root).as_posix()
                text = contents.get(path)
                error = None
                if text is None:
                    try:
                        text = read_source(path)
                    except OSError as exc:
                        LOG.warning("Cannot read %s: %s", path, exc)
                        error = str(exc)
                if error is None:
                    result = self.index_file(rel, text)
                else:
                    result = FileIndexResult(rel, success=False, error=error)
                if not result.success:
                    failed += 1
                self._events.emit(
                    "index:file_processed",
                    {
                        "filePath": rel,
                        "success": result.success,
                        "chunks": result.chunk_count,
                        "error": result.error,
                        "progress": processed / len(files),
                    },
                )
                await asyncio.sleep(0)

            stats = self.get_stats()
            if self._index_dir is not None:
                self.save_index()
            LOG.info(
                "Indexed %d files (%d failed): %d chunks",
                len(files),
                failed,
                stats.total_chunks,
            )
            self._events.emit("index:complete", {"stats": stats.to_dict(), "failed": failed})
            return stats
        finally:
            self._indexing = False

    # ── stats ─────────────────────────────────────────────────────────────

    def _touch(self) -> None:
        self._dirty = True
        self._last_updated = datetime.now(timezone.utc).isoformat()

    def get_stats(self) -> IndexStats:
        """Recompute aggregate counters from the chunk store."""
        stats = IndexStats(
            total_chunks=len(self._chunks),
            total_files=len(self._file_index),
            last_updated=self._last_updated,
            embedding_model=self._embedder.model_name(),
        )
        for chunk in self._chunks.values():
            stats.total_tokens += estimate_tokens(chunk.content)
            stats.languages[chunk.language] = stats.languages.get(chunk.language, 0) + 1
            key = str(chunk.type)
            stats.chunk_types[key] = stats.chunk_types.get(key, 0) + 1
        memory_usage = getattr(self._store, "memory_usage", None)
        if callable(memory_usage):
            stats.index_size_bytes = memory_usage()
        return stats

    # ── persistence ───────────────────────────────────────────────────────

    def _embedder_descriptor(self) -> dict:
        return {
            "model": self._embedder.model_name(),
            "dimension": self._embedder.dimension(),
            "state": self._embedder.get_state(),
        }

    def _restore_embedder(self) -> bool:
        """Restore fitted embedder state. False when saved vectors came from another model."""
        path = self._index_dir / EMBEDDER_FILE
        if not path.exists():
            return True
        try:
            saved = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOG.warning("Ignoring corrupt %s: %s", path, exc)
            return False
        if saved.get("model") != self._embedder.model_name() or saved.get("dimension") != self._embedder.dimension():
            LOG.warning(
                "Index was built with %s/%s, current embedder is %s/%s; re-embedding",
                saved.get("model"),
                saved.get("dimension"),
                self._embedder.model_name(),
                self._embedder.dimension(),
            )
            return False
        if saved.get("state"):
            self._embedder.set_state(saved["state"])
        return True

    def _require_dir(self) -> Path:
        if self._index_dir is None:
            raise ValueError("No index_path configured; persistence is disabled")
        return self._index_dir

    def save_index(self) -> None:
        directory = self._require_dir()
        directory.mkdir(parents=True, exist_ok=True)
        _write_json(directory / CHUNKS_FILE, [c.to_dict() for c in self._chunks.values()])
        _write_json(directory / FILE_INDEX_FILE, self._file_index)
        _write_json(directory / STATS_FILE, self.get_stats().to_dict())
        _write_json(directory / EMBEDDER_FILE, self._embedder_descriptor())
        self._store.save(directory / self._store.persist_name)
        self._dirty = False
        LOG.info("Saved index (%d chunks) to %s", len(self._chunks), directory)

    def load_index(self) -> bool:
        """
        Merge a persisted index into the (empty) in-memory maps.

        Returns False when nothing usable is on disk; corrupt files are logged
        and treated as a cold start. Chunks whose vectors did not survive are
        re-embedded from their content.
        """
        if self._index_dir is None:
            return False
        chunks_path = self._index_dir / CHUNKS_FILE
        if not chunks_path.exists():
            return False

        try:
            raw_chunks = json.loads(chunks_path.read_text(encoding="utf-8"))
            chunks = [CodeChunk.from_dict(d) for d in raw_chunks]
            index_path = self._index_dir / FILE_INDEX_FILE
            if index_path.exists():
                file_index = {k: list(v) for k, v in json.loads(index_path.read_text(encoding="utf-8")).items()}
            else:
                file_index = {}
                for c in chunks:
                    file_index.setdefault(c.file_path, []).append(c.id)
            stats_path = self._index_dir / STATS_FILE
            last_updated = None
            if stats_path.exists():
                last_updated = IndexStats.from_dict(json.loads(stats_path.read_text(encoding="utf-8"))).last_updated
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            LOG.warning("Failed to load index from %s: %s", self._index_dir, exc)
            return False

        compatible = self._restore_embedder()
        store_path = self._index_dir / self._store.persist_name
        if not compatible:
            self._store.clear()
        elif store_path.exists():
            try:
                self._store.load(store_path)
            except ValueError as exc:
                LOG.warning("Vector store at %s is unusable, re-embedding: %s", store_path, exc)

        for chunk in chunks:
            self._chunks[chunk.id] = chunk
        for path, ids in file_index.items():
            self._file_index[path] = ids
        if last_updated:
            self._last_updated = last_updated

        missing = [c for c in chunks if not self._store.has(c.id)]
        if missing:
            vectors = self._embedder.embed_batch([prepare_text_for_embedding(c) for c in missing])
            for chunk, vector in zip(missing, vectors):
                chunk.embedding = vector
                self._store.add(chunk.id, vector, vector_metadata(chunk))
            LOG.info("Re-embedded %d chunks missing from the vector store", len(missing))

        LOG.info("Loaded index (%d chunks, %d files) from %s", len(chunks), len(file_index), self._index_dir)
        return True

    def clear(self) -> None:
        """Drop every chunk and vector. A persisted index is overwritten with the empty one."""
        self._chunks.clear()
        self._file_index.clear()
        self._store.clear()
        self._touch()
        if self._index_dir is not None and (self._index_dir / CHUNKS_FILE).exists():
            self.save_index()
        self._events.emit("index:cleared", None)

    def dispose(self) -> None:
        if self._dirty and self._index_dir is not None:
            self.save_index()
        self._store.close()
