"""
Data models shared by the indexing and retrieval layers.

Chunks and stats serialize to camelCase JSON keys so the persisted index files
stay stable across the chunk_index and CLI layers. ScoredChunk, CRAGEvaluation
and QueryIntent are per-query values and are never persisted.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any


class ChunkType(StrEnum):
    """Kind of source fragment a chunk represents."""

    FUNCTION = "function"
    METHOD = "method"
    CLASS = "class"
    INTERFACE = "interface"
    TYPE = "type"
    MODULE = "module"
    BLOCK = "block"


class MatchType(StrEnum):
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class CRAGAction(StrEnum):
    """Next step chosen by the corrective-retrieval evaluator."""

    ACCEPT = "accept"
    REFINE = "refine"
    WEB_SEARCH = "web_search"
    REJECT = "reject"


class IntentType(StrEnum):
    FIND_FUNCTION = "find_function"
    UNDERSTAND_CODE = "understand_code"
    FIX_BUG = "fix_bug"
    ADD_FEATURE = "add_feature"
    REFACTOR = "refactor"
    GENERAL = "general"


def estimate_tokens(text: str) -> int:
    """Rough token count at four characters per token."""
    return math.ceil(len(text) / 4)


@dataclass
class CodeChunk:
    """A source fragment plus the position and language it came from.

    ``metadata`` carries the chunker's annotations: name, signature,
    docstring, is_async, is_public. ``embedding`` is attached at ingest.
    """

    id: str
    content: str
    file_path: str
    start_line: int
    end_line: int
    type: ChunkType = ChunkType.BLOCK
    language: str = "text"
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] | None = None

    @property
    def name(self) -> str:
        return self.metadata.get("name") or ""

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "filePath": self.file_path,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "type": str(self.type),
            "language": self.language,
            "metadata": dict(self.metadata),
        }
        if include_embedding and self.embedding is not None:
            d["embedding"] = list(self.embedding)
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "CodeChunk":
        try:
            chunk_type = ChunkType(d.get("type", "block"))
        except ValueError:
            chunk_type = ChunkType.BLOCK
        return cls(
            id=d["id"],
            content=d.get("content", ""),
            file_path=d["filePath"],
            start_line=int(d.get("startLine", 1)),
            end_line=int(d.get("endLine", d.get("startLine", 1))),
            type=chunk_type,
            language=d.get("language", "text"),
            metadata=dict(d.get("metadata") or {}),
            embedding=d.get("embedding"),
        )


@dataclass
class TextHighlight:
    """Span of a keyword hit inside lower-cased chunk content."""

    start: int
    end: int
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start, "end": self.end, "text": self.text}


@dataclass
class ScoredChunk:
    chunk: CodeChunk
    score: float
    match_type: MatchType
    highlights: list[TextHighlight] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk": self.chunk.to_dict(),
            "score": self.score,
            "matchType": str(self.match_type),
            "highlights": [h.to_dict() for h in self.highlights],
        }


@dataclass
class CRAGEvaluation:
    is_relevant: bool
    confidence: float
    action: CRAGAction
    refined_query: str | None = None
    feedback: str | None = None


@dataclass
class QueryIntent:
    type: IntentType
    entities: list[str] = field(default_factory=list)
    confidence: float = 0.5


@dataclass
class QueryFilters:
    """Restrictions applied to retrieval candidates.

    A single language or chunk type is pushed down into the vector store
    filter; everything else is applied to the candidate list afterwards.
    """

    languages: list[str] = field(default_factory=list)
    chunk_types: list[str] = field(default_factory=list)
    file_paths: list[str] = field(default_factory=list)
    exclude_paths: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.languages or self.chunk_types or self.file_paths or self.exclude_paths)

    def matches(self, chunk: CodeChunk) -> bool:
        if self.languages and chunk.language not in self.languages:
            return False
        if self.chunk_types and str(chunk.type) not in self.chunk_types:
            return False
        if self.file_paths and not any(p in chunk.file_path for p in self.file_paths):
            return False
        if self.exclude_paths and any(p in chunk.file_path for p in self.exclude_paths):
            return False
        return True


@dataclass
class RetrievalResult:
    chunks: list[ScoredChunk]
    query: str
    total_chunks: int
    retrieval_time_ms: float
    strategy: str
    intent: QueryIntent | None = None


@dataclass
class FileIndexResult:
    """Outcome of indexing a single file. Failures are reported, never raised."""

    file_path: str
    success: bool
    chunk_count: int = 0
    error: str | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "filePath": self.file_path,
            "success": self.success,
            "chunkCount": self.chunk_count,
            "error": self.error,
            "durationMs": self.duration_ms,
        }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class IndexStats:
    """Aggregate counters derived from the chunk store. Never a source of truth."""

    total_chunks: int = 0
    total_files: int = 0
    total_tokens: int = 0
    languages: dict[str, int] = field(default_factory=dict)
    chunk_types: dict[str, int] = field(default_factory=dict)
    last_updated: str = field(default_factory=_now_iso)
    index_size_bytes: int = 0
    embedding_model: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalChunks": self.total_chunks,
            "totalFiles": self.total_files,
            "totalTokens": self.total_tokens,
            "languages": dict(self.languages),
            "chunkTypes": dict(self.chunk_types),
            "lastUpdated": self.last_updated,
            "indexSizeBytes": self.index_size_bytes,
            "embeddingModel": self.embedding_model,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "IndexStats":
        return cls(
            total_chunks=int(d.get("totalChunks", 0)),
            total_files=int(d.get("totalFiles", 0)),
            total_tokens=int(d.get("totalTokens", 0)),
            languages=dict(d.get("languages") or {}),
            chunk_types=dict(d.get("chunkTypes") or {}),
            last_updated=d.get("lastUpdated") or _now_iso(),
            index_size_bytes=int(d.get("indexSizeBytes", 0)),
            embedding_model=d.get("embeddingModel", ""),
        )
