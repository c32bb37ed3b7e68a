"""Pydantic wire models for the CLI's JSON output."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from codebase_rag.rag.models import IndexStats, RetrievalResult


class HighlightOut(BaseModel):
    start: int
    end: int
    text: str


class ChunkHit(BaseModel):
    id: str
    filePath: str
    startLine: int
    endLine: int
    type: str
    language: str
    name: Optional[str] = None
    signature: Optional[str] = None
    score: float
    matchType: str
    highlights: List[HighlightOut] = Field(default_factory=list)
    content: Optional[str] = None


class QueryIntentOut(BaseModel):
    type: str
    entities: List[str]
    confidence: float


class SearchResponse(BaseModel):
    query: str
    strategy: str
    totalChunks: int
    retrievalTimeMs: float
    intent: Optional[QueryIntentOut] = None
    results: List[ChunkHit]

    @classmethod
    def from_result(cls, result: RetrievalResult, include_content: bool = False) -> "SearchResponse":
        hits = [
            ChunkHit(
                id=sc.chunk.id,
                filePath=sc.chunk.file_path,
                startLine=sc.chunk.start_line,
                endLine=sc.chunk.end_line,
                type=str(sc.chunk.type),
                language=sc.chunk.language,
                name=sc.chunk.metadata.get("name"),
                signature=sc.chunk.metadata.get("signature"),
                score=sc.score,
                matchType=str(sc.match_type),
                highlights=[HighlightOut(start=h.start, end=h.end, text=h.text) for h in sc.highlights],
                content=sc.chunk.content if include_content else None,
            )
            for sc in result.chunks
        ]
        intent = None
        if result.intent is not None:
            intent = QueryIntentOut(
                type=str(result.intent.type),
                entities=result.intent.entities,
                confidence=result.intent.confidence,
            )
        return cls(
            query=result.query,
            strategy=result.strategy,
            totalChunks=result.total_chunks,
            retrievalTimeMs=round(result.retrieval_time_ms, 3),
            intent=intent,
            results=hits,
        )


class StatsResponse(BaseModel):
    totalChunks: int
    totalFiles: int
    totalTokens: int
    languages: Dict[str, int]
    chunkTypes: Dict[str, int]
    lastUpdated: str
    indexSizeBytes: int
    embeddingModel: str
    vectorStore: str
    indexPath: Optional[str] = None

    @classmethod
    def from_stats(cls, stats: IndexStats, vector_store: str, index_path: Optional[str]) -> "StatsResponse":
        return cls(**stats.to_dict(), vectorStore=vector_store, indexPath=index_path)


class IndexResponse(BaseModel):
    rootPath: str
    filesProcessed: int
    filesFailed: int
    failures: Dict[str, str] = Field(default_factory=dict)
    stats: StatsResponse
