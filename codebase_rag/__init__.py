"""
codebase_rag: semantic retrieval over source trees.

Local embedding providers, exact and HNSW vector stores, a chunk index and a
multi-strategy retrieval orchestrator with corrective (CRAG) search.
"""

from __future__ import annotations

from codebase_rag.config import RAGConfig, load_config
from codebase_rag.context import RAGContext, build_context
from codebase_rag.errors import (
    CodebaseRAGError,
    ConfigError,
    DimensionMismatchError,
    IndexingInProgressError,
)
from codebase_rag.events import EventBus
from codebase_rag.rag.chunk_index import ChunkIndex
from codebase_rag.rag.embedding_provider import (
    CodeEmbeddingProvider,
    EmbeddingProvider,
    SemanticHashEmbeddingProvider,
    TfidfEmbeddingProvider,
    build_embedding_provider,
    cosine_similarity,
)
from codebase_rag.rag.hnsw import HNSWIndex
from codebase_rag.rag.models import CodeChunk, QueryFilters, RetrievalResult, ScoredChunk
from codebase_rag.rag.search import RetrievalOrchestrator
from codebase_rag.rag.vector_store import (
    BruteForceVectorStore,
    PartitionedVectorStore,
    VectorStore,
    build_vector_store,
)

__version__ = "0.3.0"

__all__ = [
    "BruteForceVectorStore",
    "ChunkIndex",
    "CodeChunk",
    "CodeEmbeddingProvider",
    "CodebaseRAGError",
    "ConfigError",
    "DimensionMismatchError",
    "EmbeddingProvider",
    "EventBus",
    "HNSWIndex",
    "IndexingInProgressError",
    "PartitionedVectorStore",
    "QueryFilters",
    "RAGConfig",
    "RAGContext",
    "RetrievalOrchestrator",
    "RetrievalResult",
    "ScoredChunk",
    "SemanticHashEmbeddingProvider",
    "TfidfEmbeddingProvider",
    "VectorStore",
    "build_context",
    "build_embedding_provider",
    "build_vector_store",
    "cosine_similarity",
    "load_config",
]
