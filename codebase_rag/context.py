"""
Application context: the one object that owns every long-lived component.

Built once from a RAGConfig and passed to callers explicitly; nothing in the
package keeps module-level instances.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from codebase_rag.config import RAGConfig
from codebase_rag.events import EventBus
from codebase_rag.parsers.chunker import Chunker, LineChunker
from codebase_rag.rag.chunk_index import ChunkIndex
from codebase_rag.rag.embedding_provider import EmbeddingProvider, build_embedding_provider
from codebase_rag.rag.search import RetrievalOrchestrator
from codebase_rag.rag.vector_store import VectorStore, build_vector_store

LOG = logging.getLogger("codebase_rag.context")


@dataclass
class RAGContext:
    config: RAGConfig
    events: EventBus
    embedder: EmbeddingProvider
    store: VectorStore
    index: ChunkIndex
    orchestrator: RetrievalOrchestrator

    def close(self) -> None:
        self.index.dispose()


def _build_store(config: RAGConfig, events: EventBus) -> VectorStore:
    index_dir = Path(config.index_path) if config.persist else None
    dimension = config.embedding_dimension
    if config.vector_store == "memory":
        return build_vector_store(
            "memory",
            dimension=dimension,
            persist_path=index_dir / "vectors.json" if index_dir else None,
            autosave_interval=config.autosave_interval,
        )
    if config.vector_store == "partitioned":
        return build_vector_store(
            "partitioned",
            partition_key=config.partition_key,
            dimension=dimension,
            persist_dir=index_dir / "vectors" if index_dir else None,
            autosave_interval=config.autosave_interval,
        )
    return build_vector_store(
        config.vector_store,
        dimension=dimension,
        m=config.hnsw_m,
        ef_construction=config.hnsw_ef_construction,
        ef_search=config.hnsw_ef_search,
        events=events,
    )


def build_context(
    config: Optional[RAGConfig] = None,
    chunker: Optional[Chunker] = None,
    load: bool = True,
) -> RAGContext:
    """
    Wire embedder, vector store, chunk index and orchestrator from one config.

    With ``load`` set and persistence enabled, a previously saved index is
    loaded (a missing or corrupt one means a cold start).
    """
    config = config or RAGConfig()
    config.validate()
    events = EventBus()
    embedder = build_embedding_provider(
        config.embedding_provider,
        config.embedding_dimension,
        **({"vocab_size": config.semantic_vocab_size} if config.embedding_provider in ("semantic", "code") else {}),
    )
    store = _build_store(config, events)
    index = ChunkIndex(
        embedder,
        store,
        chunker=chunker or LineChunker(),
        index_path=config.index_path or None,
        events=events,
        max_file_size=config.max_file_size,
    )
    if load and config.persist:
        index.load_index()
    orchestrator = RetrievalOrchestrator(index, config)
    LOG.debug(
        "Context ready: provider=%s store=%s index_path=%s",
        embedder.model_name(),
        config.vector_store,
        config.index_path or "(none)",
    )
    return RAGContext(
        config=config,
        events=events,
        embedder=embedder,
        store=store,
        index=index,
        orchestrator=orchestrator,
    )
