"""
Shared test fixtures and pytest configuration.

Markers:
    @pytest.mark.slow  : Larger graphs / corpora (HNSW recall, batch inserts)

Run:
    pytest                     # everything
    pytest -m "not slow"       # skip the larger cases (fast CI)
"""

from __future__ import annotations

from pathlib import Path

import pytest

from codebase_rag.events import EventBus
from codebase_rag.parsers.chunker import LineChunker
from codebase_rag.rag.chunk_index import ChunkIndex
from codebase_rag.rag.embedding_provider import SemanticHashEmbeddingProvider
from codebase_rag.rag.vector_store import BruteForceVectorStore

DIM = 64


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: larger graphs or corpora")


SAMPLE_FILES = {
    "src/auth.py": '''"""Authentication helpers."""

import hashlib


def hash_password(password: str, salt: str) -> str:
    """Hash a password with a salt."""
    return hashlib.sha256((salt + password).encode()).hexdigest()


class SessionManager:
    """Tracks login sessions."""

    def __init__(self):
        self.sessions = {}

    def login(self, user, token):
        self.sessions[token] = user

    async def refresh_token(self, token):
        return self.sessions.get(token)
''',
    "src/db.py": '''import sqlite3


def open_database(path):
    """Open a sqlite database connection."""
    return sqlite3.connect(path)


def run_query(conn, sql):
    try:
        return conn.execute(sql).fetchall()
    except sqlite3.Error as exc:
        raise RuntimeError(sql) from exc
''',
    "web/app.ts": '''import { Router } from "./router";

// Builds the HTTP router for the api.
export function buildRouter(): Router {
  const router = new Router();
  router.get("/health", () => "ok");
  return router;
}

export interface Handler {
  handle(path: string): string;
}
''',
    "README.md": "# Sample project\n\nNot source code.\n",
    "node_modules/lib/index.js": "function vendored() { return 1; }\n",
}


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    """A small multi-language tree, including a vendored directory that must be skipped."""
    root = tmp_path / "project"
    for rel, text in SAMPLE_FILES.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    (root / "assets").mkdir()
    (root / "assets" / "logo.py").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00\x00")
    return root


@pytest.fixture
def embedder() -> SemanticHashEmbeddingProvider:
    return SemanticHashEmbeddingProvider(dim=DIM, vocab_size=2048)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def chunk_index(embedder, events) -> ChunkIndex:
    return ChunkIndex(embedder, BruteForceVectorStore(dimension=DIM), chunker=LineChunker(), events=events)


@pytest.fixture
def indexed(chunk_index) -> ChunkIndex:
    """chunk_index populated with the sample sources (vendored and non-code files left out)."""
    for rel, text in SAMPLE_FILES.items():
        if rel.startswith("src/") or rel.startswith("web/"):
            result = chunk_index.index_file(rel, text)
            assert result.success, result.error
    return chunk_index
