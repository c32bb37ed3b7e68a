"""
Exception taxonomy for the retrieval engine.

Precondition violations (dimension mismatch, bad config) raise immediately.
Per-file ingest failures are reported in FileIndexResult, never raised.
Corrupt persisted state is logged and treated as a cold start.
"""

from __future__ import annotations


class CodebaseRAGError(Exception):
    """Base class for all errors raised by codebase_rag."""


class DimensionMismatchError(CodebaseRAGError, ValueError):
    """A vector's length differs from the dimension its consumer expects."""

    def __init__(self, expected: int, actual: int, where: str = "vector") -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"{where} must have the same dimension: expected {expected}, got {actual}")


class IndexingInProgressError(CodebaseRAGError, RuntimeError):
    """index_codebase() was called while another run is still in flight."""


class ConfigError(CodebaseRAGError, ValueError):
    """Invalid or unreadable configuration."""
