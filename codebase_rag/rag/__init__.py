"""
Retrieval core: embedding providers, vector stores, HNSW index, chunk index
and the retrieval orchestrator.
"""

from __future__ import annotations
