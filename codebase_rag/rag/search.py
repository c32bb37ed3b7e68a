"""
Retrieval orchestration over a ChunkIndex.

Strategies:
    semantic    embed query -> vector store top-k
    keyword     token/name matching over every chunk
    hybrid      semantic and keyword concurrently, fused 0.6 / 0.4
    reranked    hybrid candidates passed through an optional reranker hook
    corrective  hybrid, then evaluate the top hits and retry with an expanded
                query when they look irrelevant (at most 3 refinements)

retrieve() runs the chosen strategy with 2 * top_k candidates, drops hits
under min_score and returns the first top_k.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, Optional

from codebase_rag.config import RAGConfig
from codebase_rag.rag.chunk_index import ChunkIndex
from codebase_rag.rag.models import (
    CRAGAction,
    CRAGEvaluation,
    IntentType,
    MatchType,
    QueryFilters,
    QueryIntent,
    RetrievalResult,
    ScoredChunk,
    TextHighlight,
)
from codebase_rag.rag.tokenize import tokenize

LOG = logging.getLogger("rag.search")

SEMANTIC_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.4
NAME_MATCH_SCORE = 2.0
CONTENT_MATCH_SCORE = 0.5
MAX_HIGHLIGHTS = 10

MAX_CORRECTIVE_ITERATIONS = 3
EVALUATION_WINDOW = 3
RELEVANCE_SCORE_THRESHOLD = 0.5
RELEVANCE_TERM_THRESHOLD = 0.3
ACCEPT_CONFIDENCE = 0.7
REFINE_TERM_THRESHOLD = 0.1
SYNONYMS_PER_TOKEN = 2

QUERY_EXPANSIONS: dict[str, list[str]] = {
    "function": ["method", "func", "def", "procedure"],
    "class": ["struct", "interface", "type"],
    "error": ["exception", "throw", "catch", "fail"],
    "test": ["spec", "describe", "it", "expect"],
    "api": ["endpoint", "route", "handler"],
    "database": ["db", "sql", "query", "model"],
    "auth": ["authentication", "login", "session", "token"],
}

_INTENT_PATTERNS: list[tuple[re.Pattern[str], IntentType]] = [
    (re.compile(r"find|search|where|locate"), IntentType.FIND_FUNCTION),
    (re.compile(r"how|what|explain|understand"), IntentType.UNDERSTAND_CODE),
    (re.compile(r"fix|bug|error|issue"), IntentType.FIX_BUG),
    (re.compile(r"add|implement|create|feature"), IntentType.ADD_FEATURE),
    (re.compile(r"refactor|improve|optimize"), IntentType.REFACTOR),
]
_ENTITY_RE = re.compile(r"(?:function|class|method|interface|type)\s+`?(\w+)`?", re.IGNORECASE)
_BACKTICK_RE = re.compile(r"`(\w+)`")

Reranker = Callable[[str, list[ScoredChunk]], Awaitable[list[ScoredChunk]]]


def classify_query_intent(query: str) -> QueryIntent:
    lowered = query.lower()
    intent = IntentType.GENERAL
    for pattern, candidate in _INTENT_PATTERNS:
        if pattern.search(lowered):
            intent = candidate
            break

    entities: list[str] = [m.group(1) for m in _ENTITY_RE.finditer(query)]
    for m in _BACKTICK_RE.finditer(query):
        if m.group(1) not in entities:
            entities.append(m.group(1))

    return QueryIntent(type=intent, entities=entities, confidence=0.8 if entities else 0.5)


def expand_query(query: str) -> str:
    """Append the first two synonyms of every recognised token."""
    tokens = tokenize(query)
    expanded = list(tokens)
    for token in tokens:
        expanded.extend(QUERY_EXPANSIONS.get(token, [])[:SYNONYMS_PER_TOKEN])
    return " ".join(expanded)


def evaluate_relevance(query: str, top_results: list[ScoredChunk]) -> CRAGEvaluation:
    """
    Judge whether the best hits answer the query.

    relevant    mean score > 0.5 and term-match ratio > 0.3
    confidence  (mean score + term-match ratio) / 2
    refine      not relevant and term-match ratio < 0.1 (query gets expanded)
    reject      not relevant otherwise
    """
    if not top_results:
        return CRAGEvaluation(
            is_relevant=False,
            confidence=0.0,
            action=CRAGAction.REJECT,
            feedback="No results found",
        )

    avg_score = sum(r.score for r in top_results) / len(top_results)
    tokens = tokenize(query)
    matches = 0
    for result in top_results:
        content = result.chunk.content.lower()
        matches += sum(1 for token in tokens if token in content)
    term_ratio = matches / (len(tokens) * len(top_results)) if tokens else 0.0

    is_relevant = avg_score > RELEVANCE_SCORE_THRESHOLD and term_ratio > RELEVANCE_TERM_THRESHOLD
    confidence = (avg_score + term_ratio) / 2

    action = CRAGAction.ACCEPT
    refined: Optional[str] = None
    if not is_relevant:
        if term_ratio < REFINE_TERM_THRESHOLD:
            action = CRAGAction.REFINE
            refined = expand_query(query)
        else:
            action = CRAGAction.REJECT

    return CRAGEvaluation(is_relevant=is_relevant, confidence=confidence, action=action, refined_query=refined)


def build_store_filter(filters: Optional[QueryFilters]) -> Optional[dict]:
    """Vector-store equality filter for the conditions a store can enforce itself."""
    if filters is None:
        return None
    store_filter: dict = {}
    if len(filters.languages) == 1:
        store_filter["language"] = filters.languages[0]
    if len(filters.chunk_types) == 1:
        store_filter["type"] = filters.chunk_types[0]
    return store_filter or None


def find_highlights(content: str, tokens: list[str]) -> list[TextHighlight]:
    highlights: list[TextHighlight] = []
    for token in tokens:
        for m in re.finditer(re.escape(token), content):
            highlights.append(TextHighlight(start=m.start(), end=m.end(), text=m.group(0)))
            if len(highlights) >= MAX_HIGHLIGHTS:
                return highlights
    return highlights


class RetrievalOrchestrator:
    """
    Query surface over a ChunkIndex.

    Usage::

        orchestrator = RetrievalOrchestrator(index, config)
        result = await orchestrator.retrieve("where is the auth token refreshed", top_k=5)
    """

    def __init__(
        self,
        index: ChunkIndex,
        config: Optional[RAGConfig] = None,
        reranker: Optional[Reranker] = None,
    ) -> None:
        self._index = index
        self._config = config or RAGConfig()
        self._reranker = reranker
        self._strategies = {
            "semantic": self.semantic_search,
            "keyword": self.keyword_search,
            "hybrid": self.hybrid_search,
            "reranked": self.reranked_search,
            "corrective": self.corrective_search,
        }

    @property
    def index(self) -> ChunkIndex:
        return self._index

    async def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
        filters: Optional[QueryFilters] = None,
        strategy: Optional[str] = None,
    ) -> RetrievalResult:
        started = time.perf_counter()
        top_k = top_k or self._config.top_k
        min_score = self._config.min_score if min_score is None else min_score
        strategy = strategy or self._config.strategy
        search = self._strategies.get(strategy)
        if search is None:
            raise ValueError(f"Unknown retrieval strategy: {strategy!r}. Supported: {', '.join(self._strategies)}")

        intent = classify_query_intent(query)
        results = await search(query, top_k * 2, filters)
        kept = [r for r in results if r.score >= min_score][:top_k]

        elapsed = (time.perf_counter() - started) * 1000.0
        LOG.debug("%s search for %r: %d hits in %.1f ms", strategy, query, len(kept), elapsed)
        return RetrievalResult(
            chunks=kept,
            query=query,
            total_chunks=len(self._index),
            retrieval_time_ms=elapsed,
            strategy=strategy,
            intent=intent,
        )

    async def semantic_search(self, query: str, k: int, filters: Optional[QueryFilters] = None) -> list[ScoredChunk]:
        store_filter = build_store_filter(filters)
        residual = filters is not None and not filters.is_empty()
        # conditions the store cannot enforce thin out the hits, so over-fetch
        fetch = k * 4 if residual else k
        query_vec = self._index.embedder.embed(query)
        hits = self._index.store.search(query_vec, fetch, store_filter)

        results: list[ScoredChunk] = []
        for hit in hits:
            chunk = self._index.get_chunk(hit.id)
            if chunk is None:
                continue
            if residual and not filters.matches(chunk):
                continue
            results.append(ScoredChunk(chunk=chunk, score=hit.score, match_type=MatchType.SEMANTIC))
            if len(results) >= k:
                break
        return results

    async def keyword_search(self, query: str, k: int, filters: Optional[QueryFilters] = None) -> list[ScoredChunk]:
        tokens = tokenize(query)
        if not tokens:
            return []

        results: list[ScoredChunk] = []
        for chunk in self._index.iter_chunks():
            if filters is not None and not filters.matches(chunk):
                continue
            content = chunk.content.lower()
            name = chunk.name.lower()
            score = 0.0
            for token in tokens:
                if token in name:
                    score += NAME_MATCH_SCORE
                score += content.count(token) * CONTENT_MATCH_SCORE
            if score > 0:
                results.append(
                    ScoredChunk(
                        chunk=chunk,
                        score=min(score / len(tokens), 1.0),
                        match_type=MatchType.KEYWORD,
                        highlights=find_highlights(content, tokens),
                    )
                )

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:k]

    async def hybrid_search(self, query: str, k: int, filters: Optional[QueryFilters] = None) -> list[ScoredChunk]:
        semantic, keyword = await asyncio.gather(
            self.semantic_search(query, k, filters),
            self.keyword_search(query, k, filters),
        )

        merged: dict[str, ScoredChunk] = {}
        for r in semantic:
            merged[r.chunk.id] = ScoredChunk(chunk=r.chunk, score=r.score * SEMANTIC_WEIGHT, match_type=MatchType.HYBRID)
        for r in keyword:
            existing = merged.get(r.chunk.id)
            if existing is not None:
                existing.score += r.score * KEYWORD_WEIGHT
                existing.highlights = r.highlights
            else:
                merged[r.chunk.id] = ScoredChunk(
                    chunk=r.chunk,
                    score=r.score * KEYWORD_WEIGHT,
                    match_type=MatchType.HYBRID,
                    highlights=r.highlights,
                )

        return sorted(merged.values(), key=lambda r: r.score, reverse=True)[:k]

    async def reranked_search(self, query: str, k: int, filters: Optional[QueryFilters] = None) -> list[ScoredChunk]:
        candidates = await self.hybrid_search(query, k * 2, filters)
        if self._reranker is not None:
            candidates = await self._reranker(query, candidates)
        return candidates[:k]

    async def corrective_search(self, query: str, k: int, filters: Optional[QueryFilters] = None) -> list[ScoredChunk]:
        """
        Hybrid search with relevance evaluation and query expansion.

        Stops on an accepted evaluation, a non-refine action, zero results, a
        refinement that adds no new tokens, or after MAX_CORRECTIVE_ITERATIONS
        refinements.
        """
        current = query
        refinements = 0
        while True:
            results = await self.hybrid_search(current, k, filters)
            if not results:
                return results

            evaluation = evaluate_relevance(current, results[:EVALUATION_WINDOW])
            LOG.debug(
                "Corrective iteration %d for %r: relevant=%s confidence=%.2f action=%s",
                refinements,
                current,
                evaluation.is_relevant,
                evaluation.confidence,
                evaluation.action,
            )
            if evaluation.is_relevant and evaluation.confidence > ACCEPT_CONFIDENCE:
                return results
            if evaluation.action is not CRAGAction.REFINE or not evaluation.refined_query:
                return results
            if refinements >= MAX_CORRECTIVE_ITERATIONS:
                return results
            if tokenize(evaluation.refined_query) == tokenize(current):
                return results

            current = evaluation.refined_query
            refinements += 1
