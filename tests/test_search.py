"""Tests for query analysis and the retrieval strategies."""

from __future__ import annotations

import pytest

from codebase_rag.config import RAGConfig
from codebase_rag.rag.models import (
    ChunkType,
    CodeChunk,
    CRAGAction,
    IntentType,
    MatchType,
    QueryFilters,
    ScoredChunk,
)
from codebase_rag.rag.search import (
    MAX_CORRECTIVE_ITERATIONS,
    MAX_HIGHLIGHTS,
    RetrievalOrchestrator,
    build_store_filter,
    classify_query_intent,
    evaluate_relevance,
    expand_query,
    find_highlights,
)


def _chunk(cid: str, content: str, name: str = "", language: str = "python") -> CodeChunk:
    return CodeChunk(
        id=cid,
        content=content,
        file_path=f"{cid}.py",
        start_line=1,
        end_line=1,
        type=ChunkType.FUNCTION,
        language=language,
        metadata={"name": name},
    )


def _scored(cid: str, score: float, content: str = "zzz qqq", match_type: MatchType = MatchType.SEMANTIC) -> ScoredChunk:
    return ScoredChunk(chunk=_chunk(cid, content), score=score, match_type=match_type)


class TestQueryAnalysis:
    def test_intent_and_entities(self):
        intent = classify_query_intent("find the function `parse_config`")
        assert intent.type is IntentType.FIND_FUNCTION
        assert intent.entities == ["parse_config"]
        assert intent.confidence == pytest.approx(0.8)

    @pytest.mark.parametrize(
        "query,expected",
        [
            ("explain the retry loop", IntentType.UNDERSTAND_CODE),
            ("fix the crash on startup", IntentType.FIX_BUG),
            ("implement pagination", IntentType.ADD_FEATURE),
            ("refactor the parser", IntentType.REFACTOR),
            ("session manager", IntentType.GENERAL),
        ],
    )
    def test_intent_patterns(self, query, expected):
        assert classify_query_intent(query).type is expected

    def test_general_query_has_low_confidence(self):
        intent = classify_query_intent("session manager")
        assert intent.entities == []
        assert intent.confidence == pytest.approx(0.5)

    def test_expand_query(self):
        assert expand_query("auth error") == "auth error authentication login exception throw"
        assert expand_query("plain words") == "plain words"

    def test_build_store_filter(self):
        assert build_store_filter(None) is None
        assert build_store_filter(QueryFilters()) is None
        assert build_store_filter(QueryFilters(languages=["go"], chunk_types=["class"])) == {
            "language": "go",
            "type": "class",
        }
        assert build_store_filter(QueryFilters(languages=["go", "rust"])) is None

    def test_find_highlights_capped(self):
        highlights = find_highlights("abc " * 20, ["abc"])
        assert len(highlights) == MAX_HIGHLIGHTS
        assert (highlights[0].start, highlights[0].end, highlights[0].text) == (0, 3, "abc")


class TestEvaluateRelevance:
    def test_no_results(self):
        evaluation = evaluate_relevance("anything", [])
        assert evaluation.action is CRAGAction.REJECT
        assert evaluation.confidence == 0.0
        assert evaluation.feedback == "No results found"

    def test_relevant_results_accepted(self):
        evaluation = evaluate_relevance("open database", [_scored("a", 0.9, "def open_database(): pass")])
        assert evaluation.is_relevant
        assert evaluation.action is CRAGAction.ACCEPT
        assert evaluation.confidence == pytest.approx((0.9 + 1.0) / 2)

    def test_unmatched_terms_refine(self):
        evaluation = evaluate_relevance("auth error", [_scored("a", 0.2)])
        assert not evaluation.is_relevant
        assert evaluation.action is CRAGAction.REFINE
        assert evaluation.refined_query == expand_query("auth error")

    def test_partial_match_rejected(self):
        evaluation = evaluate_relevance("auth error", [_scored("a", 0.2, "auth only")])
        assert evaluation.action is CRAGAction.REJECT
        assert evaluation.refined_query is None


class TestStrategies:
    @pytest.mark.asyncio
    async def test_keyword_search_prefers_name_matches(self, indexed):
        orchestrator = RetrievalOrchestrator(indexed)
        results = await orchestrator.keyword_search("password", 5)
        assert results[0].chunk.name == "hash_password"
        assert results[0].score == pytest.approx(1.0)
        assert results[0].match_type is MatchType.KEYWORD
        assert results[0].highlights
        assert all(0.0 < r.score <= 1.0 for r in results)

    @pytest.mark.asyncio
    async def test_keyword_search_empty_query(self, indexed):
        assert await RetrievalOrchestrator(indexed).keyword_search("? !", 5) == []

    @pytest.mark.asyncio
    async def test_semantic_search_with_language_filter(self, indexed):
        orchestrator = RetrievalOrchestrator(indexed)
        results = await orchestrator.semantic_search("router", 5, QueryFilters(languages=["typescript"]))
        assert results
        assert all(r.chunk.language == "typescript" for r in results)
        assert all(r.match_type is MatchType.SEMANTIC for r in results)

    @pytest.mark.asyncio
    async def test_semantic_search_residual_filters(self, indexed):
        orchestrator = RetrievalOrchestrator(indexed)
        results = await orchestrator.semantic_search("connection", 10, QueryFilters(exclude_paths=["src/auth"]))
        assert results
        assert all("src/auth" not in r.chunk.file_path for r in results)

    @pytest.mark.asyncio
    async def test_semantic_search_finds_relevant_chunk(self, indexed):
        results = await RetrievalOrchestrator(indexed).semantic_search("hash password salt", 3)
        assert "hash_password" in [r.chunk.name for r in results]

    @pytest.mark.asyncio
    async def test_hybrid_fusion_weights(self, indexed, monkeypatch):
        orchestrator = RetrievalOrchestrator(indexed)
        a, b, c = _chunk("a", "x"), _chunk("b", "y"), _chunk("c", "z")
        calls = []

        async def fake_semantic(query, k, filters=None):
            calls.append(("semantic", k))
            return [ScoredChunk(a, 1.0, MatchType.SEMANTIC), ScoredChunk(c, 0.5, MatchType.SEMANTIC)]

        async def fake_keyword(query, k, filters=None):
            calls.append(("keyword", k))
            return [ScoredChunk(b, 1.0, MatchType.KEYWORD), ScoredChunk(a, 0.5, MatchType.KEYWORD)]

        monkeypatch.setattr(orchestrator, "semantic_search", fake_semantic)
        monkeypatch.setattr(orchestrator, "keyword_search", fake_keyword)

        results = await orchestrator.hybrid_search("q", 3)
        assert sorted(calls) == [("keyword", 3), ("semantic", 3)]
        assert [r.chunk.id for r in results] == ["a", "b", "c"]
        assert [r.score for r in results] == pytest.approx([0.8, 0.4, 0.3])
        assert all(r.match_type is MatchType.HYBRID for r in results)

    @pytest.mark.asyncio
    async def test_hybrid_end_to_end(self, indexed):
        results = await RetrievalOrchestrator(indexed).hybrid_search("hash password salt", 5)
        assert results[0].chunk.name == "hash_password"
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_reranked_uses_hook(self, indexed):
        async def reverse(query, candidates):
            return list(reversed(candidates))

        plain = await RetrievalOrchestrator(indexed).hybrid_search("session token", 4)
        reranked = await RetrievalOrchestrator(indexed, reranker=reverse).reranked_search("session token", 4)
        assert len(reranked) == 4
        assert reranked[0].chunk.id != plain[0].chunk.id

    @pytest.mark.asyncio
    async def test_reranked_without_hook_matches_hybrid(self, indexed):
        orchestrator = RetrievalOrchestrator(indexed)
        hybrid = (await orchestrator.hybrid_search("session token", 6))[:3]
        reranked = await orchestrator.reranked_search("session token", 3)
        assert [r.chunk.id for r in reranked] == [r.chunk.id for r in hybrid]


class TestCorrectiveSearch:
    @pytest.mark.asyncio
    async def test_refinement_bounded(self, indexed, monkeypatch):
        orchestrator = RetrievalOrchestrator(indexed)
        queries = []

        async def fake_hybrid(query, k, filters=None):
            queries.append(query)
            return [_scored("miss", 0.1)]

        monkeypatch.setattr(orchestrator, "hybrid_search", fake_hybrid)
        results = await orchestrator.corrective_search("function", 5)
        assert len(queries) == MAX_CORRECTIVE_ITERATIONS + 1
        assert queries[1] == "function method func"
        assert [r.chunk.id for r in results] == ["miss"]

    @pytest.mark.asyncio
    async def test_stops_on_empty_results(self, indexed, monkeypatch):
        orchestrator = RetrievalOrchestrator(indexed)
        calls = []

        async def fake_hybrid(query, k, filters=None):
            calls.append(query)
            return []

        monkeypatch.setattr(orchestrator, "hybrid_search", fake_hybrid)
        assert await orchestrator.corrective_search("function", 5) == []
        assert calls == ["function"]

    @pytest.mark.asyncio
    async def test_accepts_relevant_results(self, indexed, monkeypatch):
        orchestrator = RetrievalOrchestrator(indexed)
        calls = []

        async def fake_hybrid(query, k, filters=None):
            calls.append(query)
            return [_scored("hit", 0.9, "def open_database(path): pass")]

        monkeypatch.setattr(orchestrator, "hybrid_search", fake_hybrid)
        await orchestrator.corrective_search("open database", 5)
        assert calls == ["open database"]

    @pytest.mark.asyncio
    async def test_unexpandable_query_stops(self, indexed, monkeypatch):
        orchestrator = RetrievalOrchestrator(indexed)
        calls = []

        async def fake_hybrid(query, k, filters=None):
            calls.append(query)
            return [_scored("miss", 0.1)]

        monkeypatch.setattr(orchestrator, "hybrid_search", fake_hybrid)
        await orchestrator.corrective_search("widget frobnicator", 5)
        assert calls == ["widget frobnicator"]


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_retrieve_result_fields(self, indexed):
        orchestrator = RetrievalOrchestrator(indexed, RAGConfig(top_k=3, index_path=""))
        result = await orchestrator.retrieve("where is the session token refreshed")
        assert result.strategy == "hybrid"
        assert result.query == "where is the session token refreshed"
        assert result.total_chunks == len(indexed)
        assert 0 < len(result.chunks) <= 3
        assert result.retrieval_time_ms >= 0
        assert result.intent.type is IntentType.FIND_FUNCTION

    @pytest.mark.asyncio
    async def test_min_score_filters(self, indexed):
        result = await RetrievalOrchestrator(indexed).retrieve("password", min_score=0.99, strategy="keyword")
        assert result.chunks
        assert all(r.score >= 0.99 for r in result.chunks)

    @pytest.mark.asyncio
    async def test_requests_double_candidates(self, indexed, monkeypatch):
        orchestrator = RetrievalOrchestrator(indexed)
        seen = []

        async def fake_semantic(query, k, filters=None):
            seen.append(k)
            return [_scored(f"c{i}", 1.0 - i * 0.01) for i in range(k)]

        monkeypatch.setitem(orchestrator._strategies, "semantic", fake_semantic)
        result = await orchestrator.retrieve("q", top_k=4, strategy="semantic")
        assert seen == [8]
        assert [r.chunk.id for r in result.chunks] == ["c0", "c1", "c2", "c3"]

    @pytest.mark.asyncio
    async def test_hybrid_sub_searches_get_double_top_k(self, indexed, monkeypatch):
        orchestrator = RetrievalOrchestrator(indexed)
        seen = []

        async def fake_search(query, k, filters=None):
            seen.append(k)
            return []

        monkeypatch.setattr(orchestrator, "semantic_search", fake_search)
        monkeypatch.setattr(orchestrator, "keyword_search", fake_search)
        await orchestrator.retrieve("q", top_k=5, strategy="hybrid")
        assert seen == [10, 10]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy", ["semantic", "keyword", "hybrid", "reranked", "corrective"])
    async def test_every_strategy_runs(self, indexed, strategy):
        result = await RetrievalOrchestrator(indexed).retrieve("open database connection", top_k=2, strategy=strategy)
        assert result.strategy == strategy
        assert len(result.chunks) <= 2

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, indexed):
        with pytest.raises(ValueError, match="Unknown retrieval strategy"):
            await RetrievalOrchestrator(indexed).retrieve("q", strategy="magic")
