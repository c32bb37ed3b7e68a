"""Tests for the local embedding providers."""

from __future__ import annotations

import math

import pytest

from codebase_rag.errors import DimensionMismatchError
from codebase_rag.rag.embedding_provider import (
    CODE_FEATURE_COUNT,
    CodeEmbeddingProvider,
    SemanticHashEmbeddingProvider,
    TfidfEmbeddingProvider,
    build_embedding_provider,
    code_features,
    cosine_similarity,
    normalize,
    projection_value,
    rolling_hash,
)
from codebase_rag.rag.tokenize import bigrams, tokenize


def _norm(vec):
    return math.sqrt(sum(x * x for x in vec))


class TestTokenize:
    def test_lowercases_and_strips_punctuation(self):
        assert tokenize("Hello, World! getUser()") == ["hello", "world", "getuser"]

    def test_drops_single_characters(self):
        assert tokenize("a b cd x_y") == ["cd", "x_y"]

    def test_bigrams(self):
        assert bigrams(["open", "the", "file"]) == ["open_the", "the_file"]
        assert bigrams(["solo"]) == []


class TestVectorMath:
    def test_normalize_unit_length(self):
        assert _norm(normalize([3.0, 4.0])) == pytest.approx(1.0)

    def test_normalize_zero_vector_unchanged(self):
        assert normalize([0.0, 0.0, 0.0]) == [0.0, 0.0, 0.0]

    def test_cosine_identical_and_orthogonal(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_cosine_zero_magnitude(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_cosine_dimension_mismatch(self):
        with pytest.raises(DimensionMismatchError, match="same dimension"):
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])

    def test_projection_value_range_and_determinism(self):
        values = [projection_value(42, i, j) for i in range(20) for j in range(20)]
        assert all(-1.0 <= v < 1.0 for v in values)
        assert projection_value(42, 3, 7) == projection_value(42, 3, 7)
        assert projection_value(42, 3, 7) != projection_value(7, 3, 7)

    def test_rolling_hash_is_32_bit(self):
        assert rolling_hash("") == 0
        assert rolling_hash("ab") == ord("a") * 31 + ord("b")
        assert 0 <= rolling_hash("x" * 500) < 2**32


class TestTfidfProvider:
    CORPUS = [
        "def parse_config(path): return json.load(path)",
        "def save_config(path, data): json.dump(data, path)",
        "class HttpClient: def get(self, url): pass",
    ]

    def test_dimension_and_unit_norm(self):
        provider = TfidfEmbeddingProvider(dim=32)
        provider.initialize(self.CORPUS)
        vec = provider.embed("parse the config file")
        assert len(vec) == 32
        assert _norm(vec) == pytest.approx(1.0)
        assert provider.dimension() == 32
        assert provider.model_name() == "local-tfidf"

    def test_vocabulary_capped_at_dimension(self):
        provider = TfidfEmbeddingProvider(dim=4)
        provider.initialize(self.CORPUS)
        assert provider.vocabulary_size == 4

    def test_unknown_tokens_still_embed(self):
        provider = TfidfEmbeddingProvider(dim=16)
        vec = provider.embed("completely unseen words")
        assert _norm(vec) == pytest.approx(1.0)

    def test_empty_text_is_zero_vector(self):
        provider = TfidfEmbeddingProvider(dim=8)
        assert provider.embed("") == [0.0] * 8

    def test_similar_documents_score_higher(self):
        provider = TfidfEmbeddingProvider(dim=64)
        provider.initialize(self.CORPUS)
        query = provider.embed("load config from path")
        config_doc = provider.embed(self.CORPUS[0])
        client_doc = provider.embed(self.CORPUS[2])
        assert cosine_similarity(query, config_doc) > cosine_similarity(query, client_doc)

    def test_state_round_trip(self):
        fitted = TfidfEmbeddingProvider(dim=32)
        fitted.initialize(self.CORPUS)
        restored = TfidfEmbeddingProvider(dim=32)
        restored.set_state(fitted.get_state())
        assert restored.embed("json config") == fitted.embed("json config")


class TestSemanticHashProvider:
    def test_deterministic_across_instances(self):
        a = SemanticHashEmbeddingProvider(dim=48, vocab_size=1000)
        b = SemanticHashEmbeddingProvider(dim=48, vocab_size=1000)
        b.embed("warm the cache with other text first")
        assert a.embed("open the database") == b.embed("open the database")

    def test_unit_norm(self):
        provider = SemanticHashEmbeddingProvider(dim=48)
        assert _norm(provider.embed("read file contents")) == pytest.approx(1.0)

    def test_seed_changes_vectors(self):
        a = SemanticHashEmbeddingProvider(dim=48, seed=1)
        b = SemanticHashEmbeddingProvider(dim=48, seed=2)
        assert a.embed("token") != b.embed("token")

    def test_shared_words_increase_similarity(self):
        provider = SemanticHashEmbeddingProvider(dim=128)
        base = provider.embed("open database connection")
        close = provider.embed("open database connection pool")
        far = provider.embed("render html template")
        assert cosine_similarity(base, close) > cosine_similarity(base, far)

    def test_batch_preserves_order(self):
        provider = SemanticHashEmbeddingProvider(dim=16)
        texts = ["alpha beta", "gamma delta"]
        assert provider.embed_batch(texts) == [provider.embed(t) for t in texts]
        assert provider.embed_batch([]) == []


class TestCodeProvider:
    def test_feature_vector_shape(self):
        feats = code_features("async def fetch():\n    try:\n        await go()\n    except ValueError:\n        raise\n")
        assert len(feats) == CODE_FEATURE_COUNT
        assert all(0.0 <= f <= 1.0 for f in feats)
        assert feats[3] == 1.0  # function
        assert feats[5] == 1.0  # async
        assert feats[13] == 1.0  # error handling

    def test_dimension_and_norm(self):
        provider = CodeEmbeddingProvider(dim=100)
        vec = provider.embed("class Foo:\n    pass\n")
        assert len(vec) == 100
        assert _norm(vec) == pytest.approx(1.0)
        assert provider.model_name() == "code-embedding"

    def test_small_dimension_truncates(self):
        provider = CodeEmbeddingProvider(dim=8)
        assert len(provider.embed("def f(): pass")) == 8


class TestFactory:
    def test_known_kinds(self):
        assert isinstance(build_embedding_provider("local", 16), TfidfEmbeddingProvider)
        assert isinstance(build_embedding_provider("tfidf", 16), TfidfEmbeddingProvider)
        assert isinstance(build_embedding_provider("semantic", 16), SemanticHashEmbeddingProvider)
        assert isinstance(build_embedding_provider("code", 16), CodeEmbeddingProvider)

    def test_unknown_raises(self):
        with pytest.raises(ValueError, match="Unknown embedding provider backend"):
            build_embedding_provider("openai")
