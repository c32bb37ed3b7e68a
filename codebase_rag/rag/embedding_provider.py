"""
Embedding providers: text -> fixed-dimension unit vector.

Three local providers share one contract, none of them calls an external model:

- TfidfEmbeddingProvider ("local-tfidf"): vocabulary + IDF fitted on a corpus,
  unknown tokens hashed into the same space.
- SemanticHashEmbeddingProvider ("semantic-hash"): unigram/bigram hashing onto
  a deterministic trig-seeded projection. No stored state, identical vectors
  across processes.
- CodeEmbeddingProvider ("code-embedding"): semantic-hash over 80% of the
  dimensions plus hand-computed structural features of the source text.

Follows the abstract base + factory pattern used by the vector stores.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from abc import ABC, abstractmethod
from collections import Counter
from typing import Sequence

import numpy as np

from codebase_rag.errors import DimensionMismatchError
from codebase_rag.rag.tokenize import bigrams, tokenize

LOG = logging.getLogger("rag.embedding_provider")

DEFAULT_DIMENSION = 384
DEFAULT_VOCAB_SIZE = 10_000
DEFAULT_SEED = 42


def normalize(vector: Sequence[float]) -> list[float]:
    """Scale to unit L2 norm. A zero vector is returned unchanged."""
    arr = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr.tolist()
    return (arr / norm).tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine of the angle between two vectors.

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        DimensionMismatchError: the vectors differ in length.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b), where="Vectors")
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


class EmbeddingProvider(ABC):
    """Abstract interface for text -> embedding vector conversion."""

    #: True when initialize() must see the corpus before embeddings are meaningful.
    requires_corpus: bool = False

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Embed one text into a unit-norm vector of length dimension()."""
        ...

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed many texts. Order is preserved; an empty input yields []."""
        return [self.embed(t) for t in texts]

    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimensionality."""
        ...

    @abstractmethod
    def model_name(self) -> str:
        ...

    def initialize(self, corpus: Sequence[str]) -> None:
        """Fit provider state on a document corpus. No-op unless overridden."""

    def get_state(self) -> dict | None:
        """Fitted state to persist alongside an index, or None when stateless."""
        return None

    def set_state(self, state: dict) -> None:
        pass


class TfidfEmbeddingProvider(EmbeddingProvider):
    """
    TF-IDF embeddings over a vocabulary capped at ``dimension`` tokens.

    Tokens seen during initialize() occupy fixed slots weighted by
    ``ln(N / (df + 1)) + 1``. Any other token lands in slot
    ``md5(token) mod dimension`` with weight 1.
    """

    requires_corpus = True

    def __init__(self, dim: int = DEFAULT_DIMENSION) -> None:
        self._dim = dim
        self._vocab: dict[str, int] = {}
        self._idf: dict[str, float] = {}
        self._document_count = 0

    def initialize(self, corpus: Sequence[str]) -> None:
        doc_freq: Counter[str] = Counter()
        for doc in corpus:
            doc_freq.update(set(tokenize(doc)))

        n_docs = len(corpus)
        # most frequent terms win the capped vocabulary; ties resolve alphabetically
        ranked = sorted(doc_freq.items(), key=lambda kv: (-kv[1], kv[0]))[: self._dim]
        self._vocab = {token: i for i, (token, _) in enumerate(ranked)}
        self._idf = {token: math.log(n_docs / (df + 1)) + 1.0 for token, df in ranked}
        self._document_count = n_docs
        LOG.debug("TF-IDF vocabulary: %d terms from %d documents", len(self._vocab), n_docs)

    @property
    def vocabulary_size(self) -> int:
        return len(self._vocab)

    def get_state(self) -> dict | None:
        return {"vocab": self._vocab, "idf": self._idf, "documentCount": self._document_count}

    def set_state(self, state: dict) -> None:
        self._vocab = {str(k): int(v) for k, v in state.get("vocab", {}).items()}
        self._idf = {str(k): float(v) for k, v in state.get("idf", {}).items()}
        self._document_count = int(state.get("documentCount", 0))

    def _hash_slot(self, token: str) -> int:
        return int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self._dim

    def embed(self, text: str) -> list[float]:
        vec = np.zeros(self._dim, dtype=np.float64)
        tokens = tokenize(text)
        if not tokens:
            return vec.tolist()

        total = len(tokens)
        for token, count in Counter(tokens).items():
            tf = count / total
            slot = self._vocab.get(token)
            if slot is not None:
                vec[slot] += tf * self._idf[token]
            else:
                vec[self._hash_slot(token)] += tf
        return normalize(vec)

    def dimension(self) -> int:
        return self._dim

    def model_name(self) -> str:
        return "local-tfidf"


def projection_value(seed: int, i: int, j: int) -> float:
    """
    Deterministic pseudo-random value in [-1, 1) for matrix cell (i, j).

    Pure function of its arguments: the fractional part of a scaled sine,
    so no generator state has to be stored or replayed.
    """
    x = math.sin(seed * 0.1372 + (i + 1) * 12.9898 + (j + 1) * 78.233) * 43758.5453
    return (x - math.floor(x)) * 2.0 - 1.0


def rolling_hash(token: str) -> int:
    """32-bit polynomial rolling hash (base 31)."""
    h = 0
    for ch in token:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h


class SemanticHashEmbeddingProvider(EmbeddingProvider):
    """
    Random-projection embeddings over hashed unigrams and bigrams.

    The projection matrix is ``vocab_size x dimension`` with cells given by
    projection_value(seed, i, j). Rows are materialized on first use and kept
    in an owned cache, so construction is cheap and results never depend on
    call order.
    """

    def __init__(
        self,
        dim: int = DEFAULT_DIMENSION,
        vocab_size: int = DEFAULT_VOCAB_SIZE,
        seed: int = DEFAULT_SEED,
    ) -> None:
        self._dim = dim
        self._vocab_size = vocab_size
        self._seed = seed
        self._rows: dict[int, np.ndarray] = {}
        self._cols = np.arange(1, dim + 1, dtype=np.float64)

    def _row(self, i: int) -> np.ndarray:
        row = self._rows.get(i)
        if row is None:
            # vectorized projection_value over j
            x = np.sin(self._seed * 0.1372 + (i + 1) * 12.9898 + self._cols * 78.233) * 43758.5453
            row = (x - np.floor(x)) * 2.0 - 1.0
            self._rows[i] = row
        return row

    def embed(self, text: str) -> list[float]:
        vec = np.zeros(self._dim, dtype=np.float64)
        unigrams = tokenize(text)
        for token in unigrams + bigrams(unigrams):
            vec += self._row(rolling_hash(token) % self._vocab_size)
        return normalize(vec)

    def dimension(self) -> int:
        return self._dim

    def model_name(self) -> str:
        return "semantic-hash"


_FUNCTION_RE = re.compile(r"\b(function|def|fn|func|fun)\b|=>")
_CLASS_RE = re.compile(r"\b(class|struct|interface|trait|impl)\b")
_ASYNC_RE = re.compile(r"\b(async|await)\b")
_IMPORT_RE = re.compile(r"^\s*(import\b|from\s+\S+\s+import\b|export\b|#include\b|use\s)|\brequire\(", re.MULTILINE)
_COMMENT_LINE_RE = re.compile(r"^\s*(#|//|/\*|\*|--)")
_TEST_RE = re.compile(r"\b(describe|it|test|expect)\s*\(|\bassert\w*\b|\bdef test_|@pytest\b")
_ERROR_RE = re.compile(r"\b(try|catch|except|finally|throw|raise|rescue)\b|\w*Error\b")
_OPERATORS = set("+-*/%=<>!&|^~")
_BRACKETS = set("()[]{}")
_QUOTES = set("\"'`")

CODE_FEATURE_COUNT = 14


def _clamp(x: float) -> float:
    return max(0.0, min(1.0, x))


def code_features(text: str) -> list[float]:
    """Fourteen structural features of a source fragment, each in [0, 1]."""
    lines = text.split("\n")
    non_empty = [ln for ln in lines if ln.strip()]
    n_chars = max(len(text), 1)
    avg_len = sum(len(ln) for ln in non_empty) / len(non_empty) if non_empty else 0.0
    max_indent = max((len(ln) - len(ln.lstrip(" \t")) for ln in non_empty), default=0)
    comment_lines = sum(1 for ln in non_empty if _COMMENT_LINE_RE.match(ln))

    return [
        _clamp(len(lines) / 100.0),
        _clamp(avg_len / 80.0),
        _clamp(max_indent / 4 / 8.0),
        1.0 if _FUNCTION_RE.search(text) else 0.0,
        1.0 if _CLASS_RE.search(text) else 0.0,
        1.0 if _ASYNC_RE.search(text) else 0.0,
        1.0 if _IMPORT_RE.search(text) else 0.0,
        _clamp(sum(1 for c in text if c in _BRACKETS) / n_chars * 10.0),
        _clamp(comment_lines / len(non_empty)) if non_empty else 0.0,
        _clamp(sum(1 for c in text if c in _QUOTES) / n_chars * 10.0),
        _clamp(sum(1 for c in text if c.isdigit()) / n_chars * 10.0),
        _clamp(sum(1 for c in text if c in _OPERATORS) / n_chars * 10.0),
        1.0 if _TEST_RE.search(text) else 0.0,
        1.0 if _ERROR_RE.search(text) else 0.0,
    ]


class CodeEmbeddingProvider(EmbeddingProvider):
    """
    Semantic-hash text embedding concatenated with structural code features.

    Layout: ``[semantic-hash (80% of dim) | 14 features | zero padding]``,
    truncated to ``dim`` for very small dimensions, then L2-normalized.
    """

    def __init__(
        self,
        dim: int = DEFAULT_DIMENSION,
        vocab_size: int = DEFAULT_VOCAB_SIZE,
        seed: int = DEFAULT_SEED,
    ) -> None:
        self._dim = dim
        self._text_dim = max(1, int(dim * 0.8))
        self._semantic = SemanticHashEmbeddingProvider(self._text_dim, vocab_size=vocab_size, seed=seed)

    def embed(self, text: str) -> list[float]:
        combined = self._semantic.embed(text) + code_features(text)
        if len(combined) < self._dim:
            combined.extend([0.0] * (self._dim - len(combined)))
        return normalize(combined[: self._dim])

    def dimension(self) -> int:
        return self._dim

    def model_name(self) -> str:
        return "code-embedding"


def build_embedding_provider(
    kind: str = "code",
    dim: int = DEFAULT_DIMENSION,
    **kwargs,
) -> EmbeddingProvider:
    """
    Factory: create an EmbeddingProvider of the requested type.

    Args:
        kind: "local" / "tfidf", "semantic" or "code"
        dim: Embedding dimensionality
        **kwargs: Provider-specific options (vocab_size, seed)

    Raises:
        ValueError: Unknown provider kind
    """
    if kind in ("local", "tfidf"):
        return TfidfEmbeddingProvider(dim)
    if kind == "semantic":
        return SemanticHashEmbeddingProvider(dim, **kwargs)
    if kind == "code":
        return CodeEmbeddingProvider(dim, **kwargs)
    raise ValueError(f"Unknown embedding provider backend: {kind!r}. Supported: 'local', 'semantic', 'code'")
