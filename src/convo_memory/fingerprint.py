"""
Fingerprint engine: hashed bag-of-words vectors and their similarity.

A fingerprint is a fixed-length, L2-normalised vector built from a text's
most frequent terms.  It is a pure function of the text, so equal texts
always produce bit-identical vectors.  The engine doubles as the ChromaDB
embedding function, which keeps stored vectors and query vectors in the
same space without any model download.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from typing import Any, Iterable, Sequence

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DIMENSIONS: int = 50

#: Only the most frequent terms contribute to a fingerprint.
TOP_TERMS: int = 20

#: Candidates scoring below this are dropped from search results.
SIMILARITY_THRESHOLD: float = 0.3

_NON_WORD = re.compile(r"[^\w\s]")


# ---------------------------------------------------------------------------
# Vectors
# ---------------------------------------------------------------------------


def stable_hash(term: str) -> int:
    """
    Shift-and-subtract string hash (``h = h * 31 + c``) over 32-bit signed
    arithmetic, returned as an absolute value.
    """
    h = 0
    for char in term:
        h = ((h << 5) - h + ord(char)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 1 << 32
    return abs(h)


def tokenize(text: str) -> list[str]:
    """Lowercase, drop punctuation, split on whitespace, keep tokens over 2 chars."""
    if not isinstance(text, str):
        return []
    return [tok for tok in _NON_WORD.sub(" ", text.lower()).split() if len(tok) > 2]


def fingerprint(text: str, dimensions: int = DIMENSIONS, top_k: int = TOP_TERMS) -> list[float]:
    """
    Return the normalised fingerprint of *text*.

    The *top_k* most frequent terms (first occurrence wins ties) are hashed
    into ``[0, dimensions)`` buckets, each adding its count; colliding terms
    sum.  Text without a qualifying token yields the zero vector.
    """
    vector = [0.0] * dimensions
    counts = Counter(tokenize(text))
    if not counts:
        return vector

    top = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:top_k]
    for term, count in top:
        vector[stable_hash(term) % dimensions] += count

    norm = math.sqrt(sum(x * x for x in vector))
    return [x / norm for x in vector]


def similarity(v1: Sequence[float] | None, v2: Sequence[float] | None) -> float:
    """
    Dot product of two normalised vectors clamped to ``[0, 1]``.

    Missing or mismatched-length vectors score 0.
    """
    if v1 is None or v2 is None or len(v1) != len(v2) or len(v1) == 0:
        return 0.0
    dot = sum(float(a) * float(b) for a, b in zip(v1, v2))
    return max(0.0, min(1.0, dot))


def is_zero(vector: Sequence[float]) -> bool:
    return not any(vector)


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


def rank(
    query_vector: Sequence[float],
    candidates: Iterable[tuple[Any, Sequence[float], int]],
    threshold: float = SIMILARITY_THRESHOLD,
    limit: int | None = None,
) -> list[tuple[Any, float]]:
    """
    Score ``(item, vector, recency)`` candidates against *query_vector*.

    Items below *threshold* are excluded; the rest are ordered by similarity
    descending, then by *recency* descending.
    """
    scored = []
    for item, vector, recency in candidates:
        score = similarity(query_vector, vector)
        if score < threshold:
            continue
        scored.append((item, score, recency))

    scored.sort(key=lambda entry: (entry[1], entry[2]), reverse=True)
    ranked = [(item, score) for item, score, _ in scored]
    return ranked if limit is None else ranked[:limit]


# ---------------------------------------------------------------------------
# ChromaDB adapter
# ---------------------------------------------------------------------------


class FingerprintEmbeddingFunction:
    """
    ChromaDB embedding function backed by :func:`fingerprint`.

    Implements both the legacy ``__call__`` interface and the
    ``embed_documents`` / ``embed_query`` interface used by ChromaDB ≥ 0.5.
    """

    def __init__(self, dimensions: int = DIMENSIONS, top_k: int = TOP_TERMS) -> None:
        self.dimensions = dimensions
        self.top_k = top_k

    def name(self) -> str:  # required by ChromaDB >= 0.5
        return "convo-memory-fingerprint"

    def _embed(self, texts: list[str]) -> list[list[float]]:
        return [fingerprint(text, self.dimensions, self.top_k) for text in texts]

    def __call__(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)

    def embed_documents(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)

    def embed_query(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)
