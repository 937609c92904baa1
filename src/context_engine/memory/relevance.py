"""
Relevance scoring between a query and a candidate text.

Scores are floats in [0, 1]. The keyword scorer needs nothing external; the
embedding scorer delegates vectors to an Embedder capability.
"""

import asyncio
import math
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence

from ..errors import ExternalCallTimeout
from ..llm.base import Embedder

_WORD_RE = re.compile(r"\w+")


def _words(text: str) -> set[str]:
    return set(_WORD_RE.findall(text.lower()))


def cosine_relevance(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity mapped from [-1, 1] onto [0, 1]."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    cosine = max(-1.0, min(1.0, dot / (norm_a * norm_b)))
    return (cosine + 1.0) / 2.0


class RelevanceScorer(ABC):
    """Scores how relevant a candidate is to a query."""

    @abstractmethod
    async def score(self, query: str, candidate: str) -> float:
        """Return a relevance score in [0, 1]."""
        pass


class KeywordRelevanceScorer(RelevanceScorer):
    """Word-overlap scoring with a boost for verbatim containment."""

    def __init__(self, substring_boost: float = 0.3):
        self.substring_boost = substring_boost

    async def score(self, query: str, candidate: str) -> float:
        query_words = _words(query)
        if not query_words:
            return 0.0

        overlap = len(query_words & _words(candidate))
        score = overlap / len(query_words)

        query_lower = query.lower().strip()
        if query_lower and query_lower in candidate.lower():
            score += self.substring_boost

        return min(score, 1.0)


class EmbeddingRelevanceScorer(RelevanceScorer):
    """Cosine similarity between embeddings of query and candidate."""

    def __init__(self, embedder: Embedder, timeout: float | None = None):
        self.embedder = embedder
        self.timeout = timeout

    async def embed(self, text: str) -> list[float]:
        try:
            return list(await asyncio.wait_for(self.embedder.embed(text), self.timeout))
        except asyncio.TimeoutError as e:
            raise ExternalCallTimeout("embed", self.timeout or 0.0) from e

    async def score(self, query: str, candidate: str) -> float:
        query_vector = await self.embed(query)
        candidate_vector = await self.embed(candidate)
        return cosine_relevance(query_vector, candidate_vector)


class ScoreCache:
    """Memoizes a scorer for one operation.

    Each (query, candidate) pair is scored at most once, so scores stay stable
    for the lifetime of the cache even if the scorer is not deterministic.
    """

    def __init__(self, scorer: RelevanceScorer, query: str):
        self.scorer = scorer
        self.query = query
        self._scores: dict[str, float] = {}
        self.calls = 0

    async def score(self, candidate: str) -> float:
        if candidate not in self._scores:
            self.calls += 1
            value = await self.scorer.score(self.query, candidate)
            self._scores[candidate] = max(0.0, min(1.0, float(value)))
        return self._scores[candidate]
