"""Tiered memory, relevance scoring and user profiles."""

from .backends import InMemoryBackend, TierBackend
from .relevance import (
    EmbeddingRelevanceScorer,
    KeywordRelevanceScorer,
    RelevanceScorer,
    ScoreCache,
)
from .store import MemoryRecord, MemoryStore, MemoryTier, SearchHit
from .user_profile import ExportBundle, ProfileManager, UserProfile

__all__ = [
    "InMemoryBackend",
    "TierBackend",
    "EmbeddingRelevanceScorer",
    "KeywordRelevanceScorer",
    "RelevanceScorer",
    "ScoreCache",
    "MemoryRecord",
    "MemoryStore",
    "MemoryTier",
    "SearchHit",
    "ExportBundle",
    "ProfileManager",
    "UserProfile",
]
