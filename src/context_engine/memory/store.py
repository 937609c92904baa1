"""
Tiered memory store.

Three tiers with different contracts:
- SHORT_TERM: low latency, TTL-bound. An outage degrades to "forgetting".
- WORKING: moderate durability, exact-match lookup, TTL-bound.
- LONG_TERM: durable and searchable. Failures are never absorbed.

Expiry is lazy: reading an expired record returns nothing and removes it on
a best-effort basis. purge_expired() sweeps a tier actively.
"""

import asyncio
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import structlog

from ..config import Settings
from ..errors import ExternalCallTimeout, StorageUnavailable
from ..llm.base import Embedder
from ..locks import KeyedLocks
from .backends import InMemoryBackend, TierBackend
from .relevance import KeywordRelevanceScorer, RelevanceScorer, ScoreCache, cosine_relevance

logger = structlog.get_logger()

DEFAULT_NAMESPACE = "default"
MEMORY_NAMESPACE = "memories"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryTier(str, Enum):
    """Memory classes with distinct durability/latency tradeoffs."""

    SHORT_TERM = "short_term"
    WORKING = "working"
    LONG_TERM = "long_term"


@dataclass
class MemoryRecord:
    """A value stored in one tier under a (namespace, key)."""

    key: str
    value: Any
    tier: MemoryTier
    namespace: str = DEFAULT_NAMESPACE
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None
    owner_user_id: str | None = None
    embedding: list[float] | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    @property
    def text(self) -> str:
        """Searchable text of the value."""
        if isinstance(self.value, str):
            return self.value
        if isinstance(self.value, Mapping):
            for field_name in ("text", "content", "fact"):
                if isinstance(self.value.get(field_name), str):
                    return self.value[field_name]
        return json.dumps(self.value, ensure_ascii=False, default=str)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "tier": self.tier.value,
            "namespace": self.namespace,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "owner_user_id": self.owner_user_id,
        }


@dataclass
class SearchHit:
    """A search result with its relevance score."""

    record: MemoryRecord
    score: float


class MemoryStore:
    """Tiered key-addressed storage with per-tier TTL and failure semantics."""

    def __init__(
        self,
        backends: Mapping[MemoryTier, TierBackend] | None = None,
        settings: Settings | None = None,
        scorer: RelevanceScorer | None = None,
        embedder: Embedder | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or Settings()
        backends = dict(backends or {})
        for tier in MemoryTier:
            backends.setdefault(tier, InMemoryBackend())
        self.backends: dict[MemoryTier, TierBackend] = backends
        self.scorer = scorer or KeywordRelevanceScorer()
        self.embedder = embedder
        self.clock = clock
        self._locks = KeyedLocks()

    def _default_ttl(self, tier: MemoryTier) -> int | None:
        if tier == MemoryTier.SHORT_TERM:
            return self.settings.short_term_ttl_seconds
        if tier == MemoryTier.WORKING:
            return self.settings.working_ttl_seconds
        return None

    def _degrade(self, tier: MemoryTier, error: StorageUnavailable, operation: str, key: str | None) -> None:
        """Absorb an outage on a non-critical tier, or re-raise it."""
        if tier == MemoryTier.LONG_TERM:
            raise error
        logger.warning(
            "Memory tier unavailable, continuing without it",
            tier=tier.value,
            operation=operation,
            key=key,
            error=str(error),
        )

    async def _embed(self, text: str, timeout: float | None = None) -> list[float]:
        timeout = timeout or self.settings.external_call_timeout_seconds
        try:
            return list(await asyncio.wait_for(self.embedder.embed(text), timeout))
        except asyncio.TimeoutError as e:
            raise ExternalCallTimeout("embed", timeout) from e

    async def store(
        self,
        key: str,
        value: Any,
        tier: MemoryTier,
        ttl: float | None = None,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        owner_user_id: str | None = None,
        expire_long_term: bool = False,
    ) -> bool:
        """Write or overwrite a record.

        SHORT_TERM and WORKING always carry a TTL (the tier default when none
        is given). LONG_TERM ignores ``ttl`` unless ``expire_long_term`` is set.
        Overwriting refreshes ``created_at`` and keeps the original owner.

        Returns False when a non-critical tier was unavailable and the write
        was dropped.
        """
        if tier == MemoryTier.LONG_TERM and not expire_long_term:
            ttl = None
        elif ttl is None:
            ttl = self._default_ttl(tier)
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be positive")

        backend = self.backends[tier]
        async with self._locks.hold(f"{tier.value}:{namespace}:{key}"):
            now = self.clock()
            try:
                existing = await backend.get(namespace, key)
                if existing is not None and not existing.is_expired(now) and existing.owner_user_id:
                    owner_user_id = existing.owner_user_id

                record = MemoryRecord(
                    key=key,
                    value=value,
                    tier=tier,
                    namespace=namespace,
                    created_at=now,
                    expires_at=now + timedelta(seconds=ttl) if ttl is not None else None,
                    owner_user_id=owner_user_id,
                )
                if tier == MemoryTier.LONG_TERM and self.embedder is not None:
                    record.embedding = await self._embed(record.text)

                await backend.set(record)
            except StorageUnavailable as e:
                self._degrade(tier, e, "store", key)
                return False

        logger.debug("Memory stored", tier=tier.value, namespace=namespace, key=key)
        return True

    async def retrieve_record(
        self,
        key: str,
        tier: MemoryTier,
        *,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> MemoryRecord | None:
        """Get the full record, or None when missing or expired."""
        backend = self.backends[tier]
        try:
            record = await backend.get(namespace, key)
        except StorageUnavailable as e:
            self._degrade(tier, e, "retrieve", key)
            return None

        if record is None:
            return None

        if record.is_expired(self.clock()):
            try:
                await backend.delete(namespace, key)
            except StorageUnavailable as e:
                logger.debug("Could not remove expired record", tier=tier.value, key=key, error=str(e))
            return None

        return record

    async def retrieve(
        self,
        key: str,
        tier: MemoryTier,
        *,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> Any | None:
        """Get a stored value, or None when missing or expired."""
        record = await self.retrieve_record(key, tier, namespace=namespace)
        return record.value if record is not None else None

    async def forget(
        self,
        key: str,
        tier: MemoryTier,
        *,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> bool:
        """Remove a record. Forgetting a missing key is not an error."""
        async with self._locks.hold(f"{tier.value}:{namespace}:{key}"):
            try:
                await self.backends[tier].delete(namespace, key)
            except StorageUnavailable as e:
                self._degrade(tier, e, "forget", key)
                return False
        return True

    async def search(
        self,
        query: str,
        tier: MemoryTier = MemoryTier.LONG_TERM,
        limit: int | None = None,
        *,
        owner_user_id: str | None = None,
        namespace: str | None = None,
        include_shared: bool = False,
        timeout: float | None = None,
    ) -> list[SearchHit]:
        """Rank LONG_TERM records by relevance to ``query``.

        Ordered by score descending, newer records first on ties; never
        longer than ``limit``. With an owner, ``include_shared`` also ranks
        records that belong to nobody. ``timeout`` bounds the query embedding.
        """
        if tier != MemoryTier.LONG_TERM:
            raise ValueError("search is only supported on the LONG_TERM tier")

        limit = self.settings.memory_search_limit if limit is None else limit
        if limit <= 0:
            return []

        records = await self.backends[tier].scan(
            namespace=namespace,
            owner_user_id=owner_user_id,
            include_unowned=include_shared,
        )
        now = self.clock()
        records = [r for r in records if not r.is_expired(now)]
        if not records:
            return []

        query_vector = None
        if self.embedder is not None and any(r.embedding for r in records):
            query_vector = await self._embed(query, timeout)

        cache = ScoreCache(self.scorer, query)
        hits = []
        for record in records:
            if query_vector is not None and record.embedding:
                score = cosine_relevance(query_vector, record.embedding)
            else:
                score = await cache.score(record.text)
            hits.append(SearchHit(record=record, score=score))

        hits.sort(key=lambda h: (-h.score, -h.record.created_at.timestamp()))
        return hits[:limit]

    async def records_for_owner(
        self,
        user_id: str,
        tier: MemoryTier,
        namespace: str | None = None,
    ) -> list[MemoryRecord]:
        """All live records of a user in one tier. Failures always propagate."""
        now = self.clock()
        records = await self.backends[tier].scan(namespace=namespace, owner_user_id=user_id)
        return [r for r in records if not r.is_expired(now)]

    async def purge_owner(self, user_id: str, tier: MemoryTier) -> int:
        """Delete every record of a user in one tier, expired or not.

        Strict on every tier: compliance deletes cannot be degraded.
        """
        backend = self.backends[tier]
        removed = 0
        for record in await backend.scan(owner_user_id=user_id):
            async with self._locks.hold(f"{tier.value}:{record.namespace}:{record.key}"):
                if await backend.delete(record.namespace, record.key):
                    removed += 1
        return removed

    async def purge_expired(self, tier: MemoryTier) -> int:
        """Actively remove expired records from a tier."""
        backend = self.backends[tier]
        now = self.clock()
        removed = 0
        for record in await backend.scan():
            if record.is_expired(now) and await backend.delete(record.namespace, record.key):
                removed += 1
        if removed:
            logger.info("Purged expired records", tier=tier.value, removed=removed)
        return removed

    async def close(self) -> None:
        """Release backend resources (connection pools)."""
        seen = set()
        for backend in self.backends.values():
            if id(backend) not in seen:
                seen.add(id(backend))
                await backend.close()
