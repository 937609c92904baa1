"""
Tests for the tiered memory store.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from context_engine.errors import ExternalCallTimeout, StorageUnavailable
from context_engine.memory.backends import InMemoryBackend, TierBackend
from context_engine.memory.store import MemoryStore, MemoryTier

from conftest import make_settings


class UnavailableBackend:
    """A backend whose every call fails."""

    def __init__(self, tier: MemoryTier):
        self.tier = tier

    def _fail(self):
        raise StorageUnavailable(self.tier.value, reason="connection refused")

    async def get(self, namespace, key):
        self._fail()

    async def set(self, record):
        self._fail()

    async def delete(self, namespace, key):
        self._fail()

    async def scan(self, namespace=None, owner_user_id=None, include_unowned=False):
        self._fail()

    async def close(self):
        pass


@pytest.fixture
def store(settings, clock):
    return MemoryStore(settings=settings, clock=clock)


def test_backends_satisfy_protocol():
    """Test that shipped backends implement the tier interface."""
    assert isinstance(InMemoryBackend(), TierBackend)
    assert isinstance(UnavailableBackend(MemoryTier.WORKING), TierBackend)


@pytest.mark.asyncio
async def test_store_and_retrieve(store):
    """Test a basic round trip in each tier."""
    for tier in MemoryTier:
        assert await store.store("k", {"text": "hello"}, tier) is True
        assert await store.retrieve("k", tier) == {"text": "hello"}


@pytest.mark.asyncio
async def test_tiers_are_independent(store):
    """Test that the same key in different tiers holds different values."""
    await store.store("k", "short", MemoryTier.SHORT_TERM)
    await store.store("k", "long", MemoryTier.LONG_TERM)

    assert await store.retrieve("k", MemoryTier.SHORT_TERM) == "short"
    assert await store.retrieve("k", MemoryTier.LONG_TERM) == "long"
    assert await store.retrieve("k", MemoryTier.WORKING) is None


@pytest.mark.asyncio
async def test_ttl_expiry(store, clock):
    """Test that records vanish at their expiry time."""
    await store.store("k", "v", MemoryTier.WORKING, ttl=60)

    clock.advance(seconds=59)
    assert await store.retrieve("k", MemoryTier.WORKING) == "v"

    clock.advance(seconds=1)
    assert await store.retrieve("k", MemoryTier.WORKING) is None
    assert len(store.backends[MemoryTier.WORKING]) == 0


@pytest.mark.asyncio
async def test_default_short_term_ttl(clock):
    """Test that short-term records get the configured default TTL."""
    store = MemoryStore(settings=make_settings(short_term_ttl_seconds=10), clock=clock)
    await store.store("k", "v", MemoryTier.SHORT_TERM)

    record = await store.retrieve_record("k", MemoryTier.SHORT_TERM)
    assert (record.expires_at - record.created_at).total_seconds() == 10


@pytest.mark.asyncio
async def test_long_term_ignores_ttl_unless_asked(store, clock):
    """Test that long-term records are durable by default."""
    await store.store("durable", "v", MemoryTier.LONG_TERM, ttl=1)
    await store.store("fleeting", "v", MemoryTier.LONG_TERM, ttl=1, expire_long_term=True)

    clock.advance(seconds=5)

    assert await store.retrieve("durable", MemoryTier.LONG_TERM) == "v"
    assert await store.retrieve("fleeting", MemoryTier.LONG_TERM) is None


@pytest.mark.asyncio
async def test_non_positive_ttl_rejected(store):
    """Test that a zero TTL is a caller error."""
    with pytest.raises(ValueError):
        await store.store("k", "v", MemoryTier.WORKING, ttl=0)


@pytest.mark.asyncio
async def test_forget_is_idempotent(store):
    """Test that forgetting twice, or forgetting nothing, succeeds."""
    await store.store("k", "v", MemoryTier.LONG_TERM)

    assert await store.forget("k", MemoryTier.LONG_TERM) is True
    assert await store.forget("k", MemoryTier.LONG_TERM) is True
    assert await store.forget("never-stored", MemoryTier.LONG_TERM) is True
    assert await store.retrieve("k", MemoryTier.LONG_TERM) is None


@pytest.mark.asyncio
async def test_overwrite_keeps_original_owner(store):
    """Test that a record cannot be re-attributed by overwriting it."""
    await store.store("k", "v1", MemoryTier.LONG_TERM, owner_user_id="alice")
    await store.store("k", "v2", MemoryTier.LONG_TERM, owner_user_id="mallory")

    record = await store.retrieve_record("k", MemoryTier.LONG_TERM)
    assert record.value == "v2"
    assert record.owner_user_id == "alice"


@pytest.mark.asyncio
async def test_stored_values_are_copied(store):
    """Test that mutating a value after storing does not change the record."""
    value = {"likes": ["tea"]}
    await store.store("k", value, MemoryTier.WORKING)
    value["likes"].append("coffee")

    assert await store.retrieve("k", MemoryTier.WORKING) == {"likes": ["tea"]}


@pytest.mark.asyncio
async def test_search_ranks_by_relevance(store, clock):
    """Test keyword ranking and the result limit."""
    await store.store("a", "the user likes hiking in the mountains", MemoryTier.LONG_TERM)
    clock.advance(seconds=1)
    await store.store("b", "the user works at a bakery", MemoryTier.LONG_TERM)
    clock.advance(seconds=1)
    await store.store("c", "hiking boots size 42", MemoryTier.LONG_TERM)

    hits = await store.search("hiking mountains", limit=2)

    assert [hit.record.key for hit in hits] == ["a", "c"]
    assert hits[0].score >= hits[1].score
    assert all(0.0 <= hit.score <= 1.0 for hit in hits)


@pytest.mark.asyncio
async def test_search_ties_prefer_newer_records(store, clock):
    """Test that equal scores are ordered newest first."""
    await store.store("old", "tea", MemoryTier.LONG_TERM)
    clock.advance(seconds=1)
    await store.store("new", "tea", MemoryTier.LONG_TERM)

    hits = await store.search("tea")

    assert [hit.record.key for hit in hits] == ["new", "old"]


@pytest.mark.asyncio
async def test_search_limits(store):
    """Test zero limits and unsupported tiers."""
    await store.store("a", "tea", MemoryTier.LONG_TERM)

    assert await store.search("tea", limit=0) == []
    with pytest.raises(ValueError):
        await store.search("tea", tier=MemoryTier.WORKING)


@pytest.mark.asyncio
async def test_search_with_embeddings(settings, clock):
    """Test that stored embeddings drive ranking when an embedder is set."""
    vectors = {"cats": [1.0, 0.0], "dogs": [0.0, 1.0], "kittens": [0.9, 0.1]}
    embedder = AsyncMock()
    embedder.embed = AsyncMock(side_effect=lambda text: vectors[text])
    store = MemoryStore(settings=settings, embedder=embedder, clock=clock)

    await store.store("c", "cats", MemoryTier.LONG_TERM)
    await store.store("d", "dogs", MemoryTier.LONG_TERM)
    record = await store.retrieve_record("c", MemoryTier.LONG_TERM)

    hits = await store.search("kittens")

    assert record.embedding == [1.0, 0.0]
    assert [hit.record.key for hit in hits] == ["c", "d"]


@pytest.mark.asyncio
async def test_embedding_timeout(clock):
    """Test that a slow embedder fails the write with a typed error."""

    async def slow(text):
        await asyncio.sleep(1)
        return [1.0]

    embedder = AsyncMock()
    embedder.embed = slow
    store = MemoryStore(
        settings=make_settings(external_call_timeout_seconds=0.01),
        embedder=embedder,
        clock=clock,
    )

    with pytest.raises(ExternalCallTimeout):
        await store.store("k", "v", MemoryTier.LONG_TERM)


@pytest.mark.asyncio
async def test_short_term_outage_degrades(settings, clock):
    """Test that a short-term outage behaves like forgetting."""
    store = MemoryStore(
        backends={MemoryTier.SHORT_TERM: UnavailableBackend(MemoryTier.SHORT_TERM)},
        settings=settings,
        clock=clock,
    )

    assert await store.store("k", "v", MemoryTier.SHORT_TERM) is False
    assert await store.retrieve("k", MemoryTier.SHORT_TERM) is None
    assert await store.forget("k", MemoryTier.SHORT_TERM) is False


@pytest.mark.asyncio
async def test_long_term_outage_is_fatal(settings, clock):
    """Test that long-term failures propagate."""
    store = MemoryStore(
        backends={MemoryTier.LONG_TERM: UnavailableBackend(MemoryTier.LONG_TERM)},
        settings=settings,
        clock=clock,
    )

    with pytest.raises(StorageUnavailable):
        await store.store("k", "v", MemoryTier.LONG_TERM)
    with pytest.raises(StorageUnavailable):
        await store.retrieve("k", MemoryTier.LONG_TERM)
    with pytest.raises(StorageUnavailable):
        await store.search("anything")


@pytest.mark.asyncio
async def test_purge_owner_and_expired(store, clock):
    """Test owner purges and the active expiry sweep."""
    await store.store("a", "v", MemoryTier.WORKING, owner_user_id="alice", ttl=10)
    await store.store("b", "v", MemoryTier.WORKING, owner_user_id="bob", ttl=100)
    await store.store("c", "v", MemoryTier.WORKING, owner_user_id="alice", ttl=100)

    clock.advance(seconds=50)

    assert await store.purge_expired(MemoryTier.WORKING) == 1
    assert await store.purge_owner("alice", MemoryTier.WORKING) == 1
    assert [r.key for r in await store.records_for_owner("bob", MemoryTier.WORKING)] == ["b"]
    assert await store.records_for_owner("alice", MemoryTier.WORKING) == []


@pytest.mark.asyncio
async def test_concurrent_writes_to_one_key(store):
    """Test that concurrent writers leave exactly one complete record."""
    await asyncio.gather(*(
        store.store("k", {"writer": i, "payload": [i] * 10}, MemoryTier.WORKING)
        for i in range(20)
    ))

    value = await store.retrieve("k", MemoryTier.WORKING)
    assert value["payload"] == [value["writer"]] * 10
    assert len(store.backends[MemoryTier.WORKING]) == 1


@pytest.mark.asyncio
async def test_search_includes_shared_records(store, clock):
    """Test that unowned records join an owner's search without leaking other owners."""
    await store.store("own", "tea notes", MemoryTier.LONG_TERM, owner_user_id="alice")
    clock.advance(seconds=1)
    await store.store("shared", "tea handbook", MemoryTier.LONG_TERM)
    await store.store("theirs", "tea diary", MemoryTier.LONG_TERM, owner_user_id="bob")

    scoped = await store.search("tea", owner_user_id="alice")
    shared = await store.search("tea", owner_user_id="alice", include_shared=True)

    assert [hit.record.key for hit in scoped] == ["own"]
    assert sorted(hit.record.key for hit in shared) == ["own", "shared"]
