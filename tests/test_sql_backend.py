"""
Tests for the SQLAlchemy tier backend.
"""

import pytest
from sqlalchemy import text

from context_engine.engine.core import ContextEngine
from context_engine.errors import StorageUnavailable
from context_engine.memory.sql import SQLTierBackend, create_backends
from context_engine.memory.store import MemoryRecord, MemoryStore, MemoryTier

from conftest import make_settings


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'context.db'}"


@pytest.mark.asyncio
async def test_create_backends_tiers(database_url):
    """Test which tiers are served by the database."""
    backends = await create_backends(database_url)
    try:
        assert set(backends) == {MemoryTier.WORKING, MemoryTier.LONG_TERM}
        assert all(isinstance(b, SQLTierBackend) for b in backends.values())
    finally:
        await backends[MemoryTier.LONG_TERM].close()

    backends = await create_backends(database_url, short_term_in_database=True)
    try:
        assert MemoryTier.SHORT_TERM in backends
    finally:
        await backends[MemoryTier.LONG_TERM].close()


@pytest.mark.asyncio
async def test_record_round_trip(database_url, clock):
    """Test that records keep value, owner, timestamps and embedding."""
    backends = await create_backends(database_url)
    backend = backends[MemoryTier.LONG_TERM]
    try:
        record = MemoryRecord(
            key="k",
            value={"text": "likes tea", "tags": ["drink"]},
            tier=MemoryTier.LONG_TERM,
            namespace="memories",
            created_at=clock(),
            owner_user_id="alice",
            embedding=[0.1, 0.2],
        )
        await backend.set(record)

        loaded = await backend.get("memories", "k")
        assert loaded.value == record.value
        assert loaded.owner_user_id == "alice"
        assert loaded.created_at == clock()
        assert loaded.embedding == [0.1, 0.2]
        assert await backend.get("other", "k") is None
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_tiers_share_a_table_without_mixing(database_url, clock):
    """Test that the same key in two tiers stays separate."""
    backends = await create_backends(database_url)
    store = MemoryStore(backends, make_settings(), clock=clock)
    try:
        await store.store("k", "working value", MemoryTier.WORKING)
        await store.store("k", "long value", MemoryTier.LONG_TERM)

        assert await store.retrieve("k", MemoryTier.WORKING) == "working value"
        assert await store.retrieve("k", MemoryTier.LONG_TERM) == "long value"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_delete_and_scan(database_url, clock):
    """Test delete results and owner-filtered scans."""
    backends = await create_backends(database_url)
    store = MemoryStore(backends, make_settings(), clock=clock)
    backend = backends[MemoryTier.LONG_TERM]
    try:
        await store.store("a", "one", MemoryTier.LONG_TERM, owner_user_id="alice")
        await store.store("b", "two", MemoryTier.LONG_TERM, owner_user_id="bob")

        assert [r.key for r in await backend.scan(owner_user_id="alice")] == ["a"]
        assert await backend.delete("default", "a") is True
        assert await backend.delete("default", "a") is False
        assert [r.key for r in await backend.scan()] == ["b"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_expiry_survives_persistence(database_url, clock):
    """Test that TTLs round-trip through the database."""
    backends = await create_backends(database_url)
    store = MemoryStore(backends, make_settings(), clock=clock)
    try:
        await store.store("k", "v", MemoryTier.WORKING, ttl=30)
        clock.advance(seconds=31)

        assert await store.retrieve("k", MemoryTier.WORKING) is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_driver_errors_become_storage_unavailable(database_url, clock):
    """Test that driver errors surface as StorageUnavailable and degrade per tier."""
    backends = await create_backends(database_url)
    store = MemoryStore(backends, make_settings(), clock=clock)
    backend = backends[MemoryTier.LONG_TERM]
    try:
        async with backend.session_maker() as db:
            await db.execute(text("DROP TABLE memory_records"))
            await db.commit()

        with pytest.raises(StorageUnavailable):
            await backend.get("default", "k")
        with pytest.raises(StorageUnavailable):
            await store.store("k", "v", MemoryTier.LONG_TERM)
        assert await store.store("k", "v", MemoryTier.WORKING) is False
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_engine_persists_memories_across_instances(database_url):
    """Test that long-term memories outlive the engine that wrote them."""
    settings = make_settings(database_url=database_url)

    first = await ContextEngine.from_settings(settings)
    try:
        await first.remember("alice", "alice prefers green tea")
    finally:
        await first.close()

    second = await ContextEngine.from_settings(settings)
    try:
        bundle = await second.export_user("alice")
        assert [m["value"]["text"] for m in bundle.memories["long_term"]] == ["alice prefers green tea"]
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_scan_with_unowned_records(database_url, clock):
    """Test that the owner filter can admit records without an owner."""
    backends = await create_backends(database_url)
    store = MemoryStore(backends, make_settings(), clock=clock)
    backend = backends[MemoryTier.LONG_TERM]
    try:
        await store.store("mine", "one", MemoryTier.LONG_TERM, owner_user_id="alice")
        await store.store("shared", "two", MemoryTier.LONG_TERM)
        await store.store("theirs", "three", MemoryTier.LONG_TERM, owner_user_id="bob")

        keys = [r.key for r in await backend.scan(owner_user_id="alice", include_unowned=True)]
        assert sorted(keys) == ["mine", "shared"]
    finally:
        await store.close()
