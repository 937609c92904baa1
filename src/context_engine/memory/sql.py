"""
SQL backend for memory tiers.

Each write runs in its own transaction, so a record is either fully present
or absent. Driver and connection errors surface as StorageUnavailable.
"""

from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..errors import StorageUnavailable
from ..models import MemoryRecordRow, init_database
from .store import MemoryRecord, MemoryTier

logger = structlog.get_logger()


def _to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _to_aware_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SQLTierBackend:
    """Stores one tier's records in the ``memory_records`` table."""

    def __init__(self, session_maker: async_sessionmaker, tier: MemoryTier):
        self.session_maker = session_maker
        self.tier = tier

    def _to_record(self, row: MemoryRecordRow) -> MemoryRecord:
        return MemoryRecord(
            key=row.key,
            value=row.value,
            tier=self.tier,
            namespace=row.namespace,
            created_at=_to_aware_utc(row.created_at),
            expires_at=_to_aware_utc(row.expires_at),
            owner_user_id=row.owner_user_id,
            embedding=row.embedding,
        )

    def _unavailable(self, error: SQLAlchemyError, key: str | None = None) -> StorageUnavailable:
        logger.error("Database error", tier=self.tier.value, key=key, error=str(error))
        return StorageUnavailable(self.tier.value, key, str(error))

    async def get(self, namespace: str, key: str) -> MemoryRecord | None:
        try:
            async with self.session_maker() as db:
                row = await db.get(MemoryRecordRow, (self.tier.value, namespace, key))
                return self._to_record(row) if row is not None else None
        except SQLAlchemyError as e:
            raise self._unavailable(e, key) from e

    async def set(self, record: MemoryRecord) -> None:
        try:
            async with self.session_maker() as db:
                async with db.begin():
                    await db.merge(MemoryRecordRow(
                        tier=self.tier.value,
                        namespace=record.namespace,
                        key=record.key,
                        value=record.value,
                        owner_user_id=record.owner_user_id,
                        embedding=record.embedding,
                        created_at=_to_naive_utc(record.created_at),
                        expires_at=_to_naive_utc(record.expires_at),
                    ))
        except SQLAlchemyError as e:
            raise self._unavailable(e, record.key) from e

    async def delete(self, namespace: str, key: str) -> bool:
        try:
            async with self.session_maker() as db:
                async with db.begin():
                    result = await db.execute(
                        delete(MemoryRecordRow).where(
                            MemoryRecordRow.tier == self.tier.value,
                            MemoryRecordRow.namespace == namespace,
                            MemoryRecordRow.key == key,
                        )
                    )
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise self._unavailable(e, key) from e

    async def scan(
        self,
        namespace: str | None = None,
        owner_user_id: str | None = None,
        include_unowned: bool = False,
    ) -> list[MemoryRecord]:
        query = select(MemoryRecordRow).where(MemoryRecordRow.tier == self.tier.value)
        if namespace is not None:
            query = query.where(MemoryRecordRow.namespace == namespace)
        if owner_user_id is not None:
            owner = MemoryRecordRow.owner_user_id == owner_user_id
            if include_unowned:
                owner = or_(owner, MemoryRecordRow.owner_user_id.is_(None))
            query = query.where(owner)

        try:
            async with self.session_maker() as db:
                result = await db.execute(query.order_by(MemoryRecordRow.created_at))
                return [self._to_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise self._unavailable(e) from e

    async def close(self) -> None:
        await self.session_maker.kw["bind"].dispose()


async def create_backends(
    database_url: str,
    short_term_in_database: bool = False,
) -> dict[MemoryTier, "SQLTierBackend"]:
    """Database backends for WORKING and LONG_TERM (and SHORT_TERM if asked)."""
    session_maker = await init_database(database_url)
    tiers = [MemoryTier.WORKING, MemoryTier.LONG_TERM]
    if short_term_in_database:
        tiers.insert(0, MemoryTier.SHORT_TERM)
    return {tier: SQLTierBackend(session_maker, tier) for tier in tiers}
