"""
Database models for Context-Engine

Uses SQLAlchemy 2.0 async ORM. One table holds the records of every tier
served by the database; (tier, namespace, key) is the primary key.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


class MemoryRecordRow(Base):
    """Persisted MemoryRecord."""

    __tablename__ = "memory_records"

    tier: Mapped[str] = mapped_column(String(20), primary_key=True)
    namespace: Mapped[str] = mapped_column(String(100), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)

    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    owner_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Search index entry for LONG_TERM records
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)

    # Timestamps (stored as naive UTC)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_memory_records_tier_owner", "tier", "owner_user_id"),
        Index("ix_memory_records_expires", "expires_at"),
    )


async def init_database(database_url: str) -> async_sessionmaker:
    """Initialize the database and return session maker."""
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False)
