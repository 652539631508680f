"""
Durable media cache: one row per source key, holding the Telegram file_id that
lets a video be re-sent without uploading it again.
"""

from __future__ import annotations

import dataclasses
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

from sqlalchemy import BigInteger, DateTime, Integer, String, event, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from vidsave.errors import CacheUnavailable

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class MediaCache(Base):
    __tablename__ = "media_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_key: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    delivery_ref: Mapped[str] = mapped_column(String(512), nullable=False)
    delivery_ref_unique: Mapped[str] = mapped_column(String(256), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    hit_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)


@dataclasses.dataclass
class CacheRecord:
    """Detached snapshot of a media_cache row."""

    source_key: str
    content_hash: str
    delivery_ref: str
    delivery_ref_unique: str
    size_bytes: int
    hit_count: int = 0
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: MediaCache) -> "CacheRecord":
        return cls(
            source_key=row.source_key,
            content_hash=row.content_hash,
            delivery_ref=row.delivery_ref,
            delivery_ref_unique=row.delivery_ref_unique,
            size_bytes=row.size_bytes,
            hit_count=row.hit_count,
            created_at=row.created_at,
            last_used_at=row.last_used_at,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheStore:
    """Async cache store over a pooled SQLAlchemy engine.

    A missing record is reported as ``None``; storage and connectivity
    failures raise :class:`CacheUnavailable`.
    """

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    async def init(self) -> None:
        if self._engine is not None:
            return

        engine_kwargs: dict = {"echo": False}
        if self._database_url.startswith("sqlite"):
            self._engine = create_async_engine(self._database_url, **engine_kwargs)

            @event.listens_for(self._engine.sync_engine, "connect")
            def _set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # pragma: no cover
                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                finally:
                    cursor.close()
        else:
            self._engine = create_async_engine(
                self._database_url,
                pool_size=5,
                max_overflow=5,
                pool_recycle=300,
                pool_pre_ping=True,
                **engine_kwargs,
            )

        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False, class_=AsyncSession)
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as err:
            raise CacheUnavailable(f"failed to initialize cache schema: {err}") from err
        logger.info("Cache store initialized: dialect=%s", self._engine.dialect.name)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._sessionmaker is None:
            raise CacheUnavailable("cache store is not initialized")
        session = self._sessionmaker()
        try:
            yield session
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise
        except (SQLAlchemyError, OSError) as err:
            await session.rollback()
            raise CacheUnavailable(str(err)) from err
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def lookup_by_key(self, source_key: str) -> Optional[CacheRecord]:
        """Return the live record for ``source_key`` and count the hit."""
        async with self._session() as session:
            stmt = select(MediaCache).where(
                MediaCache.source_key == source_key,
                MediaCache.deleted_at.is_(None),
            )
            row = (await session.execute(stmt)).scalars().first()
            if row is None:
                return None
            await session.execute(
                update(MediaCache)
                .where(MediaCache.id == row.id)
                .values(hit_count=MediaCache.hit_count + 1, last_used_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.refresh(row)
            return CacheRecord.from_row(row)

    async def lookup_by_hash(self, content_hash: str) -> Optional[CacheRecord]:
        async with self._session() as session:
            stmt = (
                select(MediaCache)
                .where(MediaCache.content_hash == content_hash, MediaCache.deleted_at.is_(None))
                .order_by(MediaCache.last_used_at.desc(), MediaCache.id.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalars().first()
            return CacheRecord.from_row(row) if row is not None else None

    async def upsert(self, record: CacheRecord) -> CacheRecord:
        """Insert or update by source key; created_at and hit_count survive updates."""
        if not record.delivery_ref:
            raise ValueError("delivery_ref must not be empty")
        try:
            return await self._write(record)
        except IntegrityError:
            # A concurrent writer inserted the same key first; the row exists now, so this pass updates it.
            logger.debug("Concurrent insert for source_key=%s, updating instead", record.source_key)
        try:
            return await self._write(record)
        except IntegrityError as err:
            raise CacheUnavailable(f"upsert failed for {record.source_key}: {err}") from err

    async def _write(self, record: CacheRecord) -> CacheRecord:
        now = _utcnow()
        async with self._session() as session:
            stmt = select(MediaCache).where(MediaCache.source_key == record.source_key)
            row = (await session.execute(stmt)).scalars().first()
            if row is None:
                row = MediaCache(
                    source_key=record.source_key,
                    content_hash=record.content_hash,
                    delivery_ref=record.delivery_ref,
                    delivery_ref_unique=record.delivery_ref_unique,
                    size_bytes=record.size_bytes,
                    hit_count=0,
                    created_at=now,
                    last_used_at=now,
                )
                session.add(row)
            else:
                row.content_hash = record.content_hash
                row.delivery_ref = record.delivery_ref
                row.delivery_ref_unique = record.delivery_ref_unique
                row.size_bytes = record.size_bytes
                row.last_used_at = now
                row.deleted_at = None
            await session.flush()
            return CacheRecord.from_row(row)

    async def soft_delete(self, source_key: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(MediaCache)
                .where(MediaCache.source_key == source_key, MediaCache.deleted_at.is_(None))
                .values(deleted_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0
