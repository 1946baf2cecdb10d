"""
Document store collaborator.

Documents are JSON objects addressed by (collection, id). Besides plain
get/set/update, every backend offers ``compare_and_set`` on a per-document
version counter, which is what the quota enforcer uses to make its increment
atomic without a multi-document transaction.
"""

from __future__ import annotations

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from sqlalchemy import JSON, DateTime, Integer, String, insert, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from practice_relay.errors import SessionError

Document = dict[str, Any]


class DocumentStore(ABC):
    """Key-value documents addressed by collection + id."""

    async def get(self, collection: str, doc_id: str) -> Document | None:
        doc, _ = await self.get_versioned(collection, doc_id)
        return doc

    @abstractmethod
    async def get_versioned(self, collection: str, doc_id: str) -> tuple[Document | None, int]:
        """Return the document and its version (0 when it does not exist)."""

    @abstractmethod
    async def set(self, collection: str, doc_id: str, doc: Document) -> None:
        """Create or overwrite a document."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, partial: Document) -> None:
        """Shallow-merge ``partial`` into an existing document."""

    @abstractmethod
    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        doc: Document,
        expected_version: int,
    ) -> bool:
        """
        Write ``doc`` only if the stored version equals ``expected_version``.

        An expected version of 0 means "create only if absent".

        Returns:
            True if the write happened, False on a version conflict
        """

    async def close(self) -> None:
        return None


def _missing(collection: str, doc_id: str) -> SessionError:
    return SessionError.config(f"Document {collection}/{doc_id} not found")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# In-memory backend
# =============================================================================


class MemoryDocumentStore(DocumentStore):
    """Process-local store; documents are deep-copied in and out."""

    def __init__(self) -> None:
        self._docs: dict[tuple[str, str], tuple[Document, int]] = {}
        self._lock = asyncio.Lock()

    async def get_versioned(self, collection: str, doc_id: str) -> tuple[Document | None, int]:
        entry = self._docs.get((collection, doc_id))
        if entry is None:
            return None, 0
        doc, version = entry
        return copy.deepcopy(doc), version

    async def set(self, collection: str, doc_id: str, doc: Document) -> None:
        async with self._lock:
            _, version = self._docs.get((collection, doc_id), (None, 0))
            self._docs[(collection, doc_id)] = (_json_copy(doc), version + 1)

    async def update(self, collection: str, doc_id: str, partial: Document) -> None:
        async with self._lock:
            entry = self._docs.get((collection, doc_id))
            if entry is None:
                raise _missing(collection, doc_id)
            doc, version = entry
            merged = {**doc, **_json_copy(partial)}
            self._docs[(collection, doc_id)] = (merged, version + 1)

    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        doc: Document,
        expected_version: int,
    ) -> bool:
        async with self._lock:
            _, version = self._docs.get((collection, doc_id), (None, 0))
            if version != expected_version:
                return False
            self._docs[(collection, doc_id)] = (_json_copy(doc), version + 1)
            return True


def _json_copy(doc: Document) -> Document:
    # Round-trip through JSON so the memory backend rejects what SQL would reject.
    return json.loads(json.dumps(doc))


# =============================================================================
# SQLAlchemy backend
# =============================================================================


class Base(DeclarativeBase):
    pass


class DocumentRow(Base):
    """One stored document."""

    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    body: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


def get_async_url(url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


class SqlDocumentStore(DocumentStore):
    """
    Document store over an async SQLAlchemy engine.

    Usage:
        store = SqlDocumentStore.from_url("sqlite+aiosqlite:///./practice_relay.db")
        await store.create_tables()
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._sessions = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> SqlDocumentStore:
        return cls(create_async_engine(get_async_url(database_url), echo=echo, pool_pre_ping=True))

    async def create_tables(self) -> None:
        """Initialize database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Document store tables initialized")

    async def close(self) -> None:
        await self.engine.dispose()

    async def get_versioned(self, collection: str, doc_id: str) -> tuple[Document | None, int]:
        try:
            async with self._sessions() as session:
                row = await session.get(DocumentRow, (collection, doc_id))
                if row is None:
                    return None, 0
                return copy.deepcopy(row.body), row.version
        except OperationalError as exc:
            raise _unavailable(exc) from exc

    async def set(self, collection: str, doc_id: str, doc: Document) -> None:
        try:
            async with self._sessions() as session, session.begin():
                row = await session.get(DocumentRow, (collection, doc_id), with_for_update=True)
                if row is None:
                    session.add(DocumentRow(collection=collection, doc_id=doc_id, body=doc, version=1))
                else:
                    row.body = doc
                    row.version += 1
                    row.updated_at = _utcnow()
        except OperationalError as exc:
            raise _unavailable(exc) from exc

    async def update(self, collection: str, doc_id: str, partial: Document) -> None:
        try:
            async with self._sessions() as session, session.begin():
                row = await session.get(DocumentRow, (collection, doc_id), with_for_update=True)
                if row is None:
                    raise _missing(collection, doc_id)
                row.body = {**row.body, **partial}
                row.version += 1
                row.updated_at = _utcnow()
        except OperationalError as exc:
            raise _unavailable(exc) from exc

    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        doc: Document,
        expected_version: int,
    ) -> bool:
        try:
            async with self._sessions() as session, session.begin():
                if expected_version == 0:
                    await session.execute(
                        insert(DocumentRow).values(
                            collection=collection,
                            doc_id=doc_id,
                            body=doc,
                            version=1,
                            updated_at=_utcnow(),
                        )
                    )
                    return True

                result = await session.execute(
                    update(DocumentRow)
                    .where(
                        DocumentRow.collection == collection,
                        DocumentRow.doc_id == doc_id,
                        DocumentRow.version == expected_version,
                    )
                    .values(body=doc, version=DocumentRow.version + 1, updated_at=_utcnow())
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1
        except IntegrityError:
            logger.debug("Create-if-absent conflict on {}/{}", collection, doc_id)
            return False
        except OperationalError as exc:
            raise _unavailable(exc) from exc


def _unavailable(exc: OperationalError) -> SessionError:
    logger.warning("Document store unavailable: {}", exc)
    return SessionError.network("Document store unavailable")
