"""
Vector Store

Backend-agnostic store interface plus the PostgreSQL + pgvector
implementation used in production.

Each operation opens its own short-lived session from the session factory,
so concurrently running item pipelines never share an ``AsyncSession``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, insert, inspect as sa_inspect, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import ConfigurationError, DuplicateDocumentError
from ..models import IndexedDocument
from .models import Base, CatalogChunk, EMBEDDING_DIMENSION, IngestCheckpointRecord

logger = logging.getLogger("ingest.store")

UNIQUE_VIOLATION = "23505"

FILTERABLE_COLUMNS = {
    "title": CatalogChunk.title,
    "release_date": CatalogChunk.release_date,
    "partition_key": CatalogChunk.partition_key,
    "chunk_index": CatalogChunk.chunk_index,
    "source": CatalogChunk.source,
}


# ---------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------

class VectorStoreBase(ABC):
    """
    Operations the ingestion pipeline needs from a vector store.

    ``insert_many`` may reject a whole batch with ``DuplicateDocumentError``
    when any identifier already exists; callers fall back to ``insert_one``.
    """

    @abstractmethod
    async def ensure_collection(self, dimension: int) -> bool:
        """Create the collection if absent. Returns True when it was created."""
        ...

    @abstractmethod
    async def exists(self, document_id: str) -> bool:
        """Return True if a document with *document_id* is stored."""
        ...

    @abstractmethod
    async def insert_many(self, documents: Sequence[IndexedDocument]) -> int:
        """Insert *documents* as one bulk operation. Returns the inserted count."""
        ...

    @abstractmethod
    async def insert_one(self, document: IndexedDocument) -> None:
        """Insert a single document; raises ``DuplicateDocumentError`` on conflict."""
        ...

    @abstractmethod
    async def search(
        self,
        query_embedding: List[float],
        k: int = 5,
        filters: Optional[Dict[str, Any]] = None,
        include_score: bool = True,
    ) -> List[Dict[str, Any]]:
        """Return the top-*k* most similar documents."""
        ...

    @abstractmethod
    async def get_stats(self) -> Dict[str, int]:
        """Return collection statistics."""
        ...


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return code == UNIQUE_VIOLATION
    return False


def _to_row(document: IndexedDocument) -> Dict[str, Any]:
    return {
        "id": document.id,
        "embedding": document.vector,
        "text": document.text,
        "title": document.title,
        "release_date": document.release_date,
        "rating": document.rating,
        "where_to_watch": list(document.where_to_watch),
        "source": document.source,
        "chunk_index": document.chunk_index,
        "partition_key": document.partition_key,
    }


# ---------------------------------------------------------------------
# pgvector implementation
# ---------------------------------------------------------------------

class PgVectorStore(VectorStoreBase):
    """
    PostgreSQL-backed vector store using pgvector for cosine similarity search.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """
        Parameters
        ----------
        session_factory : async_sessionmaker[AsyncSession]
            Factory used to open one session per store operation.
        """
        self._session_factory = session_factory

    async def ensure_collection(self, dimension: int) -> bool:
        """
        Create the pgvector extension and tables if they do not exist.

        Raises
        ------
        ConfigurationError
            If *dimension* does not match the column definition.
        """
        if dimension != EMBEDDING_DIMENSION:
            raise ConfigurationError(
                f"Vector dimension {dimension} does not match the "
                f"{CatalogChunk.__tablename__} column ({EMBEDDING_DIMENSION})."
            )

        async with self._session_factory() as session:
            conn = await session.connection()
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            existed = await conn.run_sync(
                lambda sync_conn: sa_inspect(sync_conn).has_table(CatalogChunk.__tablename__)
            )
            await conn.run_sync(
                Base.metadata.create_all,
                tables=[CatalogChunk.__table__, IngestCheckpointRecord.__table__],
            )
            await session.commit()

        if existed:
            logger.info("Collection %s already exists", CatalogChunk.__tablename__)
        else:
            logger.info(
                "Collection %s created (dimension=%d, metric=cosine)",
                CatalogChunk.__tablename__,
                dimension,
            )
        return not existed

    async def exists(self, document_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CatalogChunk.id).where(CatalogChunk.id == document_id).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def insert_many(self, documents: Sequence[IndexedDocument]) -> int:
        """
        Insert all *documents* in one statement.

        Raises
        ------
        DuplicateDocumentError
            If any identifier already exists; nothing from the batch is kept.
        """
        if not documents:
            return 0

        rows = [_to_row(doc) for doc in documents]
        async with self._session_factory() as session:
            try:
                await session.execute(insert(CatalogChunk), rows)
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if _is_unique_violation(exc):
                    raise DuplicateDocumentError(
                        f"Batch of {len(rows)} documents contains an existing identifier",
                        [doc.id for doc in documents],
                    ) from exc
                raise
        return len(rows)

    async def insert_one(self, document: IndexedDocument) -> None:
        async with self._session_factory() as session:
            try:
                await session.execute(insert(CatalogChunk).values(**_to_row(document)))
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if _is_unique_violation(exc):
                    raise DuplicateDocumentError(
                        f"Document {document.id} already exists", [document.id]
                    ) from exc
                raise

    async def search(
        self,
        query_embedding: List[float],
        k: int = 5,
        filters: Optional[Dict[str, Any]] = None,
        include_score: bool = True,
    ) -> List[Dict[str, Any]]:
        """
        Search for similar chunks using cosine similarity.

        Parameters
        ----------
        query_embedding : List[float]
            Query vector.
        k : int
            Number of results to return.
        filters : Optional[Dict[str, Any]]
            Equality filters on metadata columns. The special key
            ``where_to_watch`` matches chunks available on that provider.
        include_score : bool
            Whether to attach a ``score`` (1 - cosine distance) to each hit.

        Returns
        -------
        List[Dict[str, Any]]
            One dict per hit with id, text and denormalized metadata.
        """
        # pgvector's <=> operator
        cosine_distance = CatalogChunk.embedding.cosine_distance(query_embedding)

        stmt = (
            select(CatalogChunk, (1 - cosine_distance).label("score"))
            .order_by(cosine_distance)
            .limit(k)
        )

        for key, value in (filters or {}).items():
            if key == "where_to_watch":
                stmt = stmt.where(CatalogChunk.where_to_watch.any(value))
            elif key in FILTERABLE_COLUMNS:
                stmt = stmt.where(FILTERABLE_COLUMNS[key] == value)
            else:
                raise ValueError(f"Unsupported filter field: {key!r}")

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        hits: List[Dict[str, Any]] = []
        for chunk, score in rows:
            hit = {
                "id": chunk.id,
                "text": chunk.text,
                "title": chunk.title,
                "release_date": chunk.release_date,
                "rating": chunk.rating,
                "where_to_watch": list(chunk.where_to_watch or []),
                "source": chunk.source,
                "chunk_index": chunk.chunk_index,
            }
            if include_score:
                hit["score"] = float(score)
            hits.append(hit)
        return hits

    async def get_stats(self) -> Dict[str, int]:
        async with self._session_factory() as session:
            total = await session.execute(select(func.count()).select_from(CatalogChunk))
            titles = await session.execute(
                select(func.count(func.distinct(CatalogChunk.title)))
            )
            return {
                "total_documents": total.scalar() or 0,
                "total_titles": titles.scalar() or 0,
            }
