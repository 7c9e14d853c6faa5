"""
SQLAlchemy Models

Defines the database schema for:
- Catalog chunks (vector storage with pgvector)
- Ingestion checkpoints (database-backed progress tracking)
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

# Gemini embedding-001 returns 768-dimensional vectors.
EMBEDDING_DIMENSION = 768


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# ---------------------------------------------------------------------
# Catalog Chunk Model
# ---------------------------------------------------------------------

class CatalogChunk(Base):
    """
    One embedded chunk of one catalog item.

    The primary key is the deterministic document identifier, so the
    database itself rejects a second copy of the same (item, chunk).
    """
    __tablename__ = "catalog_chunk"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    release_date: Mapped[str] = mapped_column(String(32), nullable=False)
    rating: Mapped[float] = mapped_column(Float, nullable=False)
    where_to_watch: Mapped[List[str]] = mapped_column(ARRAY(Text), nullable=False, default=list)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    partition_key: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )

    embedding = Column(Vector(EMBEDDING_DIMENSION), nullable=False)

    __table_args__ = (
        Index("idx_chunk_title_date", "title", "release_date"),
        Index(
            "idx_chunk_embedding_cosine",
            "embedding",
            postgresql_using="hnsw",
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )


# ---------------------------------------------------------------------
# Ingestion Checkpoint Model
# ---------------------------------------------------------------------

class IngestCheckpointRecord(Base):
    """
    Durable ingestion progress for one named run.

    ``state`` holds the serialized ``IngestionCheckpoint``.
    """
    __tablename__ = "ingest_checkpoint"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[dict] = mapped_column(JSONB, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
