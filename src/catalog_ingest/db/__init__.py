"""
Database Package

Provides SQLAlchemy async session management, model definitions and the
vector store for PostgreSQL with pgvector.
"""

from .session import AsyncSessionLocal, async_engine, build_engine, build_session_factory
from .models import Base, CatalogChunk, EMBEDDING_DIMENSION, IngestCheckpointRecord
from .vector_store import PgVectorStore, VectorStoreBase

__all__ = [
    "AsyncSessionLocal",
    "async_engine",
    "build_engine",
    "build_session_factory",
    "Base",
    "CatalogChunk",
    "EMBEDDING_DIMENSION",
    "IngestCheckpointRecord",
    "PgVectorStore",
    "VectorStoreBase",
]
