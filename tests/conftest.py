"""
Shared fixtures: in-memory fakes for the catalog, embedder and vector store.
"""

from typing import Any, Dict, List, Optional, Sequence

import pytest

from catalog_ingest.config import IngestConfig
from catalog_ingest.core.errors import DuplicateDocumentError, EmbeddingError
from catalog_ingest.core.retry import RetryExecutor
from catalog_ingest.db.vector_store import VectorStoreBase
from catalog_ingest.ingestion.checkpoint import JsonFileCheckpointStore
from catalog_ingest.models import CatalogItem, EnrichmentRecord, IndexedDocument

TEST_DIMENSION = 8

# 1800 characters of whitespace-separated text.
LONG_SYNOPSIS = ("abcd " * 360).rstrip() + "e"


class FakeVectorStore(VectorStoreBase):
    """
    Dict-backed store.

    Like the real table, ``insert_many`` rejects the whole batch when any
    identifier already exists.
    """

    def __init__(self) -> None:
        self.documents: Dict[str, IndexedDocument] = {}
        self.bulk_calls = 0
        self.single_calls = 0
        self.exists_calls = 0
        self.fail_inserts_with: Optional[Exception] = None

    async def ensure_collection(self, dimension: int) -> bool:
        return False

    async def exists(self, document_id: str) -> bool:
        self.exists_calls += 1
        return document_id in self.documents

    async def insert_many(self, documents: Sequence[IndexedDocument]) -> int:
        self.bulk_calls += 1
        if self.fail_inserts_with is not None:
            raise self.fail_inserts_with
        conflicts = [doc.id for doc in documents if doc.id in self.documents]
        if conflicts:
            raise DuplicateDocumentError("duplicate key", conflicts)
        for doc in documents:
            self.documents[doc.id] = doc
        return len(documents)

    async def insert_one(self, document: IndexedDocument) -> None:
        self.single_calls += 1
        if document.id in self.documents:
            raise DuplicateDocumentError("duplicate key", [document.id])
        self.documents[document.id] = document

    async def search(
        self,
        query_embedding: List[float],
        k: int = 5,
        filters: Optional[Dict[str, Any]] = None,
        include_score: bool = True,
    ) -> List[Dict[str, Any]]:
        return [{"id": doc.id, "text": doc.text} for doc in list(self.documents.values())[:k]]

    async def get_stats(self) -> Dict[str, int]:
        return {
            "total_documents": len(self.documents),
            "total_titles": len({doc.title for doc in self.documents.values()}),
        }


class FakeCatalog:
    """
    Catalog keyed by (partition, page). Missing pages are empty.

    ``errors`` maps (partition, page) to an exception raised by fetch_page;
    ``enrichment_errors`` maps item ids to an exception raised by
    fetch_enrichment.
    """

    def __init__(self, pages: Optional[Dict[tuple, List[CatalogItem]]] = None) -> None:
        self.pages = pages or {}
        self.providers: Dict[int, List[str]] = {}
        self.errors: Dict[tuple, Exception] = {}
        self.enrichment_errors: Dict[int, Exception] = {}
        self.fetched: List[tuple] = []

    async def fetch_page(self, partition_key: int, page: int) -> List[CatalogItem]:
        self.fetched.append((partition_key, page))
        if (partition_key, page) in self.errors:
            raise self.errors[(partition_key, page)]
        return list(self.pages.get((partition_key, page), []))

    async def fetch_enrichment(self, item_id: int) -> EnrichmentRecord:
        if item_id in self.enrichment_errors:
            raise self.enrichment_errors[item_id]
        return EnrichmentRecord(item_id=item_id, providers=self.providers.get(item_id, []))


class FakeEmbedder:
    """
    Deterministic vectors. Texts containing a ``fail_on`` marker raise
    EmbeddingError; so do the first ``fail_times`` calls.
    """

    def __init__(self, dimension: int = TEST_DIMENSION) -> None:
        self.dimension = dimension
        self.calls: List[str] = []
        self.fail_on: Optional[str] = None
        self.fail_times = 0

    async def embed(self, text: str, context: Optional[str] = None) -> List[float]:
        self.calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise EmbeddingError("malformed embedding")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise EmbeddingError("malformed embedding")
        return [float(len(text) % 7) + 0.5] * self.dimension


def make_item(
    item_id: int,
    title: Optional[str] = "Test Title",
    rating: Optional[float] = 8.0,
    release_date: Optional[str] = "2020-05-01",
    overview: Optional[str] = "A short synopsis.",
    partition_key: Optional[int] = 2020,
) -> CatalogItem:
    return CatalogItem(
        id=item_id,
        title=title,
        overview=overview,
        release_date=release_date,
        vote_average=rating,
        partition_key=partition_key,
    )


def make_document(document_id: str, title: str = "Doc", chunk_index: int = 0) -> IndexedDocument:
    return IndexedDocument(
        id=document_id,
        vector=[0.1] * TEST_DIMENSION,
        text=f"text for {document_id[:8]}",
        title=title,
        release_date="2020-01-01",
        rating=7.5,
        where_to_watch=["Netflix"],
        source="https://www.themoviedb.org/movie/1",
        chunk_index=chunk_index,
        partition_key=2020,
    )


@pytest.fixture
def ingest_config():
    return IngestConfig(
        retry_limit=2,
        base_delay=0.0,
        concurrency_limit=3,
        rate_limit_delay=0.0,
        max_pages_per_partition=10,
        min_rating=7.0,
        vector_dimension=TEST_DIMENSION,
        batch_size=20,
    )


@pytest.fixture
def executor():
    return RetryExecutor(retry_limit=2, base_delay=0.0)


@pytest.fixture
def store():
    return FakeVectorStore()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def checkpoint_store(tmp_path):
    return JsonFileCheckpointStore(tmp_path / "ingest_progress.json")
