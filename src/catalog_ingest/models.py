"""
Ingestion Data Models

This module defines the records that flow through the ingestion pipeline:

- ``CatalogItem``       one record from a catalog page (ephemeral)
- ``EnrichmentRecord``  distribution channels for an item (best-effort)
- ``TextChunk``         one overlapping window of an item's composed text
- ``IndexedDocument``   the durable unit written to the vector store
- ``WriteResult`` / ``RunSummary``  counters reported back to the caller

``IndexedDocument.id`` is a pure function of (title, release date, chunk
index). Re-ingesting the same item therefore always produces the same
identifiers, which is what makes store writes idempotent.
"""

from __future__ import annotations

import hashlib
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

PROVENANCE_URL = "https://www.themoviedb.org/movie/{item_id}"


def document_id(title: str, release_date: str, chunk_index: int) -> str:
    """
    Deterministic identifier for one chunk of one catalog item.
    """
    return hashlib.sha256(f"{title}_{release_date}_{chunk_index}".encode("utf-8")).hexdigest()


class CatalogItem(BaseModel):
    """
    A single record returned by the catalog provider.

    Everything except ``id`` is optional here; incomplete records are
    filtered by ``is_indexable`` rather than rejected at parse time.
    """

    id: int
    title: Optional[str] = None
    overview: Optional[str] = None
    release_date: Optional[str] = None
    vote_average: Optional[float] = None
    partition_key: Optional[int] = None

    model_config = ConfigDict(extra="ignore", frozen=True)

    @property
    def source_url(self) -> str:
        return PROVENANCE_URL.format(item_id=self.id)

    def is_indexable(self, min_rating: float) -> bool:
        """
        True when the item has every required field and meets the rating floor.
        """
        if not (self.title and self.title.strip()):
            return False
        if not (self.release_date and self.release_date.strip()):
            return False
        if not (self.overview and self.overview.strip()):
            return False
        if self.vote_average is None:
            return False
        return self.vote_average >= min_rating


class EnrichmentRecord(BaseModel):
    """Distribution-channel names for one item in one region."""

    item_id: int
    providers: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def empty(cls, item_id: int) -> EnrichmentRecord:
        return cls(item_id=item_id, providers=[])

    def availability_line(self) -> str:
        if self.providers:
            return f"Available on: {', '.join(self.providers)}"
        return "Availability: Unknown"


class TextChunk(BaseModel):
    """One overlapping window of an item's composed document text."""

    chunk_index: int = Field(..., ge=0)
    text: str = Field(..., min_length=1)
    item_id: int

    model_config = ConfigDict(frozen=True)


class IndexedDocument(BaseModel):
    """
    A single embedded chunk, as persisted to the vector store.

    Metadata is denormalized so a retrieval consumer never has to join back
    against the catalog provider.
    """

    id: str = Field(..., min_length=64, max_length=64)
    vector: List[float] = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    title: str
    release_date: str
    rating: float
    where_to_watch: List[str] = Field(default_factory=list)
    source: str
    chunk_index: int = Field(..., ge=0)
    partition_key: Optional[int] = None

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
    )


def compose_document_text(item: CatalogItem, enrichment: EnrichmentRecord) -> str:
    """
    Normalized text for an item: title, synopsis, rating, date, availability.
    """
    lines = [
        f"Title: {item.title.strip()}",
        f"Overview: {' '.join(item.overview.split())}",
        f"Rating: {item.vote_average}",
        f"Release Date: {item.release_date.strip()}",
        enrichment.availability_line(),
    ]
    return "\n".join(lines)


class WriteResult(BaseModel):
    """Outcome of persisting a set of documents."""

    inserted_count: int = 0
    skipped_count: int = 0

    def __add__(self, other: WriteResult) -> WriteResult:
        return WriteResult(
            inserted_count=self.inserted_count + other.inserted_count,
            skipped_count=self.skipped_count + other.skipped_count,
        )


class RunSummary(BaseModel):
    """Totals reported at the end of an ingestion run."""

    inserted: int = 0
    skipped: int = 0
    filtered: int = 0
    failed: int = 0
    pages_committed: int = 0
    partitions_completed: List[int] = Field(default_factory=list)
    failed_pages: List[str] = Field(default_factory=list)
