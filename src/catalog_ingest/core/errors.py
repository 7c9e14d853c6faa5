"""
Error Taxonomy

This module defines the exception hierarchy shared by every ingestion
component, and the classifier the retry executor uses to tell transient
failures from everything else.

Categories
----------
- Transient: timeouts, connection resets, rate-limit and 5xx responses.
  Retried with backoff, then escalated as ``RetryExhaustedError``.
- Conflict: duplicate document identifier. Benign, counted, never retried.
- Data quality: missing fields or sub-floor rating. Not an exception at all;
  the orchestrator skips the item.
- Fatal: exhausted retries, auth failures, bad configuration, checkpoint or
  batch persistence failures. Abort the current page and surface at the
  process boundary as a non-zero exit.
"""

from __future__ import annotations

import asyncio

import httpx
from sqlalchemy.exc import InterfaceError, OperationalError

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class IngestError(RuntimeError):
    """Base exception for ingestion failures."""


class TransientError(IngestError):
    """A failure that is expected to succeed on a later attempt."""


class DuplicateDocumentError(IngestError):
    """Raised when the store rejects a write because an identifier already exists."""

    def __init__(self, message: str, document_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.document_ids = document_ids or []


class EmbeddingError(IngestError):
    """Raised when the embedding service returns an unusable response."""


class FatalIngestError(IngestError):
    """Base for failures that must abort the current page."""


class RetryExhaustedError(FatalIngestError):
    """Raised once a transient failure has used up every allowed retry."""

    def __init__(self, context: str, attempts: int) -> None:
        super().__init__(f"{context}: failed after {attempts} attempt(s)")
        self.context = context
        self.attempts = attempts


class CatalogAuthError(FatalIngestError):
    """Raised when the catalog provider rejects our credentials or quota."""


class ConfigurationError(FatalIngestError):
    """Raised for invalid or missing configuration."""


class CheckpointError(FatalIngestError):
    """Raised when ingestion progress cannot be persisted."""


class BatchWriteError(FatalIngestError):
    """Raised when a batch of documents could not be written for a non-duplicate reason."""


class PageProcessingError(FatalIngestError):
    """Raised when a catalog page could not be committed."""

    def __init__(self, partition_key: int, page: int, reason: str) -> None:
        super().__init__(f"partition={partition_key} page={page}: {reason}")
        self.partition_key = partition_key
        self.page = page


# ---------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------

def is_transient(exc: BaseException) -> bool:
    """
    Return True when *exc* is worth retrying.

    Conflicts and fatal errors are never transient, even when they wrap a
    transport error as their cause.
    """
    if isinstance(exc, (DuplicateDocumentError, FatalIngestError, EmbeddingError)):
        return False

    if isinstance(exc, TransientError):
        return True

    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True

    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES

    if isinstance(exc, (OperationalError, InterfaceError)):
        return True

    return False
