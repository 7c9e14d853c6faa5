"""
Deduplication Ledger

Tracks which document identifiers have already been handled.

Two layers
----------
- Run-scoped: an in-memory set shared by every item pipeline in this
  process. Mutations happen without an intervening ``await`` so concurrent
  pipelines on the same event loop observe a consistent set.
- Cross-run: an existence-by-identifier lookup against the vector store,
  routed through the retry executor.

A store hit only saves an embedding call and a write; the store's own
duplicate detection is what keeps re-ingestion safe.
"""

from __future__ import annotations

import logging
from typing import Set

from ..core.retry import RetryExecutor
from ..db.vector_store import VectorStoreBase

logger = logging.getLogger("ingest.dedup")

STORE_CALL_CLASS = "store"


class DedupLedger:
    """Run-scoped seen-set backed by an authoritative store lookup."""

    def __init__(self, store: VectorStoreBase, executor: RetryExecutor) -> None:
        self._store = store
        self._executor = executor
        self._seen: Set[str] = set()
        self.store_hits = 0

    def __len__(self) -> int:
        return len(self._seen)

    def has_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen.add(key)

    def claim(self, key: str) -> bool:
        """
        Mark *key* seen and return True if this caller is the first to do so.
        """
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def release(self, key: str) -> None:
        """Give up a claim whose document never reached the writer."""
        self._seen.discard(key)

    async def exists_in_store(self, key: str) -> bool:
        """
        Authoritative check: is a document with this identifier already stored?
        """
        found = await self._executor.execute(
            lambda: self._store.exists(key),
            f"duplicate check for {key[:12]}",
            call_class=STORE_CALL_CLASS,
        )
        if found:
            logger.debug("Document %s already stored", key[:12])
            self.store_hits += 1
            self._seen.add(key)
        return found
