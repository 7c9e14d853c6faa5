"""
Batch Writer

Buffers indexed documents and persists them to the vector store in
fixed-size slices.

Each slice is attempted as one bulk insert. A bulk insert that is rejected
because some identifier already exists falls back to inserting the slice
one document at a time, so the non-conflicting documents still land and
the conflicting ones are counted as skipped.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Sequence

from ..core.errors import BatchWriteError, DuplicateDocumentError
from ..core.retry import RetryExecutor
from ..db.vector_store import VectorStoreBase
from ..models import IndexedDocument, WriteResult
from .dedup import STORE_CALL_CLASS

logger = logging.getLogger("ingest.writer")


class BatchWriter:
    """
    Accumulates documents and writes them in slices of ``batch_size``.

    The buffer is shared by every item pipeline of a page; ``add`` does not
    await, so concurrent pipelines never interleave inside it.
    """

    def __init__(
        self,
        store: VectorStoreBase,
        executor: RetryExecutor,
        batch_size: int = 20,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._store = store
        self._executor = executor
        self.batch_size = batch_size
        self._buffer: List[IndexedDocument] = []

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def add(self, documents: Iterable[IndexedDocument]) -> None:
        self._buffer.extend(documents)

    async def flush(self) -> WriteResult:
        """
        Write every buffered document.

        Raises
        ------
        BatchWriteError
            If a slice failed for a reason other than duplicate identifiers.
            Documents from that slice onwards stay unwritten and are dropped
            from the buffer.
        """
        documents, self._buffer = self._buffer, []
        result = WriteResult()
        for start in range(0, len(documents), self.batch_size):
            result = result + await self._write_slice(documents[start:start + self.batch_size])
        return result

    async def write(self, documents: Iterable[IndexedDocument]) -> WriteResult:
        self.add(documents)
        return await self.flush()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _write_slice(self, batch: Sequence[IndexedDocument]) -> WriteResult:
        try:
            inserted = await self._executor.execute(
                lambda: self._store.insert_many(batch),
                f"bulk insert of {len(batch)} documents",
                call_class=STORE_CALL_CLASS,
            )
        except DuplicateDocumentError:
            logger.info(
                "Bulk insert of %d documents hit an existing identifier; inserting individually",
                len(batch),
            )
            return await self._write_individually(batch)
        except Exception as exc:
            raise BatchWriteError(f"Failed to write batch of {len(batch)} documents") from exc

        logger.debug("Inserted batch of %d documents", inserted)
        return WriteResult(inserted_count=inserted)

    async def _write_individually(self, batch: Sequence[IndexedDocument]) -> WriteResult:
        inserted = skipped = 0
        for doc in batch:
            try:
                await self._executor.execute(
                    lambda doc=doc: self._store.insert_one(doc),
                    f"insert of document {doc.id[:12]}",
                    call_class=STORE_CALL_CLASS,
                )
            except DuplicateDocumentError:
                skipped += 1
                logger.debug("Document %s already stored, skipping", doc.id[:12])
            except Exception as exc:
                raise BatchWriteError(f"Failed to write document {doc.id}") from exc
            else:
                inserted += 1
        return WriteResult(inserted_count=inserted, skipped_count=skipped)
