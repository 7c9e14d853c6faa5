"""
Ingestion Orchestrator

Drives paged iteration over a range of partitions (release years) and fans
each page out to bounded per-item pipelines.

Flow per page
-------------
1. Fetch the page from the catalog (empty page = partition exhausted)
2. Run every item through filter -> enrich -> compose -> chunk -> dedup -> embed
3. Flush the produced documents through the batch writer
4. Record the page in the checkpoint and persist it

The checkpoint only ever advances past a page whose documents are durably
written, so an interrupted run redoes at most one page.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..catalog.tmdb_client import CatalogClient
from ..config import IngestConfig
from ..core.errors import BatchWriteError, FatalIngestError, PageProcessingError
from ..core.retry import RetryExecutor
from ..db.vector_store import VectorStoreBase
from ..embeddings.embedder import Embedder
from ..models import (
    CatalogItem,
    IndexedDocument,
    RunSummary,
    compose_document_text,
    document_id,
)
from .batch_writer import BatchWriter
from .checkpoint import CheckpointStore, IngestionCheckpoint, PartitionState
from .chunker import TextChunker
from .dedup import DedupLedger
from .scheduler import ConcurrencyScheduler

logger = logging.getLogger("ingest.orchestrator")


@dataclass
class _ItemOutcome:
    filtered: bool = False
    produced: int = 0
    duplicates: int = 0


class IngestOrchestrator:
    """
    Coordinates catalog paging, item pipelines, writes and checkpoints.

    Parameters
    ----------
    config : IngestConfig
        Limits and tuning knobs for this run.
    catalog : CatalogClient
        Source of pages and enrichment records.
    embedder : Embedder
        Embedding client.
    store : VectorStoreBase
        Destination vector store.
    checkpoints : CheckpointStore
        Where progress is read at startup and written after each page.
    executor : RetryExecutor
        Shared executor used for store lookups and writes.
    """

    def __init__(
        self,
        config: IngestConfig,
        catalog: CatalogClient,
        embedder: Embedder,
        store: VectorStoreBase,
        checkpoints: CheckpointStore,
        executor: RetryExecutor,
    ) -> None:
        self.config = config
        self._catalog = catalog
        self._embedder = embedder
        self._checkpoints = checkpoints
        self.chunker = TextChunker(config.chunk_size, config.chunk_overlap)
        self.ledger = DedupLedger(store, executor)
        self.writer = BatchWriter(store, executor, config.batch_size)
        self.scheduler = ConcurrencyScheduler(config.concurrency_limit)
        self.checkpoint: Optional[IngestionCheckpoint] = None

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, start_partition: int, end_partition: int) -> RunSummary:
        """
        Ingest every partition in ``[start_partition, end_partition]``.

        Raises
        ------
        PageProcessingError
            A page could not be committed and ``on_page_error`` is ``"abort"``.
        CheckpointError
            Progress could not be persisted.
        """
        if start_partition > end_partition:
            raise ValueError("start_partition must not be after end_partition")

        self.checkpoint = await self._checkpoints.load() or IngestionCheckpoint()
        summary = RunSummary()

        logger.info(
            "Starting ingestion for partitions %d-%d (completed so far: %s)",
            start_partition,
            end_partition,
            self.checkpoint.completed_partitions or "none",
        )

        for partition in range(start_partition, end_partition + 1):
            state = self.checkpoint.state_of(partition)
            if state is PartitionState.COMPLETED:
                logger.info("partition=%d already completed, skipping", partition)
                continue

            try:
                await self._run_partition(partition, summary)
            except PageProcessingError as exc:
                summary.failed_pages.append(f"{exc.partition_key}:{exc.page}")
                if self.config.on_page_error == "abort":
                    logger.error("Aborting run: %s", exc)
                    raise
                logger.error("Skipping rest of partition=%d: %s", partition, exc)

        logger.info(
            "Ingestion finished: inserted=%d skipped=%d filtered=%d failed=%d "
            "pages=%d partitions_completed=%s failed_pages=%s",
            summary.inserted,
            summary.skipped,
            summary.filtered,
            summary.failed,
            summary.pages_committed,
            summary.partitions_completed,
            summary.failed_pages,
        )
        return summary

    async def _run_partition(self, partition: int, summary: RunSummary) -> None:
        page = self.checkpoint.next_page(partition)
        if page > 1:
            logger.info("partition=%d resuming at page %d", partition, page)
        else:
            logger.info("partition=%d starting", partition)
        self.checkpoint.current_partition = partition

        while page <= self.config.max_pages_per_partition:
            try:
                items = await self._catalog.fetch_page(partition, page)
            except Exception as exc:
                raise PageProcessingError(partition, page, f"fetch failed: {exc}") from exc

            if not items:
                logger.info("partition=%d page=%d is empty, partition exhausted", partition, page)
                break

            await self._process_page(partition, page, items, summary)

            self.checkpoint.record_page(partition, page)
            await self._checkpoints.save(self.checkpoint)
            summary.pages_committed += 1
            page += 1
        else:
            logger.info(
                "partition=%d reached page limit (%d)",
                partition,
                self.config.max_pages_per_partition,
            )

        self.checkpoint.complete_partition(partition)
        await self._checkpoints.save(self.checkpoint)
        summary.partitions_completed.append(partition)
        logger.info("partition=%d completed", partition)

    # ------------------------------------------------------------------
    # Page
    # ------------------------------------------------------------------

    async def _process_page(
        self,
        partition: int,
        page: int,
        items: List[CatalogItem],
        summary: RunSummary,
    ) -> None:
        logger.info("partition=%d page=%d processing %d items", partition, page, len(items))

        results = await self.scheduler.map(
            lambda item: self._process_item(item, partition, page),
            items,
        )

        filtered = failed = duplicates = 0
        fatal: Optional[BaseException] = None
        for item, result in zip(items, results):
            if isinstance(result, _ItemOutcome):
                filtered += result.filtered
                duplicates += result.duplicates
            elif isinstance(result, FatalIngestError):
                logger.error(
                    "partition=%d page=%d item=%d fatal error: %s",
                    partition, page, item.id, result,
                )
                failed += 1
                fatal = fatal or result
            elif isinstance(result, Exception):
                logger.error(
                    "partition=%d page=%d item=%d failed",
                    partition, page, item.id,
                    exc_info=result,
                )
                failed += 1
            else:
                raise result

        summary.filtered += filtered
        summary.failed += failed
        summary.skipped += duplicates

        try:
            written = await self.writer.flush()
        except BatchWriteError as exc:
            raise PageProcessingError(partition, page, f"write failed: {exc}") from exc

        summary.inserted += written.inserted_count
        summary.skipped += written.skipped_count

        logger.info(
            "partition=%d page=%d done: %d new chunks, %d duplicates, %d filtered, %d failed",
            partition,
            page,
            written.inserted_count,
            duplicates + written.skipped_count,
            filtered,
            failed,
        )

        if fatal is not None:
            raise PageProcessingError(partition, page, str(fatal)) from fatal

    # ------------------------------------------------------------------
    # Item
    # ------------------------------------------------------------------

    async def _process_item(self, item: CatalogItem, partition: int, page: int) -> _ItemOutcome:
        if not item.is_indexable(self.config.min_rating):
            logger.debug(
                "partition=%d page=%d item=%d filtered (rating=%s)",
                partition, page, item.id, item.vote_average,
            )
            return _ItemOutcome(filtered=True)

        enrichment = await self._catalog.fetch_enrichment(item.id)
        text = compose_document_text(item, enrichment)
        chunks = self.chunker.split(text, item.id)

        outcome = _ItemOutcome()
        documents: List[IndexedDocument] = []
        pending: List[str] = []
        try:
            for chunk in chunks:
                key = document_id(item.title, item.release_date, chunk.chunk_index)
                if not self.ledger.claim(key):
                    outcome.duplicates += 1
                    continue
                if await self.ledger.exists_in_store(key):
                    outcome.duplicates += 1
                    continue
                pending.append(key)

                vector = await self._embedder.embed(
                    chunk.text,
                    context=f"embedding for item={item.id} chunk={chunk.chunk_index}",
                )
                documents.append(
                    IndexedDocument(
                        id=key,
                        vector=vector,
                        text=chunk.text,
                        title=item.title,
                        release_date=item.release_date,
                        rating=item.vote_average,
                        where_to_watch=enrichment.providers,
                        source=item.source_url,
                        chunk_index=chunk.chunk_index,
                        partition_key=partition,
                    )
                )
        except BaseException:
            # Nothing from this item reaches the writer; let a later
            # occurrence of the same title claim these chunks again.
            for key in pending:
                self.ledger.release(key)
            raise

        self.writer.add(documents)
        outcome.produced = len(documents)
        logger.debug(
            "partition=%d page=%d item=%d produced %d documents (%d duplicates)",
            partition, page, item.id, outcome.produced, outcome.duplicates,
        )
        return outcome
