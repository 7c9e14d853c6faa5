"""
Orchestrator Tests

End-to-end runs over in-memory fakes:
- The single-page scenario (one long item kept, one low-rated item filtered)
- Resuming from a checkpoint
- Idempotent re-ingestion
- Page failures under both error policies
- Containment of per-item failures
"""

import pytest

from catalog_ingest.core.errors import (
    CatalogAuthError,
    PageProcessingError,
    RetryExhaustedError,
)
from catalog_ingest.ingestion.checkpoint import IngestionCheckpoint, PartitionState
from catalog_ingest.ingestion.orchestrator import IngestOrchestrator
from catalog_ingest.models import document_id

from conftest import LONG_SYNOPSIS, make_item


def _orchestrator(config, catalog, embedder, store, checkpoint_store, executor):
    return IngestOrchestrator(
        config=config,
        catalog=catalog,
        embedder=embedder,
        store=store,
        checkpoints=checkpoint_store,
        executor=executor,
    )


class RecordingCheckpointStore:
    """Keeps a copy of every saved checkpoint."""

    def __init__(self, initial=None):
        self.initial = initial
        self.saved = []

    async def load(self):
        return self.initial

    async def save(self, checkpoint):
        self.saved.append(checkpoint.model_copy(deep=True))

    async def reset(self):
        self.initial = None


class TestSinglePageScenario:
    @pytest.mark.asyncio
    async def test_long_item_kept_low_rated_filtered(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor
    ):
        film_a = make_item(1, title="Film A", rating=8.2, release_date="2020-03-14", overview=LONG_SYNOPSIS)
        film_b = make_item(2, title="Film B", rating=5.0, release_date="2020-06-01")
        catalog.pages[(2020, 1)] = [film_a, film_b]
        catalog.providers[1] = ["Netflix"]

        orchestrator = _orchestrator(ingest_config, catalog, embedder, store, checkpoint_store, executor)
        summary = await orchestrator.run(2020, 2020)

        assert summary.inserted == 5
        assert summary.filtered == 1
        assert summary.failed == 0
        assert summary.pages_committed == 1
        assert summary.partitions_completed == [2020]

        assert len(store.documents) == 5
        expected_ids = {document_id("Film A", "2020-03-14", i) for i in range(5)}
        assert set(store.documents) == expected_ids
        assert all(doc.title == "Film A" for doc in store.documents.values())
        doc = store.documents[document_id("Film A", "2020-03-14", 0)]
        assert doc.where_to_watch == ["Netflix"]
        assert doc.source == "https://www.themoviedb.org/movie/1"
        assert doc.partition_key == 2020
        assert doc.text.startswith("Title: Film A")

        saved = await checkpoint_store.load()
        assert saved.last_completed_page[2020] == 1
        assert saved.state_of(2020) is PartitionState.COMPLETED
        assert catalog.fetched == [(2020, 1), (2020, 2)]

    @pytest.mark.asyncio
    async def test_checkpoint_advances_after_each_page(
        self, ingest_config, catalog, embedder, store, executor
    ):
        catalog.pages[(2020, 1)] = [make_item(1, title="One")]
        catalog.pages[(2020, 2)] = [make_item(2, title="Two")]
        recorder = RecordingCheckpointStore()

        await _orchestrator(ingest_config, catalog, embedder, store, recorder, executor).run(2020, 2020)

        assert [cp.last_completed_page.get(2020) for cp in recorder.saved] == [1, 2, 2]
        assert [cp.completed_partitions for cp in recorder.saved] == [[], [], [2020]]


class TestResume:
    @pytest.mark.asyncio
    async def test_resumes_after_last_completed_page(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor
    ):
        for page in range(1, 5):
            catalog.pages[(2020, page)] = [make_item(page, title=f"Film {page}")]
        await checkpoint_store.save(
            IngestionCheckpoint(current_partition=2020, last_completed_page={2020: 2})
        )

        summary = await _orchestrator(
            ingest_config, catalog, embedder, store, checkpoint_store, executor
        ).run(2020, 2020)

        assert catalog.fetched[0] == (2020, 3)
        assert (2020, 1) not in catalog.fetched
        assert (2020, 2) not in catalog.fetched
        assert summary.pages_committed == 2
        assert {doc.title for doc in store.documents.values()} == {"Film 3", "Film 4"}

    @pytest.mark.asyncio
    async def test_completed_partitions_are_skipped(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor
    ):
        catalog.pages[(2019, 1)] = [make_item(1, title="Old")]
        catalog.pages[(2020, 1)] = [make_item(2, title="New")]
        await checkpoint_store.save(IngestionCheckpoint(completed_partitions=[2019]))

        summary = await _orchestrator(
            ingest_config, catalog, embedder, store, checkpoint_store, executor
        ).run(2019, 2020)

        assert all(partition == 2020 for partition, _ in catalog.fetched)
        assert summary.partitions_completed == [2020]

    @pytest.mark.asyncio
    async def test_page_limit_completes_partition(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor
    ):
        config = ingest_config.model_copy(update={"max_pages_per_partition": 2})
        for page in range(1, 5):
            catalog.pages[(2020, page)] = [make_item(page, title=f"Film {page}")]

        summary = await _orchestrator(config, catalog, embedder, store, checkpoint_store, executor).run(2020, 2020)

        assert catalog.fetched == [(2020, 1), (2020, 2)]
        assert summary.partitions_completed == [2020]


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_second_run_inserts_nothing(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor
    ):
        catalog.pages[(2020, 1)] = [make_item(1, title="Film A", overview=LONG_SYNOPSIS)]

        first = await _orchestrator(
            ingest_config, catalog, embedder, store, checkpoint_store, executor
        ).run(2020, 2020)
        embed_calls = len(embedder.calls)

        await checkpoint_store.reset()
        second = await _orchestrator(
            ingest_config, catalog, embedder, store, checkpoint_store, executor
        ).run(2020, 2020)

        assert first.inserted == 5
        assert second.inserted == 0
        assert second.skipped == 5
        assert len(store.documents) == 5
        assert len(embedder.calls) == embed_calls

    @pytest.mark.asyncio
    async def test_repeated_item_within_run_is_skipped(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor
    ):
        item = make_item(1, title="Film A")
        catalog.pages[(2020, 1)] = [item]
        catalog.pages[(2020, 2)] = [item]

        summary = await _orchestrator(
            ingest_config, catalog, embedder, store, checkpoint_store, executor
        ).run(2020, 2020)

        assert summary.inserted == 1
        assert summary.skipped == 1
        assert len(embedder.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_item_is_retried_by_later_occurrence(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor
    ):
        item = make_item(1, title="Film A", release_date="2020-03-14")
        catalog.pages[(2020, 1)] = [item]
        catalog.pages[(2020, 2)] = [item]
        embedder.fail_times = 1

        summary = await _orchestrator(
            ingest_config, catalog, embedder, store, checkpoint_store, executor
        ).run(2020, 2020)

        assert summary.failed == 1
        assert summary.inserted == 1
        assert summary.skipped == 0
        assert document_id("Film A", "2020-03-14", 0) in store.documents
        assert len(embedder.calls) == 2


class TestPageFailures:
    @pytest.mark.asyncio
    async def test_abort_keeps_last_good_checkpoint(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor
    ):
        catalog.pages[(2020, 1)] = [make_item(1, title="Film A")]
        catalog.pages[(2020, 3)] = [make_item(3, title="Film C")]
        catalog.errors[(2020, 2)] = RetryExhaustedError("fetch page 2", 4)

        with pytest.raises(PageProcessingError) as excinfo:
            await _orchestrator(
                ingest_config, catalog, embedder, store, checkpoint_store, executor
            ).run(2020, 2021)

        assert excinfo.value.partition_key == 2020
        assert excinfo.value.page == 2
        saved = await checkpoint_store.load()
        assert saved.last_completed_page == {2020: 1}
        assert saved.completed_partitions == []
        assert (2021, 1) not in catalog.fetched

        # A later run picks up at the failed page.
        del catalog.errors[(2020, 2)]
        catalog.fetched.clear()
        await _orchestrator(
            ingest_config, catalog, embedder, store, checkpoint_store, executor
        ).run(2020, 2020)
        assert catalog.fetched[0] == (2020, 2)

    @pytest.mark.asyncio
    async def test_skip_partition_moves_on(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor
    ):
        config = ingest_config.model_copy(update={"on_page_error": "skip_partition"})
        catalog.pages[(2020, 1)] = [make_item(1, title="Film A")]
        catalog.pages[(2021, 1)] = [make_item(2, title="Film B", release_date="2021-01-01")]
        catalog.errors[(2020, 2)] = RetryExhaustedError("fetch page 2", 4)

        summary = await _orchestrator(
            config, catalog, embedder, store, checkpoint_store, executor
        ).run(2020, 2021)

        assert summary.failed_pages == ["2020:2"]
        assert summary.partitions_completed == [2021]
        saved = await checkpoint_store.load()
        assert saved.state_of(2020) is PartitionState.IN_PROGRESS
        assert saved.next_page(2020) == 2
        assert saved.state_of(2021) is PartitionState.COMPLETED

    @pytest.mark.asyncio
    async def test_fatal_item_error_fails_page_after_flush(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor
    ):
        catalog.pages[(2020, 1)] = [make_item(1, title="Film A"), make_item(2, title="Film B")]
        catalog.enrichment_errors[2] = CatalogAuthError("HTTP 401")

        with pytest.raises(PageProcessingError):
            await _orchestrator(
                ingest_config, catalog, embedder, store, checkpoint_store, executor
            ).run(2020, 2020)

        assert {doc.title for doc in store.documents.values()} == {"Film A"}
        assert await checkpoint_store.load() is None


class TestItemFailures:
    @pytest.mark.asyncio
    async def test_item_failure_is_contained(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor, caplog
    ):
        catalog.pages[(2020, 1)] = [
            make_item(1, title="Good Film"),
            make_item(2, title="Broken Film"),
            make_item(3, title="Other Film"),
        ]
        embedder.fail_on = "Broken Film"

        with caplog.at_level("ERROR", logger="ingest.orchestrator"):
            summary = await _orchestrator(
                ingest_config, catalog, embedder, store, checkpoint_store, executor
            ).run(2020, 2020)

        assert summary.failed == 1
        assert summary.inserted == 2
        assert summary.pages_committed == 1
        assert {doc.title for doc in store.documents.values()} == {"Good Film", "Other Film"}
        assert "item=2 failed" in caplog.text

    @pytest.mark.asyncio
    async def test_incomplete_items_are_filtered_not_failed(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor
    ):
        catalog.pages[(2020, 1)] = [
            make_item(1, title=None),
            make_item(2, release_date=None),
            make_item(3, overview=""),
            make_item(4, rating=None),
        ]

        summary = await _orchestrator(
            ingest_config, catalog, embedder, store, checkpoint_store, executor
        ).run(2020, 2020)

        assert summary.filtered == 4
        assert summary.failed == 0
        assert store.documents == {}
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(
        self, ingest_config, catalog, embedder, store, checkpoint_store, executor
    ):
        catalog.pages[(2020, 1)] = [make_item(i, title=f"Film {i}") for i in range(12)]

        orchestrator = _orchestrator(ingest_config, catalog, embedder, store, checkpoint_store, executor)
        summary = await orchestrator.run(2020, 2020)

        assert summary.inserted == 12
        assert orchestrator.scheduler.peak_in_flight <= ingest_config.concurrency_limit


@pytest.mark.asyncio
async def test_inverted_range_is_rejected(ingest_config, catalog, embedder, store, checkpoint_store, executor):
    orchestrator = _orchestrator(ingest_config, catalog, embedder, store, checkpoint_store, executor)
    with pytest.raises(ValueError):
        await orchestrator.run(2021, 2020)
