"""
Command-line entry point for a catalog ingestion run.

Usage::

    catalog-ingest --start-year 2018 --end-year 2020
    catalog-ingest --fresh --checkpoint-backend database
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger("ingest.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="catalog-ingest",
        description="Ingest a paginated media catalog into a pgvector collection.",
    )
    parser.add_argument("--start-year", type=int, default=None, help="First partition (default: START_YEAR).")
    parser.add_argument("--end-year", type=int, default=None, help="Last partition (default: END_YEAR).")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Discard saved progress and start from the first page of every partition.",
    )
    parser.add_argument(
        "--checkpoint-backend",
        choices=("file", "database"),
        default=None,
        help="Where progress is stored (default: CHECKPOINT_BACKEND).",
    )
    parser.add_argument("--checkpoint-path", default=None, help="Checkpoint file for the file backend.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
    )
    return parser


async def run(args: argparse.Namespace) -> int:
    # Imported here so .env is loaded before settings are instantiated.
    from .catalog.tmdb_client import CATALOG_CALL_CLASS, CatalogClient
    from .config import settings
    from .core.errors import ConfigurationError
    from .core.retry import RateLimiter, RetryExecutor
    from .db import AsyncSessionLocal, PgVectorStore, async_engine
    from .embeddings.embedder import Embedder
    from .ingestion.checkpoint import DatabaseCheckpointStore, JsonFileCheckpointStore
    from .ingestion.orchestrator import IngestOrchestrator

    start_year = args.start_year if args.start_year is not None else settings.start_year
    end_year = args.end_year if args.end_year is not None else settings.end_year
    backend = args.checkpoint_backend or settings.checkpoint_backend

    settings.validate_for_run()
    if start_year > end_year:
        raise ConfigurationError(f"--start-year {start_year} is after --end-year {end_year}")

    config = settings.ingest_config()

    store = PgVectorStore(AsyncSessionLocal)

    if backend == "database":
        checkpoints = DatabaseCheckpointStore(AsyncSessionLocal, settings.checkpoint_name)
    else:
        checkpoints = JsonFileCheckpointStore(args.checkpoint_path or settings.checkpoint_path)

    executor = RetryExecutor(
        retry_limit=config.retry_limit,
        base_delay=config.base_delay,
        rate_limiter=RateLimiter({CATALOG_CALL_CLASS: config.rate_limit_delay}),
    )

    try:
        await store.ensure_collection(config.vector_dimension)

        if args.fresh:
            logger.info("Fresh start requested, clearing saved progress")
            await checkpoints.reset()

        async with CatalogClient(
            executor,
            region=config.region,
        ) as catalog, Embedder(
            executor,
            config.vector_dimension,
            timeout=config.embedding_timeout,
        ) as embedder:
            orchestrator = IngestOrchestrator(
                config=config,
                catalog=catalog,
                embedder=embedder,
                store=store,
                checkpoints=checkpoints,
                executor=executor,
            )
            summary = await orchestrator.run(start_year, end_year)

        stats = await store.get_stats()
        logger.info(
            "Run complete: %d inserted, %d duplicates skipped, %d filtered, %d failed; "
            "collection holds %d documents across %d titles",
            summary.inserted,
            summary.skipped,
            summary.filtered,
            summary.failed,
            stats["total_documents"],
            stats["total_titles"],
        )
    finally:
        await async_engine.dispose()

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.warning("Interrupted; progress up to the last committed page is saved")
        return 130
    except Exception:
        logger.exception("Ingestion failed")
        return 1


if __name__ == "__main__":
    sys.exit(main())
