"""
Checkpoint Store

Durable ingestion progress, so an interrupted run resumes at the first
incomplete page instead of starting over.

The orchestrator reads the checkpoint once at startup and overwrites it
after every committed page. Two interchangeable backends are provided:

- ``JsonFileCheckpointStore``  a local JSON file, replaced atomically
- ``DatabaseCheckpointStore``  one row in the ``ingest_checkpoint`` table
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import CheckpointError
from ..db.models import IngestCheckpointRecord

logger = logging.getLogger("ingest.checkpoint")


class PartitionState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class IngestionCheckpoint(BaseModel):
    """
    Progress across partitions.

    A partition listed in ``completed_partitions`` is never fetched again,
    whatever ``last_completed_page`` still says about it.
    """

    current_partition: Optional[int] = None
    completed_partitions: List[int] = Field(default_factory=list)
    last_completed_page: Dict[int, int] = Field(default_factory=dict)

    def state_of(self, partition_key: int) -> PartitionState:
        if partition_key in self.completed_partitions:
            return PartitionState.COMPLETED
        if partition_key in self.last_completed_page:
            return PartitionState.IN_PROGRESS
        return PartitionState.NOT_STARTED

    def next_page(self, partition_key: int) -> int:
        return self.last_completed_page.get(partition_key, 0) + 1

    def record_page(self, partition_key: int, page: int) -> None:
        self.current_partition = partition_key
        self.last_completed_page[partition_key] = page

    def complete_partition(self, partition_key: int) -> None:
        if partition_key not in self.completed_partitions:
            self.completed_partitions.append(partition_key)
            self.completed_partitions.sort()
        self.current_partition = partition_key + 1


class CheckpointStore(ABC):
    """Read-once, write-after-each-page persistence for ``IngestionCheckpoint``."""

    @abstractmethod
    async def load(self) -> Optional[IngestionCheckpoint]:
        """Return the saved checkpoint, or None when there is none."""
        ...

    @abstractmethod
    async def save(self, checkpoint: IngestionCheckpoint) -> None:
        """Persist *checkpoint*, replacing any previous state."""
        ...

    @abstractmethod
    async def reset(self) -> None:
        """Discard saved progress (fresh start)."""
        ...


# ---------------------------------------------------------------------
# JSON file backend
# ---------------------------------------------------------------------

class JsonFileCheckpointStore(CheckpointStore):
    """
    Checkpoint persisted as a JSON document on the local filesystem.

    File access runs in a worker thread so the event loop keeps serving
    in-flight item pipelines.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def load(self) -> Optional[IngestionCheckpoint]:
        try:
            raw = await asyncio.to_thread(self._read)
            if raw is None:
                return None
            return IngestionCheckpoint.model_validate_json(raw)
        except (OSError, ValidationError, ValueError):
            logger.warning(
                "Failed to load checkpoint from %s, starting fresh", self.path, exc_info=True
            )
            return None

    async def save(self, checkpoint: IngestionCheckpoint) -> None:
        payload = json.dumps(checkpoint.model_dump(mode="json"), indent=2)
        try:
            await asyncio.to_thread(self._write, payload)
        except OSError as exc:
            raise CheckpointError(f"Failed to save checkpoint to {self.path}") from exc

    async def reset(self) -> None:
        try:
            await asyncio.to_thread(self.path.unlink, missing_ok=True)
        except OSError as exc:
            raise CheckpointError(f"Failed to reset checkpoint at {self.path}") from exc

    def _read(self) -> Optional[str]:
        if not self.path.exists():
            return None
        return self.path.read_text(encoding="utf-8")

    def _write(self, payload: str) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self.path)


# ---------------------------------------------------------------------
# Database backend
# ---------------------------------------------------------------------

class DatabaseCheckpointStore(CheckpointStore):
    """Checkpoint persisted as one upserted row keyed by run name."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        name: str = "default",
    ) -> None:
        self._session_factory = session_factory
        self.name = name

    async def load(self) -> Optional[IngestionCheckpoint]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(IngestCheckpointRecord.state).where(
                        IngestCheckpointRecord.name == self.name
                    )
                )
                state = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise CheckpointError(f"Failed to load checkpoint {self.name!r}") from exc

        if state is None:
            return None
        try:
            return IngestionCheckpoint.model_validate(state)
        except ValidationError:
            logger.warning("Stored checkpoint %r is invalid, starting fresh", self.name)
            return None

    async def save(self, checkpoint: IngestionCheckpoint) -> None:
        state = checkpoint.model_dump(mode="json")
        stmt = pg_insert(IngestCheckpointRecord).values(
            name=self.name,
            state=state,
        ).on_conflict_do_update(
            index_elements=[IngestCheckpointRecord.name],
            set_={"state": state},
        )
        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise CheckpointError(f"Failed to save checkpoint {self.name!r}") from exc

    async def reset(self) -> None:
        try:
            async with self._session_factory() as session:
                record = await session.get(IngestCheckpointRecord, self.name)
                if record is not None:
                    await session.delete(record)
                    await session.commit()
        except SQLAlchemyError as exc:
            raise CheckpointError(f"Failed to reset checkpoint {self.name!r}") from exc
