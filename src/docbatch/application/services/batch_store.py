from __future__ import annotations

import copy
import logging
import sqlite3
import threading
from typing import Any, Callable, TypeVar

from docbatch.core.errors import BatchNotFoundError, ValidationError
from docbatch.core.time import now_utc_iso
from docbatch.domain.models.batch import Batch, BatchOptions, FileItem
from docbatch.infrastructure.db.repos.batch_repo import BatchRepo

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BatchStore:
    """In-memory batch records behind a single serialized mutation path.

    Readers only ever receive deep copies; every mutation is followed by a
    durable snapshot write when a repo is attached.
    """

    def __init__(self, repo: BatchRepo | None = None) -> None:
        self._repo = repo
        self._batches: dict[str, Batch] = {}
        self._lock = threading.RLock()

    def create_batch(
        self,
        *,
        batch_id: str,
        files: list[FileItem],
        document_type: str,
        options: BatchOptions,
        skipped_files: int = 0,
    ) -> Batch:
        if not files:
            raise ValidationError("A batch needs at least one file")
        batch = Batch(
            id=batch_id,
            document_type=document_type,
            created_at=now_utc_iso(),
            options=copy.deepcopy(options),
            total_files=len(files),
            skipped_files=skipped_files,
            files=[copy.deepcopy(item) for item in files],
        )
        with self._lock:
            if batch_id in self._batches:
                raise ValidationError(f"Batch already exists: {batch_id}")
            self._batches[batch_id] = batch
            self._persist(batch)
            return copy.deepcopy(batch)

    def admit(self, batch: Batch) -> None:
        with self._lock:
            self._batches[batch.id] = copy.deepcopy(batch)

    def get(self, batch_id: str) -> Batch | None:
        with self._lock:
            batch = self._batches.get(batch_id)
            return copy.deepcopy(batch) if batch is not None else None

    def require(self, batch_id: str) -> Batch:
        snapshot = self.get(batch_id)
        if snapshot is None:
            raise BatchNotFoundError(f"Batch not found: {batch_id}")
        return snapshot

    def list_active(self) -> list[Batch]:
        with self._lock:
            snapshots = [copy.deepcopy(batch) for batch in self._batches.values()]
        return sorted(snapshots, key=lambda batch: (batch.created_at, batch.id), reverse=True)

    def mutate(self, batch_id: str, fn: Callable[[Batch], Any]) -> Batch:
        _, snapshot = self.mutate_with_result(batch_id, fn)
        return snapshot

    def mutate_with_result(self, batch_id: str, fn: Callable[[Batch], T]) -> tuple[T, Batch]:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                raise BatchNotFoundError(f"Batch not found: {batch_id}")
            result = fn(batch)
            self._persist(batch)
            return result, copy.deepcopy(batch)

    def discard(self, batch_id: str) -> bool:
        with self._lock:
            return self._batches.pop(batch_id, None) is not None

    def __contains__(self, batch_id: object) -> bool:
        with self._lock:
            return batch_id in self._batches

    def __len__(self) -> int:
        with self._lock:
            return len(self._batches)

    def _persist(self, batch: Batch) -> None:
        if self._repo is None:
            return
        try:
            self._repo.persist(batch)
        except (sqlite3.Error, OSError):
            logger.exception("Failed to persist batch %s; continuing in memory", batch.id)
