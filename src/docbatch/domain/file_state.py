"""Per-file state machine.

``queued -> processing -> completed | failed``, ``queued | processing -> cancelled``.
``failed -> queued`` only through an explicit retry and ``processing -> queued``
only when in-flight work is known to be lost (restart recovery, worker demotion).

Each function mutates a live :class:`Batch` and keeps its counters in line with
the file statuses, so callers must run them inside ``BatchStore.mutate``.
"""

from __future__ import annotations

from typing import Any

from docbatch.core.errors import InvalidTransitionError
from docbatch.domain.models.batch import (
    FILE_CANCELLED,
    FILE_COMPLETED,
    FILE_FAILED,
    FILE_PROCESSING,
    FILE_QUEUED,
    Batch,
    FileItem,
)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    FILE_QUEUED: frozenset({FILE_PROCESSING, FILE_CANCELLED}),
    FILE_PROCESSING: frozenset({FILE_COMPLETED, FILE_FAILED, FILE_CANCELLED, FILE_QUEUED}),
    FILE_FAILED: frozenset({FILE_QUEUED}),
    FILE_COMPLETED: frozenset(),
    FILE_CANCELLED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def file_at(batch: Batch, index: int) -> FileItem:
    if index < 0 or index >= len(batch.files):
        raise InvalidTransitionError(f"File index {index} out of range for batch {batch.id}")
    return batch.files[index]


def _move(item: FileItem, target: str) -> None:
    if not can_transition(item.status, target):
        raise InvalidTransitionError(f"{item.id}: {item.status} -> {target} is not allowed")
    item.status = target


def begin_attempt(batch: Batch, index: int, *, now: str) -> FileItem:
    item = file_at(batch, index)
    if item.status == FILE_PROCESSING:
        return item
    _move(item, FILE_PROCESSING)
    item.attempts += 1
    item.progress = 0
    item.error = None
    item.started_at = now
    item.completed_at = None
    return item


def record_progress(batch: Batch, index: int, progress: int) -> FileItem:
    item = file_at(batch, index)
    if item.status != FILE_PROCESSING:
        raise InvalidTransitionError(f"{item.id}: progress reported while {item.status}")
    clamped = max(0, min(100, int(progress)))
    item.progress = max(item.progress, clamped)
    return item


def complete_file(batch: Batch, index: int, result: Any, *, now: str) -> FileItem:
    item = file_at(batch, index)
    _move(item, FILE_COMPLETED)
    item.progress = 100
    item.result = result
    item.error = None
    item.completed_at = now
    batch.processed_files += 1
    batch.successful_files += 1
    return item


def fail_file(batch: Batch, index: int, error: str, *, now: str) -> FileItem:
    item = file_at(batch, index)
    _move(item, FILE_FAILED)
    item.error = error or "Extraction failed"
    item.completed_at = now
    batch.processed_files += 1
    batch.failed_files += 1
    return item


def cancel_file(batch: Batch, index: int) -> FileItem:
    item = file_at(batch, index)
    _move(item, FILE_CANCELLED)
    return item


def requeue_in_flight(batch: Batch, index: int) -> FileItem:
    """Put a ``processing`` file back to ``queued``; attempts are kept."""
    item = file_at(batch, index)
    if item.status != FILE_PROCESSING:
        raise InvalidTransitionError(f"{item.id}: only processing files can be requeued, got {item.status}")
    _move(item, FILE_QUEUED)
    item.progress = 0
    item.started_at = None
    return item


def reset_failed(batch: Batch, index: int) -> FileItem:
    item = file_at(batch, index)
    if item.status != FILE_FAILED:
        raise InvalidTransitionError(f"{item.id}: only failed files can be retried, got {item.status}")
    _move(item, FILE_QUEUED)
    item.progress = 0
    item.error = None
    item.result = None
    item.completed_at = None
    batch.processed_files -= 1
    batch.failed_files -= 1
    return item
