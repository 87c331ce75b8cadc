from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

BATCH_QUEUED = "queued"
BATCH_PROCESSING = "processing"
BATCH_COMPLETED = "completed"
BATCH_CANCELLED = "cancelled"
BATCH_TERMINAL_STATUSES = frozenset({BATCH_COMPLETED, BATCH_CANCELLED})

FILE_QUEUED = "queued"
FILE_PROCESSING = "processing"
FILE_COMPLETED = "completed"
FILE_FAILED = "failed"
FILE_CANCELLED = "cancelled"

METHOD_WORKER = "worker"
METHOD_SAME_THREAD = "same-thread"
METHOD_NONE = "none"

PRIORITIES = ("high", "normal", "low")


@dataclass(slots=True)
class BatchOptions:
    priority: str = "normal"
    auto_save: bool = True
    notify_when_complete: bool = True
    prefer_background_worker: bool = True
    skip_processed_files: bool = False


@dataclass(slots=True)
class FileItem:
    id: str
    index: int
    name: str
    size_bytes: int
    mime_type: str
    status: str = FILE_QUEUED
    attempts: int = 0
    progress: int = 0
    result: Any = None
    error: str | None = None
    staged_relpath: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    saved: bool = False


@dataclass(slots=True)
class Batch:
    id: str
    document_type: str
    created_at: str
    options: BatchOptions = field(default_factory=BatchOptions)
    status: str = BATCH_QUEUED
    processing_method: str | None = None
    total_files: int = 0
    processed_files: int = 0
    successful_files: int = 0
    failed_files: int = 0
    skipped_files: int = 0
    files: list[FileItem] = field(default_factory=list)
    started_at: str | None = None
    completed_at: str | None = None
    cancelled_at: str | None = None
    save_report: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in BATCH_TERMINAL_STATUSES

    @property
    def progress_percent(self) -> int:
        if self.total_files <= 0:
            return 0
        return round(self.processed_files / self.total_files * 100)

    def files_with_status(self, *statuses: str) -> list[FileItem]:
        return [item for item in self.files if item.status in statuses]


@dataclass(slots=True)
class SubmittedFile:
    """A file handed to the control API: raw content plus its display metadata."""

    name: str
    content: bytes
    mime_type: str = "application/octet-stream"


@dataclass(slots=True)
class FileBlob:
    """What an extractor receives for one file attempt."""

    name: str
    mime_type: str
    content: bytes
