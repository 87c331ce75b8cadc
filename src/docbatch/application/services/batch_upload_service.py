from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from dataclasses import asdict
from datetime import timedelta
from typing import Any

from docbatch.application.services.batch_store import BatchStore
from docbatch.application.services.completion_service import (
    CompletionManager,
    ConsumerPresence,
    Notifier,
    SaveSink,
)
from docbatch.application.services.worker_orchestrator import WorkerFactory, WorkerOrchestrator
from docbatch.core.config import AppPaths, ProcessingSettings
from docbatch.core.errors import ValidationError
from docbatch.core.ids import file_item_id, new_batch_id, processed_file_key
from docbatch.core.time import now_utc, parse_iso
from docbatch.domain.models.batch import (
    BATCH_CANCELLED,
    BATCH_COMPLETED,
    FILE_PROCESSING,
    FILE_QUEUED,
    METHOD_NONE,
    PRIORITIES,
    Batch,
    BatchOptions,
    FileItem,
    SubmittedFile,
)
from docbatch.infrastructure.db.repos.batch_repo import BatchRepo
from docbatch.infrastructure.db.repos.ledger_repo import ProcessedBatchRepo, ProcessedFileRepo
from docbatch.infrastructure.db.repos.notification_repo import NotificationRepo
from docbatch.infrastructure.db.sqlite import initialize_schema
from docbatch.infrastructure.sinks.record_sink import RecordSink
from docbatch.infrastructure.staging.store import StagingStore

logger = logging.getLogger(__name__)

_PRIORITY_RANK = {name: rank for rank, name in enumerate(PRIORITIES)}


def batch_to_view(batch: Batch, *, seconds_per_file: int, include_files: bool = False) -> dict[str, Any]:
    remaining = len(batch.files_with_status(FILE_QUEUED, FILE_PROCESSING))
    view: dict[str, Any] = {
        "id": batch.id,
        "document_type": batch.document_type,
        "status": batch.status,
        "processing_method": batch.processing_method,
        "priority": batch.options.priority,
        "total_files": batch.total_files,
        "processed_files": batch.processed_files,
        "successful_files": batch.successful_files,
        "failed_files": batch.failed_files,
        "skipped_files": batch.skipped_files,
        "progress": batch.progress_percent,
        "estimated_time_remaining": 0 if batch.is_terminal else remaining * seconds_per_file,
        "created_at": batch.created_at,
        "started_at": batch.started_at,
        "completed_at": batch.completed_at,
        "cancelled_at": batch.cancelled_at,
        "options": asdict(batch.options),
        "save_report": batch.save_report,
    }
    if include_files:
        view["files"] = [
            {
                "id": item.id,
                "index": item.index,
                "name": item.name,
                "size_bytes": item.size_bytes,
                "mime_type": item.mime_type,
                "status": item.status,
                "attempts": item.attempts,
                "progress": item.progress,
                "error": item.error,
                "result": item.result,
                "saved": item.saved,
                "started_at": item.started_at,
                "completed_at": item.completed_at,
            }
            for item in batch.files
        ]
    return view


class BatchUploadService:
    """Accepts file batches and runs them in the background.

    ``max_concurrent_workers`` dispatcher threads pull batch runs from a
    priority queue; a janitor thread purges finished batches once their
    retention window has passed. Batches persisted by an earlier process are
    restored on construction and, when enabled, resumed.
    """

    def __init__(
        self,
        *,
        paths: AppPaths,
        settings: ProcessingSettings | None = None,
        sink: SaveSink | None = None,
        notifier: Notifier | None = None,
        worker_factory: WorkerFactory | None = None,
        foreground: bool = True,
        start_threads: bool = True,
    ) -> None:
        self.paths = paths
        self.settings = settings or ProcessingSettings.from_env()
        initialize_schema(paths.db_path)

        self.batch_repo = BatchRepo(paths.db_path)
        self.ledger = ProcessedBatchRepo(paths.db_path)
        self.processed_files = ProcessedFileRepo(paths.db_path)
        self.notifications = NotificationRepo(paths.db_path)
        self.staging = StagingStore(paths.staging_dir)
        self.staging.ensure_layout()

        self.store = BatchStore(self.batch_repo)
        self.presence = ConsumerPresence(foreground=foreground)
        self.completion = CompletionManager(
            store=self.store,
            ledger=self.ledger,
            notifications=self.notifications,
            sink=sink if sink is not None else RecordSink(paths.db_path),
            presence=self.presence,
            notifier=notifier,
        )
        self.orchestrator = WorkerOrchestrator(
            store=self.store,
            staging=self.staging,
            completion=self.completion,
            settings=self.settings,
            processed_files=self.processed_files,
            worker_factory=worker_factory,
        )

        self._queue: queue.PriorityQueue[tuple[int, int, str | None]] = queue.PriorityQueue()
        self._seq = itertools.count()
        self._sched_lock = threading.Lock()
        self._scheduled: set[str] = set()
        self._rerun: set[str] = set()
        self._done = threading.Condition()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

        self._restore()
        if start_threads:
            self.start()

    # Lifecycle

    def start(self) -> None:
        if self._threads:
            return
        for number in range(self.settings.max_concurrent_workers):
            thread = threading.Thread(
                target=self._dispatch_loop,
                daemon=True,
                name=f"docbatch-dispatcher-{number}",
            )
            thread.start()
            self._threads.append(thread)
        janitor = threading.Thread(target=self._janitor_loop, daemon=True, name="docbatch-janitor")
        janitor.start()
        self._threads.append(janitor)

    def shutdown(self) -> None:
        if self._stop.is_set():
            return
        logger.info("Shutting down batch processing")
        self._stop.set()
        self.orchestrator.stop()
        for _ in range(self.settings.max_concurrent_workers):
            self._queue.put((len(PRIORITIES), next(self._seq), None))
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=2.0)
        with self._done:
            self._done.notify_all()

    def __enter__(self) -> BatchUploadService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # Control API

    def add_batch(
        self,
        files: list[SubmittedFile],
        document_type: str,
        options: BatchOptions | None = None,
    ) -> dict[str, Any]:
        options = options or BatchOptions()
        if not files:
            raise ValidationError("No files provided")
        if not document_type or not document_type.strip():
            raise ValidationError("Document type is required")
        if options.priority not in _PRIORITY_RANK:
            raise ValidationError(f"Invalid priority: {options.priority} (expected one of {', '.join(PRIORITIES)})")

        accepted = [(submitted.name or f"file_{index}", submitted) for index, submitted in enumerate(files)]
        skipped = 0
        if options.skip_processed_files:
            accepted = [
                (name, submitted)
                for name, submitted in accepted
                if not self.processed_files.contains(processed_file_key(name, len(submitted.content)))
            ]
            skipped = len(files) - len(accepted)
            if not accepted:
                logger.info("All %d submitted file(s) were already processed; no batch created", skipped)
                return {
                    "batch_id": None,
                    "total_files": 0,
                    "estimated_seconds": 0,
                    "processing_method": METHOD_NONE,
                    "skipped_files": skipped,
                }

        batch_id = new_batch_id()
        items: list[FileItem] = []
        for index, (name, submitted) in enumerate(accepted):
            relpath = self.staging.stage(batch_id, index, name, submitted.content)
            items.append(
                FileItem(
                    id=file_item_id(batch_id, index),
                    index=index,
                    name=name,
                    size_bytes=len(submitted.content),
                    mime_type=submitted.mime_type or "application/octet-stream",
                    staged_relpath=relpath,
                )
            )

        batch = self.store.create_batch(
            batch_id=batch_id,
            files=items,
            document_type=document_type.strip(),
            options=options,
            skipped_files=skipped,
        )
        method = self.orchestrator.choose_strategy(batch)
        logger.info(
            "Queued batch %s: %d file(s), priority %s, %s strategy",
            batch_id,
            len(items),
            options.priority,
            method,
        )
        self._schedule(batch_id, options.priority)
        return {
            "batch_id": batch_id,
            "total_files": len(items),
            "estimated_seconds": len(items) * self.settings.seconds_per_file_estimate,
            "processing_method": method,
            "skipped_files": skipped,
        }

    def cancel_batch(self, batch_id: str) -> dict[str, Any]:
        snapshot = self.orchestrator.cancel_batch(batch_id)
        return batch_to_view(snapshot, seconds_per_file=self.settings.seconds_per_file_estimate)

    def retry_failed_files(self, batch_id: str) -> int:
        count = self.orchestrator.retry_failed_files(batch_id)
        if count:
            snapshot = self.store.require(batch_id)
            self._schedule(batch_id, snapshot.options.priority)
        return count

    def wait_for_batch(self, batch_id: str, timeout: float | None = None) -> dict[str, Any]:
        """Block until the batch has no queued or processing files left, or the timeout expires."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._done:
            while True:
                snapshot = self.store.require(batch_id)
                if snapshot.is_terminal or not self._has_pending_work(batch_id, snapshot):
                    break
                if self._stop.is_set():
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    break
                self._done.wait(timeout=0.5 if remaining is None else min(0.5, remaining))
        return batch_to_view(
            self.store.require(batch_id),
            seconds_per_file=self.settings.seconds_per_file_estimate,
            include_files=True,
        )

    def set_foreground(self, foreground: bool) -> int:
        return self.completion.set_foreground(foreground)

    def clear_processed_files(self) -> int:
        return self.processed_files.clear()

    # Observer API

    def get_active_batches(self) -> list[dict[str, Any]]:
        return [
            batch_to_view(batch, seconds_per_file=self.settings.seconds_per_file_estimate)
            for batch in self.store.list_active()
        ]

    def get_batch_status(self, batch_id: str) -> dict[str, Any] | None:
        snapshot = self.store.get(batch_id)
        if snapshot is None:
            return None
        return batch_to_view(snapshot, seconds_per_file=self.settings.seconds_per_file_estimate, include_files=True)

    def get_statistics(self) -> dict[str, Any]:
        batches = self.store.list_active()
        return {
            "total_batches": len(batches),
            "active_batches": sum(1 for b in batches if not b.is_terminal),
            "completed_batches": sum(1 for b in batches if b.status == BATCH_COMPLETED),
            "cancelled_batches": sum(1 for b in batches if b.status == BATCH_CANCELLED),
            "active_workers": self.orchestrator.active_worker_count(),
            "total_files": sum(b.total_files for b in batches),
            "processed_files": sum(b.processed_files for b in batches),
            "successful_files": sum(b.successful_files for b in batches),
            "failed_files": sum(b.failed_files for b in batches),
            "processed_files_tracked": self.processed_files.count(),
            "background_execution_supported": self.orchestrator.background_execution_supported(),
        }

    def list_notifications(self, *, pending_only: bool = False, limit: int = 200) -> list[dict[str, Any]]:
        rows = []
        for notification in self.notifications.list(pending_only=pending_only, limit=limit):
            rows.append(
                {
                    "id": notification.id,
                    "batch_id": notification.batch_id,
                    "kind": notification.kind,
                    "level": notification.level,
                    "message": notification.message,
                    "summary": asdict(notification.summary),
                    "timestamp": notification.timestamp,
                    "delivered": notification.delivered,
                    "delivered_at": notification.delivered_at,
                }
            )
        return rows

    # Housekeeping

    def purge_expired(self) -> int:
        cutoff = now_utc() - timedelta(seconds=self.settings.retention_seconds)
        purged = 0
        for batch in self.store.list_active():
            if not batch.is_terminal:
                continue
            finished_at = parse_iso(batch.completed_at or batch.cancelled_at)
            if finished_at is None or finished_at > cutoff:
                continue
            self._remove_batch(batch.id)
            purged += 1
        if purged:
            logger.info("Purged %d expired batch(es)", purged)
        return purged

    def _remove_batch(self, batch_id: str) -> None:
        self.store.discard(batch_id)
        self.completion.forget(batch_id)
        try:
            self.batch_repo.remove(batch_id)
            self.notifications.delete_delivered_for_batch(batch_id)
        except Exception:
            logger.exception("Failed to remove persisted state for batch %s", batch_id)
        self.staging.remove_batch(batch_id)

    def _restore(self) -> None:
        try:
            restored = self.batch_repo.restore_all()
        except Exception:
            logger.exception("Failed to restore persisted batches")
            return
        for batch in restored:
            self.store.admit(batch)
        if restored:
            logger.info("Restored %d persisted batch(es)", len(restored))
        self.purge_expired()

        for batch in self.store.list_active():
            if batch.is_terminal:
                continue
            if batch.files_with_status(FILE_QUEUED):
                if self.settings.resume_on_startup:
                    self._schedule(batch.id, batch.options.priority)
                continue
            # Every file settled before the previous process stopped.
            self.orchestrator.finalize_batch(batch.id)

    # Dispatch

    def _schedule(self, batch_id: str, priority: str) -> None:
        with self._sched_lock:
            if batch_id in self._scheduled:
                return
            if self.orchestrator.is_running(batch_id):
                self._rerun.add(batch_id)
                return
            self._scheduled.add(batch_id)
        self._queue.put((_PRIORITY_RANK.get(priority, 1), next(self._seq), batch_id))

    def _dispatch_loop(self) -> None:
        while not self._stop.is_set():
            _, _, batch_id = self._queue.get()
            if batch_id is None or self._stop.is_set():
                return
            with self._sched_lock:
                self._scheduled.discard(batch_id)
            try:
                self.orchestrator.run_batch(batch_id)
            except Exception:
                logger.exception("Batch run crashed for %s", batch_id)
            with self._sched_lock:
                rerun = batch_id in self._rerun
                self._rerun.discard(batch_id)
            if rerun:
                snapshot = self.store.get(batch_id)
                if snapshot is not None:
                    self._schedule(batch_id, snapshot.options.priority)
            with self._done:
                self._done.notify_all()

    def _janitor_loop(self) -> None:
        while not self._stop.wait(self.settings.cleanup_interval_seconds):
            try:
                self.purge_expired()
            except Exception:
                logger.exception("Retention cleanup failed")

    def _has_pending_work(self, batch_id: str, snapshot: Batch) -> bool:
        if snapshot.files_with_status(FILE_QUEUED, FILE_PROCESSING):
            return True
        with self._sched_lock:
            if batch_id in self._scheduled or batch_id in self._rerun:
                return True
        return self.orchestrator.is_running(batch_id)
