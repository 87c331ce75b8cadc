from __future__ import annotations

import logging
import sqlite3
import threading
from typing import Any, Callable

from docbatch.application.services.batch_store import BatchStore
from docbatch.core.time import duration_ms, now_utc_iso
from docbatch.domain.models.batch import (
    BATCH_CANCELLED,
    BATCH_COMPLETED,
    FILE_COMPLETED,
    FILE_PROCESSING,
    FILE_QUEUED,
    Batch,
)
from docbatch.domain.models.notification import BatchSummary, Notification
from docbatch.infrastructure.db.repos.ledger_repo import ProcessedBatchRepo
from docbatch.infrastructure.db.repos.notification_repo import NotificationRepo

logger = logging.getLogger(__name__)

SaveSink = Callable[[Any, str], dict[str, Any]]
Notifier = Callable[[Notification], None]


class ConsumerPresence:
    """Whether the consumer is currently looking at the processing view."""

    def __init__(self, foreground: bool = True) -> None:
        self._foreground = foreground
        self._lock = threading.Lock()

    @property
    def is_foreground(self) -> bool:
        with self._lock:
            return self._foreground

    def set(self, foreground: bool) -> bool:
        """Update presence; returns True when this is a background -> foreground transition."""
        with self._lock:
            became_visible = foreground and not self._foreground
            self._foreground = foreground
            return became_visible


def build_summary(batch: Batch) -> BatchSummary:
    end = batch.completed_at or batch.cancelled_at or now_utc_iso()
    return BatchSummary(
        total=batch.total_files,
        successful=batch.successful_files,
        failed=batch.failed_files,
        skipped=batch.skipped_files,
        duration_ms=duration_ms(batch.created_at, end),
        processing_method=batch.processing_method,
    )


class CompletionManager:
    def __init__(
        self,
        *,
        store: BatchStore,
        ledger: ProcessedBatchRepo,
        notifications: NotificationRepo,
        sink: SaveSink | None = None,
        presence: ConsumerPresence | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.notifications = notifications
        self.sink = sink
        self.presence = presence or ConsumerPresence()
        self.notifier = notifier
        self._claimed: set[str] = set()
        self._claim_lock = threading.Lock()

    def on_file_settled(self, batch_id: str) -> BatchSummary | None:
        """Complete the batch once every file has settled; returns the summary when side effects ran."""

        def finish(batch: Batch) -> bool:
            if batch.status in {BATCH_COMPLETED, BATCH_CANCELLED}:
                return False
            if batch.processed_files < batch.total_files:
                return False
            if batch.files_with_status(FILE_QUEUED, FILE_PROCESSING):
                return False
            batch.status = BATCH_COMPLETED
            batch.completed_at = now_utc_iso()
            return True

        changed, snapshot = self.store.mutate_with_result(batch_id, finish)
        if not changed:
            return None
        logger.info(
            "Batch %s completed: %d/%d successful, %d failed",
            snapshot.id,
            snapshot.successful_files,
            snapshot.total_files,
            snapshot.failed_files,
        )
        return self.handle_completion(snapshot)

    def handle_completion(self, snapshot: Batch) -> BatchSummary | None:
        summary = build_summary(snapshot)
        if not self._claim(snapshot.id):
            logger.info("Batch %s already processed; skipping completion side effects", snapshot.id)
            return None

        if snapshot.options.auto_save and self.sink is not None:
            saved, errors = self._run_side_effects(snapshot)
            summary.saved = saved
            summary.save_errors = errors

            def record_report(batch: Batch) -> None:
                batch.save_report = {"saved": saved, "errors": list(errors)}

            self.store.mutate(snapshot.id, record_report)

        if snapshot.options.notify_when_complete:
            self._notify(snapshot.id, "completed", summary)
        return summary

    def on_batch_cancelled(self, snapshot: Batch) -> None:
        logger.info("Batch %s cancelled", snapshot.id)
        if snapshot.options.notify_when_complete:
            self._notify(snapshot.id, "cancelled", build_summary(snapshot))

    def reset_for_retry(self, batch_id: str) -> None:
        with self._claim_lock:
            self._claimed.discard(batch_id)
        try:
            self.ledger.discard(batch_id)
        except sqlite3.Error:
            logger.exception("Failed to clear processed-batch ledger entry for %s", batch_id)

    def forget(self, batch_id: str) -> None:
        """Drop the in-memory claim for a purged batch; the ledger row stays."""
        with self._claim_lock:
            self._claimed.discard(batch_id)

    def set_foreground(self, foreground: bool) -> int:
        became_visible = self.presence.set(foreground)
        if not became_visible:
            return 0
        return self.flush_pending()

    def flush_pending(self) -> int:
        delivered = 0
        for notification in self.notifications.list(pending_only=True):
            self._deliver(notification)
            if notification.id is not None:
                notification.delivered_at = self.notifications.mark_delivered(notification.id)
            delivered += 1
        if delivered:
            logger.info("Delivered %d pending batch notification(s)", delivered)
        return delivered

    def _claim(self, batch_id: str) -> bool:
        with self._claim_lock:
            if batch_id in self._claimed:
                return False
            self._claimed.add(batch_id)
        try:
            return self.ledger.add(batch_id)
        except sqlite3.Error:
            logger.exception("Failed to persist processed-batch ledger entry for %s", batch_id)
            return True

    def _run_side_effects(self, snapshot: Batch) -> tuple[int, list[str]]:
        saved = 0
        errors: list[str] = []
        for item in snapshot.files:
            if item.status != FILE_COMPLETED or item.saved:
                continue
            try:
                outcome = self.sink(item.result, snapshot.document_type)
            except Exception as exc:
                logger.exception("Auto-save failed for %s in batch %s", item.name, snapshot.id)
                errors.append(f"{item.name}: {exc}")
                continue
            if not isinstance(outcome, dict) or outcome.get("success") is False:
                detail = outcome.get("error") if isinstance(outcome, dict) else None
                errors.append(f"{item.name}: {detail or 'save failed'}")
                continue

            def mark_saved(batch: Batch, index: int = item.index) -> None:
                batch.files[index].saved = True

            self.store.mutate(snapshot.id, mark_saved)
            saved += 1
        if errors:
            logger.warning("Batch %s auto-save: %d saved, %d failed", snapshot.id, saved, len(errors))
        return saved, errors

    def _notify(self, batch_id: str, kind: str, summary: BatchSummary) -> None:
        notification = Notification(batch_id=batch_id, kind=kind, summary=summary, timestamp=now_utc_iso())
        if self.presence.is_foreground:
            self._deliver(notification)
            notification.delivered = True
            notification.delivered_at = now_utc_iso()
        try:
            self.notifications.insert(notification)
        except sqlite3.Error:
            logger.exception("Failed to store notification for batch %s", batch_id)

    def _deliver(self, notification: Notification) -> None:
        if self.notifier is None:
            logger.info(notification.message)
            return
        try:
            self.notifier(notification)
        except Exception:
            logger.exception("Notification delivery failed for batch %s", notification.batch_id)
