from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from docbatch.application.services.batch_store import BatchStore
from docbatch.application.services.completion_service import CompletionManager
from docbatch.core.config import ProcessingSettings
from docbatch.core.errors import (
    BatchNotFoundError,
    DocbatchError,
    FileEncodingError,
    InvalidTransitionError,
    WorkerError,
)
from docbatch.core.ids import processed_file_key
from docbatch.core.time import now_utc_iso
from docbatch.domain import file_state
from docbatch.domain.models.batch import (
    BATCH_CANCELLED,
    BATCH_COMPLETED,
    BATCH_PROCESSING,
    BATCH_QUEUED,
    FILE_CANCELLED,
    FILE_COMPLETED,
    FILE_FAILED,
    FILE_PROCESSING,
    FILE_QUEUED,
    METHOD_SAME_THREAD,
    METHOD_WORKER,
    Batch,
    FileBlob,
)
from docbatch.infrastructure.db.repos.ledger_repo import ProcessedFileRepo
from docbatch.infrastructure.extractors.loader import resolve_callable, run_extractor
from docbatch.infrastructure.staging.store import StagingStore
from docbatch.infrastructure.workers.handle import WorkerHandle
from docbatch.infrastructure.workers.messages import (
    WORKER_EVENTS,
    CancelBatch,
    Cancelled,
    Completed,
    EncodedFile,
    Error,
    FileCompleted,
    FileFailed,
    FileProcessing,
    Pong,
    Ready,
    StartBatch,
    Started,
    encode_file,
)

logger = logging.getLogger(__name__)

WorkerFactory = Callable[[], Any]


@dataclass
class _RunState:
    batch_id: str
    handle: Any = None
    cancel_requested: threading.Event = field(default_factory=threading.Event)
    cancel_acked: threading.Event = field(default_factory=threading.Event)


class WorkerOrchestrator:
    """Runs the files of a batch through a worker process, or on the calling thread as fallback."""

    _EVENT_POLL_SECONDS = 0.25

    def __init__(
        self,
        *,
        store: BatchStore,
        staging: StagingStore,
        completion: CompletionManager,
        settings: ProcessingSettings,
        processed_files: ProcessedFileRepo | None = None,
        worker_factory: WorkerFactory | None = None,
    ) -> None:
        self.store = store
        self.staging = staging
        self.completion = completion
        self.settings = settings
        self.processed_files = processed_files
        self._worker_factory = worker_factory or self._spawn_worker
        self._extract: Callable[..., Any] | None = None
        self._runs: dict[str, _RunState] = {}
        self._runs_lock = threading.Lock()
        self._stop = threading.Event()

    # Strategy

    def background_execution_supported(self) -> bool:
        return self.settings.background_execution_supported()

    def choose_strategy(self, batch: Batch) -> str:
        if batch.options.prefer_background_worker and self.background_execution_supported():
            return METHOD_WORKER
        return METHOD_SAME_THREAD

    def active_worker_count(self) -> int:
        with self._runs_lock:
            return sum(1 for state in self._runs.values() if state.handle is not None)

    def is_running(self, batch_id: str) -> bool:
        with self._runs_lock:
            return batch_id in self._runs

    # Control

    def run_batch(self, batch_id: str) -> None:
        state = _RunState(batch_id=batch_id)
        with self._runs_lock:
            if batch_id in self._runs:
                logger.warning("Batch %s is already running; ignoring duplicate run request", batch_id)
                return
            self._runs[batch_id] = state
        try:
            snapshot = self.store.get(batch_id)
            if snapshot is None or snapshot.is_terminal:
                return
            if not snapshot.files_with_status(FILE_QUEUED):
                return
            finished = False
            if self.choose_strategy(snapshot) == METHOD_WORKER:
                finished = self._run_with_worker(batch_id, state)
            if not finished and not state.cancel_requested.is_set():
                self._run_same_thread(batch_id, state)
        finally:
            with self._runs_lock:
                self._runs.pop(batch_id, None)
            self.finalize_batch(batch_id)

    def cancel_batch(self, batch_id: str) -> Batch:
        snapshot = self.store.require(batch_id)
        if snapshot.is_terminal:
            return snapshot
        with self._runs_lock:
            state = self._runs.get(batch_id)
        if state is not None:
            state.cancel_requested.set()
            handle = state.handle
            if handle is not None:
                acked = False
                try:
                    handle.send(CancelBatch())
                    acked = state.cancel_acked.wait(timeout=self.settings.cancel_ack_timeout_seconds)
                except WorkerError as exc:
                    logger.warning("Could not signal cancellation to worker for %s: %s", batch_id, exc)
                if not acked:
                    logger.warning("Worker for batch %s did not acknowledge cancellation; terminating", batch_id)
                    handle.terminate()
        self._apply_cancel(batch_id)
        return self.store.require(batch_id)

    def retry_failed_files(self, batch_id: str) -> int:
        def reset(batch: Batch) -> int:
            failed = [item.index for item in batch.files if item.status == FILE_FAILED]
            for index in failed:
                file_state.reset_failed(batch, index)
            if failed:
                batch.status = BATCH_QUEUED
                batch.completed_at = None
                batch.cancelled_at = None
                batch.save_report = None
            return len(failed)

        count, _ = self.store.mutate_with_result(batch_id, reset)
        if count:
            self.completion.reset_for_retry(batch_id)
            logger.info("Re-queued %d failed file(s) in batch %s", count, batch_id)
        return count

    def stop(self) -> None:
        self._stop.set()
        with self._runs_lock:
            handles = [state.handle for state in self._runs.values() if state.handle is not None]
        for handle in handles:
            handle.terminate()

    # Worker strategy

    def _spawn_worker(self) -> WorkerHandle:
        return WorkerHandle(
            extractor_ref=self.settings.extractor,
            start_method=self.settings.worker_start_method,
        )

    def _run_with_worker(self, batch_id: str, state: _RunState) -> bool:
        """Returns False when the remaining files must go through the fallback strategy."""
        snapshot = self._mark_started(batch_id, METHOD_WORKER)
        if snapshot.status == BATCH_CANCELLED:
            return True
        encoded: list[EncodedFile] = []
        for item in snapshot.files_with_status(FILE_QUEUED):
            try:
                content = self.staging.read(item.staged_relpath, max_bytes=self.settings.max_file_bytes)
                encoded.append(
                    encode_file(index=item.index, name=item.name, mime_type=item.mime_type, content=content)
                )
            except FileEncodingError as exc:
                self._fail_before_start(batch_id, item.index, f"File conversion failed: {exc}")
        if not encoded:
            return True

        try:
            handle = self._worker_factory()
            handle.start()
        except (DocbatchError, OSError) as exc:
            logger.warning("Background worker unavailable for batch %s: %s", batch_id, exc)
            self._demote(batch_id, str(exc))
            return False

        with self._runs_lock:
            state.handle = handle
        logger.info("Started background worker for batch %s with %d file(s)", batch_id, len(encoded))
        try:
            handle.send(StartBatch(batch_id=batch_id, files=encoded, options=asdict(snapshot.options)))
            if state.cancel_requested.is_set():
                handle.send(CancelBatch())
            return self._pump_worker_events(batch_id, handle, state)
        except WorkerError as exc:
            if state.cancel_requested.is_set():
                return True
            return self._demote(batch_id, str(exc))
        finally:
            with self._runs_lock:
                state.handle = None
            handle.terminate()

    def _pump_worker_events(self, batch_id: str, handle: Any, state: _RunState) -> bool:
        idle_timeout = self.settings.worker_idle_timeout_seconds
        last_event_at = time.monotonic()
        while True:
            if self._stop.is_set():
                return True
            event = handle.receive(timeout=self._EVENT_POLL_SECONDS)
            now_mono = time.monotonic()
            if event is None:
                if state.cancel_requested.is_set() and not handle.is_alive():
                    return True
                if not handle.is_alive():
                    return self._demote(batch_id, f"Worker exited unexpectedly (exit code {handle.exitcode})")
                if idle_timeout > 0 and (now_mono - last_event_at) >= idle_timeout:
                    return self._demote(batch_id, f"No worker event within {idle_timeout}s")
                continue
            last_event_at = now_mono

            if not isinstance(event, WORKER_EVENTS):
                return self._demote(batch_id, f"Invalid worker payload: {type(event).__name__}")
            if isinstance(event, (Ready, Pong)):
                continue
            if isinstance(event, Started):
                logger.debug("Worker started batch %s (%d files)", event.batch_id, event.total_files)
            elif isinstance(event, FileProcessing):
                self._on_file_processing(batch_id, event.index, event.progress)
            elif isinstance(event, FileCompleted):
                self._settle(batch_id, event.index, success=True, result=event.result)
            elif isinstance(event, FileFailed):
                self._settle(batch_id, event.index, success=False, error=event.error)
            elif isinstance(event, Completed):
                self.completion.on_file_settled(batch_id)
                snapshot = self.store.require(batch_id)
                unsettled = snapshot.files_with_status(FILE_QUEUED, FILE_PROCESSING)
                if unsettled and snapshot.status != BATCH_CANCELLED:
                    return self._demote(
                        batch_id,
                        f"Worker reported completion with {len(unsettled)} unfinished file(s)",
                    )
                return True
            elif isinstance(event, Cancelled):
                logger.info("Worker acknowledged cancellation of batch %s", batch_id)
                self._apply_cancel(batch_id)
                state.cancel_acked.set()
                return True
            elif isinstance(event, Error):
                if state.cancel_requested.is_set():
                    return True
                return self._demote(batch_id, event.detail)

    def _demote(self, batch_id: str, detail: str) -> bool:
        logger.warning("Worker error for batch %s, continuing on the calling thread: %s", batch_id, detail)

        def reset(batch: Batch) -> None:
            for item in batch.files_with_status(FILE_PROCESSING):
                file_state.requeue_in_flight(batch, item.index)
            batch.processing_method = METHOD_SAME_THREAD

        try:
            self.store.mutate(batch_id, reset)
        except BatchNotFoundError:
            pass
        return False

    # Fallback strategy

    def _run_same_thread(self, batch_id: str, state: _RunState) -> None:
        self._mark_started(batch_id, METHOD_SAME_THREAD)
        extract: Callable[..., Any] | None = None
        extractor_error = ""
        try:
            extract = self._get_extractor()
        except DocbatchError as exc:
            logger.error("Extractor unavailable for batch %s: %s", batch_id, exc)
            extractor_error = str(exc)

        while not self._stop.is_set() and not state.cancel_requested.is_set():
            snapshot = self.store.get(batch_id)
            if snapshot is None or snapshot.status == BATCH_CANCELLED:
                return
            queued = snapshot.files_with_status(FILE_QUEUED)
            if not queued:
                return
            item = queued[0]
            try:
                self.store.mutate(batch_id, lambda b: file_state.begin_attempt(b, item.index, now=now_utc_iso()))
            except InvalidTransitionError:
                continue

            if extract is None:
                self._settle(batch_id, item.index, success=False, error=extractor_error)
                continue
            try:
                content = self.staging.read(item.staged_relpath, max_bytes=self.settings.max_file_bytes)
            except FileEncodingError as exc:
                self._settle(batch_id, item.index, success=False, error=str(exc))
                continue

            outcome = run_extractor(extract, FileBlob(name=item.name, mime_type=item.mime_type, content=content))
            if outcome["success"]:
                self._settle(batch_id, item.index, success=True, result=outcome.get("data"))
            else:
                self._settle(batch_id, item.index, success=False, error=str(outcome.get("error")))

            if self.settings.inter_file_delay_seconds > 0:
                self._stop.wait(self.settings.inter_file_delay_seconds)

    def _get_extractor(self) -> Callable[..., Any]:
        if self._extract is None:
            self._extract = resolve_callable(self.settings.extractor)
        return self._extract

    # Transitions

    def _mark_started(self, batch_id: str, method: str) -> Batch:
        def start(batch: Batch) -> None:
            if batch.status == BATCH_CANCELLED:
                return
            batch.status = BATCH_PROCESSING
            batch.processing_method = method
            if batch.started_at is None:
                batch.started_at = now_utc_iso()

        return self.store.mutate(batch_id, start)

    def _on_file_processing(self, batch_id: str, index: int, progress: int) -> None:
        def apply(batch: Batch) -> None:
            if batch.status == BATCH_CANCELLED:
                return
            item = file_state.file_at(batch, index)
            if item.status == FILE_QUEUED:
                file_state.begin_attempt(batch, index, now=now_utc_iso())
            if item.status == FILE_PROCESSING:
                file_state.record_progress(batch, index, progress)

        try:
            self.store.mutate(batch_id, apply)
        except InvalidTransitionError as exc:
            logger.warning("Ignoring progress event for batch %s file %s: %s", batch_id, index, exc)

    def _settle(
        self,
        batch_id: str,
        index: int,
        *,
        success: bool,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        def apply(batch: Batch) -> bool:
            item = file_state.file_at(batch, index)
            if item.status in {FILE_COMPLETED, FILE_FAILED, FILE_CANCELLED}:
                logger.debug("Discarding outcome for %s (already %s)", item.id, item.status)
                return False
            now = now_utc_iso()
            if item.status == FILE_QUEUED:
                file_state.begin_attempt(batch, index, now=now)
            if success:
                file_state.complete_file(batch, index, result, now=now)
            else:
                file_state.fail_file(batch, index, error or "Extraction failed", now=now)
            return True

        try:
            changed, snapshot = self.store.mutate_with_result(batch_id, apply)
        except InvalidTransitionError as exc:
            logger.warning("Ignoring outcome for batch %s file %s: %s", batch_id, index, exc)
            return
        if not changed:
            return
        item = snapshot.files[index]
        if success:
            logger.debug("File %s completed", item.id)
            self._remember_processed(snapshot.id, item.name, item.size_bytes)
        else:
            logger.debug("File %s failed: %s", item.id, item.error)
        self.completion.on_file_settled(batch_id)

    def _fail_before_start(self, batch_id: str, index: int, error: str) -> None:
        logger.warning("Batch %s file %d: %s", batch_id, index, error)
        self._settle(batch_id, index, success=False, error=error)

    def _apply_cancel(self, batch_id: str) -> None:
        def cancel(batch: Batch) -> bool:
            if batch.status in {BATCH_CANCELLED, BATCH_COMPLETED}:
                return False
            for item in batch.files_with_status(FILE_QUEUED, FILE_PROCESSING):
                file_state.cancel_file(batch, item.index)
            batch.status = BATCH_CANCELLED
            batch.cancelled_at = now_utc_iso()
            return True

        changed, snapshot = self.store.mutate_with_result(batch_id, cancel)
        if changed:
            self.completion.on_batch_cancelled(snapshot)

    def finalize_batch(self, batch_id: str) -> None:
        """Settle a batch whose run ended: complete it, or mark it cancelled when files were cancelled."""
        snapshot = self.store.get(batch_id)
        if snapshot is None or snapshot.is_terminal:
            return
        if snapshot.files_with_status(FILE_QUEUED, FILE_PROCESSING):
            return
        if snapshot.processed_files >= snapshot.total_files:
            self.completion.on_file_settled(batch_id)
        elif snapshot.files_with_status(FILE_CANCELLED):
            self._apply_cancel(batch_id)

    def _remember_processed(self, batch_id: str, name: str, size_bytes: int) -> None:
        if self.processed_files is None:
            return
        try:
            self.processed_files.add(processed_file_key(name, size_bytes), batch_id=batch_id)
        except Exception:
            logger.exception("Failed to record processed file %s", name)
