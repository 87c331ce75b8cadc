from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest

from docbatch.application.services.batch_upload_service import BatchUploadService
from docbatch.core.config import AppPaths, ProcessingSettings
from docbatch.core.errors import BatchNotFoundError, ValidationError
from docbatch.domain import file_state
from docbatch.domain.models.batch import BatchOptions, SubmittedFile
from docbatch.domain.models.notification import Notification


class _CountingSink:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, str]] = []

    def __call__(self, extracted_data: Any, document_type: str) -> dict[str, Any]:
        self.calls.append((extracted_data, document_type))
        return {"success": True}


def _paths(tmp_path: Path) -> AppPaths:
    data_dir = tmp_path / ".docbatch"
    return AppPaths(
        project_root=tmp_path,
        data_dir=data_dir,
        db_path=data_dir / "docbatch.db",
        staging_dir=data_dir / "staging",
    )


def _settings(**overrides: Any) -> ProcessingSettings:
    values: dict[str, Any] = {"inter_file_delay_seconds": 0.0, "background_workers_enabled": False}
    values.update(overrides)
    return ProcessingSettings(**values)


def _service(tmp_path: Path, **kwargs: Any) -> BatchUploadService:
    settings = kwargs.pop("settings", None) or _settings()
    return BatchUploadService(paths=_paths(tmp_path), settings=settings, start_threads=False, **kwargs)


def _text(name: str, body: str) -> SubmittedFile:
    return SubmittedFile(name=name, content=body.encode("utf-8"), mime_type="text/plain")


def test_three_files_one_failure_completes_with_counts(tmp_path: Path) -> None:
    sink = _CountingSink()
    seen: list[Notification] = []
    service = _service(tmp_path, sink=sink, notifier=seen.append)

    result = service.add_batch(
        [_text("a.txt", "alpha"), _text("b.txt", ""), _text("c.txt", "gamma")],
        "invoice",
        BatchOptions(prefer_background_worker=False),
    )
    assert result["total_files"] == 3
    assert result["estimated_seconds"] == 3 * 45
    assert result["processing_method"] == "same-thread"

    service.orchestrator.run_batch(result["batch_id"])

    status = service.get_batch_status(result["batch_id"])
    assert status is not None
    assert status["status"] == "completed"
    assert status["processed_files"] == 3
    assert status["successful_files"] == 2
    assert status["failed_files"] == 1
    assert status["processing_method"] == "same-thread"
    assert [f["status"] for f in status["files"]] == ["completed", "failed", "completed"]
    assert "empty" in status["files"][1]["error"]
    assert len(sink.calls) == 2
    assert all(doc_type == "invoice" for _, doc_type in sink.calls)
    assert status["save_report"] == {"saved": 2, "errors": []}
    assert len(seen) == 1
    assert seen[0].summary.successful == 2
    assert seen[0].summary.failed == 1


def test_retry_requeues_only_failed_files_and_saves_once(tmp_path: Path) -> None:
    sink = _CountingSink()
    service = _service(tmp_path, sink=sink)
    result = service.add_batch(
        [_text("a.txt", "alpha"), _text("b.txt", ""), _text("c.txt", "gamma")],
        "invoice",
        BatchOptions(prefer_background_worker=False),
    )
    batch_id = result["batch_id"]
    service.orchestrator.run_batch(batch_id)

    failed = service.store.require(batch_id).files[1]
    service.staging.abspath(failed.staged_relpath).write_bytes(b"beta")

    assert service.retry_failed_files(batch_id) == 1
    requeued = service.store.require(batch_id)
    assert requeued.status == "queued"
    assert [f.status for f in requeued.files] == ["completed", "queued", "completed"]
    assert requeued.processed_files == 2
    assert requeued.failed_files == 0
    assert requeued.files[1].attempts == 1

    service.orchestrator.run_batch(batch_id)

    final = service.store.require(batch_id)
    assert final.status == "completed"
    assert final.successful_files == 3
    assert final.files[1].attempts == 2
    assert len(sink.calls) == 3


def test_retry_without_failures_is_a_no_op(tmp_path: Path) -> None:
    service = _service(tmp_path)
    result = service.add_batch([_text("a.txt", "alpha")], "memo", BatchOptions(prefer_background_worker=False))
    service.orchestrator.run_batch(result["batch_id"])

    assert service.retry_failed_files(result["batch_id"]) == 0
    assert service.store.require(result["batch_id"]).status == "completed"


def test_completion_side_effects_run_once(tmp_path: Path) -> None:
    sink = _CountingSink()
    service = _service(tmp_path, sink=sink)
    result = service.add_batch(
        [_text("a.txt", "alpha"), _text("b.txt", "beta")],
        "memo",
        BatchOptions(prefer_background_worker=False),
    )
    service.orchestrator.run_batch(result["batch_id"])
    snapshot = service.store.require(result["batch_id"])

    assert service.completion.handle_completion(snapshot) is None
    assert service.completion.on_file_settled(result["batch_id"]) is None
    assert len(sink.calls) == 2
    assert len(service.list_notifications()) == 1


def test_completion_is_not_repeated_after_restart(tmp_path: Path) -> None:
    sink = _CountingSink()
    service = _service(tmp_path, sink=sink)
    result = service.add_batch([_text("a.txt", "alpha")], "memo", BatchOptions(prefer_background_worker=False))
    service.orchestrator.run_batch(result["batch_id"])
    service.shutdown()

    restarted = _service(tmp_path, sink=sink)
    snapshot = restarted.store.require(result["batch_id"])

    assert restarted.completion.handle_completion(snapshot) is None
    assert len(sink.calls) == 1


def test_auto_save_failure_is_recorded_not_raised(tmp_path: Path) -> None:
    def broken_sink(extracted_data: Any, document_type: str) -> dict[str, Any]:
        raise RuntimeError("record store offline")

    service = _service(tmp_path, sink=broken_sink)
    result = service.add_batch([_text("a.txt", "alpha")], "memo", BatchOptions(prefer_background_worker=False))
    service.orchestrator.run_batch(result["batch_id"])

    status = service.get_batch_status(result["batch_id"])
    assert status["status"] == "completed"
    assert status["successful_files"] == 1
    assert status["save_report"]["saved"] == 0
    assert "record store offline" in status["save_report"]["errors"][0]


def test_auto_save_disabled_skips_sink(tmp_path: Path) -> None:
    sink = _CountingSink()
    service = _service(tmp_path, sink=sink)
    result = service.add_batch(
        [_text("a.txt", "alpha")],
        "memo",
        BatchOptions(prefer_background_worker=False, auto_save=False),
    )
    service.orchestrator.run_batch(result["batch_id"])

    assert sink.calls == []
    assert service.store.require(result["batch_id"]).status == "completed"


def test_cancel_keeps_settled_files_and_cancels_the_rest(tmp_path: Path) -> None:
    sink = _CountingSink()
    service = _service(tmp_path, sink=sink)
    files = [_text(f"f{i}.txt", f"body {i}") for i in range(7)]
    batch_id = service.add_batch(files, "memo", BatchOptions(prefer_background_worker=False))["batch_id"]
    for index in (0, 1):
        service.store.mutate(batch_id, lambda b, i=index: file_state.begin_attempt(b, i, now="t"))
        service.store.mutate(batch_id, lambda b, i=index: file_state.complete_file(b, i, {"n": i}, now="t"))

    view = service.cancel_batch(batch_id)

    assert view["status"] == "cancelled"
    snapshot = service.store.require(batch_id)
    assert [f.status for f in snapshot.files].count("completed") == 2
    assert [f.status for f in snapshot.files].count("cancelled") == 5
    assert snapshot.failed_files == 0
    assert snapshot.cancelled_at is not None
    assert sink.calls == []

    service.orchestrator.run_batch(batch_id)
    assert service.store.require(batch_id).status == "cancelled"
    assert service.cancel_batch(batch_id)["status"] == "cancelled"
    kinds = [row["kind"] for row in service.list_notifications()]
    assert kinds == ["cancelled"]


def test_pending_notifications_flush_on_foreground(tmp_path: Path) -> None:
    delivered: list[Notification] = []
    service = _service(tmp_path, notifier=delivered.append, foreground=False)
    result = service.add_batch([_text("a.txt", "alpha")], "memo", BatchOptions(prefer_background_worker=False))
    service.orchestrator.run_batch(result["batch_id"])

    assert delivered == []
    pending = service.list_notifications(pending_only=True)
    assert len(pending) == 1
    assert pending[0]["batch_id"] == result["batch_id"]

    assert service.set_foreground(True) == 1
    assert len(delivered) == 1
    assert service.list_notifications(pending_only=True) == []
    assert service.set_foreground(True) == 0


def test_skip_processed_files(tmp_path: Path) -> None:
    service = _service(tmp_path)
    first = service.add_batch(
        [_text("a.txt", "alpha"), _text("b.txt", "beta")],
        "memo",
        BatchOptions(prefer_background_worker=False),
    )
    service.orchestrator.run_batch(first["batch_id"])

    second = service.add_batch(
        [_text("a.txt", "alpha"), _text("b.txt", "beta"), _text("c.txt", "gamma")],
        "memo",
        BatchOptions(prefer_background_worker=False, skip_processed_files=True),
    )
    assert second["total_files"] == 1
    assert second["skipped_files"] == 2
    assert service.store.require(second["batch_id"]).skipped_files == 2

    third = service.add_batch(
        [_text("a.txt", "alpha")],
        "memo",
        BatchOptions(prefer_background_worker=False, skip_processed_files=True),
    )
    assert third["batch_id"] is None
    assert third["processing_method"] == "none"
    assert third["skipped_files"] == 1

    assert service.clear_processed_files() == 2


def test_invalid_arguments_raise(tmp_path: Path) -> None:
    service = _service(tmp_path)
    with pytest.raises(ValidationError):
        service.add_batch([], "memo")
    with pytest.raises(ValidationError):
        service.add_batch([_text("a.txt", "alpha")], " ")
    with pytest.raises(ValidationError):
        service.add_batch([_text("a.txt", "alpha")], "memo", BatchOptions(priority="urgent"))
    with pytest.raises(BatchNotFoundError):
        service.cancel_batch("batch_missing")
    with pytest.raises(BatchNotFoundError):
        service.retry_failed_files("batch_missing")
    assert service.get_batch_status("batch_missing") is None


def test_restart_resumes_in_flight_files(tmp_path: Path) -> None:
    service = _service(tmp_path)
    batch_id = service.add_batch(
        [_text("a.txt", "alpha"), _text("b.txt", "beta")],
        "memo",
        BatchOptions(prefer_background_worker=False),
    )["batch_id"]
    service.store.mutate(batch_id, lambda b: file_state.begin_attempt(b, 0, now="t"))
    service.shutdown()

    restarted = _service(tmp_path, settings=_settings(resume_on_startup=False))
    snapshot = restarted.store.require(batch_id)
    assert [f.status for f in snapshot.files] == ["queued", "queued"]
    assert snapshot.files[0].attempts == 1

    restarted.orchestrator.run_batch(batch_id)

    final = restarted.store.require(batch_id)
    assert final.status == "completed"
    assert final.successful_files == 2
    assert final.files[0].attempts == 2


def test_expired_batches_are_purged_with_staged_content(tmp_path: Path) -> None:
    service = _service(tmp_path, settings=_settings(retention_seconds=0))
    batch_id = service.add_batch([_text("a.txt", "alpha")], "memo", BatchOptions(prefer_background_worker=False))[
        "batch_id"
    ]
    service.orchestrator.run_batch(batch_id)
    assert (service.paths.staging_dir / batch_id).exists()

    assert service.purge_expired() == 1

    assert service.get_batch_status(batch_id) is None
    assert not (service.paths.staging_dir / batch_id).exists()
    assert service.batch_repo.get(batch_id) is None
    assert service.ledger.contains(batch_id)


def test_statistics_aggregate_resident_batches(tmp_path: Path) -> None:
    service = _service(tmp_path)
    first = service.add_batch(
        [_text("a.txt", "alpha"), _text("b.txt", "")],
        "memo",
        BatchOptions(prefer_background_worker=False),
    )
    service.orchestrator.run_batch(first["batch_id"])
    service.add_batch([_text("c.txt", "gamma")], "memo", BatchOptions(priority="high"))

    stats = service.get_statistics()

    assert stats["total_batches"] == 2
    assert stats["active_batches"] == 1
    assert stats["completed_batches"] == 1
    assert stats["total_files"] == 3
    assert stats["processed_files"] == 2
    assert stats["successful_files"] == 1
    assert stats["failed_files"] == 1
    assert stats["active_workers"] == 0
    assert stats["processed_files_tracked"] == 1
    assert stats["background_execution_supported"] is False


def test_dispatcher_threads_process_batches(tmp_path: Path) -> None:
    with BatchUploadService(paths=_paths(tmp_path), settings=_settings()) as service:
        ids = [
            service.add_batch([_text(f"{n}.txt", f"doc {n}")], "memo", BatchOptions(priority=priority))["batch_id"]
            for n, priority in enumerate(["low", "high", "normal"])
        ]
        views = [service.wait_for_batch(batch_id, timeout=30) for batch_id in ids]

    assert [view["status"] for view in views] == ["completed", "completed", "completed"]
    assert all(view["estimated_time_remaining"] == 0 for view in views)


def test_purge_keeps_undelivered_notifications(tmp_path: Path) -> None:
    delivered: list[Notification] = []
    service = _service(
        tmp_path,
        settings=_settings(retention_seconds=0),
        notifier=delivered.append,
        foreground=False,
    )
    batch_id = service.add_batch([_text("a.txt", "alpha")], "memo", BatchOptions(prefer_background_worker=False))[
        "batch_id"
    ]
    service.orchestrator.run_batch(batch_id)
    assert len(service.list_notifications(pending_only=True)) == 1

    assert service.purge_expired() == 1

    pending = service.list_notifications(pending_only=True)
    assert [row["batch_id"] for row in pending] == [batch_id]
    assert service.set_foreground(True) == 1
    assert [n.batch_id for n in delivered] == [batch_id]


def test_purge_drops_delivered_notifications_and_claims(tmp_path: Path) -> None:
    service = _service(tmp_path, settings=_settings(retention_seconds=0))
    batch_id = service.add_batch([_text("a.txt", "alpha")], "memo", BatchOptions(prefer_background_worker=False))[
        "batch_id"
    ]
    service.orchestrator.run_batch(batch_id)
    assert batch_id in service.completion._claimed
    assert len(service.list_notifications()) == 1

    service.purge_expired()

    assert service.list_notifications() == []
    assert batch_id not in service.completion._claimed
    assert service.ledger.contains(batch_id)


def test_cancel_while_file_is_extracting_discards_its_result(tmp_path: Path) -> None:
    sink = _CountingSink()
    service = _service(tmp_path, sink=sink)
    entered = threading.Event()
    release = threading.Event()

    def blocking_extract(blob: Any) -> dict[str, Any]:
        entered.set()
        release.wait(timeout=10)
        return {"success": True, "data": {"name": blob.name}}

    service.orchestrator._extract = blocking_extract
    batch_id = service.add_batch(
        [_text("a.txt", "alpha"), _text("b.txt", "beta")],
        "memo",
        BatchOptions(prefer_background_worker=False),
    )["batch_id"]

    runner = threading.Thread(target=service.orchestrator.run_batch, args=(batch_id,))
    runner.start()
    assert entered.wait(timeout=10)

    view = service.cancel_batch(batch_id)
    release.set()
    runner.join(timeout=10)

    assert not runner.is_alive()
    assert view["status"] == "cancelled"
    snapshot = service.store.require(batch_id)
    assert snapshot.status == "cancelled"
    assert [f.status for f in snapshot.files] == ["cancelled", "cancelled"]
    assert snapshot.files[0].result is None
    assert snapshot.successful_files == 0
    assert sink.calls == []
    assert [row["kind"] for row in service.list_notifications()] == ["cancelled"]


def test_skip_processed_files_recognises_unnamed_files(tmp_path: Path) -> None:
    service = _service(tmp_path)
    unnamed = SubmittedFile(name="", content=b"alpha", mime_type="text/plain")
    first = service.add_batch([unnamed], "memo", BatchOptions(prefer_background_worker=False))
    service.orchestrator.run_batch(first["batch_id"])
    assert service.store.require(first["batch_id"]).files[0].name == "file_0"

    second = service.add_batch(
        [SubmittedFile(name="", content=b"alpha", mime_type="text/plain")],
        "memo",
        BatchOptions(prefer_background_worker=False, skip_processed_files=True),
    )

    assert second["batch_id"] is None
    assert second["skipped_files"] == 1
