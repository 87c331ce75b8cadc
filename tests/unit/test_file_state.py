from __future__ import annotations

import pytest

from docbatch.core.errors import InvalidTransitionError
from docbatch.domain import file_state
from docbatch.domain.models.batch import Batch, FileItem

NOW = "2026-01-01T00:00:00.000+00:00"


def _batch(count: int = 3) -> Batch:
    files = [
        FileItem(id=f"b1_file_{i}", index=i, name=f"f{i}.txt", size_bytes=10, mime_type="text/plain")
        for i in range(count)
    ]
    return Batch(id="b1", document_type="invoice", created_at=NOW, total_files=count, files=files)


def test_attempts_increment_only_when_processing_starts() -> None:
    batch = _batch()

    file_state.begin_attempt(batch, 0, now=NOW)
    file_state.begin_attempt(batch, 0, now=NOW)

    assert batch.files[0].status == "processing"
    assert batch.files[0].attempts == 1


def test_progress_is_clamped_and_monotonic() -> None:
    batch = _batch()
    file_state.begin_attempt(batch, 0, now=NOW)

    file_state.record_progress(batch, 0, 40)
    file_state.record_progress(batch, 0, 10)
    assert batch.files[0].progress == 40

    file_state.record_progress(batch, 0, 250)
    assert batch.files[0].progress == 100


def test_progress_requires_processing_status() -> None:
    batch = _batch()
    with pytest.raises(InvalidTransitionError):
        file_state.record_progress(batch, 0, 10)


def test_settling_keeps_counters_consistent() -> None:
    batch = _batch()
    file_state.begin_attempt(batch, 0, now=NOW)
    file_state.complete_file(batch, 0, {"ok": True}, now=NOW)
    file_state.begin_attempt(batch, 1, now=NOW)
    file_state.fail_file(batch, 1, "bad scan", now=NOW)

    assert batch.processed_files == 2
    assert batch.successful_files == 1
    assert batch.failed_files == 1
    assert batch.processed_files == batch.successful_files + batch.failed_files
    assert batch.files[0].progress == 100
    assert batch.files[1].error == "bad scan"


def test_terminal_states_reject_further_transitions() -> None:
    batch = _batch()
    file_state.begin_attempt(batch, 0, now=NOW)
    file_state.complete_file(batch, 0, None, now=NOW)

    with pytest.raises(InvalidTransitionError):
        file_state.fail_file(batch, 0, "late failure", now=NOW)
    with pytest.raises(InvalidTransitionError):
        file_state.cancel_file(batch, 0)
    assert batch.processed_files == 1


def test_queued_file_cannot_complete_without_starting() -> None:
    batch = _batch()
    with pytest.raises(InvalidTransitionError):
        file_state.complete_file(batch, 0, None, now=NOW)


def test_reset_failed_decrements_counters_and_keeps_attempts() -> None:
    batch = _batch()
    file_state.begin_attempt(batch, 2, now=NOW)
    file_state.fail_file(batch, 2, "timeout", now=NOW)

    file_state.reset_failed(batch, 2)

    item = batch.files[2]
    assert item.status == "queued"
    assert item.attempts == 1
    assert item.error is None
    assert batch.processed_files == 0
    assert batch.failed_files == 0


def test_requeue_in_flight_resets_progress() -> None:
    batch = _batch()
    file_state.begin_attempt(batch, 0, now=NOW)
    file_state.record_progress(batch, 0, 60)

    file_state.requeue_in_flight(batch, 0)

    assert batch.files[0].status == "queued"
    assert batch.files[0].progress == 0
    assert batch.files[0].attempts == 1
    with pytest.raises(InvalidTransitionError):
        file_state.requeue_in_flight(batch, 1)


def test_out_of_range_index_is_rejected() -> None:
    batch = _batch()
    with pytest.raises(InvalidTransitionError):
        file_state.begin_attempt(batch, 7, now=NOW)
    assert not file_state.can_transition("completed", "queued")
    assert file_state.can_transition("failed", "queued")


def test_negative_index_is_rejected() -> None:
    batch = _batch()
    with pytest.raises(InvalidTransitionError):
        file_state.file_at(batch, -1)
