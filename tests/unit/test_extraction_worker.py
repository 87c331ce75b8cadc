from __future__ import annotations

import time

import pytest

from docbatch.core.errors import ExtractionError, FileEncodingError
from docbatch.domain.models.batch import FileBlob
from docbatch.infrastructure.extractors.loader import resolve_callable, run_extractor
from docbatch.infrastructure.extractors.plain_text import extract
from docbatch.infrastructure.workers.handle import WorkerHandle
from docbatch.infrastructure.workers.messages import (
    CancelBatch,
    Cancelled,
    Completed,
    EncodedFile,
    FileCompleted,
    FileFailed,
    Ping,
    Pong,
    Ready,
    StartBatch,
    decode_file,
    encode_file,
)


def test_encoded_file_carries_base64_text() -> None:
    encoded = encode_file(index=3, name="scan.pdf", mime_type="application/pdf", content=b"%PDF-1.7\x00\xff")

    assert encoded.index == 3
    assert encoded.size_bytes == 10
    assert isinstance(encoded.data, str)
    assert decode_file(encoded) == b"%PDF-1.7\x00\xff"


def test_corrupt_payload_raises_encoding_error() -> None:
    broken = EncodedFile(index=0, name="x.bin", mime_type="application/octet-stream", size_bytes=3, data="@@@")
    with pytest.raises(FileEncodingError):
        decode_file(broken)


def test_plain_text_extractor_handles_text_json_and_csv() -> None:
    text = extract(FileBlob(name="notes.md", mime_type="text/markdown", content=b"\n# Title\nbody\n"))
    assert text["success"] is True
    assert text["data"]["title"] == "# Title"
    assert text["data"]["line_count"] == 3

    data = extract(FileBlob(name="doc.json", mime_type="application/json", content=b'{"total": 12}'))
    assert data["data"] == {"kind": "json", "content": {"total": 12}}

    table = extract(FileBlob(name="t.csv", mime_type="text/csv", content=b"item,value\ncash,5631\n"))
    assert table["data"]["columns"] == ["item", "value"]
    assert table["data"]["rows"] == [{"item": "cash", "value": "5631"}]


def test_plain_text_extractor_rejects_empty_and_binary() -> None:
    assert extract(FileBlob(name="e.txt", mime_type="text/plain", content=b""))["success"] is False
    binary = extract(FileBlob(name="i.png", mime_type="image/png", content=b"\x89PNG\r\n\x1a\n\xff\xfe"))
    assert binary["success"] is False
    assert "binary" in binary["error"]
    assert extract(FileBlob(name="bad.json", mime_type="application/json", content=b"{"))["success"] is False


def test_resolve_callable_and_run_extractor() -> None:
    fn = resolve_callable("docbatch.infrastructure.extractors.plain_text:extract")
    assert fn is extract

    with pytest.raises(ExtractionError):
        resolve_callable("no_colon_here")
    with pytest.raises(ExtractionError):
        resolve_callable("docbatch.missing_module:extract")
    with pytest.raises(ExtractionError):
        resolve_callable("docbatch.infrastructure.extractors.plain_text:missing")

    def boom(blob: FileBlob) -> dict:
        raise RuntimeError("model unavailable")

    outcome = run_extractor(boom, FileBlob(name="a", mime_type="text/plain", content=b"a"))
    assert outcome == {"success": False, "error": "RuntimeError: model unavailable"}
    assert run_extractor(lambda blob: "nope", None)["success"] is False


def _collect_until(handle: WorkerHandle, terminal: tuple[type, ...], timeout: float = 60.0) -> list:
    events = []
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        event = handle.receive(timeout=0.5)
        if event is None:
            continue
        events.append(event)
        if isinstance(event, terminal):
            return events
    raise AssertionError(f"worker did not finish, got {events!r}")


def test_spawned_worker_processes_a_batch() -> None:
    handle = WorkerHandle(extractor_ref="docbatch.infrastructure.extractors.plain_text:extract")
    handle.start()
    try:
        handle.send(Ping())
        handle.send(
            StartBatch(
                batch_id="batch_smoke",
                files=[
                    encode_file(index=0, name="a.txt", mime_type="text/plain", content=b"hello"),
                    encode_file(index=1, name="b.txt", mime_type="text/plain", content=b""),
                ],
            )
        )
        events = _collect_until(handle, (Completed, Cancelled))
    finally:
        handle.terminate()

    assert isinstance(events[0], Ready)
    assert any(isinstance(event, Pong) for event in events)
    completed = [event for event in events if isinstance(event, FileCompleted)]
    failed = [event for event in events if isinstance(event, FileFailed)]
    assert [event.index for event in completed] == [0]
    assert completed[0].result["text"] == "hello"
    assert [event.index for event in failed] == [1]
    assert isinstance(events[-1], Completed)
    assert events[-1].processed_files == 2


def test_spawned_worker_acknowledges_cancel_before_start() -> None:
    handle = WorkerHandle(extractor_ref="docbatch.infrastructure.extractors.plain_text:extract")
    handle.start()
    try:
        handle.send(CancelBatch())
        events = _collect_until(handle, (Cancelled,))
    finally:
        handle.terminate()

    assert isinstance(events[-1], Cancelled)
    assert events[-1].processed_files == 0
    assert not handle.is_alive()
