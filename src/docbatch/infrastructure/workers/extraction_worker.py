from __future__ import annotations

import threading
from typing import Any

from docbatch.core.errors import DocbatchError, FileEncodingError
from docbatch.domain.models.batch import FileBlob
from docbatch.infrastructure.extractors.loader import resolve_callable, run_extractor
from docbatch.infrastructure.workers.messages import (
    CancelBatch,
    Cancelled,
    Completed,
    Error,
    FileCompleted,
    FileFailed,
    FileProcessing,
    Ping,
    Pong,
    Ready,
    StartBatch,
    Started,
    decode_file,
)


def worker_main(*, inbound: Any, outbound: Any, extractor_ref: str) -> None:
    """Entry point of the background worker process."""
    try:
        extract = resolve_callable(extractor_ref)
    except DocbatchError as exc:
        outbound.put(Error(detail=str(exc)))
        return
    outbound.put(Ready())

    try:
        start = _await_start(inbound, outbound)
        if start is None:
            return
        cancel_requested = threading.Event()
        listener = threading.Thread(
            target=_listen_for_control,
            args=(inbound, outbound, cancel_requested),
            daemon=True,
            name="docbatch-worker-control",
        )
        listener.start()
        _process_batch(start, extract, outbound, cancel_requested)
    except Exception as exc:
        outbound.put(Error(detail=f"{exc.__class__.__name__}: {exc}"))


def _await_start(inbound: Any, outbound: Any) -> StartBatch | None:
    while True:
        message = inbound.get()
        if isinstance(message, StartBatch):
            return message
        if isinstance(message, Ping):
            outbound.put(Pong())
        elif isinstance(message, CancelBatch):
            outbound.put(Cancelled(processed_files=0))
            return None
        elif message is None:
            return None
        else:
            outbound.put(Error(detail=f"Unknown message type: {type(message).__name__}"))


def _listen_for_control(inbound: Any, outbound: Any, cancel_requested: threading.Event) -> None:
    while True:
        message = inbound.get()
        if message is None:
            return
        if isinstance(message, CancelBatch):
            cancel_requested.set()
            return
        if isinstance(message, Ping):
            outbound.put(Pong())


def _process_batch(start: StartBatch, extract, outbound: Any, cancel_requested: threading.Event) -> None:
    outbound.put(Started(batch_id=start.batch_id, total_files=len(start.files)))
    processed = 0
    for encoded in start.files:
        if cancel_requested.is_set():
            break
        outbound.put(FileProcessing(index=encoded.index, progress=0))
        try:
            content = decode_file(encoded)
        except FileEncodingError as exc:
            outbound.put(FileFailed(index=encoded.index, error=str(exc)))
            processed += 1
            continue
        outbound.put(FileProcessing(index=encoded.index, progress=10))
        outcome = run_extractor(
            extract,
            FileBlob(name=encoded.name, mime_type=encoded.mime_type, content=content),
        )
        if outcome["success"]:
            outbound.put(FileCompleted(index=encoded.index, result=outcome.get("data")))
        else:
            outbound.put(FileFailed(index=encoded.index, error=str(outcome.get("error"))))
        processed += 1

    if cancel_requested.is_set():
        outbound.put(Cancelled(processed_files=processed))
    else:
        outbound.put(Completed(batch_id=start.batch_id, processed_files=processed))
