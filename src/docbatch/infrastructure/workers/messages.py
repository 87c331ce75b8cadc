"""Message protocol between the orchestrator and a background extraction worker.

Commands flow orchestrator -> worker, events flow worker -> orchestrator. Both
travel as pickled dataclasses over ``multiprocessing`` queues; file content is
carried as base64 text so no buffer is shared between the two processes.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any

from docbatch.core.errors import FileEncodingError


@dataclass(slots=True)
class EncodedFile:
    index: int
    name: str
    mime_type: str
    size_bytes: int
    data: str


# Commands


@dataclass(slots=True)
class StartBatch:
    batch_id: str
    files: list[EncodedFile]
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CancelBatch:
    pass


@dataclass(slots=True)
class Ping:
    pass


# Events


@dataclass(slots=True)
class Ready:
    pass


@dataclass(slots=True)
class Pong:
    pass


@dataclass(slots=True)
class Started:
    batch_id: str
    total_files: int


@dataclass(slots=True)
class FileProcessing:
    index: int
    progress: int


@dataclass(slots=True)
class FileCompleted:
    index: int
    result: Any


@dataclass(slots=True)
class FileFailed:
    index: int
    error: str


@dataclass(slots=True)
class Completed:
    batch_id: str
    processed_files: int


@dataclass(slots=True)
class Cancelled:
    processed_files: int


@dataclass(slots=True)
class Error:
    detail: str


WORKER_EVENTS = (Ready, Pong, Started, FileProcessing, FileCompleted, FileFailed, Completed, Cancelled, Error)


def encode_file(*, index: int, name: str, mime_type: str, content: bytes) -> EncodedFile:
    try:
        data = base64.b64encode(content).decode("ascii")
    except (TypeError, ValueError) as exc:
        raise FileEncodingError(f"Cannot encode {name}: {exc}") from exc
    return EncodedFile(index=index, name=name, mime_type=mime_type, size_bytes=len(content), data=data)


def decode_file(encoded: EncodedFile) -> bytes:
    try:
        return base64.b64decode(encoded.data.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, AttributeError) as exc:
        raise FileEncodingError(f"File decoding failed for {encoded.name}: {exc}") from exc
