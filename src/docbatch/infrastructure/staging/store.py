from __future__ import annotations

from pathlib import Path, PurePosixPath

from docbatch.core.errors import FileEncodingError
from docbatch.core.files import ensure_directory, remove_tree, write_bytes_atomic


class StagingStore:
    """Holds the binary payload of submitted files until their batch is purged."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir

    def staged_relpath(self, batch_id: str, index: int, filename: str) -> str:
        suffix = Path(filename or "").suffix[:32]
        return str(PurePosixPath(batch_id) / f"{index:05d}{suffix}")

    def stage(self, batch_id: str, index: int, filename: str, content: bytes) -> str:
        relpath = self.staged_relpath(batch_id, index, filename)
        write_bytes_atomic(self.base_dir / relpath, content)
        return relpath

    def abspath(self, relpath: str) -> Path:
        path = (self.base_dir / relpath).resolve()
        base = self.base_dir.resolve()
        if base not in path.parents:
            raise FileEncodingError(f"Staged path escapes staging directory: {relpath}")
        return path

    def read(self, relpath: str | None, *, max_bytes: int) -> bytes:
        if not relpath:
            raise FileEncodingError("No staged content recorded for file")
        path = self.abspath(relpath)
        try:
            size = path.stat().st_size
        except FileNotFoundError as exc:
            raise FileEncodingError(f"Staged content no longer available: {relpath}") from exc
        except OSError as exc:
            raise FileEncodingError(f"Cannot read staged content {relpath}: {exc}") from exc
        if size > max_bytes:
            raise FileEncodingError(f"File too large for processing: {size} bytes (limit {max_bytes})")
        try:
            return path.read_bytes()
        except OSError as exc:
            raise FileEncodingError(f"Cannot read staged content {relpath}: {exc}") from exc

    def remove_batch(self, batch_id: str) -> None:
        remove_tree(self.base_dir / batch_id)

    def ensure_layout(self) -> None:
        ensure_directory(self.base_dir)
