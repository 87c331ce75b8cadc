from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class BatchSummary:
    total: int
    successful: int
    failed: int
    skipped: int
    duration_ms: int
    processing_method: str | None
    saved: int = 0
    save_errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Notification:
    batch_id: str
    kind: str
    summary: BatchSummary
    timestamp: str
    delivered: bool = False
    delivered_at: str | None = None
    id: int | None = None

    @property
    def message(self) -> str:
        s = self.summary
        if self.kind == "cancelled":
            return (
                f"Batch {self.batch_id} cancelled after {s.successful + s.failed}/{s.total} files."
            )
        text = (
            f"Batch {self.batch_id} complete: {s.successful}/{s.total} files processed "
            f"successfully via {s.processing_method or 'unknown'}."
        )
        if s.failed:
            text += f" {s.failed} failed."
        if s.skipped:
            text += f" {s.skipped} skipped (already processed)."
        if s.save_errors:
            text += f" {len(s.save_errors)} auto-save error(s)."
        return text

    @property
    def level(self) -> str:
        if self.kind == "cancelled" or self.summary.failed or self.summary.save_errors:
            return "warning"
        return "success"
