from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any

from docbatch.core.time import now_utc_iso
from docbatch.domain.models.batch import (
    BATCH_TERMINAL_STATUSES,
    FILE_PROCESSING,
    FILE_QUEUED,
    Batch,
    BatchOptions,
    FileItem,
)
from docbatch.infrastructure.db.sqlite import get_connection

logger = logging.getLogger(__name__)


def batch_to_dict(batch: Batch) -> dict[str, Any]:
    return asdict(batch)


def batch_from_dict(raw: dict[str, Any]) -> Batch:
    options_raw = raw.get("options") if isinstance(raw.get("options"), dict) else {}
    options = BatchOptions(
        **{key: value for key, value in options_raw.items() if key in BatchOptions.__dataclass_fields__}
    )
    files: list[FileItem] = []
    for position, file_raw in enumerate(raw.get("files") or []):
        if not isinstance(file_raw, dict):
            continue
        known = {key: value for key, value in file_raw.items() if key in FileItem.__dataclass_fields__}
        known.setdefault("index", position)
        files.append(FileItem(**known))
    fields = {
        key: value
        for key, value in raw.items()
        if key in Batch.__dataclass_fields__ and key not in {"options", "files"}
    }
    return Batch(options=options, files=files, **fields)


class BatchRepo:
    """Durable batch snapshots, one row per batch id, full overwrite on each write."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def persist(self, batch: Batch) -> None:
        now = now_utc_iso()
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO batches (id, document_type, status, snapshot_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    document_type = excluded.document_type,
                    status = excluded.status,
                    snapshot_json = excluded.snapshot_json,
                    updated_at = excluded.updated_at
                """,
                (
                    batch.id,
                    batch.document_type,
                    batch.status,
                    json.dumps(batch_to_dict(batch), ensure_ascii=True, default=str),
                    batch.created_at,
                    now,
                ),
            )
            conn.commit()

    def get(self, batch_id: str) -> Batch | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM batches WHERE id = ?", (batch_id,)).fetchone()
        if row is None:
            return None
        return self._decode_row(row)

    def list(self, *, limit: int = 200) -> list[Batch]:
        safe_limit = max(1, min(int(limit), 50000))
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM batches ORDER BY created_at DESC, id DESC LIMIT ?",
                (safe_limit,),
            ).fetchall()
        batches = [self._decode_row(row) for row in rows]
        return [batch for batch in batches if batch is not None]

    def restore_all(self) -> list[Batch]:
        """Load every snapshot, resetting in-flight files of unfinished batches to ``queued``."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM batches ORDER BY created_at ASC, id ASC").fetchall()

        restored: list[Batch] = []
        for row in rows:
            batch = self._decode_row(row)
            if batch is None:
                continue
            if batch.status not in BATCH_TERMINAL_STATUSES:
                recovered = 0
                for item in batch.files:
                    if item.status == FILE_PROCESSING:
                        item.status = FILE_QUEUED
                        item.progress = 0
                        item.started_at = None
                        recovered += 1
                if recovered:
                    logger.info("Recovered %d in-flight file(s) for batch %s", recovered, batch.id)
                    self.persist(batch)
            restored.append(batch)
        return restored

    def remove(self, batch_id: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute("DELETE FROM batches WHERE id = ?", (batch_id,))
            conn.commit()

    @staticmethod
    def _decode_row(row) -> Batch | None:
        try:
            raw = json.loads(row["snapshot_json"])
            if not isinstance(raw, dict):
                raise ValueError("snapshot is not an object")
            return batch_from_dict(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping unreadable batch snapshot %s: %s", row["id"], exc)
            return None
