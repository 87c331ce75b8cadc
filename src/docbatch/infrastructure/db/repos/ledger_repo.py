from __future__ import annotations

from pathlib import Path

from docbatch.core.time import now_utc_iso
from docbatch.infrastructure.db.sqlite import get_connection


class ProcessedBatchRepo:
    """Idempotency ledger of batch ids whose completion side effects already ran."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def contains(self, batch_id: str) -> bool:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM processed_batches WHERE batch_id = ?",
                (batch_id,),
            ).fetchone()
        return row is not None

    def add(self, batch_id: str) -> bool:
        """Record ``batch_id``; returns False when it was already present."""
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO processed_batches (batch_id, processed_at) VALUES (?, ?)",
                (batch_id, now_utc_iso()),
            )
            conn.commit()
            return int(cursor.rowcount or 0) > 0

    def discard(self, batch_id: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute("DELETE FROM processed_batches WHERE batch_id = ?", (batch_id,))
            conn.commit()

    def list_ids(self) -> list[str]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute("SELECT batch_id FROM processed_batches ORDER BY processed_at ASC").fetchall()
        return [str(row["batch_id"]) for row in rows]


class ProcessedFileRepo:
    """Keys (``name_size``) of files that were extracted successfully in any batch."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def contains(self, file_key: str) -> bool:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT 1 FROM processed_files WHERE file_key = ?", (file_key,)).fetchone()
        return row is not None

    def add(self, file_key: str, *, batch_id: str | None = None) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO processed_files (file_key, batch_id, processed_at) VALUES (?, ?, ?)
                ON CONFLICT(file_key) DO NOTHING
                """,
                (file_key, batch_id, now_utc_iso()),
            )
            conn.commit()

    def count(self) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM processed_files").fetchone()
        return int(row["n"] or 0)

    def clear(self) -> int:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM processed_files")
            conn.commit()
            return int(cursor.rowcount or 0)
