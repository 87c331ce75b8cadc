from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from docbatch.core.ids import new_uuid
from docbatch.core.time import now_utc_iso
from docbatch.infrastructure.db.sqlite import get_connection


class SavedRecordRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def insert(self, *, document_type: str, data: Any) -> str:
        record_id = new_uuid()
        with get_connection(self.db_path) as conn:
            conn.execute(
                "INSERT INTO saved_records (id, document_type, data_json, saved_at) VALUES (?, ?, ?, ?)",
                (record_id, document_type, json.dumps(data, ensure_ascii=True, default=str), now_utc_iso()),
            )
            conn.commit()
        return record_id

    def list(self, *, document_type: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        safe_limit = max(1, min(int(limit), 10000))
        with get_connection(self.db_path) as conn:
            if document_type:
                rows = conn.execute(
                    "SELECT * FROM saved_records WHERE document_type = ? ORDER BY saved_at ASC LIMIT ?",
                    (document_type, safe_limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM saved_records ORDER BY saved_at ASC LIMIT ?",
                    (safe_limit,),
                ).fetchall()
        return [
            {
                "id": row["id"],
                "document_type": row["document_type"],
                "data": json.loads(row["data_json"]),
                "saved_at": row["saved_at"],
            }
            for row in rows
        ]
