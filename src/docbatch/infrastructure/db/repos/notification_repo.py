from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path

from docbatch.core.time import now_utc_iso
from docbatch.domain.models.notification import BatchSummary, Notification
from docbatch.infrastructure.db.sqlite import get_connection


class NotificationRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def insert(self, notification: Notification) -> Notification:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO batch_notifications (
                    batch_id, kind, summary_json, created_at, delivered, delivered_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    notification.batch_id,
                    notification.kind,
                    json.dumps(asdict(notification.summary), ensure_ascii=True),
                    notification.timestamp,
                    1 if notification.delivered else 0,
                    notification.delivered_at,
                ),
            )
            conn.commit()
            notification.id = int(cursor.lastrowid)
        return notification

    def mark_delivered(self, notification_id: int) -> str:
        now = now_utc_iso()
        with get_connection(self.db_path) as conn:
            conn.execute(
                "UPDATE batch_notifications SET delivered = 1, delivered_at = ? WHERE id = ?",
                (now, notification_id),
            )
            conn.commit()
        return now

    def list(self, *, pending_only: bool = False, limit: int = 200) -> list[Notification]:
        safe_limit = max(1, min(int(limit), 10000))
        query = "SELECT * FROM batch_notifications"
        if pending_only:
            query += " WHERE delivered = 0"
        query += " ORDER BY created_at ASC, id ASC LIMIT ?"
        with get_connection(self.db_path) as conn:
            rows = conn.execute(query, (safe_limit,)).fetchall()
        return [self._from_row(row) for row in rows]

    def delete_delivered_for_batch(self, batch_id: str) -> int:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM batch_notifications WHERE batch_id = ? AND delivered = 1",
                (batch_id,),
            )
            conn.commit()
        return int(cursor.rowcount or 0)

    @staticmethod
    def _from_row(row) -> Notification:
        try:
            summary_raw = json.loads(row["summary_json"] or "{}")
        except ValueError:
            summary_raw = {}
        summary = BatchSummary(
            total=int(summary_raw.get("total") or 0),
            successful=int(summary_raw.get("successful") or 0),
            failed=int(summary_raw.get("failed") or 0),
            skipped=int(summary_raw.get("skipped") or 0),
            duration_ms=int(summary_raw.get("duration_ms") or 0),
            processing_method=summary_raw.get("processing_method"),
            saved=int(summary_raw.get("saved") or 0),
            save_errors=list(summary_raw.get("save_errors") or []),
        )
        return Notification(
            id=int(row["id"]),
            batch_id=str(row["batch_id"]),
            kind=str(row["kind"] or "completed"),
            summary=summary,
            timestamp=str(row["created_at"]),
            delivered=bool(int(row["delivered"] or 0)),
            delivered_at=row["delivered_at"],
        )
