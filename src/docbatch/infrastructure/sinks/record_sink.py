from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from docbatch.infrastructure.db.repos.record_repo import SavedRecordRepo

logger = logging.getLogger(__name__)


class RecordSink:
    """Default auto-save sink: stores extracted payloads in the local database."""

    def __init__(self, db_path: Path) -> None:
        self.repo = SavedRecordRepo(db_path)

    def __call__(self, extracted_data: Any, document_type: str) -> dict[str, Any]:
        if extracted_data is None:
            return {"success": False, "error": "No extracted data to save"}
        record_id = self.repo.insert(document_type=document_type, data=extracted_data)
        logger.debug("Saved %s record %s", document_type, record_id)
        return {"success": True, "id": record_id}
