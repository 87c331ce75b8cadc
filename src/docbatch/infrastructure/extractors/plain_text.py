"""Built-in extractor for text-like uploads (plain text, markdown, CSV, JSON).

Anything that is not valid UTF-8 is reported as an unsupported binary file.
"""

from __future__ import annotations

import csv
import io
import json
from pathlib import Path
from typing import Any

from docbatch.domain.models.batch import FileBlob

_CSV_SUFFIXES = {".csv", ".tsv"}
_JSON_SUFFIXES = {".json"}


def extract(blob: FileBlob) -> dict[str, Any]:
    if not blob.content:
        return {"success": False, "error": f"{blob.name} is empty"}
    try:
        text = blob.content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return {"success": False, "error": f"Unsupported binary content in {blob.name} ({blob.mime_type})"}

    suffix = Path(blob.name).suffix.lower()
    if suffix in _JSON_SUFFIXES or blob.mime_type == "application/json":
        try:
            return {"success": True, "data": {"kind": "json", "content": json.loads(text)}}
        except ValueError as exc:
            return {"success": False, "error": f"Invalid JSON in {blob.name}: {exc}"}

    if suffix in _CSV_SUFFIXES or blob.mime_type in {"text/csv", "text/tab-separated-values"}:
        delimiter = "\t" if suffix == ".tsv" else ","
        rows = list(csv.reader(io.StringIO(text), delimiter=delimiter))
        header = rows[0] if rows else []
        records = [dict(zip(header, row)) for row in rows[1:]]
        return {"success": True, "data": {"kind": "table", "columns": header, "rows": records}}

    lines = text.splitlines()
    return {
        "success": True,
        "data": {
            "kind": "text",
            "title": next((line.strip() for line in lines if line.strip()), ""),
            "text": text,
            "line_count": len(lines),
            "char_count": len(text),
        },
    }
