from __future__ import annotations

import importlib
from typing import Any, Callable

from docbatch.core.errors import ExtractionError


def resolve_callable(ref: str) -> Callable[..., Any]:
    """Resolve ``package.module:function`` to the callable it names."""
    module_name, sep, attr = str(ref or "").strip().partition(":")
    if not sep or not module_name or not attr:
        raise ExtractionError(f"Extractor reference must look like 'module:function', got {ref!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ExtractionError(f"Cannot import extractor module {module_name!r}: {exc}") from exc
    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise ExtractionError(f"Extractor {ref!r} not found")
    if not callable(target):
        raise ExtractionError(f"Extractor {ref!r} is not callable")
    return target


def run_extractor(extract: Callable[..., Any], blob) -> dict[str, Any]:
    """Call ``extract`` and normalise its outcome to ``{success, data?, error?}``."""
    try:
        outcome = extract(blob)
    except Exception as exc:
        return {"success": False, "error": f"{exc.__class__.__name__}: {exc}"}
    if not isinstance(outcome, dict):
        return {"success": False, "error": "Extractor returned an invalid result payload"}
    if outcome.get("success") is False:
        return {"success": False, "error": str(outcome.get("error") or "Extraction failed")}
    return {"success": True, "data": outcome.get("data")}
