from __future__ import annotations

from datetime import datetime, timezone


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_utc_iso() -> str:
    """Return an ISO timestamp in UTC with millisecond precision."""
    return now_utc().isoformat(timespec="milliseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def duration_ms(start: str | None, end: str | None) -> int:
    started = parse_iso(start)
    finished = parse_iso(end)
    if started is None or finished is None:
        return 0
    return max(0, int((finished - started).total_seconds() * 1000))
