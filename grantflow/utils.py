"""Shared utility functions used across grantflow modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def utc_now() -> datetime:
    # Naive UTC: SQLite hands datetimes back without tzinfo.
    return datetime.now(tz=UTC).replace(tzinfo=None)


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def append_note(existing: str | None, note: str, *, at: datetime | None = None) -> str:
    """Append a timestamped line to an append-only notes column."""
    stamp = (at or utc_now()).strftime("%Y-%m-%d %H:%M:%S")
    line = f"{stamp} {note}"
    return f"{existing}\n{line}" if existing else line
