"""Append-only operation history."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from .errors import InvalidInputError
from .models import HistoryEntry, Task, parse_timestamp
from .ports import HistoryLog


def record_event(history: HistoryLog, operation: str, task: Optional[Task] = None, **details: Any) -> HistoryEntry:
    """Append a history entry for ``operation`` on ``task``."""
    entry = HistoryEntry(
        operation=operation,
        task_id=task.id if task else None,
        task_name=task.name if task else None,
        details={k: v for k, v in details.items() if v is not None},
    )
    history.append_history(entry)
    return entry


def coerce_since(since: Optional[datetime | str]) -> Optional[datetime]:
    """Turn a ``since`` argument into an aware datetime or raise InvalidInputError."""
    if since is None or since == "":
        return None
    parsed = parse_timestamp(since)
    if parsed is None:
        raise InvalidInputError(
            f"Invalid date format: {since}. Use ISO 8601, e.g. 2023-12-01T10:00:00Z"
        )
    return parsed


def query_history(
    history: HistoryLog,
    limit: Optional[int] = 50,
    since: Optional[datetime | str] = None,
    task_id: Optional[str] = None,
    operation: Optional[str] = None,
) -> List[HistoryEntry]:
    """Return history entries, newest first, filtered by the given criteria."""
    if limit is not None and limit <= 0:
        raise InvalidInputError("limit must be a positive integer")
    since_dt = coerce_since(since)
    needle = operation.lower() if operation else None

    matches: List[HistoryEntry] = []
    for entry in reversed(history.read_history()):
        if task_id and entry.task_id != task_id:
            continue
        if needle and needle not in entry.operation.lower():
            continue
        if since_dt is not None:
            stamp = parse_timestamp(entry.timestamp)
            if stamp is None or stamp < since_dt:
                continue
        matches.append(entry)
        if limit is not None and len(matches) >= limit:
            break
    return matches
