from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, cast

from ..errors import BatchValidationError, EventValidationError
from ..events import EVENT_TYPES, MAX_TITLE_CHARS, MAX_URL_CHARS, Event, EventType, parse_timestamp
from .repository import EventRepository

MIN_BATCH_EVENTS = 1
MAX_BATCH_EVENTS = 100

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    events: list[dict[str, Any]] = field(default_factory=list)
    fresh: list[Event] = field(default_factory=list)

    @property
    def synced_count(self) -> int:
        return len(self.events)


def _require_int(item: dict[str, Any], key: str, index: int) -> int:
    value = item.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise BatchValidationError(f"events[{index}].{key} must be an integer")
    return value


def _require_str(item: dict[str, Any], key: str, index: int, *, max_chars: int) -> str:
    value = item.get(key)
    if not isinstance(value, str):
        raise BatchValidationError(f"events[{index}].{key} is required")
    if len(value) > max_chars:
        raise BatchValidationError(f"events[{index}].{key} exceeds {max_chars} characters")
    return value


def validate_event_payload(item: Any, index: int) -> Event:
    if not isinstance(item, dict):
        raise BatchValidationError(f"events[{index}] must be an object")
    event_type = item.get("type")
    if event_type not in EVENT_TYPES:
        raise BatchValidationError(f"events[{index}].type must be one of {sorted(EVENT_TYPES)}")
    window_id = _require_int(item, "window_id", index)
    tab_id = _require_int(item, "tab_id", index)
    title = _require_str(item, "title", index, max_chars=MAX_TITLE_CHARS)
    if not title:
        raise BatchValidationError(f"events[{index}].title is required")
    url = _require_str(item, "url", index, max_chars=MAX_URL_CHARS)
    # A close whose tab snapshot was lost carries no url.
    if not url and event_type != "close":
        raise BatchValidationError(f"events[{index}].url is required")
    ts_value = item.get("ts")
    if not isinstance(ts_value, str):
        raise BatchValidationError(f"events[{index}].ts must be an ISO-8601 string")
    try:
        ts = parse_timestamp(ts_value)
    except EventValidationError as exc:
        raise BatchValidationError(f"events[{index}].ts must be an ISO-8601 string") from exc
    return Event(
        window_id=window_id,
        tab_id=tab_id,
        type=cast(EventType, event_type),
        title=title,
        url=url,
        ts=ts,
    )


def validate_batch(body: Any) -> list[Event]:
    """Validate a whole ``{"events": [...]}`` body; one bad event rejects all."""

    if not isinstance(body, dict):
        raise BatchValidationError("body must be an object")
    items = body.get("events")
    if not isinstance(items, list):
        raise BatchValidationError("events must be an array")
    if len(items) < MIN_BATCH_EVENTS:
        raise BatchValidationError("events must contain at least 1 item")
    if len(items) > MAX_BATCH_EVENTS:
        raise BatchValidationError(f"events must contain at most {MAX_BATCH_EVENTS} items")
    return [validate_event_payload(item, index) for index, item in enumerate(items)]


def ingest_batch(conn: sqlite3.Connection, user_id: str, events: list[Event]) -> IngestResult:
    """Persist a validated batch in one transaction.

    Events already recorded for the user (same tab, type, ts and url) are
    stored again but marked as aggregated and left out of ``fresh`` so a
    re-sent batch does not feed session aggregation twice.
    """

    repo = EventRepository(conn)
    result = IngestResult()
    seen: set[tuple[int, str, str, str]] = set()
    with conn:
        conn.execute("BEGIN IMMEDIATE")
        for event in events:
            key = (event.tab_id, event.type, event.ts.isoformat(), event.url)
            duplicate = key in seen or repo.exists(user_id, event)
            seen.add(key)
            result.events.append(repo.insert(user_id, event, aggregated=duplicate))
            if not duplicate:
                result.fresh.append(event)
    if len(result.fresh) < len(events):
        logger.debug(
            "batch for %s carried %s previously recorded events",
            user_id,
            len(events) - len(result.fresh),
        )
    return result
