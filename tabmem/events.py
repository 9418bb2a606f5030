from __future__ import annotations

import datetime as dt
import secrets
import string
import time
from dataclasses import dataclass
from typing import Any, Literal, cast

from .errors import EventValidationError
from .redaction import redact_url, should_ignore_url
from .utils import to_iso

EventType = Literal["open", "update", "activate", "close"]
EVENT_TYPES: frozenset[str] = frozenset({"open", "update", "activate", "close"})

MAX_TITLE_CHARS = 1000
MAX_URL_CHARS = 2048
DEFAULT_TITLE = "Untitled"
CLOSED_TAB_TITLE = "Closed Tab"

_LOCAL_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_local_id() -> str:
    suffix = "".join(secrets.choice(_LOCAL_ID_ALPHABET) for _ in range(9))
    return f"local_{int(time.time() * 1000)}_{suffix}"


def parse_timestamp(value: Any) -> dt.datetime:
    """Coerce a datetime, epoch milliseconds or ISO-8601 string to an aware UTC datetime."""

    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, bool):
        raise EventValidationError("invalid timestamp")
    elif isinstance(value, (int, float)):
        try:
            parsed = dt.datetime.fromtimestamp(float(value) / 1000.0, tz=dt.UTC)
        except (OverflowError, OSError, ValueError) as exc:
            raise EventValidationError("invalid timestamp") from exc
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError as exc:
            raise EventValidationError(f"invalid timestamp: {value!r}") from exc
    else:
        raise EventValidationError("invalid timestamp")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=dt.UTC)
    return parsed.astimezone(dt.UTC)


@dataclass(frozen=True)
class Event:
    window_id: int
    tab_id: int
    type: EventType
    title: str
    url: str
    ts: dt.datetime
    local_id: str = ""
    user_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Wire shape for the ingestion endpoint (no local id, no user id)."""

        return {
            "window_id": self.window_id,
            "tab_id": self.tab_id,
            "type": self.type,
            "title": self.title,
            "url": self.url,
            "ts": to_iso(self.ts),
        }


def _coerce_int(value: Any, *, field: str) -> int:
    if isinstance(value, bool) or value is None:
        raise EventValidationError(f"{field} is required")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise EventValidationError(f"{field} must be an integer")


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def validate(raw: dict[str, Any], *, now: dt.datetime | None = None) -> Event:
    """Turn one raw tab-activity record into an Event.

    Accepts both snake_case keys and the browser's camelCase ones
    (``windowId``, ``tabId``). Ignored internal URLs, unknown types and
    overlong URLs raise EventValidationError; nothing is stored or sent.
    """

    if not isinstance(raw, dict):
        raise EventValidationError("tab activity must be an object")

    event_type = str(raw.get("type") or "").strip().lower()
    if event_type not in EVENT_TYPES:
        raise EventValidationError(f"unknown event type: {raw.get('type')!r}")

    window_id = _coerce_int(_first(raw, "window_id", "windowId"), field="window_id")
    tab_id = _coerce_int(_first(raw, "tab_id", "tabId", "id"), field="tab_id")

    url = str(raw.get("url") or "").strip()
    if not url and event_type != "close":
        raise EventValidationError("url is required")
    if url and should_ignore_url(url):
        raise EventValidationError("ignored url")
    url = redact_url(url)
    if len(url) > MAX_URL_CHARS:
        raise EventValidationError("url too long")

    title = str(raw.get("title") or "").strip()
    if not title:
        title = CLOSED_TAB_TITLE if event_type == "close" else DEFAULT_TITLE
    title = title[:MAX_TITLE_CHARS]

    ts_value = _first(raw, "ts", "timestamp")
    if ts_value is not None:
        ts = parse_timestamp(ts_value)
    else:
        ts = parse_timestamp(now) if now else dt.datetime.now(dt.UTC)

    user_id = raw.get("user_id")
    return Event(
        window_id=window_id,
        tab_id=tab_id,
        type=cast(EventType, event_type),
        title=title,
        url=url,
        ts=ts,
        local_id=str(raw.get("local_id") or raw.get("localId") or ""),
        user_id=str(user_id) if user_id else None,
    )
