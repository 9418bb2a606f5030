from __future__ import annotations

import datetime as dt
import json
import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .errors import EventValidationError
from .events import CLOSED_TAB_TITLE, Event, EventType, validate
from .store import LocalEventStore
from .sync.engine import SyncEngine

logger = logging.getLogger(__name__)

WINDOW_FOCUS = "focus"


@dataclass
class CaptureResult:
    accepted: int = 0
    ignored: int = 0
    errors: list[str] = field(default_factory=list)


class TabActivityObserver:
    """Turn raw tab activity into Events and hand them to the store.

    Capture never waits on the network: persisting is a local SQLite write
    and the sync trigger runs on the engine's background thread. If the
    store itself fails the event is kept in the engine's in-memory queue.
    """

    def __init__(self, store: LocalEventStore, engine: SyncEngine) -> None:
        self.store = store
        self.engine = engine

    def _record(self, event: Event) -> Event:
        try:
            stored = self.store.append(event)
        except sqlite3.Error as exc:
            logger.warning("local store write failed; queueing event in memory", exc_info=exc)
            return self.engine.queue_event(event)
        self.engine.event_captured()
        return stored

    def handle_tab_event(
        self,
        raw: dict[str, Any],
        event_type: EventType | None = None,
        *,
        now: dt.datetime | None = None,
    ) -> Event | None:
        """Validate and record an open/update/activate event.

        Returns None when the activity is filtered (ignored URL, missing
        fields); filtered activity is logged at debug level only.
        """

        data = dict(raw)
        if event_type is not None:
            data["type"] = event_type
        if data.get("type") == "close":
            return self.handle_tab_close(
                data.get("tab_id", data.get("tabId")),
                data.get("window_id", data.get("windowId")),
                now=now,
            )
        try:
            event = validate(data, now=now)
        except EventValidationError as exc:
            logger.debug("tab activity ignored: %s", exc)
            return None
        return self._record(event)

    def handle_tab_close(
        self,
        tab_id: Any,
        window_id: Any,
        *,
        now: dt.datetime | None = None,
    ) -> Event | None:
        """Record a close using the last known title and url of the tab."""

        raw: dict[str, Any] = {
            "type": "close",
            "tab_id": tab_id,
            "window_id": window_id,
            "title": CLOSED_TAB_TITLE,
            "url": "",
        }
        try:
            snapshot = self.store.get_tab_snapshot(int(tab_id))
        except (TypeError, ValueError):
            snapshot = None
        if snapshot is not None:
            raw["title"] = snapshot.title
            raw["url"] = snapshot.url
        try:
            event = validate(raw, now=now)
        except EventValidationError as exc:
            logger.debug("tab close ignored: %s", exc)
            return None
        stored = self._record(event)
        try:
            self.store.clear_tab_snapshot(event.tab_id)
        except sqlite3.Error as exc:
            logger.warning("could not clear snapshot of closed tab %s", event.tab_id, exc_info=exc)
        return stored

    def handle_window_focus(
        self,
        active_tab: dict[str, Any] | None,
        *,
        now: dt.datetime | None = None,
    ) -> Event | None:
        """A window gaining focus counts as activating its active tab."""

        if not active_tab:
            return None
        return self.handle_tab_event(active_tab, "activate", now=now)

    def ingest_lines(self, lines: Iterable[str]) -> CaptureResult:
        """Feed JSON-lines tab activity (one object per line) through the observer.

        A line with ``"type": "focus"`` is a window focus; its ``tab``
        object (or the line itself) describes the active tab.
        """

        result = CaptureResult()
        for lineno, line in enumerate(lines, start=1):
            text = line.strip()
            if not text:
                continue
            try:
                raw = json.loads(text)
            except json.JSONDecodeError:
                result.errors.append(f"line {lineno}: invalid json")
                continue
            if not isinstance(raw, dict):
                result.errors.append(f"line {lineno}: expected an object")
                continue
            if raw.get("type") == WINDOW_FOCUS:
                tab = dict(raw["tab"]) if isinstance(raw.get("tab"), dict) else dict(raw)
                if "window_id" not in tab and "windowId" not in tab:
                    tab["window_id"] = raw.get("window_id", raw.get("windowId"))
                event = self.handle_window_focus(tab)
            else:
                event = self.handle_tab_event(raw)
            if event is None:
                result.ignored += 1
            else:
                result.accepted += 1
        return result
