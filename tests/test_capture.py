from __future__ import annotations

import datetime as dt
import json
import sqlite3
from pathlib import Path

import pytest

from tabmem.capture import TabActivityObserver
from tabmem.events import CLOSED_TAB_TITLE
from tabmem.store import LocalEventStore
from tabmem.sync.engine import SyncEngine

NOW = dt.datetime(2026, 3, 2, 9, 0, tzinfo=dt.UTC)


class _OfflineClient:
    def has_credentials(self) -> bool:
        return False

    def send_batch(self, events) -> int:  # pragma: no cover
        raise AssertionError("capture must not hit the network")


@pytest.fixture
def observer(tmp_path: Path):
    store = LocalEventStore(tmp_path / "agent.sqlite")
    engine = SyncEngine(store, _OfflineClient(), threshold=0)
    try:
        yield TabActivityObserver(store, engine)
    finally:
        store.close()


def test_close_reuses_last_known_title_and_url(observer: TabActivityObserver) -> None:
    observer.handle_tab_event(
        {"window_id": 1, "tab_id": 5, "title": "Python docs", "url": "https://docs.python.org/3/"},
        "open",
        now=NOW,
    )

    closed = observer.handle_tab_close(5, 1, now=NOW)

    assert closed is not None
    assert closed.type == "close"
    assert closed.title == "Python docs"
    assert closed.url == "https://docs.python.org/3/"
    assert observer.store.get_tab_snapshot(5) is None
    assert [event.type for event in observer.store.pending()] == ["open", "close"]


def test_close_without_snapshot_uses_placeholder(observer: TabActivityObserver) -> None:
    closed = observer.handle_tab_close(42, 3, now=NOW)

    assert closed is not None
    assert closed.title == CLOSED_TAB_TITLE
    assert closed.url == ""


def test_ignored_urls_are_not_recorded(observer: TabActivityObserver) -> None:
    result = observer.handle_tab_event(
        {"window_id": 1, "tab_id": 1, "title": "New Tab", "url": "chrome://newtab/"}, "open"
    )

    assert result is None
    assert observer.store.pending_count() == 0


def test_window_focus_records_activate(observer: TabActivityObserver) -> None:
    event = observer.handle_window_focus(
        {"windowId": 2, "id": 8, "title": "Board", "url": "https://trello.com/b/1"}, now=NOW
    )

    assert event is not None
    assert (event.type, event.window_id, event.tab_id) == ("activate", 2, 8)
    assert observer.handle_window_focus(None) is None


def test_store_failure_falls_back_to_memory_queue(
    observer: TabActivityObserver, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken_append(event):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(observer.store, "append", broken_append)

    event = observer.handle_tab_event(
        {"window_id": 1, "tab_id": 1, "title": "A", "url": "https://a.dev"}, "open", now=NOW
    )

    assert event is not None
    assert event.local_id
    assert observer.engine.queued() == [event]


def test_close_during_store_failure_is_queued(
    observer: TabActivityObserver, monkeypatch: pytest.MonkeyPatch
) -> None:
    opened = observer.handle_tab_event(
        {"window_id": 1, "tab_id": 7, "title": "B", "url": "https://b.dev/docs"}, "open", now=NOW
    )
    assert opened is not None

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(observer.store, "append", broken)
    monkeypatch.setattr(observer.store, "clear_tab_snapshot", broken)

    closed = observer.handle_tab_close(7, 1, now=NOW)

    assert closed is not None
    assert closed.url == opened.url
    assert observer.engine.queued() == [closed]


def test_ingest_lines_counts_accepted_ignored_and_errors(observer: TabActivityObserver) -> None:
    lines = [
        json.dumps(
            {"type": "open", "window_id": 1, "tab_id": 1, "title": "A", "url": "https://a.dev"}
        ),
        "",
        "{not json",
        json.dumps({"type": "open", "window_id": 1, "tab_id": 2, "url": "about:blank"}),
        json.dumps(
            {
                "type": "focus",
                "window_id": 4,
                "tab": {"id": 1, "title": "A", "url": "https://a.dev"},
            }
        ),
        json.dumps({"type": "close", "window_id": 1, "tab_id": 1}),
        "[1, 2]",
    ]

    result = observer.ingest_lines(lines)

    assert result.accepted == 3
    assert result.ignored == 1
    assert result.errors == ["line 3: invalid json", "line 7: expected an object"]
    assert [event.type for event in observer.store.pending()] == ["open", "activate", "close"]
    assert observer.store.pending()[1].window_id == 4
