from __future__ import annotations

import datetime as dt
from collections.abc import Callable
from pathlib import Path

import pytest

from tabmem.errors import AuthRequiredError, BatchRejectedError, TransientSyncError
from tabmem.events import Event
from tabmem.store import LocalEventStore
from tabmem.sync.engine import (
    SYNC_AUTH_REQUIRED,
    SYNC_EMPTY,
    SYNC_FAILED,
    SYNC_IN_FLIGHT,
    SYNC_NO_AUTH,
    SYNC_OK,
    SYNC_PARTIAL,
    SyncEngine,
    SyncReport,
)

T0 = dt.datetime(2026, 3, 2, 9, 0, tzinfo=dt.UTC)


class FakeClient:
    def __init__(self, *, fail_on: dict[int, Exception] | None = None) -> None:
        self.batches: list[list[Event]] = []
        self.fail_on = fail_on or {}
        self.authenticated = True
        self.on_send: Callable[[], None] | None = None

    def has_credentials(self) -> bool:
        return self.authenticated

    def send_batch(self, events: list[Event]) -> int:
        attempt = len(self.batches) + 1
        self.batches.append(list(events))
        if self.on_send is not None:
            self.on_send()
        if attempt in self.fail_on:
            raise self.fail_on[attempt]
        return len(events)


def _event(i: int) -> Event:
    return Event(
        window_id=1,
        tab_id=i,
        type="open",
        title=f"Tab {i}",
        url=f"https://example.com/{i}",
        ts=T0 + dt.timedelta(seconds=i),
    )


@pytest.fixture
def store(tmp_path: Path):
    store = LocalEventStore(tmp_path / "agent.sqlite")
    try:
        yield store
    finally:
        store.close()


def _fill(store: LocalEventStore, count: int) -> list[Event]:
    return [store.append(_event(i)) for i in range(count)]


def test_sync_sends_ordered_batches_and_clears_store(store: LocalEventStore) -> None:
    stored = _fill(store, 120)
    client = FakeClient()
    engine = SyncEngine(store, client, batch_size=50, threshold=0)

    report = engine.sync()

    assert report.status == SYNC_OK
    assert [len(batch) for batch in client.batches] == [50, 50, 20]
    sent = [event.local_id for batch in client.batches for event in batch]
    assert sent == [event.local_id for event in stored]
    assert report.synced == 120
    assert store.pending_count() == 0


def test_failed_batch_stops_the_pass_and_keeps_later_events(store: LocalEventStore) -> None:
    stored = _fill(store, 120)
    client = FakeClient(fail_on={2: TransientSyncError("connection reset")})
    engine = SyncEngine(store, client, batch_size=50, threshold=0)

    report = engine.sync()

    assert report.status == SYNC_PARTIAL
    assert len(client.batches) == 2
    assert report.synced == 50
    remaining = [event.local_id for event in store.pending()]
    assert remaining == [event.local_id for event in stored[50:]]
    assert report.pending_remaining == 70
    assert "connection reset" in (report.error or "")


def test_first_batch_failure_reports_failed(store: LocalEventStore) -> None:
    _fill(store, 3)
    client = FakeClient(fail_on={1: TransientSyncError("down")})

    report = SyncEngine(store, client, threshold=0).sync()

    assert report.status == SYNC_FAILED
    assert store.pending_count() == 3


def test_rejected_batch_is_dropped(store: LocalEventStore) -> None:
    _fill(store, 3)
    client = FakeClient(fail_on={1: BatchRejectedError("events[0].title is required", status=400)})

    report = SyncEngine(store, client, threshold=0).sync()

    assert report.dropped == 3
    assert report.synced == 0
    assert store.pending_count() == 0


def test_auth_failure_calls_back_and_keeps_events(store: LocalEventStore) -> None:
    _fill(store, 2)
    client = FakeClient(fail_on={1: AuthRequiredError("expired", status=401)})
    seen: list[SyncReport] = []
    engine = SyncEngine(store, client, threshold=0, on_auth_required=seen.append)

    report = engine.sync()

    assert report.status == SYNC_AUTH_REQUIRED
    assert report.auth_required is True
    assert seen == [report]
    assert store.pending_count() == 2


def test_no_credentials_skips_network(store: LocalEventStore) -> None:
    _fill(store, 2)
    client = FakeClient()
    client.authenticated = False

    report = SyncEngine(store, client, threshold=0).sync()

    assert report.status == SYNC_NO_AUTH
    assert report.pending_remaining == 2
    assert client.batches == []


def test_empty_store_reports_empty(store: LocalEventStore) -> None:
    report = SyncEngine(store, FakeClient(), threshold=0).sync()

    assert report.status == SYNC_EMPTY
    assert report.ok


def test_concurrent_sync_returns_in_flight(store: LocalEventStore) -> None:
    _fill(store, 1)
    client = FakeClient()
    engine = SyncEngine(store, client, threshold=0)
    nested: list[SyncReport] = []
    client.on_send = lambda: nested.append(engine.sync())

    report = engine.sync()

    assert report.status == SYNC_OK
    assert [item.status for item in nested] == [SYNC_IN_FLIGHT]
    assert len(client.batches) == 1


def test_threshold_triggers_one_sync(store: LocalEventStore) -> None:
    client = FakeClient()
    client.authenticated = False
    spawned: list[Callable[[], object]] = []
    engine = SyncEngine(store, client, threshold=3, spawn=spawned.append)

    fired = []
    for i in range(5):
        store.append(_event(i))
        fired.append(engine.event_captured())

    assert fired == [False, False, True, False, False]
    assert len(spawned) == 1


def test_threshold_sync_runs_through_spawn(store: LocalEventStore) -> None:
    client = FakeClient()
    engine = SyncEngine(store, client, threshold=2, spawn=lambda target: target())

    for i in range(2):
        store.append(_event(i))
        engine.event_captured()

    assert len(client.batches) == 1
    assert store.pending_count() == 0


def test_queued_events_are_sent_after_stored_ones(store: LocalEventStore) -> None:
    stored = _fill(store, 2)
    client = FakeClient()
    engine = SyncEngine(store, client, threshold=0)
    queued = engine.queue_event(_event(99))

    engine.sync()

    sent = [event.local_id for event in client.batches[0]]
    assert sent == [stored[0].local_id, stored[1].local_id, queued.local_id]
    assert engine.queued() == []


def test_memory_queue_is_bounded_and_counts_evictions(store: LocalEventStore) -> None:
    client = FakeClient()
    client.authenticated = False
    engine = SyncEngine(store, client, threshold=0)

    queued = [engine.queue_event(_event(i)) for i in range(1500)]

    assert engine.pending_size() == store.capacity == 1000
    assert engine.queue_evicted == 500
    assert engine.queued()[0].local_id == queued[500].local_id
    report = engine.sync()
    assert report.status == SYNC_NO_AUTH
    assert report.evicted == 500


def test_report_counts_store_and_queue_evictions(tmp_path: Path) -> None:
    small = LocalEventStore(tmp_path / "small.sqlite", capacity=2)
    try:
        for i in range(3):
            small.append(_event(i))
        engine = SyncEngine(small, FakeClient(), threshold=0, queue_capacity=1)
        engine.queue_event(_event(10))
        engine.queue_event(_event(11))

        report = engine.sync()

        assert report.status == SYNC_OK
        assert report.synced == 3
        assert report.evicted == 2
    finally:
        small.close()
