from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from ..errors import AuthRequiredError, BatchRejectedError
from ..events import Event, generate_local_id
from ..store import LocalEventStore
from ..utils import chunked

DEFAULT_BATCH_SIZE = 50
DEFAULT_SYNC_THRESHOLD = 10

SYNC_OK = "ok"
SYNC_EMPTY = "empty"
SYNC_PARTIAL = "partial"
SYNC_FAILED = "failed"
SYNC_IN_FLIGHT = "in_flight"
SYNC_NO_AUTH = "no_auth"
SYNC_AUTH_REQUIRED = "auth_required"

logger = logging.getLogger(__name__)


class BatchSender(Protocol):
    def has_credentials(self) -> bool: ...

    def send_batch(self, events: list[Event]) -> int: ...


@dataclass
class SyncReport:
    status: str
    batches_attempted: int = 0
    batches_sent: int = 0
    synced: int = 0
    dropped: int = 0
    pending_remaining: int = 0
    evicted: int = 0
    error: str | None = None
    auth_required: bool = False

    @property
    def ok(self) -> bool:
        return self.status in {SYNC_OK, SYNC_EMPTY}


def _spawn_thread(target: Callable[[], object]) -> None:
    thread = threading.Thread(target=target, name="tabmem-sync", daemon=True)
    thread.start()


class SyncEngine:
    """Drain the local store to the ingestion endpoint in ordered batches.

    At most one sync runs at a time; a second caller gets an ``in_flight``
    report back instead of waiting. A batch failure ends the pass so later
    batches are never delivered ahead of earlier ones, and only ids from
    confirmed batches are acknowledged, in a single store call at the end.
    """

    def __init__(
        self,
        store: LocalEventStore,
        client: BatchSender,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        threshold: int = DEFAULT_SYNC_THRESHOLD,
        on_auth_required: Callable[[SyncReport], None] | None = None,
        spawn: Callable[[Callable[[], object]], None] | None = None,
        queue_capacity: int | None = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.client = client
        self.batch_size = batch_size
        self.threshold = threshold
        self.on_auth_required = on_auth_required
        self._spawn = spawn or _spawn_thread
        self._in_flight = threading.Lock()
        self._queue_lock = threading.Lock()
        self._queue: list[Event] = []
        self.queue_capacity = queue_capacity or store.capacity
        self._queue_evicted = 0
        self._trigger_armed = True

    @property
    def in_flight(self) -> bool:
        return self._in_flight.locked()

    def queued(self) -> list[Event]:
        with self._queue_lock:
            return list(self._queue)

    def queue_event(self, event: Event) -> Event:
        """Hold an event in memory when it could not be persisted locally.

        The queue is bounded like the store: past ``queue_capacity`` the
        oldest queued events are evicted and counted.
        """

        if not event.local_id:
            event = dataclasses.replace(event, local_id=generate_local_id())
        with self._queue_lock:
            self._queue.append(event)
            overflow = len(self._queue) - self.queue_capacity
            if overflow > 0:
                del self._queue[:overflow]
                self._queue_evicted += overflow
        if overflow > 0:
            logger.debug("memory queue full, evicted %s oldest events", overflow)
        self.event_captured()
        return event

    @property
    def queue_evicted(self) -> int:
        with self._queue_lock:
            return self._queue_evicted

    def evicted_count(self) -> int:
        """Events lost to capacity, from the store and from the memory queue."""

        return self.store.evicted_count() + self.queue_evicted

    def pending_size(self) -> int:
        with self._queue_lock:
            queued = len(self._queue)
        return self.store.pending_count() + queued

    def event_captured(self) -> bool:
        """Fire a sync when the backlog crosses the threshold.

        The trigger re-arms only once the backlog falls below the threshold
        again, so an offline client does not attempt a sync per event.
        """

        if self.threshold <= 0:
            return False
        size = self.pending_size()
        if size < self.threshold:
            self._trigger_armed = True
            return False
        if not self._trigger_armed:
            return False
        self._trigger_armed = False
        self.request_sync()
        return True

    def request_sync(self) -> None:
        self._spawn(self._background_sync)

    def _background_sync(self) -> None:
        try:
            self.sync()
        except Exception:
            logger.exception("background sync failed")

    def sync(self) -> SyncReport:
        if not self._in_flight.acquire(blocking=False):
            return SyncReport(status=SYNC_IN_FLIGHT)
        try:
            report = self._sync_pass()
        finally:
            self._in_flight.release()
        if self.pending_size() < self.threshold:
            self._trigger_armed = True
        if report.auth_required and self.on_auth_required is not None:
            self.on_auth_required(report)
        return report

    def _collect_pending(self) -> list[Event]:
        stored = self.store.pending()
        seen = {event.local_id for event in stored}
        queued = [event for event in self.queued() if event.local_id not in seen]
        return stored + queued

    def _sync_pass(self) -> SyncReport:
        if not self.client.has_credentials():
            return SyncReport(
                status=SYNC_NO_AUTH,
                pending_remaining=self.pending_size(),
                evicted=self.evicted_count(),
            )

        events = self._collect_pending()
        if not events:
            return SyncReport(status=SYNC_EMPTY)

        batches = list(chunked(events, self.batch_size))
        report = SyncReport(status=SYNC_OK)
        confirmed: list[str] = []
        dropped: list[str] = []
        for batch in batches:
            report.batches_attempted += 1
            local_ids = [event.local_id for event in batch]
            try:
                self.client.send_batch(batch)
            except AuthRequiredError as exc:
                report.auth_required = True
                report.error = f"auth required: {exc}"
                logger.warning("sync stopped: authentication required (%s)", exc)
                break
            except BatchRejectedError as exc:
                dropped.extend(local_ids)
                report.error = f"batch rejected: {exc}"
                logger.warning("sync dropped %s rejected events: %s", len(batch), exc)
                break
            except Exception as exc:
                detail = str(exc).strip() or exc.__class__.__name__
                report.error = detail
                logger.warning("sync batch failed, retrying next cycle: %s", detail)
                break
            confirmed.extend(local_ids)
            report.batches_sent += 1
            report.synced += len(batch)

        acknowledged = confirmed + dropped
        if acknowledged:
            self.store.acknowledge(acknowledged)
            done = set(acknowledged)
            with self._queue_lock:
                self._queue = [event for event in self._queue if event.local_id not in done]
        report.dropped = len(dropped)
        report.pending_remaining = self.pending_size()
        report.evicted = self.evicted_count()

        if report.batches_sent == len(batches):
            report.status = SYNC_OK
        elif report.auth_required:
            report.status = SYNC_AUTH_REQUIRED
        elif report.batches_sent:
            report.status = SYNC_PARTIAL
        else:
            report.status = SYNC_FAILED
        return report
