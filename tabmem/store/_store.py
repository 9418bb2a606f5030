from __future__ import annotations

import datetime as dt
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from .. import db
from ..events import Event, parse_timestamp
from ..utils import now_iso
from . import pending as store_pending
from . import state as store_state
from .types import StoreStats, TabSnapshot


class LocalEventStore:
    """Durable, bounded buffer of events that have not reached the server yet.

    Every public method runs under one lock and, when it writes, inside one
    SQLite transaction, so a reader never observes a half-applied append or
    acknowledge. The sync thread and the capture path share one instance.
    """

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        capacity: int = store_pending.DEFAULT_MAX_LOCAL_EVENTS,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.db_path = Path(db_path).expanduser()
        self.capacity = capacity
        self.conn = db.connect(self.db_path, check_same_thread=False)
        db.initialize_client_schema(self.conn)
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def append(self, event: Event) -> Event:
        with self._lock, self.conn:
            stored = store_pending.insert_event(self.conn, event)
            if stored.url and stored.title and stored.type != "close":
                store_pending.upsert_tab_snapshot(self.conn, stored)
            store_pending.evict_overflow(self.conn, capacity=self.capacity)
        return stored

    def pending(self, *, limit: int | None = None) -> list[Event]:
        with self._lock:
            return store_pending.load_pending(self.conn, limit=limit)

    def pending_count(self) -> int:
        with self._lock:
            return store_pending.count_pending(self.conn)

    def acknowledge(self, local_ids: Iterable[str]) -> int:
        ids = [local_id for local_id in local_ids if local_id]
        if not ids:
            return 0
        with self._lock, self.conn:
            removed = store_pending.delete_events(self.conn, ids)
            store_state.set_state(self.conn, store_state.LAST_SYNC_KEY, now_iso())
        return removed

    def evicted_count(self) -> int:
        with self._lock:
            value = store_state.get_state(self.conn, store_state.EVICTED_EVENTS_KEY, 0)
        return int(value or 0)

    def get_tab_snapshot(self, tab_id: int) -> TabSnapshot | None:
        with self._lock:
            return store_pending.load_tab_snapshot(self.conn, tab_id)

    def set_tab_snapshot(self, event: Event) -> None:
        with self._lock, self.conn:
            store_pending.upsert_tab_snapshot(self.conn, event)

    def clear_tab_snapshot(self, tab_id: int) -> bool:
        with self._lock, self.conn:
            return store_pending.delete_tab_snapshot(self.conn, tab_id)

    def get_auth_token(self) -> str | None:
        with self._lock:
            token = store_state.get_state(self.conn, store_state.AUTH_TOKEN_KEY)
        return str(token) if token else None

    def get_refresh_token(self) -> str | None:
        with self._lock:
            token = store_state.get_state(self.conn, store_state.REFRESH_TOKEN_KEY)
        return str(token) if token else None

    def set_auth_tokens(self, access_token: str | None, refresh_token: str | None = None) -> None:
        with self._lock, self.conn:
            if access_token:
                store_state.set_state(self.conn, store_state.AUTH_TOKEN_KEY, access_token)
            else:
                store_state.delete_state(self.conn, store_state.AUTH_TOKEN_KEY)
            if refresh_token:
                store_state.set_state(self.conn, store_state.REFRESH_TOKEN_KEY, refresh_token)
            elif not access_token:
                store_state.delete_state(self.conn, store_state.REFRESH_TOKEN_KEY)

    def get_last_sync(self) -> dt.datetime | None:
        with self._lock:
            value = store_state.get_state(self.conn, store_state.LAST_SYNC_KEY)
        if not value:
            return None
        return parse_timestamp(str(value))

    def get_config_overrides(self) -> dict[str, Any]:
        with self._lock:
            return store_state.get_config_overrides(self.conn)

    def update_config_overrides(self, values: dict[str, Any]) -> dict[str, Any]:
        with self._lock, self.conn:
            return store_state.update_config_overrides(self.conn, values)

    def get_sync_daemon_state(self) -> dict[str, Any] | None:
        with self._lock:
            return store_state.get_daemon_state(self.conn)

    def set_sync_daemon_error(self, error: str, traceback_text: str) -> None:
        with self._lock, self.conn:
            store_state.record_daemon_error(self.conn, error, traceback_text)

    def set_sync_daemon_ok(self) -> None:
        with self._lock, self.conn:
            store_state.record_daemon_ok(self.conn)

    def stats(self) -> StoreStats:
        with self._lock:
            last_sync = store_state.get_state(self.conn, store_state.LAST_SYNC_KEY)
            return StoreStats(
                pending=store_pending.count_pending(self.conn),
                evicted=int(store_state.get_state(self.conn, store_state.EVICTED_EVENTS_KEY, 0)),
                tab_snapshots=store_pending.count_tab_snapshots(self.conn),
                last_sync=parse_timestamp(str(last_sync)) if last_sync else None,
                authenticated=bool(store_state.get_state(self.conn, store_state.AUTH_TOKEN_KEY)),
            )

    def clear_all(self) -> None:
        with self._lock, self.conn:
            self.conn.execute("DELETE FROM pending_events")
            self.conn.execute("DELETE FROM tab_snapshots")
            self.conn.execute("DELETE FROM client_state")
