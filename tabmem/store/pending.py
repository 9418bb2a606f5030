from __future__ import annotations

import dataclasses
import logging
import sqlite3
from collections.abc import Iterable
from typing import cast

from ..events import Event, EventType, generate_local_id, parse_timestamp
from ..utils import now_iso, to_iso
from . import state as store_state
from .types import TabSnapshot

DEFAULT_MAX_LOCAL_EVENTS = 1000

logger = logging.getLogger(__name__)


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        window_id=int(row["window_id"]),
        tab_id=int(row["tab_id"]),
        type=cast(EventType, str(row["type"])),
        title=str(row["title"]),
        url=str(row["url"]),
        ts=parse_timestamp(str(row["ts"])),
        local_id=str(row["local_id"]),
    )


def insert_event(conn: sqlite3.Connection, event: Event) -> Event:
    stored = dataclasses.replace(event, local_id=generate_local_id())
    conn.execute(
        """
        INSERT INTO pending_events(
            local_id,
            window_id,
            tab_id,
            type,
            title,
            url,
            ts,
            created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            stored.local_id,
            stored.window_id,
            stored.tab_id,
            stored.type,
            stored.title,
            stored.url,
            to_iso(stored.ts),
            now_iso(),
        ),
    )
    return stored


def evict_overflow(conn: sqlite3.Connection, *, capacity: int) -> int:
    """Drop the oldest rows beyond capacity and count them as lost."""

    row = conn.execute("SELECT COUNT(*) AS total FROM pending_events").fetchone()
    overflow = int(row["total"]) - capacity
    if overflow <= 0:
        return 0
    conn.execute(
        """
        DELETE FROM pending_events
        WHERE seq IN (SELECT seq FROM pending_events ORDER BY seq ASC LIMIT ?)
        """,
        (overflow,),
    )
    total = store_state.increment_counter(conn, store_state.EVICTED_EVENTS_KEY, overflow)
    logger.debug("evicted %s pending events (total evicted %s)", overflow, total)
    return overflow


def load_pending(conn: sqlite3.Connection, *, limit: int | None = None) -> list[Event]:
    query = """
        SELECT local_id, window_id, tab_id, type, title, url, ts
        FROM pending_events
        ORDER BY seq ASC
    """
    params: tuple[int, ...] = ()
    if limit is not None:
        query += " LIMIT ?"
        params = (max(0, int(limit)),)
    return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]


def count_pending(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT COUNT(*) AS total FROM pending_events").fetchone()
    return int(row["total"])


def delete_events(conn: sqlite3.Connection, local_ids: Iterable[str]) -> int:
    ids = sorted({str(local_id) for local_id in local_ids if local_id})
    removed = 0
    chunk_size = 500
    for i in range(0, len(ids), chunk_size):
        chunk = ids[i : i + chunk_size]
        placeholders = ",".join("?" for _ in chunk)
        cur = conn.execute(
            f"DELETE FROM pending_events WHERE local_id IN ({placeholders})",
            chunk,
        )
        removed += int(cur.rowcount or 0)
    return removed


def upsert_tab_snapshot(conn: sqlite3.Connection, event: Event) -> None:
    conn.execute(
        """
        INSERT INTO tab_snapshots(tab_id, title, url, last_seen)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(tab_id) DO UPDATE SET
            title = excluded.title,
            url = excluded.url,
            last_seen = excluded.last_seen
        """,
        (event.tab_id, event.title, event.url, to_iso(event.ts)),
    )


def load_tab_snapshot(conn: sqlite3.Connection, tab_id: int) -> TabSnapshot | None:
    row = conn.execute(
        "SELECT tab_id, title, url, last_seen FROM tab_snapshots WHERE tab_id = ?",
        (tab_id,),
    ).fetchone()
    if row is None:
        return None
    return TabSnapshot(
        tab_id=int(row["tab_id"]),
        title=str(row["title"]),
        url=str(row["url"]),
        last_seen=parse_timestamp(str(row["last_seen"])),
    )


def delete_tab_snapshot(conn: sqlite3.Connection, tab_id: int) -> bool:
    cur = conn.execute("DELETE FROM tab_snapshots WHERE tab_id = ?", (tab_id,))
    return bool(cur.rowcount)


def count_tab_snapshots(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT COUNT(*) AS total FROM tab_snapshots").fetchone()
    return int(row["total"])
