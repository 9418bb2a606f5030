from __future__ import annotations

import datetime as dt
import sqlite3
import struct
import uuid
from collections.abc import Sequence
from typing import Any

import sqlite_vec

from ..events import Event, parse_timestamp
from ..utils import now_iso, to_iso

OWNER_TYPES = frozenset({"session", "tab", "query"})


def new_id() -> str:
    return str(uuid.uuid4())


def _row(row: sqlite3.Row | None) -> dict[str, Any] | None:
    return dict(row) if row is not None else None


def _session_row(row: sqlite3.Row) -> dict[str, Any]:
    data = dict(row)
    data["confidence"] = float(data.get("confidence") or 0.0)
    return data


def _tab_row(row: sqlite3.Row) -> dict[str, Any]:
    data = dict(row)
    data["pinned"] = bool(data.get("pinned"))
    return data


class UserRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def create(self, email: str, password_hash: str) -> dict[str, Any]:
        user_id = new_id()
        now = now_iso()
        self.conn.execute(
            """
            INSERT INTO users(id, email, password_hash, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (user_id, email, password_hash, now, now),
        )
        return {"id": user_id, "email": email, "created_at": now}

    def get(self, user_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT id, email, created_at FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        return _row(row)

    def get_with_password(self, email: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT id, email, password_hash, created_at FROM users WHERE email = ?", (email,)
        ).fetchone()
        return _row(row)

    def exists(self, email: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone()
        return row is not None


class SessionRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def create(
        self,
        user_id: str,
        *,
        title: str,
        started_at: dt.datetime,
        window_id: int | None,
        mode: str = "loose",
        confidence: float = 0.0,
    ) -> dict[str, Any]:
        session_id = new_id()
        now = now_iso()
        started = to_iso(started_at)
        self.conn.execute(
            """
            INSERT INTO sessions(
                id,
                user_id,
                title,
                confidence,
                started_at,
                last_active_at,
                mode,
                window_id,
                candidate_streak,
                created_at,
                updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
            """,
            (
                session_id,
                user_id,
                title,
                max(0.0, min(1.0, confidence)),
                started,
                started,
                mode,
                window_id,
                now,
                now,
            ),
        )
        created = self.get(user_id, session_id)
        assert created is not None
        return created

    def get(self, user_id: str, session_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT * FROM sessions WHERE id = ? AND user_id = ?", (session_id, user_id)
        ).fetchone()
        return _session_row(row) if row is not None else None

    def latest(self, user_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            """
            SELECT * FROM sessions
            WHERE user_id = ?
            ORDER BY last_active_at DESC, created_at DESC
            LIMIT 1
            """,
            (user_id,),
        ).fetchone()
        return _session_row(row) if row is not None else None

    def list(
        self,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        mode: str | None = None,
        from_: str | None = None,
        to: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses = ["sessions.user_id = ?"]
        params: list[Any] = [user_id]
        if mode:
            clauses.append("sessions.mode = ?")
            params.append(mode)
        if from_:
            clauses.append("sessions.last_active_at >= ?")
            params.append(from_)
        if to:
            clauses.append("sessions.last_active_at <= ?")
            params.append(to)
        params.extend([limit, offset])
        rows = self.conn.execute(
            f"""
            SELECT sessions.*,
                (SELECT COUNT(*) FROM tabs WHERE tabs.session_id = sessions.id) AS tab_count
            FROM sessions
            WHERE {" AND ".join(clauses)}
            ORDER BY sessions.last_active_at DESC
            LIMIT ? OFFSET ?
            """,
            params,
        ).fetchall()
        return [_session_row(row) for row in rows]

    def touch(
        self,
        session_id: str,
        *,
        last_active_at: dt.datetime | str,
        candidate_streak: int | None = None,
    ) -> None:
        active = last_active_at if isinstance(last_active_at, str) else to_iso(last_active_at)
        # MAX keeps last_active_at monotonic when events arrive out of order.
        self.conn.execute(
            """
            UPDATE sessions
            SET last_active_at = MAX(last_active_at, ?),
                candidate_streak = COALESCE(?, candidate_streak),
                updated_at = ?
            WHERE id = ?
            """,
            (active, candidate_streak, now_iso(), session_id),
        )

    def update_summary(self, session_id: str, *, summary: str, confidence: float) -> None:
        self.conn.execute(
            "UPDATE sessions SET summary = ?, confidence = ?, updated_at = ? WHERE id = ?",
            (summary, max(0.0, min(1.0, confidence)), now_iso(), session_id),
        )

    def delete(self, user_id: str, session_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT id, title FROM sessions WHERE id = ? AND user_id = ?", (session_id, user_id)
        ).fetchone()
        if row is None:
            return None
        self.conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        return {"id": row["id"], "title": row["title"]}

    def stats(self, user_id: str, *, now: dt.datetime | None = None) -> dict[str, Any]:
        current = now or dt.datetime.now(dt.UTC)
        total = self.conn.execute(
            "SELECT COUNT(*) AS total FROM sessions WHERE user_id = ?", (user_id,)
        ).fetchone()["total"]
        avg_row = self.conn.execute(
            """
            SELECT AVG(tab_count) AS avg_tabs FROM (
                SELECT (SELECT COUNT(*) FROM tabs WHERE tabs.session_id = sessions.id) AS tab_count
                FROM sessions
                WHERE user_id = ?
            )
            """,
            (user_id,),
        ).fetchone()
        recent = self.conn.execute(
            "SELECT COUNT(*) AS total FROM sessions WHERE user_id = ? AND created_at >= ?",
            (user_id, to_iso(current - dt.timedelta(days=7))),
        ).fetchone()["total"]
        by_mode = self.conn.execute(
            "SELECT mode, COUNT(*) AS total FROM sessions WHERE user_id = ? GROUP BY mode",
            (user_id,),
        ).fetchall()
        return {
            "total_sessions": int(total),
            "avg_tabs_per_session": round(float(avg_row["avg_tabs"] or 0.0), 2),
            "recent_sessions_7d": int(recent),
            "sessions_by_mode": {row["mode"]: int(row["total"]) for row in by_mode},
        }


class TabRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def list(self, session_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM tabs WHERE session_id = ? ORDER BY order_index ASC", (session_id,)
        ).fetchall()
        return [_tab_row(row) for row in rows]

    def add(
        self,
        session_id: str,
        *,
        url: str,
        title: str,
        seen_at: dt.datetime,
        pinned: bool = False,
    ) -> dict[str, Any]:
        tab_id = new_id()
        now = now_iso()
        seen = to_iso(seen_at)
        row = self.conn.execute(
            "SELECT COALESCE(MAX(order_index) + 1, 0) AS next FROM tabs WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        order_index = int(row["next"])
        self.conn.execute(
            """
            INSERT INTO tabs(
                id,
                session_id,
                url,
                title,
                pinned,
                order_index,
                first_seen_at,
                last_seen_at,
                created_at,
                updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (tab_id, session_id, url, title, int(pinned), order_index, seen, seen, now, now),
        )
        return {
            "id": tab_id,
            "session_id": session_id,
            "url": url,
            "title": title,
            "pinned": pinned,
            "order_index": order_index,
            "first_seen_at": seen,
            "last_seen_at": seen,
        }

    def touch(self, tab_id: str, *, title: str, seen_at: dt.datetime) -> None:
        self.conn.execute(
            """
            UPDATE tabs
            SET title = ?,
                last_seen_at = MAX(last_seen_at, ?),
                updated_at = ?
            WHERE id = ?
            """,
            (title, to_iso(seen_at), now_iso(), tab_id),
        )


class EventRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def exists(self, user_id: str, event: Event) -> bool:
        row = self.conn.execute(
            """
            SELECT 1 FROM events
            WHERE user_id = ? AND tab_id = ? AND type = ? AND ts = ? AND url = ?
            LIMIT 1
            """,
            (user_id, event.tab_id, event.type, to_iso(event.ts), event.url),
        ).fetchone()
        return row is not None

    def insert(self, user_id: str, event: Event, *, aggregated: bool = False) -> dict[str, Any]:
        event_id = new_id()
        created_at = now_iso()
        self.conn.execute(
            """
            INSERT INTO events(
                id, user_id, window_id, tab_id, type, title, url, ts, created_at, aggregated
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event_id,
                user_id,
                event.window_id,
                event.tab_id,
                event.type,
                event.title,
                event.url,
                to_iso(event.ts),
                created_at,
                int(aggregated),
            ),
        )
        return {
            **event.to_payload(),
            "id": event_id,
            "user_id": user_id,
            "created_at": created_at,
        }

    def unaggregated(self, user_id: str) -> list[tuple[str, Event]]:
        """Stored events not yet folded into sessions, oldest first."""

        rows = self.conn.execute(
            """
            SELECT id, window_id, tab_id, type, title, url, ts
            FROM events
            WHERE user_id = ? AND aggregated = 0
            ORDER BY ts ASC, rowid ASC
            """,
            (user_id,),
        ).fetchall()
        return [
            (
                row["id"],
                Event(
                    window_id=int(row["window_id"]),
                    tab_id=int(row["tab_id"]),
                    type=row["type"],
                    title=row["title"],
                    url=row["url"],
                    ts=parse_timestamp(row["ts"]),
                    user_id=user_id,
                ),
            )
            for row in rows
        ]

    def mark_aggregated(self, event_ids: Sequence[str]) -> None:
        self.conn.executemany(
            "UPDATE events SET aggregated = 1 WHERE id = ?", [(event_id,) for event_id in event_ids]
        )

    def list(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        window_id: int | None = None,
        type: str | None = None,  # noqa: A002
        from_: str | None = None,
        to: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if window_id is not None:
            clauses.append("window_id = ?")
            params.append(window_id)
        if type:
            clauses.append("type = ?")
            params.append(type)
        if from_:
            clauses.append("ts >= ?")
            params.append(from_)
        if to:
            clauses.append("ts <= ?")
            params.append(to)
        params.extend([limit, offset])
        rows = self.conn.execute(
            f"""
            SELECT id, user_id, window_id, tab_id, type, title, url, ts, created_at
            FROM events
            WHERE {" AND ".join(clauses)}
            ORDER BY ts DESC
            LIMIT ? OFFSET ?
            """,
            params,
        ).fetchall()
        return [dict(row) for row in rows]

    def stats(self, user_id: str, *, now: dt.datetime | None = None) -> dict[str, Any]:
        current = now or dt.datetime.now(dt.UTC)
        total = self.conn.execute(
            "SELECT COUNT(*) AS total FROM events WHERE user_id = ?", (user_id,)
        ).fetchone()["total"]
        by_type = self.conn.execute(
            "SELECT type, COUNT(*) AS total FROM events WHERE user_id = ? GROUP BY type",
            (user_id,),
        ).fetchall()
        hourly = self.conn.execute(
            """
            SELECT substr(ts, 1, 13) AS hour, COUNT(*) AS total
            FROM events
            WHERE user_id = ? AND ts >= ?
            GROUP BY hour
            ORDER BY hour
            """,
            (user_id, to_iso(current - dt.timedelta(hours=24))),
        ).fetchall()
        return {
            "total_events": int(total),
            "events_by_type": {row["type"]: int(row["total"]) for row in by_type},
            "recent_activity": [
                {"hour": f"{row['hour']}:00:00+00:00", "count": int(row["total"])}
                for row in hourly
            ],
        }

    def cleanup(self, user_id: str, *, days: int, now: dt.datetime | None = None) -> int:
        current = now or dt.datetime.now(dt.UTC)
        cutoff = to_iso(current - dt.timedelta(days=days))
        cur = self.conn.execute(
            "DELETE FROM events WHERE user_id = ? AND created_at < ?", (user_id, cutoff)
        )
        return int(cur.rowcount or 0)


class VectorRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def put(self, owner_type: str, owner_id: str, embedding: Sequence[float]) -> str:
        """Replace the stored embedding for one owner."""

        if owner_type not in OWNER_TYPES:
            raise ValueError(f"unknown owner type: {owner_type}")
        if not embedding:
            raise ValueError("empty embedding")
        vector_id = new_id()
        self.conn.execute(
            "DELETE FROM vectors WHERE owner_type = ? AND owner_id = ?", (owner_type, owner_id)
        )
        self.conn.execute(
            """
            INSERT INTO vectors(id, owner_type, owner_id, embedding, dim, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                vector_id,
                owner_type,
                owner_id,
                sqlite_vec.serialize_float32(list(embedding)),
                len(embedding),
                now_iso(),
            ),
        )
        return vector_id

    def get(self, owner_type: str, owner_id: str) -> list[float] | None:
        row = self.conn.execute(
            "SELECT embedding, dim FROM vectors WHERE owner_type = ? AND owner_id = ?",
            (owner_type, owner_id),
        ).fetchone()
        if row is None:
            return None
        return list(struct.unpack(f"{int(row['dim'])}f", row["embedding"]))

    def delete_for_owner(self, owner_type: str, owner_id: str) -> int:
        cur = self.conn.execute(
            "DELETE FROM vectors WHERE owner_type = ? AND owner_id = ?", (owner_type, owner_id)
        )
        return int(cur.rowcount or 0)
