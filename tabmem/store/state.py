from __future__ import annotations

import json
import sqlite3
from typing import Any

from ..utils import now_iso

AUTH_TOKEN_KEY = "auth_token"
REFRESH_TOKEN_KEY = "refresh_token"
LAST_SYNC_KEY = "last_sync"
EVICTED_EVENTS_KEY = "evicted_events"
CONFIG_KEY = "config"
DAEMON_STATE_KEY = "sync_daemon"


def get_state(conn: sqlite3.Connection, key: str, default: Any = None) -> Any:
    row = conn.execute("SELECT value_json FROM client_state WHERE key = ?", (key,)).fetchone()
    if row is None:
        return default
    try:
        return json.loads(row["value_json"])
    except json.JSONDecodeError:
        return default


def set_state(conn: sqlite3.Connection, key: str, value: Any) -> None:
    conn.execute(
        """
        INSERT INTO client_state(key, value_json, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
            value_json = excluded.value_json,
            updated_at = excluded.updated_at
        """,
        (key, json.dumps(value, ensure_ascii=False), now_iso()),
    )


def delete_state(conn: sqlite3.Connection, key: str) -> None:
    conn.execute("DELETE FROM client_state WHERE key = ?", (key,))


def increment_counter(conn: sqlite3.Connection, key: str, amount: int) -> int:
    current = get_state(conn, key, 0)
    try:
        value = int(current) + amount
    except (TypeError, ValueError):
        value = amount
    set_state(conn, key, value)
    return value


def get_config_overrides(conn: sqlite3.Connection) -> dict[str, Any]:
    data = get_state(conn, CONFIG_KEY, {})
    return data if isinstance(data, dict) else {}


def update_config_overrides(conn: sqlite3.Connection, values: dict[str, Any]) -> dict[str, Any]:
    merged = {**get_config_overrides(conn), **values}
    set_state(conn, CONFIG_KEY, merged)
    return merged


def get_daemon_state(conn: sqlite3.Connection) -> dict[str, Any] | None:
    data = get_state(conn, DAEMON_STATE_KEY)
    return data if isinstance(data, dict) else None


def record_daemon_error(conn: sqlite3.Connection, error: str, traceback_text: str) -> None:
    state = get_daemon_state(conn) or {}
    state.update(last_error=error, last_traceback=traceback_text, last_error_at=now_iso())
    set_state(conn, DAEMON_STATE_KEY, state)


def record_daemon_ok(conn: sqlite3.Connection) -> None:
    state = get_daemon_state(conn) or {}
    state.pop("last_error", None)
    state.pop("last_traceback", None)
    state["last_ok_at"] = now_iso()
    set_state(conn, DAEMON_STATE_KEY, state)
