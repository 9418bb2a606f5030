from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from ..clustering import (
    ClusteringWeights,
    Decision,
    SessionSnapshot,
    Similarity,
    Snapshot,
    TabRef,
    decide,
    token_overlap,
    window_runs,
)
from ..events import Event, parse_timestamp
from ..redaction import normalize_url
from .repository import EventRepository, SessionRepository, TabRepository

DEFAULT_SESSION_TITLE = "Untitled Session"

logger = logging.getLogger(__name__)


@dataclass
class FoldResult:
    created: list[str] = field(default_factory=list)
    merged: list[str] = field(default_factory=list)
    decisions: list[Decision] = field(default_factory=list)


def _session_title(snapshot: Snapshot) -> str:
    for tab in snapshot.clustered_tabs():
        if tab.title:
            return tab.title
    for tab in snapshot.tabs:
        if tab.title:
            return tab.title
    return DEFAULT_SESSION_TITLE


class SessionAggregator:
    """Fold newly ingested events into the user's sessions and tabs.

    Events are split into same-window runs in time order. Each run becomes
    a snapshot that the clustering scorer compares with the user's most
    recently active session.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        weights: ClusteringWeights | None = None,
        similarity: Similarity = token_overlap,
        mode: str = "loose",
    ) -> None:
        self.conn = conn
        self.weights = weights or ClusteringWeights()
        self.similarity = similarity
        self.mode = mode
        self.sessions = SessionRepository(conn)
        self.tabs = TabRepository(conn)

    def _previous(
        self, user_id: str
    ) -> tuple[dict[str, Any] | None, SessionSnapshot | None, list[dict[str, Any]]]:
        session = self.sessions.latest(user_id)
        if session is None:
            return None, None, []
        tab_rows = self.tabs.list(session["id"])
        snapshot = SessionSnapshot(
            window_id=session["window_id"],
            last_active_at=parse_timestamp(session["last_active_at"]),
            tabs=tuple(TabRef(url=row["url"], title=row["title"]) for row in tab_rows),
            mode=session["mode"],
            candidate_streak=int(session["candidate_streak"] or 0),
        )
        return session, snapshot, tab_rows

    def fold_pending(self, user_id: str) -> FoldResult:
        """Fold every stored event of the user that no session has seen yet.

        The write lock is taken before the latest session is read, so
        concurrent batches for one user fold one after the other. A failure
        rolls back and leaves the events pending for the next call.
        """

        result = FoldResult()
        events = EventRepository(self.conn)
        with self.conn:
            self.conn.execute("BEGIN IMMEDIATE")
            pending = events.unaggregated(user_id)
            if not pending:
                return result
            for run in window_runs(event for _, event in pending):
                self._fold_run(user_id, run, result)
            events.mark_aggregated([event_id for event_id, _ in pending])
        return result

    def _fold_run(self, user_id: str, run: list[Event], result: FoldResult) -> None:
        session, previous, tab_rows = self._previous(user_id)
        same_window = previous is not None and previous.window_id == run[0].window_id
        base = previous.tabs if previous is not None and same_window else ()
        snapshot = Snapshot.from_events(run, base=base)
        if not any(event.url for event in run):
            # Closes without a known url carry nothing to cluster.
            if session is not None:
                self.sessions.touch(session["id"], last_active_at=snapshot.taken_at)
            return

        decision = decide(previous, snapshot, self.weights, similarity=self.similarity)
        result.decisions.append(decision)
        if decision.new_session or session is None:
            created = self.sessions.create(
                user_id,
                title=_session_title(snapshot),
                started_at=run[0].ts,
                window_id=snapshot.window_id,
                mode=self.mode,
                confidence=decision.confidence,
            )
            session_id = created["id"]
            tab_rows = []
            result.created.append(session_id)
            logger.debug("new session %s for %s (%s)", session_id, user_id, decision.reason)
        else:
            session_id = session["id"]
            result.merged.append(session_id)
        self.sessions.touch(
            session_id,
            last_active_at=snapshot.taken_at,
            candidate_streak=decision.candidate_streak,
        )
        self._record_tabs(session_id, run, tab_rows)

    def _record_tabs(
        self, session_id: str, run: list[Event], tab_rows: list[dict[str, Any]]
    ) -> None:
        known = {normalize_url(row["url"]): row for row in tab_rows}
        for event in run:
            if event.type == "close" or not event.url:
                continue
            key = normalize_url(event.url)
            existing = known.get(key)
            if existing is not None:
                self.tabs.touch(existing["id"], title=event.title, seen_at=event.ts)
                continue
            known[key] = self.tabs.add(
                session_id,
                url=event.url,
                title=event.title,
                seen_at=event.ts,
                pinned=False,
            )
