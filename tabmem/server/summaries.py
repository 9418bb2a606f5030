from __future__ import annotations

import sqlite3
from typing import Any

from ..events import parse_timestamp
from ..providers import EmbeddingProvider, SummaryProvider
from .repository import SessionRepository, TabRepository, VectorRepository


def summarize_session(
    conn: sqlite3.Connection,
    user_id: str,
    session_id: str,
    provider: SummaryProvider,
    *,
    embedder: EmbeddingProvider | None = None,
) -> dict[str, Any] | None:
    """Write a provider summary (and optionally its embedding) onto a session.

    Returns None when the session does not belong to the user.
    """

    sessions = SessionRepository(conn)
    session = sessions.get(user_id, session_id)
    if session is None:
        return None
    titles = [tab["title"] for tab in TabRepository(conn).list(session_id) if tab["title"]]
    started = parse_timestamp(session["started_at"])
    last_active = parse_timestamp(session["last_active_at"])
    result = provider.summarize(
        titles,
        time_spent_s=(last_active - started).total_seconds(),
        previous_summary=session.get("summary"),
    )
    vector_id = None
    with conn:
        sessions.update_summary(session_id, summary=result.summary, confidence=result.confidence)
        if embedder is not None:
            embedding = embedder.embed([result.summary])[0]
            vector_id = VectorRepository(conn).put("session", session_id, embedding)
    return {
        "session_id": session_id,
        "summary": result.summary,
        "tags": result.tags,
        "confidence": result.confidence,
        "vector_id": vector_id,
    }
