from __future__ import annotations

import contextlib
import json
import logging
import os
import socket
import sqlite3
import threading
import uuid
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

from .. import db
from ..clustering import ClusteringWeights, Similarity, get_similarity
from ..config import TabmemConfig, require_server_secrets
from ..errors import BatchValidationError, EventValidationError
from ..events import EVENT_TYPES, parse_timestamp
from ..providers import get_embedding_provider
from ..utils import now_iso, to_iso
from . import auth
from .aggregator import SessionAggregator
from .ingest import ingest_batch, validate_batch
from .repository import (
    EventRepository,
    SessionRepository,
    TabRepository,
    UserRepository,
    VectorRepository,
)

MAX_BODY_BYTES = 1048576
DEFAULT_CLEANUP_DAYS = 30

logger = logging.getLogger(__name__)


class RequestError(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


def _read_body(handler: BaseHTTPRequestHandler) -> bytes:
    try:
        length = int(handler.headers.get("Content-Length", "0") or 0)
    except ValueError as exc:
        raise RequestError(400, "invalid content-length") from exc
    if length <= 0:
        return b""
    if length > MAX_BODY_BYTES:
        raise RequestError(413, "payload_too_large")
    return handler.rfile.read(length)


def _parse_json_body(raw: bytes) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise RequestError(400, "invalid_json") from exc
    if not isinstance(data, dict):
        raise RequestError(400, "body must be an object")
    return data


def _send_json(handler: BaseHTTPRequestHandler, payload: dict[str, Any], status: int = 200) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def _ok(handler: BaseHTTPRequestHandler, data: Any, status: int = 200) -> None:
    _send_json(handler, {"success": True, "data": data}, status=status)


def _int_param(
    params: dict[str, list[str]],
    name: str,
    default: int | None,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    values = params.get(name)
    if not values:
        return default
    try:
        value = int(values[0])
    except (TypeError, ValueError) as exc:
        raise RequestError(400, f"{name} must be an integer") from exc
    if minimum is not None and value < minimum:
        raise RequestError(400, f"{name} must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise RequestError(400, f"{name} must be <= {maximum}")
    return value


def _iso_param(params: dict[str, list[str]], name: str) -> str | None:
    values = params.get(name)
    if not values or not values[0]:
        return None
    try:
        return to_iso(parse_timestamp(values[0]))
    except EventValidationError as exc:
        raise RequestError(400, f"{name} must be an ISO-8601 date") from exc


def _session_id(value: str) -> str:
    try:
        return str(uuid.UUID(value))
    except ValueError as exc:
        raise RequestError(400, "invalid session id") from exc


def _auth_payload(
    user: dict[str, Any], access_token: str, refresh_token: str, ttl_s: int
) -> dict[str, Any]:
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "expires_in": ttl_s,
        "user": {"id": user["id"], "email": user["email"], "created_at": user["created_at"]},
    }


def _build_similarity(cfg: TabmemConfig) -> Similarity:
    if cfg.similarity_strategy == "embedding":
        return get_similarity("embedding", provider=get_embedding_provider(cfg))
    return get_similarity(cfg.similarity_strategy)


def build_api_handler(cfg: TabmemConfig, db_path: Path | None = None):
    jwt_secret, refresh_secret = require_server_secrets(cfg)
    resolved_db = Path(db_path or cfg.server_db_path).expanduser()
    conn = db.connect(resolved_db)
    try:
        db.initialize_server_schema(conn)
    finally:
        conn.close()
    weights = ClusteringWeights.from_config(
        cfg.clustering_weights, threshold=cfg.clustering_threshold
    )
    similarity = _build_similarity(cfg)

    class ApiHandler(BaseHTTPRequestHandler):
        _raw_body = b""

        def log_message(self, format: str, *args: object) -> None:  # noqa: A003
            if os.environ.get("TABMEM_SERVER_LOGS") == "1":
                super().log_message(format, *args)

        def _connect(self) -> sqlite3.Connection:
            return db.connect(resolved_db)

        def _user_id(self, conn: sqlite3.Connection) -> str:
            token = auth.bearer_token(self.headers.get("Authorization"))
            if token is None:
                raise RequestError(401, "Access token required")
            try:
                claims = auth.verify_token(jwt_secret, token, kind="access")
            except auth.TokenError as exc:
                raise RequestError(401, f"Invalid access token: {exc}") from exc
            if UserRepository(conn).get(claims.user_id) is None:
                raise RequestError(401, "Unknown user")
            return claims.user_id

        def _dispatch(self, method: str) -> None:
            parsed = urlparse(self.path)
            parts = [part for part in parsed.path.split("/") if part]
            params = parse_qs(parsed.query)
            conn = self._connect()
            try:
                # Read the body before any early reply.
                self._raw_body = _read_body(self)
                self._route(conn, method, parts, params)
            except RequestError as exc:
                _send_json(self, {"success": False, "error": exc.message}, status=exc.status)
            except BatchValidationError as exc:
                _send_json(self, {"success": False, "error": str(exc)}, status=400)
            except Exception as exc:
                logger.warning("request failed: %s %s", method, parsed.path, exc_info=exc)
                _send_json(self, {"success": False, "error": "internal_error"}, status=500)
            finally:
                conn.close()

        def do_GET(self) -> None:  # noqa: N802
            self._dispatch("GET")

        def do_POST(self) -> None:  # noqa: N802
            self._dispatch("POST")

        def do_DELETE(self) -> None:  # noqa: N802
            self._dispatch("DELETE")

        def _route(
            self,
            conn: sqlite3.Connection,
            method: str,
            parts: list[str],
            params: dict[str, list[str]],
        ) -> None:
            if parts == ["health"] and method == "GET":
                _send_json(self, {"status": "ok"})
                return
            if parts[:1] == ["auth"] and method == "POST" and len(parts) == 2:
                body = _parse_json_body(self._raw_body)
                if parts[1] == "register":
                    self._register(conn, body)
                    return
                if parts[1] == "login":
                    self._login(conn, body)
                    return
                if parts[1] == "refresh":
                    self._refresh(conn, body)
                    return
            if parts[:1] == ["events"]:
                self._events(conn, method, parts[1:], params)
                return
            if parts[:1] == ["sessions"]:
                self._sessions(conn, method, parts[1:], params)
                return
            if parts == ["users", "profile"] and method == "GET":
                user_id = self._user_id(conn)
                _ok(self, UserRepository(conn).get(user_id))
                return
            raise RequestError(404, "not_found")

        def _register(self, conn: sqlite3.Connection, body: dict[str, Any]) -> None:
            email = auth.normalize_email(body.get("email"))
            if email is None:
                raise RequestError(400, "valid email is required")
            problem = auth.password_problem(body.get("password"))
            if problem:
                raise RequestError(400, problem)
            users = UserRepository(conn)
            if users.exists(email):
                raise RequestError(409, "User already exists with this email")
            try:
                with conn:
                    user = users.create(email, auth.hash_password(str(body["password"])))
            except sqlite3.IntegrityError as exc:
                raise RequestError(409, "User already exists with this email") from exc
            logger.info("user registered: %s", user["id"])
            _ok(self, self._issue(user), status=201)

        def _login(self, conn: sqlite3.Connection, body: dict[str, Any]) -> None:
            email = auth.normalize_email(body.get("email"))
            password = body.get("password")
            if email is None or not isinstance(password, str) or not password:
                raise RequestError(400, "email and password are required")
            user = UserRepository(conn).get_with_password(email)
            if user is None or not auth.verify_password(password, user["password_hash"]):
                raise RequestError(401, "Invalid email or password")
            _ok(self, self._issue(user))

        def _refresh(self, conn: sqlite3.Connection, body: dict[str, Any]) -> None:
            token = body.get("refresh_token")
            if not isinstance(token, str) or not token:
                raise RequestError(400, "Refresh token required")
            try:
                claims = auth.verify_token(refresh_secret, token, kind="refresh")
            except auth.TokenError as exc:
                raise RequestError(401, "Invalid refresh token") from exc
            user = UserRepository(conn).get(claims.user_id)
            if user is None:
                raise RequestError(404, "User not found")
            access = auth.issue_token(
                jwt_secret,
                user["id"],
                kind="access",
                ttl_s=cfg.access_token_ttl_s,
                email=user["email"],
            )
            _ok(self, {"access_token": access, "expires_in": cfg.access_token_ttl_s})

        def _issue(self, user: dict[str, Any]) -> dict[str, Any]:
            access = auth.issue_token(
                jwt_secret,
                user["id"],
                kind="access",
                ttl_s=cfg.access_token_ttl_s,
                email=user["email"],
            )
            refresh = auth.issue_token(
                refresh_secret, user["id"], kind="refresh", ttl_s=cfg.refresh_token_ttl_s
            )
            return _auth_payload(user, access, refresh, cfg.access_token_ttl_s)

        def _events(
            self,
            conn: sqlite3.Connection,
            method: str,
            parts: list[str],
            params: dict[str, list[str]],
        ) -> None:
            user_id = self._user_id(conn)
            repo = EventRepository(conn)
            if method == "POST" and parts == ["batch"]:
                events = validate_batch(_parse_json_body(self._raw_body))
                result = ingest_batch(conn, user_id, events)
                logger.info("events batch processed: user=%s count=%s", user_id, len(events))
                try:
                    SessionAggregator(
                        conn, weights=weights, similarity=similarity, mode=cfg.session_mode
                    ).fold_pending(user_id)
                except Exception as exc:
                    # Events stay unaggregated and are folded with the next batch.
                    logger.warning("session aggregation failed", exc_info=exc)
                _ok(self, {"synced_count": result.synced_count, "events": result.events})
                return
            if method == "GET" and not parts:
                limit = _int_param(params, "limit", 50, minimum=1, maximum=100)
                offset = _int_param(params, "offset", 0, minimum=0)
                event_type = (params.get("type") or [None])[0]
                if event_type is not None and event_type not in EVENT_TYPES:
                    raise RequestError(400, "type must be one of open, update, activate, close")
                rows = repo.list(
                    user_id,
                    limit=limit or 50,
                    offset=offset or 0,
                    window_id=_int_param(params, "window_id", None),
                    type=event_type,
                    from_=_iso_param(params, "from"),
                    to=_iso_param(params, "to"),
                )
                _ok(self, {"events": rows, "total": len(rows), "limit": limit, "offset": offset})
                return
            if method == "GET" and parts == ["stats"]:
                _ok(self, repo.stats(user_id))
                return
            if method == "DELETE" and parts == ["cleanup"]:
                days = _int_param(params, "days", DEFAULT_CLEANUP_DAYS, minimum=0)
                with conn:
                    deleted = repo.cleanup(user_id, days=days or 0)
                logger.info("events cleanup: user=%s deleted=%s", user_id, deleted)
                _ok(self, {"deleted_count": deleted, "days_kept": days})
                return
            raise RequestError(404, "not_found")

        def _sessions(
            self,
            conn: sqlite3.Connection,
            method: str,
            parts: list[str],
            params: dict[str, list[str]],
        ) -> None:
            user_id = self._user_id(conn)
            sessions = SessionRepository(conn)
            tabs = TabRepository(conn)
            if method == "GET" and not parts:
                limit = _int_param(params, "limit", 20, minimum=1, maximum=100)
                offset = _int_param(params, "offset", 0, minimum=0)
                mode = (params.get("mode") or [None])[0]
                if mode is not None and mode not in {"strict", "loose"}:
                    raise RequestError(400, "mode must be strict or loose")
                rows = sessions.list(
                    user_id,
                    limit=limit or 20,
                    offset=offset or 0,
                    mode=mode,
                    from_=_iso_param(params, "from"),
                    to=_iso_param(params, "to"),
                )
                _ok(
                    self,
                    {"sessions": rows, "total": len(rows), "limit": limit, "offset": offset},
                )
                return
            if method == "GET" and parts == ["stats", "overview"]:
                _ok(self, sessions.stats(user_id))
                return
            if method == "POST" and parts == ["restore"]:
                body = _parse_json_body(self._raw_body)
                session_id = _session_id(str(body.get("sessionId") or ""))
                session = sessions.get(user_id, session_id)
                if session is None:
                    raise RequestError(404, "Session not found")
                tab_rows = tabs.list(session_id)
                if not tab_rows:
                    raise RequestError(404, "No tabs found for this session")
                with conn:
                    sessions.touch(session_id, last_active_at=now_iso())
                logger.info("session restore requested: %s (%s tabs)", session_id, len(tab_rows))
                _ok(
                    self,
                    {
                        "session": {
                            "id": session_id,
                            "title": session["title"],
                            "tab_count": len(tab_rows),
                        },
                        "urls": [row["url"] for row in tab_rows],
                        "message": "Session restore initiated",
                    },
                )
                return
            if len(parts) == 1 and method == "GET":
                session = sessions.get(user_id, _session_id(parts[0]))
                if session is None:
                    raise RequestError(404, "Session not found")
                _ok(self, session)
                return
            if len(parts) == 2 and parts[1] == "tabs" and method == "GET":
                session_id = _session_id(parts[0])
                if sessions.get(user_id, session_id) is None:
                    raise RequestError(404, "Session not found")
                tab_rows = tabs.list(session_id)
                _ok(self, {"tabs": tab_rows, "session_id": session_id, "total": len(tab_rows)})
                return
            if len(parts) == 1 and method == "DELETE":
                session_id = _session_id(parts[0])
                with conn:
                    deleted = sessions.delete(user_id, session_id)
                    if deleted is not None:
                        VectorRepository(conn).delete_for_owner("session", session_id)
                if deleted is None:
                    raise RequestError(404, "Session not found")
                logger.info("session deleted: %s", session_id)
                _ok(
                    self,
                    {"message": "Session deleted successfully", "deleted_session": deleted},
                )
                return
            raise RequestError(404, "not_found")

    return ApiHandler


def build_server(
    cfg: TabmemConfig,
    *,
    host: str | None = None,
    port: int | None = None,
    db_path: Path | None = None,
) -> ThreadingHTTPServer:
    bind_host = host or cfg.server_host
    bind_port = cfg.server_port if port is None else port
    handler = build_api_handler(cfg, db_path)

    class Server(ThreadingHTTPServer):
        address_family = socket.AF_INET6 if ":" in bind_host else socket.AF_INET
        daemon_threads = True

        def server_bind(self) -> None:
            if self.address_family == socket.AF_INET6:
                with contextlib.suppress(OSError):
                    self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            super().server_bind()

    return Server((bind_host, bind_port), handler)


def run_server(
    cfg: TabmemConfig,
    *,
    host: str | None = None,
    port: int | None = None,
    db_path: Path | None = None,
    stop_event: threading.Event | None = None,
) -> None:
    server = build_server(cfg, host=host, port=port, db_path=db_path)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info("ingestion server listening on %s:%s", *server.server_address[:2])
    stop = stop_event or threading.Event()
    try:
        stop.wait()
    finally:
        server.shutdown()
        server.server_close()
