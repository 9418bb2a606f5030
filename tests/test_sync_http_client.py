from __future__ import annotations

import pytest

from tabmem.errors import TransientSyncError
from tabmem.sync import http_client


class _ConnRequestFails:
    def __init__(self, *args, **kwargs) -> None:
        self.closed = False

    def request(self, method, path, body=None, headers=None) -> None:
        raise ConnectionRefusedError("refused")

    def close(self) -> None:
        self.closed = True


class _Resp:
    def __init__(self, status: int, raw: bytes) -> None:
        self.status = status
        self.raw = raw

    def read(self) -> bytes:
        return self.raw


class _ConnReplies:
    def __init__(self, status: int, raw: bytes) -> None:
        self.closed = False
        self.sent: dict[str, object] = {}
        self._resp = _Resp(status, raw)

    def request(self, method, path, body=None, headers=None) -> None:
        self.sent = {"method": method, "path": path, "body": body, "headers": headers}

    def getresponse(self):
        return self._resp

    def close(self) -> None:
        self.closed = True


def test_request_json_wraps_connection_errors_and_closes(monkeypatch) -> None:
    conn = _ConnRequestFails()
    monkeypatch.setattr(http_client, "HTTPConnection", lambda *a, **k: conn)

    with pytest.raises(TransientSyncError, match="refused"):
        http_client.request_json("GET", "http://127.0.0.1:8787/health")

    assert conn.closed is True


def test_request_json_sends_body_and_parses_reply(monkeypatch) -> None:
    conn = _ConnReplies(200, b'{"success": true, "data": {"synced_count": 2}}')
    monkeypatch.setattr(http_client, "HTTPConnection", lambda *a, **k: conn)

    status, payload = http_client.request_json(
        "POST",
        "http://127.0.0.1:8787/events/batch?x=1",
        headers={"Authorization": "Bearer t"},
        body={"events": []},
    )

    assert status == 200
    assert payload == {"success": True, "data": {"synced_count": 2}}
    assert conn.sent["path"] == "/events/batch?x=1"
    headers = conn.sent["headers"]
    assert isinstance(headers, dict)
    assert headers["Content-Type"] == "application/json"
    assert headers["Authorization"] == "Bearer t"
    assert conn.closed is True


def test_request_json_reports_non_json_bodies(monkeypatch) -> None:
    conn = _ConnReplies(502, b"<html>Bad Gateway</html>")
    monkeypatch.setattr(http_client, "HTTPConnection", lambda *a, **k: conn)

    status, payload = http_client.request_json("GET", "http://127.0.0.1:8787/sessions")

    assert status == 502
    assert payload == {"error": "non_json_response: <html>Bad Gateway</html>"}


def test_build_url_drops_none_params() -> None:
    url = http_client.build_url("127.0.0.1:8787/", "/sessions", {"limit": 5, "mode": None})

    assert url == "http://127.0.0.1:8787/sessions?limit=5"
