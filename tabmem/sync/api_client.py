from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from ..errors import (
    ApiRequestError,
    AuthRequiredError,
    BatchRejectedError,
    TransientSyncError,
)
from ..events import Event
from . import http_client

if TYPE_CHECKING:
    from ..store import LocalEventStore

MAX_BATCH_EVENTS = 100


def _error_detail(payload: dict[str, Any] | None, status: int) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str) and error:
            return error
    return f"HTTP {status}"


class ApiClient:
    """Client for the ingestion API.

    Credentials live in the LocalEventStore when one is given, so a login
    performed through one client is visible to the Sync Engine that shares
    the store. Without a store the token is held in memory only.
    """

    def __init__(
        self,
        base_url: str,
        *,
        store: LocalEventStore | None = None,
        token: str | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = http_client.build_base_url(base_url)
        self.store = store
        self.timeout_s = timeout_s
        self._token = token

    @property
    def token(self) -> str | None:
        if self.store is not None:
            return self.store.get_auth_token()
        return self._token

    def has_credentials(self) -> bool:
        return bool(self.token)

    def _save_tokens(self, access_token: str | None, refresh_token: str | None = None) -> None:
        if self.store is not None:
            self.store.set_auth_tokens(access_token, refresh_token)
        self._token = access_token

    def _headers(self, *, auth: bool) -> dict[str, str]:
        headers: dict[str, str] = {}
        token = self.token if auth else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        auth: bool = True,
        rejected_error: type[ApiRequestError] = ApiRequestError,
    ) -> dict[str, Any]:
        url = http_client.build_url(self.base_url, path, params)
        status, payload = http_client.request_json(
            method,
            url,
            headers=self._headers(auth=auth),
            body=body,
            timeout_s=self.timeout_s,
        )
        detail = _error_detail(payload, status)
        if status in {401, 403}:
            raise AuthRequiredError(detail, status=status)
        if 400 <= status < 500:
            raise rejected_error(detail, status=status)
        if status >= 500 or payload is None:
            raise TransientSyncError(detail, status=status)
        if payload.get("success") is False:
            raise rejected_error(detail, status=status)
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    def login(self, email: str, password: str) -> dict[str, Any]:
        data = self._request(
            "POST", "/auth/login", body={"email": email, "password": password}, auth=False
        )
        self._save_tokens(data.get("access_token"), data.get("refresh_token"))
        return data

    def register(self, email: str, password: str) -> dict[str, Any]:
        data = self._request(
            "POST", "/auth/register", body={"email": email, "password": password}, auth=False
        )
        self._save_tokens(data.get("access_token"), data.get("refresh_token"))
        return data

    def refresh(self) -> str:
        refresh_token = self.store.get_refresh_token() if self.store is not None else None
        if not refresh_token:
            raise AuthRequiredError("no refresh token")
        data = self._request(
            "POST", "/auth/refresh", body={"refresh_token": refresh_token}, auth=False
        )
        access_token = str(data.get("access_token") or "")
        if not access_token:
            raise AuthRequiredError("refresh returned no access token")
        self._save_tokens(access_token, refresh_token)
        return access_token

    def logout(self) -> None:
        self._save_tokens(None, None)

    def send_batch(self, events: Sequence[Event]) -> int:
        if not events:
            return 0
        if len(events) > MAX_BATCH_EVENTS:
            raise ValueError(f"batch exceeds {MAX_BATCH_EVENTS} events")
        data = self._request(
            "POST",
            "/events/batch",
            body={"events": [event.to_payload() for event in events]},
            rejected_error=BatchRejectedError,
        )
        synced = data.get("synced_count")
        return int(synced) if isinstance(synced, int) else len(events)

    def list_sessions(
        self,
        *,
        limit: int = 20,
        offset: int = 0,
        mode: str | None = None,
        from_: str | None = None,
        to: str | None = None,
    ) -> list[dict[str, Any]]:
        data = self._request(
            "GET",
            "/sessions",
            params={"limit": limit, "offset": offset, "mode": mode, "from": from_, "to": to},
        )
        sessions = data.get("sessions")
        return sessions if isinstance(sessions, list) else []

    def get_session_tabs(self, session_id: str) -> list[dict[str, Any]]:
        data = self._request("GET", f"/sessions/{session_id}/tabs")
        tabs = data.get("tabs")
        return tabs if isinstance(tabs, list) else []

    def restore_session(self, session_id: str) -> dict[str, Any]:
        return self._request("POST", "/sessions/restore", body={"sessionId": session_id})

    def delete_session(self, session_id: str) -> dict[str, Any]:
        return self._request("DELETE", f"/sessions/{session_id}")
