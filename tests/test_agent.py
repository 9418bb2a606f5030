from __future__ import annotations

import threading
from pathlib import Path

import pytest

from tabmem.agent import ClientAgent
from tabmem.config import TabmemConfig
from tabmem.errors import AuthRequiredError
from tabmem.server.api import build_server
from tabmem.sync.engine import SYNC_NO_AUTH, SYNC_OK


@pytest.fixture
def api_url(tmp_path: Path):
    cfg = TabmemConfig(jwt_secret="access-secret", refresh_secret="refresh-secret")
    httpd = build_server(cfg, host="127.0.0.1", port=0, db_path=tmp_path / "server.sqlite")
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{httpd.server_address[1]}"
    finally:
        httpd.shutdown()
        httpd.server_close()


@pytest.fixture
def agent(api_url: str, tmp_path: Path):
    cfg = TabmemConfig(api_base_url=api_url, sync_threshold=0)
    agent = ClientAgent(cfg, db_path=tmp_path / "agent.sqlite", log_path=tmp_path / "agent.log")
    try:
        yield agent
    finally:
        agent.close()


def _browse(agent: ClientAgent) -> None:
    agent.observer.handle_tab_event(
        {
            "window_id": 1,
            "tab_id": 1,
            "title": "Rust book",
            "url": "https://doc.rust-lang.org/book/",
        },
        "open",
    )
    agent.observer.handle_tab_event(
        {"window_id": 1, "tab_id": 2, "title": "Rust std", "url": "https://doc.rust-lang.org/std/"},
        "open",
    )
    agent.observer.handle_tab_close(2, 1)


def test_capture_sync_and_list_sessions(agent: ClientAgent) -> None:
    _browse(agent)
    assert agent.sync_now().status == SYNC_NO_AUTH

    agent.register("grace@example.com", "hopper1906")
    report = agent.sync_now()

    assert report.status == SYNC_OK
    assert report.synced == 3
    assert agent.store.pending_count() == 0
    sessions = agent.client.list_sessions()
    assert [session["title"] for session in sessions] == ["Rust book"]
    tabs = agent.client.get_session_tabs(sessions[0]["id"])
    assert [tab["url"] for tab in tabs] == [
        "https://doc.rust-lang.org/book/",
        "https://doc.rust-lang.org/std/",
    ]


def test_expired_access_token_is_refreshed(agent: ClientAgent) -> None:
    agent.register("grace@example.com", "hopper1906")
    refresh = agent.store.get_refresh_token()
    agent.store.set_auth_tokens("stale.access.token", refresh)
    _browse(agent)

    first = agent.sync_now()

    assert first.auth_required is True
    assert not agent.sign_in_required.is_set()
    assert agent.store.get_auth_token() != "stale.access.token"
    assert agent.sync_now().status == SYNC_OK


def test_rejected_refresh_asks_for_sign_in(agent: ClientAgent) -> None:
    seen = []
    agent._on_sign_in_required = seen.append
    agent.store.set_auth_tokens("stale.access.token", "stale.refresh.token")
    _browse(agent)

    report = agent.sync_now()

    assert report.auth_required is True
    assert agent.sign_in_required.is_set()
    assert seen == [report]
    assert agent.store.pending_count() == 3


def test_login_with_wrong_password_raises(agent: ClientAgent) -> None:
    agent.register("grace@example.com", "hopper1906")
    with pytest.raises(AuthRequiredError):
        agent.login("grace@example.com", "wrong-password")


def test_stored_overrides_shape_the_agent(tmp_path: Path) -> None:
    db_path = tmp_path / "agent.sqlite"
    with ClientAgent(TabmemConfig(), db_path=db_path) as first:
        first.store.update_config_overrides({"sync_batch_size": 20, "max_local_events": 5})

    with ClientAgent(TabmemConfig(), db_path=db_path) as agent:
        assert agent.cfg.sync_batch_size == 20
        assert agent.engine.batch_size == 20
        assert agent.store.capacity == 5
        assert agent.engine.queue_capacity == 5
