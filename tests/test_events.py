from __future__ import annotations

import datetime as dt

import pytest

from tabmem.errors import EventValidationError
from tabmem.events import (
    CLOSED_TAB_TITLE,
    DEFAULT_TITLE,
    generate_local_id,
    parse_timestamp,
    validate,
)
from tabmem.redaction import REDACTION_MARKER

NOW = dt.datetime(2026, 3, 2, 9, 30, tzinfo=dt.UTC)


def test_validate_accepts_camel_case_keys() -> None:
    event = validate(
        {"type": "open", "windowId": 4, "tabId": 17, "title": "Docs", "url": "https://a.dev/x"},
        now=NOW,
    )

    assert (event.window_id, event.tab_id, event.type) == (4, 17, "open")
    assert event.ts == NOW
    assert event.local_id == ""


def test_validate_redacts_sensitive_query_values() -> None:
    event = validate(
        {
            "type": "update",
            "window_id": 1,
            "tab_id": 2,
            "title": "Callback",
            "url": "https://app.example.com/cb?code=abc123&state=ok",
        },
        now=NOW,
    )

    assert event.url == f"https://app.example.com/cb?code={REDACTION_MARKER}&state=ok"


@pytest.mark.parametrize(
    "url",
    ["chrome://settings", "about:blank", "chrome-extension://abc/popup.html", "javascript:void(0)"],
)
def test_validate_drops_internal_urls(url: str) -> None:
    with pytest.raises(EventValidationError, match="ignored url"):
        validate({"type": "open", "window_id": 1, "tab_id": 1, "title": "x", "url": url})


def test_validate_rejects_unknown_type_and_overlong_url() -> None:
    with pytest.raises(EventValidationError, match="unknown event type"):
        validate({"type": "navigate", "window_id": 1, "tab_id": 1, "url": "https://a.dev"})
    with pytest.raises(EventValidationError, match="url too long"):
        validate(
            {
                "type": "open",
                "window_id": 1,
                "tab_id": 1,
                "url": "https://a.dev/" + "x" * 2100,
            }
        )


def test_validate_fills_default_titles() -> None:
    opened = validate({"type": "open", "window_id": 1, "tab_id": 1, "url": "https://a.dev"})
    closed = validate({"type": "close", "window_id": 1, "tab_id": 1, "url": ""})

    assert opened.title == DEFAULT_TITLE
    assert closed.title == CLOSED_TAB_TITLE
    assert closed.url == ""


def test_validate_truncates_long_titles() -> None:
    event = validate(
        {"type": "open", "window_id": 1, "tab_id": 1, "title": "t" * 1500, "url": "https://a.dev"}
    )

    assert len(event.title) == 1000


def test_parse_timestamp_accepts_epoch_millis_and_z_suffix() -> None:
    assert parse_timestamp(1772443800000) == NOW
    assert parse_timestamp("2026-03-02T09:30:00Z") == NOW
    with pytest.raises(EventValidationError):
        parse_timestamp(True)


def test_payload_omits_local_and_user_ids() -> None:
    event = validate(
        {
            "type": "activate",
            "window_id": 3,
            "tab_id": 9,
            "title": "Inbox",
            "url": "https://mail.google.com/",
            "user_id": "u1",
            "local_id": "local_1_abc",
        },
        now=NOW,
    )

    payload = event.to_payload()

    assert set(payload) == {"window_id", "tab_id", "type", "title", "url", "ts"}
    assert payload["ts"] == "2026-03-02T09:30:00.000000+00:00"


def test_generate_local_id_shape() -> None:
    first = generate_local_id()
    second = generate_local_id()

    assert first.startswith("local_")
    assert len(first.rsplit("_", 1)[1]) == 9
    assert first != second
