from __future__ import annotations

import math

import pytest

from tabmem.config import TabmemConfig
from tabmem.errors import ProviderError, QuotaExceededError, RateLimitError
from tabmem.providers import (
    MockEmbeddingProvider,
    MockSummaryProvider,
    _translate_error,
    get_embedding_provider,
    get_summary_provider,
    parse_summary_reply,
)


def test_mock_embeddings_are_unit_length_and_deterministic() -> None:
    provider = MockEmbeddingProvider(dim=32)

    first, second = provider.embed(["Python docs", "Python docs"])

    assert len(first) == 32
    assert first == second
    assert math.sqrt(sum(value * value for value in first)) == pytest.approx(1.0)
    assert provider.embed([""]) == [[0.0] * 32]


def test_mock_summary_uses_topic_hints_and_repeated_words() -> None:
    result = MockSummaryProvider().summarize(
        [
            "kunickiaj/opencode-mem - GitHub",
            "Pull requests - GitHub",
            "python - How to sort a dict - Stack Overflow",
        ],
        time_spent_s=3600,
    )

    assert result.summary == (
        "Browsing session focused on development and 1 other domain (extended session)"
    )
    assert result.tags[:2] == ["development", "programming"]
    assert "github" in result.tags
    assert 0.3 <= result.confidence <= 0.9


def test_mock_summary_without_signals() -> None:
    provider = MockSummaryProvider()

    assert provider.summarize([]).summary == "Empty session"
    single = provider.summarize(["Quarterly planning"])
    assert single.summary == "General browsing session with 1 tab"
    assert single.confidence == pytest.approx(0.3)


def test_parse_summary_reply_handles_fences_and_bad_json() -> None:
    result = parse_summary_reply(
        '```json\n{"summary": "Reading docs", "tags": ["python"], "confidence": 2}\n```',
        provider="openai",
    )

    assert result.summary == "Reading docs"
    assert result.tags == ["python"]
    assert result.confidence == 1.0
    with pytest.raises(ProviderError, match="not json"):
        parse_summary_reply("sure! here it is", provider="openai")
    with pytest.raises(ProviderError, match="no summary"):
        parse_summary_reply('{"tags": []}', provider="openai")


class _ApiError(Exception):
    def __init__(self, message: str, status_code: int, headers: dict[str, str] | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = type("Resp", (), {"headers": headers or {}})()


def test_translate_error_maps_rate_limits() -> None:
    quota = _translate_error(
        _ApiError("insufficient_quota", 429), provider="openai", operation="embed"
    )
    limited = _translate_error(
        _ApiError("slow down", 429, {"retry-after": "12"}), provider="openai", operation="embed"
    )
    other = _translate_error(_ApiError("boom", 500), provider="openai", operation="embed")

    assert isinstance(quota, QuotaExceededError)
    assert isinstance(limited, RateLimitError)
    assert limited.retry_after == 12.0
    assert type(other) is ProviderError
    assert "openai embed: boom" in str(other)


def test_provider_factories() -> None:
    assert isinstance(get_embedding_provider(TabmemConfig()), MockEmbeddingProvider)
    assert isinstance(get_summary_provider(TabmemConfig()), MockSummaryProvider)
    with pytest.raises(ProviderError):
        get_summary_provider(TabmemConfig(summary_provider="carrier-pigeon"))


def test_openai_provider_requires_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ProviderError, match="missing api key"):
        get_summary_provider(TabmemConfig(summary_provider="openai"))
