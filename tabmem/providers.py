from __future__ import annotations

import json
import math
import os
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Protocol

from .config import TabmemConfig
from .errors import ProviderError, QuotaExceededError, RateLimitError

MOCK_EMBEDDING_DIM = 384
DEFAULT_OPENAI_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_FASTEMBED_MODEL = "BAAI/bge-small-en-v1.5"
DEFAULT_OPENAI_SUMMARY_MODEL = "gpt-4o-mini"
DEFAULT_ANTHROPIC_SUMMARY_MODEL = "claude-3-5-haiku-latest"
EXTENDED_SESSION_S = 1800
MAX_TAGS = 5

_STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
        "by", "from", "up", "about", "into", "through", "during", "before", "after",
        "above", "below", "between", "among", "under", "over", "is", "are", "was", "were",
        "be", "been", "being", "have", "has", "had", "do", "does", "did", "will", "would",
        "should", "could", "can", "may", "might", "must", "this", "that", "these", "those",
    }
)  # fmt: skip

_TOPIC_HINTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("github",), "development"),
    (("stackoverflow", "stack overflow"), "programming"),
    (("youtube",), "videos"),
    (("gmail", "email"), "email"),
    (("docs", "documentation"), "documentation"),
    (("news", "article"), "news"),
    (("shop", "buy", "cart"), "shopping"),
    (("twitter", "facebook", "instagram"), "social"),
)


@dataclass(frozen=True)
class SummaryResult:
    summary: str
    tags: list[str] = field(default_factory=list)
    confidence: float = 0.0


class EmbeddingProvider(Protocol):
    name: str

    def embed(self, texts: list[str]) -> list[list[float]]: ...

    def dimension(self) -> int: ...


class SummaryProvider(Protocol):
    name: str

    def summarize(
        self,
        titles: list[str],
        *,
        time_spent_s: float | None = None,
        previous_summary: str | None = None,
    ) -> SummaryResult: ...


def _translate_error(exc: Exception, *, provider: str, operation: str) -> ProviderError:
    status = getattr(exc, "status_code", None)
    if status == 429:
        if "insufficient_quota" in str(exc):
            return QuotaExceededError(provider, operation)
        retry_after = None
        response = getattr(exc, "response", None)
        headers = getattr(response, "headers", None)
        if headers is not None:
            try:
                retry_after = float(headers.get("retry-after") or 0) or None
            except (TypeError, ValueError):
                retry_after = None
        return RateLimitError(provider, operation, retry_after)
    return ProviderError(
        str(exc) or exc.__class__.__name__, provider=provider, operation=operation, cause=exc
    )


class MockEmbeddingProvider:
    """Deterministic character-hash embeddings for tests and offline use."""

    name = "mock-embedding"

    def __init__(self, dim: int = MOCK_EMBEDDING_DIM) -> None:
        self.dim = dim

    def dimension(self) -> int:
        return self.dim

    def embed(self, texts: list[str]) -> list[list[float]]:
        return [self._embed_one(text) for text in texts]

    def _embed_one(self, text: str) -> list[float]:
        vector = [0.0] * self.dim
        for i, char in enumerate(text):
            code = ord(char)
            vector[(code * (i + 1)) % self.dim] += math.sin(code * 0.1) * 0.1
        magnitude = math.sqrt(sum(value * value for value in vector))
        if magnitude > 0:
            vector = [value / magnitude for value in vector]
        return vector


class OpenAIEmbeddingProvider:
    name = "openai-embedding"

    def __init__(self, *, api_key: str | None = None, model: str | None = None) -> None:
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ProviderError("missing api key", provider="openai", operation="init")
        from openai import OpenAI

        self.model = model or DEFAULT_OPENAI_EMBEDDING_MODEL
        self.client = OpenAI(api_key=api_key)
        self._dim: int | None = None

    def dimension(self) -> int:
        if self._dim is None:
            self._dim = len(self.embed(["dimension probe"])[0])
        return self._dim

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            resp = self.client.embeddings.create(model=self.model, input=texts)
        except Exception as exc:
            raise _translate_error(exc, provider="openai", operation="embed") from exc
        vectors = [list(item.embedding) for item in resp.data]
        if vectors:
            self._dim = len(vectors[0])
        return vectors


class FastEmbedProvider:
    """Local ONNX embeddings through fastembed; no network or api key."""

    name = "fastembed"

    def __init__(self, *, model: str | None = None) -> None:
        try:
            from fastembed import TextEmbedding
        except Exception as exc:  # pragma: no cover
            raise ProviderError(
                "fastembed is required", provider="fastembed", operation="init", cause=exc
            ) from exc
        self.model = model or DEFAULT_FASTEMBED_MODEL
        self._embedder = TextEmbedding(model_name=self.model)
        self._dim: int | None = None

    def dimension(self) -> int:
        if self._dim is None:
            self._dim = len(self.embed(["dimension probe"])[0])
        return self._dim

    def embed(self, texts: list[str]) -> list[list[float]]:
        vectors = [[float(value) for value in vec] for vec in self._embedder.embed(texts)]
        if vectors:
            self._dim = len(vectors[0])
        return vectors


def _topics(titles: list[str]) -> list[str]:
    found: list[str] = []
    for title in titles:
        lowered = title.lower()
        for needles, topic in _TOPIC_HINTS:
            if topic not in found and any(needle in lowered for needle in needles):
                found.append(topic)
    return found


def _common_words(titles: list[str]) -> list[str]:
    counts: Counter[str] = Counter()
    for title in titles:
        words = re.sub(r"[^\w\s]", " ", title.lower()).split()
        counts.update(word for word in words if len(word) > 2 and word not in _STOP_WORDS)
    repeated = [(word, count) for word, count in counts.items() if count > 1]
    repeated.sort(key=lambda item: item[1], reverse=True)
    return [word for word, _ in repeated]


class MockSummaryProvider:
    """Rule-based summaries built from topic hints and repeated title words."""

    name = "mock-summary"

    def summarize(
        self,
        titles: list[str],
        *,
        time_spent_s: float | None = None,
        previous_summary: str | None = None,
    ) -> SummaryResult:
        if not titles:
            return SummaryResult(summary="Empty session", tags=[], confidence=0.0)
        topics = _topics(titles)
        words = _common_words(titles)
        tags = [*topics, *words[:3]][:MAX_TAGS]
        if topics:
            summary = f"Browsing session focused on {topics[0]}"
            others = len(topics) - 1
            if others:
                summary += f" and {others} other domain{'s' if others > 1 else ''}"
        elif words:
            summary = f"Session related to {words[0]}"
        else:
            plural = "s" if len(titles) > 1 else ""
            summary = f"General browsing session with {len(titles)} tab{plural}"
        if time_spent_s and time_spent_s > EXTENDED_SESSION_S:
            summary += " (extended session)"
        confidence = min(0.9, 0.3 + len(words) * 0.1 + len(topics) * 0.2)
        return SummaryResult(summary=summary, tags=tags, confidence=round(confidence, 4))


def _summary_prompt(
    titles: list[str], time_spent_s: float | None, previous_summary: str | None
) -> str:
    lines = [
        "Summarize this browsing session from its tab titles.",
        'Reply with JSON only: {"summary": str, "tags": [str], "confidence": 0..1}.',
        "",
        "Tab titles:",
        *[f"- {title}" for title in titles],
    ]
    if time_spent_s:
        lines.append(f"Time spent: {int(time_spent_s // 60)} minutes")
    if previous_summary:
        lines.append(f"Previous summary: {previous_summary}")
    return "\n".join(lines)


def parse_summary_reply(raw: str | None, *, provider: str) -> SummaryResult:
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.startswith("json"):
            text = text[4:]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProviderError("reply was not json", provider=provider, operation="summarize") from exc
    if not isinstance(data, dict) or not str(data.get("summary") or "").strip():
        raise ProviderError("reply had no summary", provider=provider, operation="summarize")
    tags = data.get("tags")
    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    return SummaryResult(
        summary=str(data["summary"]).strip(),
        tags=[str(tag) for tag in tags][:MAX_TAGS] if isinstance(tags, list) else [],
        confidence=max(0.0, min(1.0, confidence)),
    )


class OpenAISummaryProvider:
    name = "openai-summary"

    def __init__(
        self, *, api_key: str | None = None, model: str | None = None, max_tokens: int = 300
    ) -> None:
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ProviderError("missing api key", provider="openai", operation="init")
        from openai import OpenAI

        self.model = model or DEFAULT_OPENAI_SUMMARY_MODEL
        self.max_tokens = max_tokens
        self.client = OpenAI(api_key=api_key)

    def summarize(
        self,
        titles: list[str],
        *,
        time_spent_s: float | None = None,
        previous_summary: str | None = None,
    ) -> SummaryResult:
        if not titles:
            return SummaryResult(summary="Empty session", tags=[], confidence=0.0)
        prompt = _summary_prompt(titles, time_spent_s, previous_summary)
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You summarize browsing sessions."},
                    {"role": "user", "content": prompt},
                ],
                temperature=0,
                max_tokens=self.max_tokens,
            )
        except Exception as exc:
            raise _translate_error(exc, provider="openai", operation="summarize") from exc
        return parse_summary_reply(resp.choices[0].message.content, provider="openai")


class AnthropicSummaryProvider:
    name = "anthropic-summary"

    def __init__(
        self, *, api_key: str | None = None, model: str | None = None, max_tokens: int = 300
    ) -> None:
        api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise ProviderError("missing api key", provider="anthropic", operation="init")
        import anthropic

        self.model = model or DEFAULT_ANTHROPIC_SUMMARY_MODEL
        self.max_tokens = max_tokens
        self.client = anthropic.Anthropic(api_key=api_key)

    def summarize(
        self,
        titles: list[str],
        *,
        time_spent_s: float | None = None,
        previous_summary: str | None = None,
    ) -> SummaryResult:
        if not titles:
            return SummaryResult(summary="Empty session", tags=[], confidence=0.0)
        prompt = _summary_prompt(titles, time_spent_s, previous_summary)
        try:
            resp = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as exc:
            raise _translate_error(exc, provider="anthropic", operation="summarize") from exc
        text = "".join(
            getattr(block, "text", "") for block in resp.content if block.type == "text"
        )
        return parse_summary_reply(text, provider="anthropic")


def get_embedding_provider(cfg: TabmemConfig) -> EmbeddingProvider:
    name = (cfg.embedding_provider or "mock").lower()
    if name == "mock":
        return MockEmbeddingProvider()
    if name == "openai":
        return OpenAIEmbeddingProvider(api_key=cfg.provider_api_key, model=cfg.provider_model)
    if name == "fastembed":
        return FastEmbedProvider(model=cfg.provider_model)
    raise ProviderError(f"unknown embedding provider {name!r}", provider=name, operation="init")


def get_summary_provider(cfg: TabmemConfig) -> SummaryProvider:
    name = (cfg.summary_provider or "mock").lower()
    if name == "mock":
        return MockSummaryProvider()
    if name == "openai":
        return OpenAISummaryProvider(api_key=cfg.provider_api_key, model=cfg.provider_model)
    if name == "anthropic":
        return AnthropicSummaryProvider(api_key=cfg.provider_api_key, model=cfg.provider_model)
    raise ProviderError(f"unknown summary provider {name!r}", provider=name, operation="init")
