"""Weighted session boundary detection.

A new snapshot of tab activity is compared with the current session. Each
signal that fires contributes its weight; a total at or above the promotion
threshold starts a new session, anything below merges into the current one.
Scoring is a pure function of its inputs.
"""

from __future__ import annotations

import datetime as dt
import math
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from .redaction import is_utility_tab, normalize_url

if TYPE_CHECKING:
    from .events import Event
    from .providers import EmbeddingProvider

SessionMode = Literal["strict", "loose"]
Action = Literal["new_session", "merge"]

SEMANTIC_SIMILARITY_FLOOR = 0.6
MAJORITY_SHIFT_RATIO = 0.5
IDLE_GAP = dt.timedelta(minutes=20)
PERSISTENCE_SNAPSHOTS = 2
PERSISTENCE_NEW_TABS = 3
PROMOTION_THRESHOLD = 5

SIGNAL_SEMANTIC_SHIFT = "semantic_shift"
SIGNAL_MAJORITY_SHIFT = "majority_shift"
SIGNAL_IDLE_GAP = "idle_gap"
SIGNAL_NEW_WINDOW = "new_window"
SIGNAL_PERSISTENCE = "persistence"

# Long names are the keys used by deployment configuration files.
_WEIGHT_ALIASES = {
    "semantic_shift_below_0_6": SIGNAL_SEMANTIC_SHIFT,
    "majority_shift_over_50pct": SIGNAL_MAJORITY_SHIFT,
    "idle_gap_over_20m": SIGNAL_IDLE_GAP,
    "new_window_boundary": SIGNAL_NEW_WINDOW,
    "persistence_over_2_snapshots_or_3_tabs": SIGNAL_PERSISTENCE,
}

Similarity = Callable[[Sequence[str], Sequence[str]], float]


@dataclass(frozen=True)
class ClusteringWeights:
    semantic_shift: int = 3
    majority_shift: int = 2
    idle_gap: int = 1
    new_window: int = 3
    persistence: int = 2
    threshold: int = PROMOTION_THRESHOLD

    @classmethod
    def from_config(
        cls, weights: Mapping[str, Any] | None = None, *, threshold: int | None = None
    ) -> ClusteringWeights:
        values: dict[str, int] = {}
        for key, value in (weights or {}).items():
            name = _WEIGHT_ALIASES.get(key, key)
            if name in {
                SIGNAL_SEMANTIC_SHIFT,
                SIGNAL_MAJORITY_SHIFT,
                SIGNAL_IDLE_GAP,
                SIGNAL_NEW_WINDOW,
                SIGNAL_PERSISTENCE,
                "threshold",
            }:
                values[name] = int(value)
        if threshold is not None:
            values["threshold"] = int(threshold)
        return cls(**values)

    def weight(self, signal: str) -> int:
        return int(getattr(self, signal))

    @property
    def max_total(self) -> int:
        return (
            self.semantic_shift
            + self.majority_shift
            + self.idle_gap
            + self.new_window
            + self.persistence
        )


@dataclass(frozen=True)
class TabRef:
    url: str
    title: str = ""

    @property
    def key(self) -> str:
        return normalize_url(self.url)


@dataclass(frozen=True)
class Snapshot:
    window_id: int
    taken_at: dt.datetime
    tabs: tuple[TabRef, ...] = ()

    @classmethod
    def from_events(cls, events: Sequence[Event], *, base: Iterable[TabRef] = ()) -> Snapshot:
        """Build the snapshot a run of events (one window) leaves behind.

        Starts from ``base`` (the tabs already known open in that window).
        Tabs are keyed by normalized url in first-seen order; a later title
        for the same url wins and close events drop the tab.
        """

        if not events:
            raise ValueError("snapshot needs at least one event")
        tabs: dict[str, TabRef] = {tab.key: tab for tab in base}
        for event in events:
            if not event.url:
                continue
            ref = TabRef(url=event.url, title=event.title)
            if event.type == "close":
                tabs.pop(ref.key, None)
                continue
            tabs[ref.key] = ref
        last = events[-1]
        return cls(window_id=last.window_id, taken_at=last.ts, tabs=tuple(tabs.values()))

    def clustered_tabs(self) -> tuple[TabRef, ...]:
        return tuple(tab for tab in self.tabs if not is_utility_tab(tab.url))

    def keys(self) -> set[str]:
        return {tab.key for tab in self.clustered_tabs()}

    def titles(self) -> list[str]:
        return [tab.title for tab in self.clustered_tabs() if tab.title]


@dataclass(frozen=True)
class SessionSnapshot:
    """What the scorer knows about the session a snapshot may join."""

    window_id: int | None
    last_active_at: dt.datetime
    tabs: tuple[TabRef, ...] = ()
    mode: SessionMode = "loose"
    candidate_streak: int = 0

    def keys(self) -> set[str]:
        return {tab.key for tab in self.tabs if not is_utility_tab(tab.url)}

    def titles(self) -> list[str]:
        return [tab.title for tab in self.tabs if tab.title and not is_utility_tab(tab.url)]


@dataclass(frozen=True)
class ScoreResult:
    signals: dict[str, bool]
    total: int
    similarity: float
    changed_ratio: float
    new_tabs: int
    diverging: bool
    confidence: float

    @property
    def fired(self) -> list[str]:
        return [name for name, on in self.signals.items() if on]


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: str
    score: ScoreResult | None = None
    candidate_streak: int = 0

    @property
    def new_session(self) -> bool:
        return self.action == "new_session"

    @property
    def confidence(self) -> float:
        if self.score is None:
            return 1.0
        return self.score.confidence


_TOKEN_RE = re.compile(r"[a-z0-9]+")


def _tokens(titles: Iterable[str]) -> set[str]:
    return set(_TOKEN_RE.findall(" ".join(titles).lower()))


def token_overlap(previous: Sequence[str], current: Sequence[str]) -> float:
    """Jaccard overlap of the lowercase word tokens of two title sets."""

    a = _tokens(previous)
    b = _tokens(current)
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


class EmbeddingSimilarity:
    """Cosine similarity of the mean title embedding of each side."""

    def __init__(self, provider: EmbeddingProvider) -> None:
        self.provider = provider

    def _mean(self, titles: Sequence[str]) -> list[float]:
        vectors = self.provider.embed(list(titles))
        dim = len(vectors[0])
        return [sum(vec[i] for vec in vectors) / len(vectors) for i in range(dim)]

    def __call__(self, previous: Sequence[str], current: Sequence[str]) -> float:
        if not previous and not current:
            return 1.0
        if not previous or not current:
            return 0.0
        a = self._mean(previous)
        b = self._mean(current)
        dot = sum(x * y for x, y in zip(a, b, strict=True))
        norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
        if norm == 0:
            return 0.0
        return max(0.0, min(1.0, dot / norm))


def get_similarity(name: str, *, provider: EmbeddingProvider | None = None) -> Similarity:
    if name == "token_overlap":
        return token_overlap
    if name == "embedding":
        if provider is None:
            raise ValueError("embedding similarity needs an embedding provider")
        return EmbeddingSimilarity(provider)
    raise ValueError(f"unknown similarity strategy: {name}")


def score(
    previous: SessionSnapshot,
    current: Snapshot,
    weights: ClusteringWeights | None = None,
    *,
    similarity: Similarity = token_overlap,
) -> ScoreResult:
    weights = weights or ClusteringWeights()

    sim = similarity(previous.titles(), current.titles())
    prev_keys = previous.keys()
    new_keys = current.keys()
    union = prev_keys | new_keys
    changed_ratio = len(prev_keys ^ new_keys) / len(union) if union else 0.0
    new_tabs = len(new_keys - prev_keys)

    semantic = sim < SEMANTIC_SIMILARITY_FLOOR
    majority = changed_ratio > MAJORITY_SHIFT_RATIO
    diverging = semantic or majority
    persistence = diverging and (
        previous.candidate_streak + 1 > PERSISTENCE_SNAPSHOTS or new_tabs > PERSISTENCE_NEW_TABS
    )
    signals = {
        SIGNAL_SEMANTIC_SHIFT: semantic,
        SIGNAL_MAJORITY_SHIFT: majority,
        SIGNAL_IDLE_GAP: current.taken_at - previous.last_active_at > IDLE_GAP,
        SIGNAL_NEW_WINDOW: (
            previous.window_id is not None and current.window_id != previous.window_id
        ),
        SIGNAL_PERSISTENCE: persistence,
    }
    total = sum(weights.weight(name) for name, on in signals.items() if on)
    confidence = min(1.0, total / weights.max_total) if weights.max_total > 0 else 0.0
    return ScoreResult(
        signals=signals,
        total=total,
        similarity=sim,
        changed_ratio=changed_ratio,
        new_tabs=new_tabs,
        diverging=diverging,
        confidence=confidence,
    )


def decide(
    previous: SessionSnapshot | None,
    current: Snapshot,
    weights: ClusteringWeights | None = None,
    *,
    similarity: Similarity = token_overlap,
) -> Decision:
    """Choose between opening a new session and merging into ``previous``.

    Strict sessions ignore the weighted total: the same window merges and a
    different window always starts a new session. The score is still
    computed and returned for reporting.
    """

    if previous is None:
        return Decision(action="new_session", reason="first_snapshot")
    weights = weights or ClusteringWeights()
    result = score(previous, current, weights, similarity=similarity)
    streak = previous.candidate_streak + 1 if result.diverging else 0

    if previous.mode == "strict":
        if previous.window_id is not None and current.window_id != previous.window_id:
            return Decision(action="new_session", reason="strict_window_mismatch", score=result)
        return Decision(
            action="merge", reason="strict_window_match", score=result, candidate_streak=streak
        )

    if result.total >= weights.threshold:
        return Decision(action="new_session", reason="score_threshold", score=result)
    return Decision(action="merge", reason="below_threshold", score=result, candidate_streak=streak)


def window_runs(events: Iterable[Event]) -> list[list[Event]]:
    """Split events, in time order, into runs of consecutive same-window activity."""

    runs: list[list[Event]] = []
    for event in sorted(events, key=lambda item: item.ts):
        if runs and runs[-1][-1].window_id == event.window_id:
            runs[-1].append(event)
        else:
            runs.append([event])
    return runs
