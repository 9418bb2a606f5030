from __future__ import annotations

import datetime as dt
from collections.abc import Iterator, Sequence
from typing import TypeVar

T = TypeVar("T")


def to_iso(value: dt.datetime) -> str:
    # Fixed-width UTC timestamps keep string ordering equal to time ordering in SQLite.
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.UTC)
    return value.astimezone(dt.UTC).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(dt.datetime.now(dt.UTC))


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    if size <= 0:
        raise ValueError("size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])
