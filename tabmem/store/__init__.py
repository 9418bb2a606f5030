from __future__ import annotations

from ._store import LocalEventStore
from .pending import DEFAULT_MAX_LOCAL_EVENTS
from .types import StoreStats, TabSnapshot

__all__ = [
    "DEFAULT_MAX_LOCAL_EVENTS",
    "LocalEventStore",
    "StoreStats",
    "TabSnapshot",
]
