from __future__ import annotations

import datetime as dt
from dataclasses import dataclass


@dataclass(frozen=True)
class TabSnapshot:
    tab_id: int
    title: str
    url: str
    last_seen: dt.datetime


@dataclass(frozen=True)
class StoreStats:
    pending: int
    evicted: int
    tab_snapshots: int
    last_sync: dt.datetime | None
    authenticated: bool
