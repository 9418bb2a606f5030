from __future__ import annotations

from .api_client import ApiClient
from .daemon import SyncScheduler
from .engine import SyncEngine, SyncReport

__all__ = ["ApiClient", "SyncEngine", "SyncReport", "SyncScheduler"]
