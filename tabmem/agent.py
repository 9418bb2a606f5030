from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .capture import TabActivityObserver
from .config import TabmemConfig, apply_local_overrides, load_config
from .errors import AuthRequiredError
from .store import LocalEventStore
from .sync.api_client import ApiClient
from .sync.daemon import SyncScheduler
from .sync.engine import SyncEngine, SyncReport

logger = logging.getLogger(__name__)


class ClientAgent:
    """Everything the client side needs, wired from one config.

    Each agent owns its store, API client, sync engine, observer and
    scheduler; nothing is shared through module globals.
    """

    def __init__(
        self,
        cfg: TabmemConfig | None = None,
        *,
        db_path: Path | str | None = None,
        on_sign_in_required: Callable[[SyncReport], None] | None = None,
        log_path: Path | None = None,
    ) -> None:
        base = cfg or load_config()
        self.store = LocalEventStore(db_path or base.db_path, capacity=base.max_local_events)
        self.cfg = apply_local_overrides(base, self.store.get_config_overrides())
        if self.cfg.max_local_events > 0:
            self.store.capacity = self.cfg.max_local_events
        self.client = ApiClient(
            self.cfg.api_base_url, store=self.store, timeout_s=float(self.cfg.sync_timeout_s)
        )
        self._on_sign_in_required = on_sign_in_required
        self.sign_in_required = threading.Event()
        self.engine = SyncEngine(
            self.store,
            self.client,
            batch_size=self.cfg.sync_batch_size,
            threshold=self.cfg.sync_threshold,
            on_auth_required=self._auth_required,
        )
        self.observer = TabActivityObserver(self.store, self.engine)
        self.scheduler = SyncScheduler(
            self.engine, interval_s=self.cfg.sync_interval_s, log_path=log_path
        )

    def _auth_required(self, report: SyncReport) -> None:
        # One attempt to renew the access token before asking for a sign-in.
        if self.store.get_refresh_token():
            try:
                self.client.refresh()
            except AuthRequiredError:
                logger.info("refresh token rejected; sign-in required")
            except Exception as exc:
                logger.warning("token refresh failed", exc_info=exc)
            else:
                return
        self.sign_in_required.set()
        if self._on_sign_in_required is not None:
            self._on_sign_in_required(report)

    def login(self, email: str, password: str) -> dict[str, Any]:
        data = self.client.login(email, password)
        self.sign_in_required.clear()
        return data

    def register(self, email: str, password: str) -> dict[str, Any]:
        data = self.client.register(email, password)
        self.sign_in_required.clear()
        return data

    def logout(self) -> None:
        self.client.logout()

    def sync_now(self) -> SyncReport:
        return self.engine.sync()

    def start(self) -> None:
        self.scheduler.start()

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        self.scheduler.run(stop_event)

    def close(self) -> None:
        self.scheduler.stop(timeout=5)
        self.store.close()

    def __enter__(self) -> ClientAgent:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
