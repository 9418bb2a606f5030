from __future__ import annotations

import datetime as dt
import logging
import threading
import traceback
from pathlib import Path

from .engine import SYNC_FAILED, SyncEngine, SyncReport

DEFAULT_SYNC_INTERVAL_S = 300

logger = logging.getLogger(__name__)


def default_log_path() -> Path:
    return Path.home() / ".tabmem" / "agent.log"


class SyncScheduler:
    """Run ``engine.sync()`` every ``interval_s`` seconds until stopped."""

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval_s: float = DEFAULT_SYNC_INTERVAL_S,
        log_path: Path | None = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.engine = engine
        self.interval_s = interval_s
        self.log_path = log_path
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> SyncReport:
        store = self.engine.store
        try:
            report = self.engine.sync()
        except Exception as exc:
            tb = traceback.format_exc()
            logger.warning("sync tick failed", exc_info=exc)
            store.set_sync_daemon_error(str(exc), tb)
            _append_agent_log(tb, self.log_path)
            return SyncReport(status=SYNC_FAILED, error=str(exc))
        if report.error and not report.ok:
            store.set_sync_daemon_error(report.error, "")
        else:
            store.set_sync_daemon_ok()
        return report

    def run(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or self._stop
        while not stop.wait(self.interval_s):
            self.tick()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="tabmem-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


def _append_agent_log(message: str, log_path: Path | None = None) -> None:
    try:
        path = log_path or default_log_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        ts = dt.datetime.now(dt.UTC).isoformat()
        with path.open("a", encoding="utf-8", errors="ignore") as handle:
            handle.write(f"\n[{ts}]\n{message}\n")
    except OSError:
        return
