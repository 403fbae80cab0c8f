from __future__ import annotations

import logging
import threading
from typing import Optional

from weekplan.config_manager import ConfigManager
from weekplan.models import FeedsConfig
from weekplan.sync_engine import FeedSyncEngine

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 300


class SyncScheduler:
    def __init__(self, sync_engine: FeedSyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="weekplan-feed-sync", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def _interval_seconds(self) -> int:
        try:
            config = self.config_manager.load()
        except Exception:
            logger.exception("Could not read sync interval; using the default")
            return FeedsConfig().interval_seconds
        return max(MIN_INTERVAL_SECONDS, int(config.feeds.interval_seconds))

    def _has_feeds(self) -> bool:
        try:
            return bool(self.config_manager.load().feeds.urls)
        except Exception:
            # Let the sync run record the config failure.
            logger.exception("Could not read feed list before startup sync")
            return True

    def _run(self, trigger: str) -> None:
        try:
            self.sync_engine.run_once(trigger=trigger)
        except Exception:
            logger.exception("Feed sync (%s) raised; keeping the schedule loop alive", trigger)

    def _loop(self) -> None:
        if self._has_feeds():
            self._run("startup")
        else:
            logger.info("No calendar feeds configured; skipping startup sync")

        while not self._stop_event.wait(timeout=self._interval_seconds()):
            self._run("scheduled")
