from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from weekplan.models import (
    SCHEMA_VERSION,
    ScheduleStore,
    empty_schedule,
    max_item_id,
    schedule_from_dict,
    schedule_to_dict,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schedule_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    version TEXT NOT NULL,
    schedule_json TEXT NOT NULL,
    next_task_id INTEGER NOT NULL,
    saved_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_at TEXT NOT NULL,
    trigger TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    duration_ms INTEGER NOT NULL,
    feeds_synced INTEGER NOT NULL,
    feeds_failed INTEGER NOT NULL,
    feed_errors_json TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS app_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    changed_at TEXT NOT NULL
);
"""


def _timestamp() -> str:
    return datetime.now().isoformat(timespec="seconds")


class StateStore:
    """SQLite home of the schedule, the id counter and feed sync history."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        with self._session() as conn:
            conn.executescript(SCHEMA_SQL)

    @property
    def lock(self) -> threading.RLock:
        """Held by callers around a load/modify/save cycle of the schedule."""
        return self._lock

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            try:
                with conn:
                    yield conn
            finally:
                conn.close()

    def load_schedule(self) -> tuple[ScheduleStore, int]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT version, schedule_json, next_task_id FROM schedule_state WHERE id = 1"
            ).fetchone()
        if row is None:
            return empty_schedule(), 1
        try:
            raw = json.loads(row["schedule_json"] or "{}")
        except ValueError:
            logger.warning("Stored schedule is not valid JSON; starting empty")
            raw = {}
        if row["version"] != SCHEMA_VERSION:
            logger.info("Migrating stored schedule from version %s to %s", row["version"], SCHEMA_VERSION)
        store = schedule_from_dict(raw)
        # Never hand out an id that is already in use.
        next_id = max(int(row["next_task_id"] or 1), max_item_id(store) + 1)
        return store, next_id

    def save_schedule(self, store: ScheduleStore, next_id: int) -> bool:
        """Swap in the whole schedule and the id counter in one transaction."""
        payload = json.dumps(schedule_to_dict(store), ensure_ascii=False)
        try:
            with self._session() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO schedule_state(id, version, schedule_json, next_task_id, saved_at) "
                    "VALUES (1, ?, ?, ?, ?)",
                    (SCHEMA_VERSION, payload, int(next_id), _timestamp()),
                )
        except sqlite3.Error:
            logger.exception("Failed to save schedule")
            return False
        return True

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        feeds_synced: int,
        feeds_failed: int,
        feed_errors: dict[str, str] | None = None,
    ) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                "INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, feeds_synced, feeds_failed, "
                "feed_errors_json) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    _timestamp(),
                    trigger,
                    status,
                    message,
                    int(duration_ms),
                    int(feeds_synced),
                    int(feeds_failed),
                    json.dumps(feed_errors or {}, ensure_ascii=False),
                ),
            )
            return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?",
                (max(1, int(limit)),),
            ).fetchall()
        runs: list[dict[str, Any]] = []
        for row in rows:
            run = dict(row)
            run["feed_errors"] = json.loads(run.pop("feed_errors_json") or "{}")
            runs.append(run)
        return runs

    def set_meta(self, key: str, value: str) -> None:
        with self._session() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO app_meta(key, value, changed_at) VALUES (?, ?, ?)",
                (str(key), str(value), _timestamp()),
            )

    def get_meta(self, key: str) -> str | None:
        with self._session() as conn:
            row = conn.execute("SELECT value FROM app_meta WHERE key = ?", (str(key),)).fetchone()
        return None if row is None else str(row["value"])
