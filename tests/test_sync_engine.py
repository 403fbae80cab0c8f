import sqlite3
import tempfile
import unittest
from datetime import date, datetime, timedelta
from pathlib import Path
from unittest import mock

from weekplan.feed_fetcher import FeedFetchError
from weekplan.models import AppConfig, ScheduleItem, empty_schedule, iter_items
from weekplan.state_store import StateStore
from weekplan.sync_engine import FeedSyncEngine, FeedSyncError, fold_feed_batches

FEED_A = "https://calendar.example.edu/a.ics"
FEED_B = "https://calendar.example.edu/b.ics"
FEED_C = "https://calendar.example.edu/c.ics"


def _ics(uid: str, title: str, start: datetime) -> str:
    stamp = start.strftime("%Y%m%dT%H%M%S")
    end = (start + timedelta(hours=1)).strftime("%Y%m%dT%H%M%S")
    return (
        "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//weekplan tests//EN\r\n"
        f"BEGIN:VEVENT\r\nUID:{uid}\r\nSUMMARY:{title}\r\nDTSTART:{stamp}\r\nDTEND:{end}\r\nEND:VEVENT\r\n"
        "END:VCALENDAR\r\n"
    )


class FakeFetcher:
    def __init__(self, bodies: dict[str, str], failing: set[str]) -> None:
        self.bodies = bodies
        self.failing = failing
        self.calls: list[str] = []

    def fetch(self, url: str) -> str:
        self.calls.append(url)
        if url in self.failing:
            raise FeedFetchError(url, "Failed to fetch calendar (503)")
        return self.bodies[url]


class FeedSyncEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.start = datetime.now().replace(hour=14, minute=0, second=0, microsecond=0) + timedelta(days=3)
        term_end = (date.today() + timedelta(days=200)).isoformat()
        self.config = AppConfig.from_dict({"term": {"end_date": term_end}, "feeds": {"urls": [FEED_A, FEED_B, FEED_C]}})
        self.config_manager = mock.Mock()
        self.config_manager.load.return_value = self.config
        self.bodies = {
            FEED_A: _ics("a-1", "Seminar", self.start),
            FEED_B: _ics("b-1", "Club Meeting", self.start + timedelta(hours=2)),
            FEED_C: _ics("c-1", "Shift", self.start + timedelta(hours=4)),
        }

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _engine(self, failing: set[str] | None = None) -> tuple[FeedSyncEngine, FakeFetcher]:
        fetcher = FakeFetcher(self.bodies, failing or set())
        engine = FeedSyncEngine(self.config_manager, self.state_store, fetcher_factory=lambda _timeout: fetcher)
        return engine, fetcher

    def _titles(self) -> list[str]:
        store, _ = self.state_store.load_schedule()
        return sorted(item.title for _, item in iter_items(store))

    def test_manual_sync_merges_all_feeds(self) -> None:
        engine, fetcher = self._engine()
        result = engine.run_once(trigger="manual")
        self.assertEqual(result.status, "success")
        self.assertEqual(result.feeds_synced, 3)
        self.assertEqual(fetcher.calls, [FEED_A, FEED_B, FEED_C])
        self.assertEqual(self._titles(), ["Club Meeting", "Seminar", "Shift"])
        self.assertIsNotNone(self.state_store.get_meta("last_feed_sync_at"))
        _, next_id = self.state_store.load_schedule()
        self.assertEqual(next_id, 4)

    def test_repeated_sync_is_stable(self) -> None:
        engine, _ = self._engine()
        engine.run_once(trigger="manual")
        first = self.state_store.load_schedule()
        engine.run_once(trigger="scheduled")
        self.assertEqual(self.state_store.load_schedule(), first)

    def test_manual_sync_stops_at_first_failure_and_keeps_prefix(self) -> None:
        engine, fetcher = self._engine(failing={FEED_B})
        with self.assertRaises(FeedSyncError) as ctx:
            engine.run_once(trigger="manual")
        self.assertEqual(ctx.exception.url, FEED_B)
        self.assertEqual(fetcher.calls, [FEED_A, FEED_B])
        self.assertEqual(self._titles(), ["Seminar"])
        run = self.state_store.recent_sync_runs(limit=1)[0]
        self.assertEqual(run["status"], "failed")
        self.assertEqual(run["feeds_synced"], 1)

    def test_background_sync_skips_failing_feed(self) -> None:
        engine, fetcher = self._engine(failing={FEED_B})
        result = engine.run_once(trigger="scheduled")
        self.assertEqual(result.status, "partial")
        self.assertEqual(result.feeds_failed, 1)
        self.assertEqual(fetcher.calls, [FEED_A, FEED_B, FEED_C])
        self.assertEqual(self._titles(), ["Seminar", "Shift"])
        run = self.state_store.recent_sync_runs(limit=1)[0]
        self.assertEqual(run["feed_errors"], {FEED_B: "Failed to fetch calendar (503)"})

    def test_background_failure_keeps_previous_feed_items(self) -> None:
        engine, _ = self._engine()
        engine.run_once(trigger="startup")
        failing_engine, _ = self._engine(failing={FEED_A})
        failing_engine.run_once(trigger="scheduled")
        self.assertEqual(self._titles(), ["Club Meeting", "Seminar", "Shift"])

    def test_manual_items_survive_sync(self) -> None:
        store = empty_schedule()
        store["Mon"].append(ScheduleItem(id=1, title="Math Study", source="manual"))
        self.state_store.save_schedule(store, 2)
        engine, _ = self._engine()
        engine.run_once(trigger="manual")
        self.assertIn("Math Study", self._titles())
        _, next_id = self.state_store.load_schedule()
        self.assertEqual(next_id, 5)

    def test_background_sync_records_storage_failure(self) -> None:
        engine, _ = self._engine()
        with mock.patch.object(
            self.state_store, "load_schedule", side_effect=sqlite3.OperationalError("database is locked")
        ):
            result = engine.run_once(trigger="scheduled")
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.message, "OperationalError: database is locked")
        run = self.state_store.recent_sync_runs(limit=1)[0]
        self.assertEqual(run["status"], "failed")
        self.assertEqual(run["trigger"], "scheduled")
        self.assertEqual(run["message"], "OperationalError: database is locked")

    def test_background_sync_survives_unreadable_config(self) -> None:
        self.config_manager.load.side_effect = ValueError("Invalid term end_date: someday")
        engine, fetcher = self._engine()
        result = engine.run_once(trigger="startup")
        self.assertEqual(result.status, "failed")
        self.assertIn("ValueError", result.message)
        self.assertEqual(fetcher.calls, [])

    def test_background_sync_returns_result_when_run_log_is_unwritable(self) -> None:
        engine, _ = self._engine()
        with mock.patch.object(
            self.state_store, "load_schedule", side_effect=sqlite3.OperationalError("disk I/O error")
        ), mock.patch.object(
            self.state_store, "record_sync_run", side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            result = engine.run_once(trigger="scheduled")
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.message, "OperationalError: disk I/O error")

    def test_manual_sync_raises_storage_failure(self) -> None:
        engine, _ = self._engine()
        with mock.patch.object(
            self.state_store, "load_schedule", side_effect=sqlite3.OperationalError("database is locked")
        ):
            with self.assertRaises(sqlite3.OperationalError):
                engine.run_once(trigger="manual")

    def test_no_feeds_is_skipped(self) -> None:
        self.config_manager.load.return_value = AppConfig()
        engine, fetcher = self._engine()
        result = engine.run_once(trigger="manual")
        self.assertEqual(result.status, "skipped")
        self.assertEqual(fetcher.calls, [])

    def test_sync_feeds_returns_outcome_without_saving(self) -> None:
        engine, _ = self._engine(failing={FEED_C})
        outcome = engine.sync_feeds(
            empty_schedule(),
            1,
            [FEED_A, FEED_B, FEED_C],
            self.config.term.end,
            raise_errors=False,
        )
        self.assertEqual(outcome.synced, [FEED_A, FEED_B])
        self.assertIn(FEED_C, outcome.failed)
        self.assertIsNone(outcome.error)
        self.assertEqual(outcome.next_id, 3)
        stored, _ = self.state_store.load_schedule()
        self.assertEqual(list(iter_items(stored)), [])

    def test_fold_with_no_batches_is_identity(self) -> None:
        store = empty_schedule()
        self.assertEqual(fold_feed_batches((store, 9), [], date(2030, 1, 1)), (store, 9))


if __name__ == "__main__":
    unittest.main()
