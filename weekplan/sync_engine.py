from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from functools import reduce
from typing import Callable

from weekplan.config_manager import ConfigManager
from weekplan.feed_fetcher import FeedFetcher, FeedFetchError
from weekplan.ics_parser import FeedWindow, parse_ics_events
from weekplan.merger import merge_feed_events
from weekplan.models import AppConfig, CalendarEvent, ScheduleStore, SyncResult
from weekplan.state_store import StateStore

logger = logging.getLogger(__name__)

BACKGROUND_TRIGGERS = {"startup", "scheduled"}

FeedBatch = tuple[str, list[CalendarEvent]]
MergeState = tuple[ScheduleStore, int]


class FeedSyncError(RuntimeError):
    """First feed failure of an explicit sync; earlier feeds were kept."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(message)
        self.url = url


@dataclass
class FeedSyncOutcome:
    store: ScheduleStore
    next_id: int
    synced: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    error: FeedSyncError | None = None


def window_for(config: AppConfig) -> FeedWindow:
    return FeedWindow(
        months_back=config.feeds.window_months_back,
        months_ahead=config.feeds.window_months_ahead,
        max_occurrences=config.feeds.max_occurrences,
    )


def fold_feed_batches(state: MergeState, batches: list[FeedBatch], term_end: date) -> MergeState:
    """Thread ``(store, next_id)`` through one feed merge after another."""

    def merge_one(accumulated: MergeState, batch: FeedBatch) -> MergeState:
        store, next_id = accumulated
        url, events = batch
        return merge_feed_events(store, events, url, next_id, term_end)

    return reduce(merge_one, batches, state)


class FeedSyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        fetcher_factory: Callable[[int], FeedFetcher] = FeedFetcher,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.fetcher_factory = fetcher_factory

    def _collect(
        self,
        feed_urls: list[str],
        *,
        raise_errors: bool,
        window: FeedWindow,
        timeout_seconds: int,
    ) -> tuple[list[FeedBatch], dict[str, str], FeedSyncError | None]:
        fetcher = self.fetcher_factory(timeout_seconds)
        batches: list[FeedBatch] = []
        failed: dict[str, str] = {}
        for url in feed_urls:
            try:
                text = fetcher.fetch(url)
            except FeedFetchError as exc:
                logger.warning("Feed %s failed: %s", url, exc)
                failed[url] = str(exc)
                if raise_errors:
                    return batches, failed, FeedSyncError(url, str(exc))
                continue
            events = parse_ics_events(text, window=window)
            logger.info("Feed %s yielded %d events", url, len(events))
            batches.append((url, events))
        return batches, failed, None

    def sync_feeds(
        self,
        store: ScheduleStore,
        next_id: int,
        feed_urls: list[str],
        term_end: date,
        *,
        raise_errors: bool,
        window: FeedWindow | None = None,
        timeout_seconds: int = 10,
    ) -> FeedSyncOutcome:
        """Fetch feeds one after another and merge them in order.

        With ``raise_errors`` the first failing feed stops the run; feeds
        merged before it are still part of the outcome.
        """
        batches, failed, error = self._collect(
            feed_urls,
            raise_errors=raise_errors,
            window=window or FeedWindow(),
            timeout_seconds=timeout_seconds,
        )
        merged_store, merged_next_id = fold_feed_batches((store, next_id), batches, term_end)
        return FeedSyncOutcome(
            store=merged_store,
            next_id=merged_next_id,
            synced=[url for url, _ in batches],
            failed=failed,
            error=error,
        )

    def run_once(self, trigger: str = "manual") -> SyncResult:
        """Sync every configured feed into the stored schedule.

        Background triggers never raise; any failure becomes a ``failed``
        run. ``manual`` raises ``FeedSyncError`` after saving what was
        merged before the failure.
        """
        started_at = datetime.now()
        raise_errors = trigger not in BACKGROUND_TRIGGERS
        try:
            return self._sync_configured_feeds(trigger, started_at, raise_errors)
        except Exception as exc:
            if raise_errors:
                raise
            logger.exception("Feed sync (%s) aborted", trigger)
            return self._abort(trigger, started_at, f"{type(exc).__name__}: {exc}")

    def _sync_configured_feeds(self, trigger: str, started_at: datetime, raise_errors: bool) -> SyncResult:
        config = self.config_manager.load()
        feed_urls = list(config.feeds.urls)
        if not feed_urls:
            return self._finish(trigger, started_at, "skipped", "No calendar feeds configured.", 0, {})

        batches, failed, error = self._collect(
            feed_urls,
            raise_errors=raise_errors,
            window=window_for(config),
            timeout_seconds=config.feeds.fetch_timeout_seconds,
        )
        with self.state_store.lock:
            store, next_id = self.state_store.load_schedule()
            store, next_id = fold_feed_batches((store, next_id), batches, config.term.end)
            saved = self.state_store.save_schedule(store, next_id)
        if saved:
            self.state_store.set_meta("last_feed_sync_at", datetime.now().isoformat())
        elif error is None:
            error = FeedSyncError("", "Schedule could not be saved.")

        if error is not None:
            result = self._finish(trigger, started_at, "failed", str(error), len(batches), failed)
            if raise_errors:
                raise error
            return result
        status = "partial" if failed else "success"
        message = f"Synced {len(batches)} of {len(feed_urls)} feeds."
        return self._finish(trigger, started_at, status, message, len(batches), failed)

    def _abort(self, trigger: str, started_at: datetime, message: str) -> SyncResult:
        try:
            return self._finish(trigger, started_at, "failed", message, 0, {})
        except Exception:
            logger.exception("Could not record aborted feed sync (%s)", trigger)
        return SyncResult(
            status="failed",
            message=message,
            duration_ms=int((datetime.now() - started_at).total_seconds() * 1000),
            feeds_synced=0,
            feeds_failed=0,
            trigger=trigger,
        )

    def _finish(
        self,
        trigger: str,
        started_at: datetime,
        status: str,
        message: str,
        feeds_synced: int,
        failed: dict[str, str],
    ) -> SyncResult:
        duration_ms = int((datetime.now() - started_at).total_seconds() * 1000)
        self.state_store.record_sync_run(
            trigger=trigger,
            status=status,
            message=message,
            duration_ms=duration_ms,
            feeds_synced=feeds_synced,
            feeds_failed=len(failed),
            feed_errors=failed,
        )
        log = logger.warning if status == "failed" else logger.info
        log("Feed sync (%s) %s: %s", trigger, status, message)
        return SyncResult(
            status=status,
            message=message,
            duration_ms=duration_ms,
            feeds_synced=feeds_synced,
            feeds_failed=len(failed),
            trigger=trigger,
        )
