from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from difflib import SequenceMatcher
from typing import Iterable, Protocol

from weekplan.merger import merge_full_schedule
from weekplan.models import (
    DAY_KEYS,
    ScheduleStore,
    copy_schedule,
    format_date,
    time_sort_key,
)
from weekplan.planner import (
    ScheduleChange,
    ScheduleProposal,
    block_to_item,
    priority_for_block_type,
    resolve_day_key,
)
from weekplan.recurrence import CLOSING_WEEKS_EXCLUDED, expand_weekly_item
from weekplan.title_normalizer import normalize_title

logger = logging.getLogger(__name__)


class TitleMatcher(Protocol):
    def matches(self, title: str, query: str) -> bool:
        ...


class SubstringTitleMatch:
    """Case-insensitive containment, tolerant of paraphrased agent titles."""

    def matches(self, title: str, query: str) -> bool:
        query_text = str(query or "").strip().lower()
        if not query_text:
            return False
        return query_text in str(title or "").lower()


class ExactTitleMatch:
    def matches(self, title: str, query: str) -> bool:
        query_key = normalize_title(query)
        return bool(query_key) and normalize_title(title) == query_key


@dataclass
class FuzzyTitleMatch:
    threshold: float = 0.8

    def matches(self, title: str, query: str) -> bool:
        query_key = normalize_title(query)
        if not query_key:
            return False
        title_key = normalize_title(title)
        if query_key in title_key:
            return True
        return SequenceMatcher(None, title_key, query_key).ratio() >= self.threshold


def matcher_for_policy(policy: str, fuzzy_threshold: float = 0.8) -> TitleMatcher:
    name = str(policy or "substring").strip().lower()
    if name == "exact":
        return ExactTitleMatch()
    if name == "fuzzy":
        return FuzzyTitleMatch(threshold=fuzzy_threshold)
    if name == "substring":
        return SubstringTitleMatch()
    raise ValueError(f"Unknown title match policy: {policy!r}")


def sort_by_time(store: ScheduleStore) -> ScheduleStore:
    return {day: sorted(store.get(day, []), key=lambda item: time_sort_key(item.time)) for day in DAY_KEYS}


def _apply_remove(store: ScheduleStore, day_key: str, change: ScheduleChange, matcher: TitleMatcher) -> None:
    store[day_key] = [item for item in store[day_key] if not matcher.matches(item.title, change.match_title)]


def _apply_modify(store: ScheduleStore, day_key: str, change: ScheduleChange, matcher: TitleMatcher) -> None:
    block = change.block
    if block is None or not block.title:
        return
    updated = []
    for item in store[day_key]:
        if matcher.matches(item.title, change.match_title):
            item = item.with_updates(
                title=block.display_title(),
                time=block.time_text() or item.time,
                priority=priority_for_block_type(block.type),
            )
        updated.append(item)
    store[day_key] = updated


def _apply_add(
    store: ScheduleStore,
    day_key: str,
    change: ScheduleChange,
    week: list[date],
    next_id: int,
    term_end: date,
    excluded_closing_weeks: int,
) -> int:
    if change.block is None:
        return next_id
    target_date = week[DAY_KEYS.index(day_key)]
    item = block_to_item(change.block, next_id, target_date)
    if item is None:
        return next_id
    if not change.block.is_recurring:
        store[day_key].append(item)
        return next_id + 1
    occurrences, new_next_id = expand_weekly_item(
        item,
        target_date,
        term_end,
        next_id,
        excluded_closing_weeks=excluded_closing_weeks,
    )
    for day in DAY_KEYS:
        store[day].extend(occurrences[day])
    return new_next_id


def apply_schedule_changes(
    store: ScheduleStore,
    changes: Iterable[ScheduleChange],
    week: list[date],
    next_id: int,
    term_end: date,
    *,
    matcher: TitleMatcher | None = None,
    excluded_closing_weeks: int = CLOSING_WEEKS_EXCLUDED,
) -> tuple[ScheduleStore, int]:
    """Apply agent add/remove/modify operations in order.

    Not transactional: an operation that cannot be applied is skipped and
    the ones before it stay applied.
    """
    if len(week) != 7:
        raise ValueError(f"week must hold 7 dates, got {len(week)}")
    matcher = matcher or SubstringTitleMatch()
    result = copy_schedule(store)
    current_id = next_id
    for index, change in enumerate(changes):
        try:
            day_key = resolve_day_key(change.day)
            if change.action == "remove":
                _apply_remove(result, day_key, change, matcher)
            elif change.action == "modify":
                _apply_modify(result, day_key, change, matcher)
            elif change.action == "add":
                current_id = _apply_add(
                    result,
                    day_key,
                    change,
                    week,
                    current_id,
                    term_end,
                    excluded_closing_weeks,
                )
            else:
                logger.debug("Ignoring change %d with unknown action %r", index, change.action)
        except ValueError as exc:
            logger.warning("Skipping change %d (%s %s): %s", index, change.action, change.day, exc)
    return sort_by_time(result), current_id


def apply_proposal(
    store: ScheduleStore,
    proposal: ScheduleProposal,
    week: list[date],
    next_id: int,
    term_end: date,
    *,
    matcher: TitleMatcher | None = None,
    excluded_closing_weeks: int = CLOSING_WEEKS_EXCLUDED,
) -> tuple[ScheduleStore, int]:
    logger.info(
        "Applying %s proposal for week of %s",
        proposal.update_type,
        format_date(week[0]) if week else "?",
    )
    if proposal.update_type == "full":
        return merge_full_schedule(store, proposal, week, next_id)
    if proposal.update_type == "partial":
        return apply_schedule_changes(
            store,
            proposal.changes,
            week,
            next_id,
            term_end,
            matcher=matcher,
            excluded_closing_weeks=excluded_closing_weeks,
        )
    return copy_schedule(store), next_id
