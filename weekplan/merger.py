from __future__ import annotations

from datetime import date
from typing import Iterable

from weekplan.models import (
    DAY_KEYS,
    CalendarEvent,
    ScheduleItem,
    ScheduleStore,
    clock_text,
    copy_schedule,
    day_key_for,
    empty_schedule,
    format_date,
    title_with_location,
    truncate_title,
)
from weekplan.planner import ScheduleProposal, block_to_item, resolve_day_key
from weekplan.title_normalizer import normalize_title


ICAL_SOURCE = "ical"


def _owned_by_feed(item: ScheduleItem, feed_url: str | None) -> bool:
    if item.source != ICAL_SOURCE:
        return False
    if feed_url:
        return item.ical_url == feed_url
    # Legacy items carry no feed url; an unnamed sync owns every feed item.
    return True


def remove_feed_items(store: ScheduleStore, feed_url: str | None) -> ScheduleStore:
    result = copy_schedule(store)
    for day in DAY_KEYS:
        result[day] = [item for item in result[day] if not _owned_by_feed(item, feed_url)]
    return result


def event_to_item(event: CalendarEvent, item_id: int, feed_url: str | None) -> ScheduleItem:
    time_text = None
    if not event.all_day:
        time_text = f"{clock_text(event.start)} - {clock_text(event.end)}"
    title = truncate_title(title_with_location(event.title, event.location))
    return ScheduleItem(
        id=item_id,
        title=title,
        time=time_text,
        due_date=format_date(event.start.date()),
        priority="medium",
        completed=False,
        source=ICAL_SOURCE,
        ical_uid=event.uid,
        ical_url=feed_url or None,
    )


def merge_feed_events(
    store: ScheduleStore,
    events: Iterable[CalendarEvent],
    feed_url: str | None,
    next_id: int,
    term_end: date,
) -> tuple[ScheduleStore, int]:
    """Replace one feed's items with ``events``.

    Items of other feeds and manual items are left alone. An occurrence that
    was already merged from the same feed keeps its id and completion flag,
    so repeating a merge changes nothing.
    """
    previous: dict[str, ScheduleItem] = {}
    for day in DAY_KEYS:
        for item in store.get(day, []):
            if _owned_by_feed(item, feed_url) and item.ical_uid:
                previous.setdefault(item.ical_uid, item)

    result = remove_feed_items(store, feed_url)
    current_id = next_id
    placed: set[str] = set()
    for event in events:
        if event.start.date() > term_end:
            continue
        existing = previous.get(event.uid)
        if existing is not None and event.uid not in placed:
            item = event_to_item(event, existing.id, feed_url)
            item.completed = existing.completed
        else:
            item = event_to_item(event, current_id, feed_url)
            current_id += 1
        placed.add(event.uid)
        result[day_key_for(event.start.date())].append(item)
    return result, current_id


def dedupe_key(item: ScheduleItem, day: str) -> str:
    return f"{normalize_title(item.title)}|{day}|{item.time or 'no-time'}"


def proposal_to_items(
    proposal: ScheduleProposal,
    week: list[date],
    next_id: int,
) -> tuple[ScheduleStore, int]:
    items_by_day = empty_schedule()
    seen: dict[str, set[str]] = {day: set() for day in DAY_KEYS}
    current_id = next_id
    for day_schedule in proposal.weekly_schedule:
        try:
            day_key = resolve_day_key(day_schedule.day)
        except ValueError:
            continue
        due_date = week[DAY_KEYS.index(day_key)]
        for block in day_schedule.blocks:
            item = block_to_item(block, current_id, due_date)
            if item is None:
                continue
            key = dedupe_key(item, day_key)
            if key in seen[day_key]:
                continue
            seen[day_key].add(key)
            items_by_day[day_key].append(item)
            current_id += 1
    return items_by_day, current_id


def merge_full_schedule(
    store: ScheduleStore,
    proposal: ScheduleProposal,
    week: list[date],
    next_id: int,
) -> tuple[ScheduleStore, int]:
    """Replace the target week with a full agent schedule.

    Dated items outside ``week`` and date-less legacy items survive.
    """
    if len(week) != 7:
        raise ValueError(f"week must hold 7 dates, got {len(week)}")
    week_keys = {format_date(value) for value in week}
    new_items, current_id = proposal_to_items(proposal, week, next_id)
    result = copy_schedule(store)
    for day in DAY_KEYS:
        kept = [item for item in result[day] if not item.due_date or item.due_date not in week_keys]
        result[day] = kept + new_items[day]
    return result, current_id
