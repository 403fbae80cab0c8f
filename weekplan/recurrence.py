from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Iterable

from weekplan.models import (
    REPEAT_TYPES,
    ScheduleItem,
    ScheduleStore,
    day_key_for,
    empty_schedule,
    format_date,
    week_start,
)


# Finals week never receives generated recurring occurrences.
CLOSING_WEEKS_EXCLUDED = 1

SINGLE_OCCURRENCE_TYPES = {"never", "monthly"}


@dataclass(frozen=True)
class RepeatRule:
    kind: str = "never"
    days: frozenset[int] = field(default_factory=frozenset)

    @classmethod
    def from_values(cls, kind: str | None, days: Iterable[Any] | None = None) -> "RepeatRule":
        normalized_kind = str(kind or "never").strip().lower()
        if normalized_kind not in REPEAT_TYPES:
            raise ValueError(f"Unknown repeat type: {kind!r}")
        day_set: set[int] = set()
        if normalized_kind == "custom":
            for raw in days or []:
                value = int(raw)
                if not 0 <= value <= 6:
                    raise ValueError(f"Repeat day index out of range: {raw!r}")
                day_set.add(value)
        return cls(kind=normalized_kind, days=frozenset(day_set))

    @property
    def is_recurring(self) -> bool:
        return self.kind not in SINGLE_OCCURRENCE_TYPES

    def matches(self, candidate: date, anchor: date) -> bool:
        if self.kind == "daily":
            return True
        if self.kind == "weekly":
            return candidate.weekday() == anchor.weekday()
        if self.kind == "custom":
            # Rule days count from Sunday, date.weekday() from Monday.
            return (candidate.weekday() + 1) % 7 in self.days
        return candidate == anchor


@dataclass
class TaskTemplate:
    title: str
    time: str | None = None
    priority: str = "medium"
    source: str | None = "manual"


def expansion_weeks(anchor_date: date, term_end: date, excluded_closing_weeks: int = CLOSING_WEEKS_EXCLUDED) -> list[date]:
    """Mondays of every week that may receive generated occurrences.

    Runs from the anchor's week through the week holding ``term_end`` and
    leaves out the last ``excluded_closing_weeks`` of them.
    """
    first = week_start(anchor_date)
    final = week_start(term_end) - timedelta(weeks=max(0, excluded_closing_weeks))
    weeks: list[date] = []
    current = first
    while current <= final:
        weeks.append(current)
        current += timedelta(weeks=1)
    return weeks


def occurrence_dates(
    rule: RepeatRule,
    anchor_date: date,
    term_end: date,
    excluded_closing_weeks: int = CLOSING_WEEKS_EXCLUDED,
) -> list[date]:
    if not rule.is_recurring:
        return [anchor_date]
    dates: list[date] = []
    for monday in expansion_weeks(anchor_date, term_end, excluded_closing_weeks):
        for offset in range(7):
            candidate = monday + timedelta(days=offset)
            if candidate < anchor_date:
                continue
            if rule.matches(candidate, anchor_date):
                dates.append(candidate)
    return dates


def expand_recurring_task(
    template: TaskTemplate,
    rule: RepeatRule,
    anchor_date: date | None,
    term_end: date,
    next_id: int,
    *,
    excluded_closing_weeks: int = CLOSING_WEEKS_EXCLUDED,
) -> tuple[ScheduleStore, int]:
    if anchor_date is None:
        raise ValueError("anchor_date is required; callers pick the default date")
    if rule.is_recurring and term_end < anchor_date:
        raise ValueError(f"term end {term_end} is before anchor date {anchor_date}")

    items_by_day = empty_schedule()
    group_id = next_id if rule.is_recurring else None
    current_id = next_id
    for occurrence in occurrence_dates(rule, anchor_date, term_end, excluded_closing_weeks):
        items_by_day[day_key_for(occurrence)].append(
            ScheduleItem(
                id=current_id,
                title=template.title,
                time=template.time,
                due_date=format_date(occurrence),
                priority=template.priority,
                completed=False,
                source=template.source,
                repeat_group_id=group_id,
                repeat_type=rule.kind,
                repeat_days=sorted(rule.days),
            )
        )
        current_id += 1
    return items_by_day, current_id


def expand_weekly_item(
    item: ScheduleItem,
    anchor_date: date,
    term_end: date,
    next_id: int,
    *,
    excluded_closing_weeks: int = CLOSING_WEEKS_EXCLUDED,
) -> tuple[ScheduleStore, int]:
    """Repeat an already-built item every week on ``anchor_date``'s weekday."""
    template = TaskTemplate(title=item.title, time=item.time, priority=item.priority, source=item.source)
    return expand_recurring_task(
        template,
        RepeatRule(kind="weekly"),
        anchor_date,
        term_end,
        next_id,
        excluded_closing_weeks=excluded_closing_weeks,
    )
