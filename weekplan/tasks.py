from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from weekplan.models import (
    DAY_KEYS,
    MAX_TITLE_LENGTH,
    PRIORITIES,
    TIME_24_PATTERN,
    ScheduleItem,
    ScheduleStore,
    convert_to_24_hour,
    copy_schedule,
    format_date,
    iter_items,
    parse_iso_date,
    time_range,
)
from weekplan.recurrence import CLOSING_WEEKS_EXCLUDED, RepeatRule, TaskTemplate, expand_recurring_task


@dataclass
class TaskForm:
    name: str
    start_time: str = ""
    end_time: str = ""
    due_date: str = ""
    priority: str = "medium"
    repeat_type: str = "never"
    repeat_days: list[int] = field(default_factory=list)

    @classmethod
    def from_item(cls, item: ScheduleItem) -> "TaskForm":
        start_time = end_time = ""
        if item.time:
            parts = item.time.split(" - ")
            if len(parts) == 2:
                start_time = convert_to_24_hour(parts[0])
                end_time = convert_to_24_hour(parts[1])
        return cls(
            name=item.title,
            start_time=start_time,
            end_time=end_time,
            due_date=item.due_date or "",
            priority=item.priority,
            repeat_type=item.repeat_type or "never",
            repeat_days=list(item.repeat_days),
        )

    def validate(self) -> list[str]:
        errors: list[str] = []
        name = self.name.strip()
        if not name:
            errors.append("name: Task name is required")
        elif len(name) > MAX_TITLE_LENGTH:
            errors.append("name: Task name too long")
        times_valid = True
        for label, value in (("startTime", self.start_time), ("endTime", self.end_time)):
            if value and not TIME_24_PATTERN.match(value):
                errors.append(f"{label}: Invalid time format")
                times_valid = False
        if self.start_time and self.end_time and times_valid and _clock_key(self.start_time) >= _clock_key(self.end_time):
            errors.append("endTime: End time must be after start time")
        if self.priority not in PRIORITIES:
            errors.append("priority: Invalid priority")
        if self.due_date:
            try:
                parse_iso_date(self.due_date)
            except ValueError:
                errors.append("dueDate: Invalid date")
        try:
            RepeatRule.from_values(self.repeat_type, self.repeat_days)
        except (TypeError, ValueError) as exc:
            errors.append(f"repeatType: {exc}")
        return errors

    def time_text(self) -> str | None:
        if self.start_time and self.end_time:
            return time_range(self.start_time, self.end_time)
        return None


def _clock_key(value: str) -> tuple[int, int]:
    hours, minutes = value.split(":")
    return int(hours), int(minutes)


def find_item(store: ScheduleStore, item_id: int) -> tuple[str, ScheduleItem] | None:
    for day, item in iter_items(store):
        if item.id == item_id:
            return day, item
    return None


def _without_ids(store: ScheduleStore, ids: set[int]) -> ScheduleStore:
    result = copy_schedule(store)
    for day in DAY_KEYS:
        result[day] = [item for item in result[day] if item.id not in ids]
    return result


def series_ids(store: ScheduleStore, item: ScheduleItem) -> set[int]:
    if item.repeat_group_id is None:
        return {item.id}
    return {other.id for _, other in iter_items(store) if other.repeat_group_id == item.repeat_group_id}


def save_task(
    store: ScheduleStore,
    form: TaskForm,
    next_id: int,
    term_end: date,
    default_due_date: date,
    *,
    editing_id: int | None = None,
    excluded_closing_weeks: int = CLOSING_WEEKS_EXCLUDED,
) -> tuple[ScheduleStore, int]:
    """Create or replace a task, expanding its repeat rule.

    Editing an occurrence of a recurring task replaces the whole series.
    """
    errors = form.validate()
    if errors:
        raise ValueError("; ".join(errors))

    result = copy_schedule(store)
    if editing_id is not None:
        found = find_item(result, editing_id)
        if found is None:
            raise ValueError(f"Unknown task id: {editing_id}")
        result = _without_ids(result, series_ids(result, found[1]))

    anchor = parse_iso_date(form.due_date) or default_due_date
    template = TaskTemplate(title=form.name.strip(), time=form.time_text(), priority=form.priority)
    occurrences, new_next_id = expand_recurring_task(
        template,
        RepeatRule.from_values(form.repeat_type, form.repeat_days),
        anchor,
        term_end,
        next_id,
        excluded_closing_weeks=excluded_closing_weeks,
    )
    for day in DAY_KEYS:
        result[day].extend(occurrences[day])
    return result, new_next_id


def delete_task(store: ScheduleStore, item_id: int, *, whole_series: bool = False) -> ScheduleStore:
    found = find_item(store, item_id)
    if found is None:
        raise ValueError(f"Unknown task id: {item_id}")
    ids = series_ids(store, found[1]) if whole_series else {item_id}
    return _without_ids(store, ids)


def toggle_completion(store: ScheduleStore, item_id: int) -> ScheduleStore:
    result = copy_schedule(store)
    for day in DAY_KEYS:
        result[day] = [
            item.with_updates(completed=not item.completed) if item.id == item_id else item
            for item in result[day]
        ]
    return result


def items_for_date(store: ScheduleStore, day_key: str, selected: date) -> list[ScheduleItem]:
    """Items shown for ``selected``: its dated items plus legacy date-less ones."""
    if day_key not in DAY_KEYS:
        raise ValueError(f"Unknown weekday key: {day_key!r}")
    wanted = format_date(selected)
    return [item for item in store.get(day_key, []) if not item.due_date or item.due_date == wanted]


def week_view(store: ScheduleStore, week: list[date]) -> dict[str, Any]:
    days = {
        day: [item.to_dict() for item in items_for_date(store, day, week[index])]
        for index, day in enumerate(DAY_KEYS)
    }
    return {"week": [format_date(value) for value in week], "days": days}


def success_percentage(store: ScheduleStore) -> int:
    items = [item for _, item in iter_items(store)]
    if not items:
        return 0
    completed = sum(1 for item in items if item.completed)
    return int(completed * 100 / len(items) + 0.5)
