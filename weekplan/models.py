from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterator


DAY_KEYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
PRIORITIES = ("high", "medium", "low")
SOURCES = ("manual", "ical")
REPEAT_TYPES = ("never", "daily", "weekly", "monthly", "custom")
MAX_TITLE_LENGTH = 100
SCHEMA_VERSION = "1.0.0"

TIME_12_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})\s*(AM|PM)$", re.IGNORECASE)
TIME_24_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")

ScheduleStore = dict[str, list["ScheduleItem"]]


def format_time_24_to_12(time24: str) -> str:
    hours_text, minutes_text = str(time24).strip().split(":")[:2]
    hours = int(hours_text)
    minutes = int(minutes_text)
    period = "PM" if hours >= 12 else "AM"
    hours12 = 12 if hours == 0 else hours - 12 if hours > 12 else hours
    return f"{hours12}:{minutes:02d} {period}"


def convert_to_24_hour(time12: str) -> str:
    match = TIME_12_PATTERN.match(str(time12 or "").strip())
    if not match:
        return ""
    hour = int(match.group(1))
    period = match.group(3).upper()
    if period == "AM" and hour == 12:
        hour = 0
    elif period == "PM" and hour != 12:
        hour += 12
    return f"{hour:02d}:{match.group(2)}"


def clock_text(value: datetime) -> str:
    return format_time_24_to_12(f"{value.hour:02d}:{value.minute:02d}")


def time_range(start24: str, end24: str) -> str:
    return f"{format_time_24_to_12(start24)} - {format_time_24_to_12(end24)}"


def time_sort_key(time_text: str | None) -> tuple[int, int]:
    """Order key for a ``h:mm AM - h:mm PM`` string; untimed items sort last."""
    if not time_text:
        return (1, 0)
    start_text = str(time_text).split(" - ")[0]
    start24 = convert_to_24_hour(start_text)
    if not start24:
        return (1, 0)
    hours, minutes = start24.split(":")
    return (0, int(hours) * 60 + int(minutes))


def format_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    return date.fromisoformat(text[:10])


def day_key_for(value: date) -> str:
    return DAY_KEYS[value.weekday()]


def day_index(day_key: str) -> int:
    return DAY_KEYS.index(day_key)


def week_start(value: date) -> date:
    return value - timedelta(days=value.weekday())


def week_dates(value: date) -> list[date]:
    monday = week_start(value)
    return [monday + timedelta(days=offset) for offset in range(7)]


def truncate_title(title: str) -> str:
    if len(title) > MAX_TITLE_LENGTH:
        return title[: MAX_TITLE_LENGTH - 3] + "..."
    return title


def title_with_location(title: str, location: str | None) -> str:
    location_text = str(location or "").strip()
    if location_text and location_text.lower() not in title.lower():
        return f"{title} @ {location_text}"
    return title


@dataclass
class ScheduleItem:
    id: int
    title: str
    time: str | None = None
    due_date: str | None = None
    priority: str = "medium"
    completed: bool = False
    source: str | None = None
    ical_uid: str | None = None
    ical_url: str | None = None
    repeat_group_id: int | None = None
    repeat_type: str | None = None
    repeat_days: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduleItem":
        priority = str(data.get("priority", "medium")).strip().lower()
        if priority not in PRIORITIES:
            priority = "medium"
        source = data.get("source")
        if source not in SOURCES:
            source = None
        repeat_type = data.get("repeat_type")
        if repeat_type not in REPEAT_TYPES:
            repeat_type = None
        repeat_group_id = data.get("repeat_group_id")
        return cls(
            id=int(data["id"]),
            title=str(data.get("title", "")).strip(),
            time=str(data["time"]) if data.get("time") else None,
            due_date=str(data["due_date"])[:10] if data.get("due_date") else None,
            priority=priority,
            completed=bool(data.get("completed", False)),
            source=source,
            ical_uid=str(data["ical_uid"]) if data.get("ical_uid") else None,
            ical_url=str(data["ical_url"]) if data.get("ical_url") else None,
            repeat_group_id=int(repeat_group_id) if repeat_group_id is not None else None,
            repeat_type=repeat_type,
            repeat_days=[int(x) for x in data.get("repeat_days") or [] if str(x).strip().isdigit()],
        )

    def clone(self) -> "ScheduleItem":
        return ScheduleItem(
            id=self.id,
            title=self.title,
            time=self.time,
            due_date=self.due_date,
            priority=self.priority,
            completed=self.completed,
            source=self.source,
            ical_uid=self.ical_uid,
            ical_url=self.ical_url,
            repeat_group_id=self.repeat_group_id,
            repeat_type=self.repeat_type,
            repeat_days=list(self.repeat_days),
        )

    def with_updates(self, **kwargs: Any) -> "ScheduleItem":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied


@dataclass
class CalendarEvent:
    uid: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    location: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "all_day": self.all_day,
            "location": self.location,
        }


def empty_schedule() -> ScheduleStore:
    return {day: [] for day in DAY_KEYS}


def copy_schedule(store: ScheduleStore | None) -> ScheduleStore:
    store = store or {}
    return {day: [item.clone() for item in store.get(day, [])] for day in DAY_KEYS}


def iter_items(store: ScheduleStore) -> Iterator[tuple[str, ScheduleItem]]:
    for day in DAY_KEYS:
        for item in store.get(day, []):
            yield day, item


def max_item_id(store: ScheduleStore) -> int:
    return max((item.id for _, item in iter_items(store)), default=0)


def schedule_to_dict(store: ScheduleStore) -> dict[str, list[dict[str, Any]]]:
    return {day: [item.to_dict() for item in store.get(day, [])] for day in DAY_KEYS}


def schedule_from_dict(data: dict[str, Any] | None) -> ScheduleStore:
    store = empty_schedule()
    if not isinstance(data, dict):
        return store
    for day, raw_items in data.items():
        if day not in store or not isinstance(raw_items, list):
            continue
        for raw in raw_items:
            if not isinstance(raw, dict):
                continue
            try:
                item = ScheduleItem.from_dict(raw)
                due = parse_iso_date(item.due_date)
            except (KeyError, TypeError, ValueError):
                continue
            if not item.title:
                continue
            # Dated items always live under their own weekday.
            target_day = day_key_for(due) if due else day
            store[target_day].append(item)
    return store


@dataclass
class TermConfig:
    name: str = "Fall 2026"
    start_date: str = "2026-08-24"
    end_date: str = "2026-12-18"
    excluded_closing_weeks: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TermConfig":
        data = data or {}
        defaults = cls()
        start_date = str(data.get("start_date", defaults.start_date)).strip() or defaults.start_date
        end_date = str(data.get("end_date", defaults.end_date)).strip() or defaults.end_date
        parse_iso_date(start_date)
        parse_iso_date(end_date)
        return cls(
            name=str(data.get("name", defaults.name)).strip() or defaults.name,
            start_date=start_date,
            end_date=end_date,
            excluded_closing_weeks=max(0, int(data.get("excluded_closing_weeks", 1))),
        )

    @property
    def end(self) -> date:
        return parse_iso_date(self.end_date)


@dataclass
class FeedsConfig:
    urls: list[str] = field(default_factory=list)
    interval_seconds: int = 86400
    fetch_timeout_seconds: int = 10
    window_months_back: int = 1
    window_months_ahead: int = 4
    max_occurrences: int = 500

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeedsConfig":
        data = data or {}
        urls: list[str] = []
        for raw in data.get("urls", []) or []:
            url = str(raw).strip()
            if url and url not in urls:
                urls.append(url)
        return cls(
            urls=urls,
            interval_seconds=max(300, int(data.get("interval_seconds", 86400))),
            fetch_timeout_seconds=max(1, int(data.get("fetch_timeout_seconds", 10))),
            window_months_back=max(0, int(data.get("window_months_back", 1))),
            window_months_ahead=max(1, int(data.get("window_months_ahead", 4))),
            max_occurrences=max(1, int(data.get("max_occurrences", 500))),
        )


@dataclass
class AIConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout_seconds: int = 90

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AIConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "https://api.openai.com/v1")).strip(),
            api_key=str(data.get("api_key", "")).strip(),
            model=str(data.get("model", "gpt-4o-mini")).strip() or "gpt-4o-mini",
            timeout_seconds=int(data.get("timeout_seconds", 90)),
        )


@dataclass
class PlanningConfig:
    title_match: str = "substring"
    fuzzy_threshold: float = 0.8

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PlanningConfig":
        data = data or {}
        title_match = str(data.get("title_match", "substring")).strip().lower()
        if title_match not in {"substring", "exact", "fuzzy"}:
            title_match = "substring"
        threshold = float(data.get("fuzzy_threshold", 0.8))
        return cls(title_match=title_match, fuzzy_threshold=min(1.0, max(0.0, threshold)))


@dataclass
class AppConfig:
    term: TermConfig = field(default_factory=TermConfig)
    feeds: FeedsConfig = field(default_factory=FeedsConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    planning: PlanningConfig = field(default_factory=PlanningConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            term=TermConfig.from_dict(data.get("term")),
            feeds=FeedsConfig.from_dict(data.get("feeds")),
            ai=AIConfig.from_dict(data.get("ai")),
            planning=PlanningConfig.from_dict(data.get("planning")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    feeds_synced: int
    feeds_failed: int
    trigger: str
    run_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "feeds_synced": self.feeds_synced,
            "feeds_failed": self.feeds_failed,
            "trigger": self.trigger,
            "run_at": self.run_at.isoformat(),
        }
