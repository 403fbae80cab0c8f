from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from weekplan.models import (
    DAY_KEYS,
    TIME_24_PATTERN,
    ScheduleItem,
    ScheduleStore,
    format_date,
    schedule_to_dict,
    time_range,
    title_with_location,
    truncate_title,
)


BLOCK_TYPES = ("class", "work", "study", "athletic", "extracurricular", "personal")
UPDATE_TYPES = ("none", "partial", "full")
CHANGE_ACTIONS = ("add", "remove", "modify")

BLOCK_PRIORITY = {
    "class": "high",
    "work": "high",
    "study": "medium",
    "athletic": "medium",
    "extracurricular": "medium",
    "personal": "low",
}

FULL_DAY_NAMES = {
    "monday": "Mon",
    "tuesday": "Tue",
    "wednesday": "Wed",
    "thursday": "Thu",
    "friday": "Fri",
    "saturday": "Sat",
    "sunday": "Sun",
}

SYSTEM_PROMPT = """You are a study planner for a university student.
Read the conversation and the current schedule, then return only JSON in one of these shapes:

{"update_type": "none"}

{"update_type": "full",
 "weekly_schedule": [
   {"day": "Monday",
    "blocks": [{"title": "string", "type": "class|work|study|athletic|extracurricular|personal",
                "start_time": "HH:MM", "end_time": "HH:MM", "location": "string",
                "is_recurring": true}]}],
 "schedule_summary": "string",
 "notes": "string"}

{"update_type": "partial",
 "changes": [
   {"action": "add", "day": "Mon", "block": {...same block shape...}},
   {"action": "remove", "day": "Mon", "match_title": "string"},
   {"action": "modify", "day": "Mon", "match_title": "string", "block": {...}}]}

Rules:
1. Use 24-hour HH:MM times. Every block needs start_time and end_time.
2. Use "partial" for small adjustments and "full" only for a new weekly plan.
3. Mark fixed weekly commitments (classes, practices, shifts) with is_recurring=true.
4. Use "none" when the conversation asks for no schedule change.
"""


def resolve_day_key(day: str) -> str:
    """Map ``Mon``/``Monday`` (any case) to a weekday key."""
    text = str(day or "").strip()
    for key in DAY_KEYS:
        if text.lower() == key.lower():
            return key
    mapped = FULL_DAY_NAMES.get(text.lower())
    if mapped is None:
        raise ValueError(f"Unknown weekday: {day!r}")
    return mapped


def priority_for_block_type(block_type: str | None) -> str:
    return BLOCK_PRIORITY.get(str(block_type or "").strip().lower(), "medium")


def _clock(value: Any) -> str:
    text = str(value or "").strip()
    if not TIME_24_PATTERN.match(text):
        return ""
    hours, minutes = text.split(":")
    return f"{int(hours):02d}:{minutes}"


@dataclass
class ScheduleBlock:
    title: str
    type: str = "personal"
    start_time: str = ""
    end_time: str = ""
    location: str = ""
    is_recurring: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ScheduleBlock":
        data = data or {}
        return cls(
            title=str(data.get("title", "")).strip(),
            type=str(data.get("type", "")).strip().lower(),
            start_time=_clock(data.get("start_time")),
            end_time=_clock(data.get("end_time")),
            location=str(data.get("location") or "").strip(),
            is_recurring=bool(data.get("is_recurring", False)),
        )

    @property
    def has_times(self) -> bool:
        return bool(self.start_time and self.end_time)

    def display_title(self) -> str:
        return truncate_title(title_with_location(self.title, self.location))

    def time_text(self) -> str | None:
        if not self.has_times:
            return None
        return time_range(self.start_time, self.end_time)


@dataclass
class DaySchedule:
    day: str
    blocks: list[ScheduleBlock] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DaySchedule":
        data = data or {}
        raw_blocks = data.get("blocks")
        blocks = [ScheduleBlock.from_dict(raw) for raw in raw_blocks if isinstance(raw, dict)] if isinstance(raw_blocks, list) else []
        return cls(day=str(data.get("day", "")).strip(), blocks=blocks)


@dataclass
class ScheduleChange:
    action: str
    day: str
    match_title: str = ""
    block: ScheduleBlock | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ScheduleChange":
        data = data or {}
        raw_block = data.get("block")
        return cls(
            action=str(data.get("action", "")).strip().lower(),
            day=str(data.get("day", "")).strip(),
            match_title=str(data.get("match_title") or "").strip(),
            block=ScheduleBlock.from_dict(raw_block) if isinstance(raw_block, dict) else None,
        )


@dataclass
class ScheduleProposal:
    """Planning agent output, tagged by ``update_type``."""

    update_type: str = "none"
    weekly_schedule: list[DaySchedule] = field(default_factory=list)
    changes: list[ScheduleChange] = field(default_factory=list)
    schedule_summary: str = ""
    notes: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ScheduleProposal":
        data = data if isinstance(data, dict) else {}
        update_type = str(data.get("update_type", "none")).strip().lower()
        if update_type not in UPDATE_TYPES:
            update_type = "none"
        raw_days = data.get("weekly_schedule") if isinstance(data.get("weekly_schedule"), list) else []
        raw_changes = data.get("changes") if isinstance(data.get("changes"), list) else []
        changes = [ScheduleChange.from_dict(raw) for raw in raw_changes if isinstance(raw, dict)]
        return cls(
            update_type=update_type,
            weekly_schedule=[DaySchedule.from_dict(raw) for raw in raw_days if isinstance(raw, dict)],
            changes=[change for change in changes if change.action in CHANGE_ACTIONS],
            schedule_summary=str(data.get("schedule_summary") or ""),
            notes=str(data.get("notes") or ""),
        )


def block_to_item(block: ScheduleBlock, item_id: int, due_date: str | date) -> ScheduleItem | None:
    """Convert one agent block; blocks without both times are dropped."""
    if not block.has_times or not block.title:
        return None
    return ScheduleItem(
        id=item_id,
        title=block.display_title(),
        time=block.time_text(),
        due_date=due_date if isinstance(due_date, str) else format_date(due_date),
        priority=priority_for_block_type(block.type),
        completed=False,
    )


@dataclass
class AgentMessage:
    role: str
    parts: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentMessage":
        role = str(data.get("role", "")).strip() or "assistant"
        content = data.get("content")
        if isinstance(content, str) and content:
            return cls(role=role, parts=[{"type": "text", "text": content}])
        raw_parts = data.get("parts") if isinstance(data.get("parts"), list) else content
        parts = [part for part in raw_parts or [] if isinstance(part, dict)]
        return cls(role=role, parts=parts)

    @property
    def text(self) -> str:
        return "".join(str(part.get("text", "")) for part in self.parts if part.get("type") == "text")

    def to_chat(self) -> dict[str, str]:
        return {"role": self.role, "content": self.text}


def build_planning_payload(
    *,
    schedule: ScheduleStore,
    week: list[date],
    term_name: str,
    term_end: date,
    preferences: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "week": [format_date(value) for value in week],
        "term": {"name": term_name, "end_date": format_date(term_end)},
        "preferences": preferences or {},
        "schedule": schedule_to_dict(schedule),
    }


def build_messages(payload: dict[str, Any], conversation: list[AgentMessage]) -> list[dict[str, str]]:
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
    ]
    for message in conversation:
        if message.role not in {"user", "assistant"} or not message.text:
            continue
        messages.append(message.to_chat())
    return messages
