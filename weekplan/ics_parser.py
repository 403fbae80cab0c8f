"""ICS feed parsing into normalized :class:`CalendarEvent` values.

The full iCalendar grammar (``icalendar``) is tried first and recurring
events are unrolled with ``dateutil.rrule`` inside a bounded window. Text the
grammar rejects is handed to a line-prefix extractor that only understands
single, non-recurring VEVENT blocks. Parsing never raises: bad input yields
fewer events.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from dateutil.relativedelta import relativedelta
from dateutil.rrule import rruleset, rrulestr
from icalendar import Calendar as ICalendar

from weekplan.models import CalendarEvent

logger = logging.getLogger(__name__)

DEFAULT_DURATION = timedelta(hours=1)
UNTITLED_EVENT = "Untitled Event"

VEVENT_BLOCK_PATTERN = re.compile(r"BEGIN:VEVENT.*?END:VEVENT", re.DOTALL | re.IGNORECASE)
FOLDED_LINE_PATTERN = re.compile(r"\r?\n[ \t]")
UNTIL_UTC_PATTERN = re.compile(r"(UNTIL=\d{8}T\d{6})Z", re.IGNORECASE)
UNTIL_DATE_PATTERN = re.compile(r"(UNTIL=\d{8})(?![T\d])", re.IGNORECASE)
UNTIL_FLOATING_PATTERN = re.compile(r"(UNTIL=\d{8}T\d{6})(?!Z)", re.IGNORECASE)


@dataclass
class FeedWindow:
    months_back: int = 1
    months_ahead: int = 4
    max_occurrences: int = 500

    def bounds(self, now: datetime) -> tuple[datetime, datetime]:
        return now - relativedelta(months=self.months_back), now + relativedelta(months=self.months_ahead)


def _generated_uid() -> str:
    return f"evt-{int(datetime.now().timestamp() * 1000)}-{uuid.uuid4().hex[:8]}"


def _to_local(value: datetime | date) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value
    return datetime.combine(value, time.min)


def _occurrence_stamp(value: datetime, all_day: bool) -> str:
    if all_day:
        return value.strftime("%Y%m%d")
    return value.strftime("%Y%m%dT%H%M%S")


def _text(component: Any, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _decoded(component: Any, name: str) -> Any:
    if component.get(name) is None:
        return None
    return component.decoded(name)


def _overlaps(start: datetime, end: datetime, range_start: datetime, range_end: datetime) -> bool:
    return start <= range_end and max(start, end) >= range_start


def _event_span(component: Any) -> tuple[datetime, datetime, bool, datetime | date]:
    raw_start = _decoded(component, "DTSTART")
    if raw_start is None:
        raise ValueError("VEVENT without DTSTART")
    all_day = isinstance(raw_start, date) and not isinstance(raw_start, datetime)
    start = _to_local(raw_start)
    raw_end = _decoded(component, "DTEND")
    if raw_end is not None:
        end = _to_local(raw_end)
    else:
        duration = _decoded(component, "DURATION")
        end = start + duration if isinstance(duration, timedelta) else start + DEFAULT_DURATION
    if end < start:
        end = start + DEFAULT_DURATION
    return start, end, all_day, raw_start


def _property_values(component: Any, name: str) -> list[datetime | date]:
    raw = component.get(name)
    if raw is None:
        return []
    entries = raw if isinstance(raw, list) else [raw]
    values: list[datetime | date] = []
    for entry in entries:
        for item in getattr(entry, "dts", []):
            values.append(item.dt)
    return values


def _align(value: datetime | date, dtstart: datetime) -> datetime:
    if not isinstance(value, datetime):
        value = datetime.combine(value, dtstart.time())
    if dtstart.tzinfo is None:
        return _to_local(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=dtstart.tzinfo)
    return value


def _rule_text(component: Any, dtstart: datetime) -> list[str]:
    raw = component.get("RRULE")
    entries = raw if isinstance(raw, list) else [raw]
    rules: list[str] = []
    for entry in entries:
        text = entry.to_ical().decode("utf-8")
        if dtstart.tzinfo is None:
            text = UNTIL_UTC_PATTERN.sub(r"\1", text)
        else:
            text = UNTIL_DATE_PATTERN.sub(r"\1T235959Z", text)
            text = UNTIL_FLOATING_PATTERN.sub(r"\1Z", text)
        rules.append(text)
    return rules


def _build_ruleset(component: Any, raw_start: datetime | date) -> rruleset:
    if isinstance(raw_start, datetime):
        dtstart = raw_start
    else:
        dtstart = datetime.combine(raw_start, time.min)
    rules = rruleset()
    for text in _rule_text(component, dtstart):
        rules.rrule(rrulestr(text, dtstart=dtstart))
    for value in _property_values(component, "RDATE"):
        rules.rdate(_align(value, dtstart))
    for value in _property_values(component, "EXDATE"):
        rules.exdate(_align(value, dtstart))
    return rules


def _expand_recurring(
    component: Any,
    uid: str,
    overrides: dict[str, Any],
    range_start: datetime,
    range_end: datetime,
    max_occurrences: int,
) -> list[CalendarEvent]:
    start, end, all_day, raw_start = _event_span(component)
    duration = end - start
    title = _text(component, "SUMMARY") or UNTITLED_EVENT
    location = _text(component, "LOCATION")

    events: list[CalendarEvent] = []
    count = 0
    for occurrence in _build_ruleset(component, raw_start):
        if count >= max_occurrences:
            logger.debug("Occurrence cap reached for %s", uid)
            break
        occurrence_start = _to_local(occurrence)
        if occurrence_start > range_end:
            break
        count += 1
        stamp = _occurrence_stamp(occurrence_start, all_day)
        override = overrides.get(stamp)
        if override is not None:
            try:
                o_start, o_end, o_all_day, _ = _event_span(override)
            except ValueError:
                continue
            occurrence_event = CalendarEvent(
                uid=f"{uid}-{stamp}",
                title=_text(override, "SUMMARY") or title,
                start=o_start,
                end=o_end,
                all_day=o_all_day,
                location=_text(override, "LOCATION") or location,
            )
        else:
            occurrence_event = CalendarEvent(
                uid=f"{uid}-{stamp}",
                title=title,
                start=occurrence_start,
                end=occurrence_start + duration,
                all_day=all_day,
                location=location,
            )
        if _overlaps(occurrence_event.start, occurrence_event.end, range_start, range_end):
            events.append(occurrence_event)
    return events


def _single_event(component: Any, uid: str, range_start: datetime, range_end: datetime) -> CalendarEvent | None:
    start, end, all_day, _ = _event_span(component)
    if not _overlaps(start, end, range_start, range_end):
        return None
    return CalendarEvent(
        uid=uid,
        title=_text(component, "SUMMARY") or UNTITLED_EVENT,
        start=start,
        end=end,
        all_day=all_day,
        location=_text(component, "LOCATION"),
    )


def _parse_with_icalendar(
    ics_text: str,
    range_start: datetime,
    range_end: datetime,
    max_occurrences: int,
) -> list[CalendarEvent]:
    calendar_obj = ICalendar.from_ical(ics_text)
    components = list(calendar_obj.walk("VEVENT"))

    recurring_uids = {
        _text(component, "UID")
        for component in components
        if component.get("RRULE") is not None and _text(component, "UID")
    }
    overrides: dict[str, dict[str, Any]] = {}
    for component in components:
        uid = _text(component, "UID")
        if component.get("RECURRENCE-ID") is None or uid not in recurring_uids:
            continue
        try:
            recurrence_id = _to_local(component.decoded("RECURRENCE-ID"))
            all_day = not isinstance(component.decoded("RECURRENCE-ID"), datetime)
        except (ValueError, TypeError) as exc:
            logger.debug("Skipping unreadable RECURRENCE-ID for %s: %s", uid, exc)
            continue
        overrides.setdefault(uid, {})[_occurrence_stamp(recurrence_id, all_day)] = component

    events: list[CalendarEvent] = []
    for component in components:
        uid = _text(component, "UID") or _generated_uid()
        if component.get("RECURRENCE-ID") is not None and uid in recurring_uids:
            continue
        try:
            if component.get("RRULE") is not None:
                events.extend(
                    _expand_recurring(
                        component,
                        uid,
                        overrides.get(uid, {}),
                        range_start,
                        range_end,
                        max_occurrences,
                    )
                )
            else:
                event = _single_event(component, uid, range_start, range_end)
                if event is not None:
                    events.append(event)
        except (ValueError, TypeError, KeyError, OverflowError) as exc:
            logger.warning("Skipping malformed VEVENT %s: %s", uid, exc)
    return events


def _unescape(value: str) -> str:
    return (
        value.replace("\\n", "\n")
        .replace("\\N", "\n")
        .replace("\\,", ",")
        .replace("\\;", ";")
        .replace("\\\\", "\\")
    )


def _extract_property(block: str, name: str) -> str | None:
    pattern = re.compile(rf"^{name}(?:;[^:\r\n]*)?:([^\r\n]+)", re.IGNORECASE | re.MULTILINE)
    match = pattern.search(block)
    return match.group(1).strip() if match else None


def parse_ics_timestamp(value: str) -> datetime:
    text = value.strip()
    is_utc = text.upper().endswith("Z")
    cleaned = re.sub(r"[-:TZtz]", "", text)
    if len(cleaned) == 8:
        return datetime.strptime(cleaned, "%Y%m%d")
    if len(cleaned) >= 12:
        parsed = datetime.strptime(cleaned[:14].ljust(14, "0"), "%Y%m%d%H%M%S")
        if is_utc:
            return _to_local(parsed.replace(tzinfo=timezone.utc))
        return parsed
    raise ValueError(f"Unsupported ICS timestamp: {value!r}")


def _parse_with_patterns(ics_text: str, range_start: datetime, range_end: datetime) -> list[CalendarEvent]:
    unfolded = FOLDED_LINE_PATTERN.sub("", ics_text or "")
    events: list[CalendarEvent] = []
    for block in VEVENT_BLOCK_PATTERN.findall(unfolded):
        dtstart = _extract_property(block, "DTSTART")
        if not dtstart:
            continue
        dtend = _extract_property(block, "DTEND")
        try:
            start = parse_ics_timestamp(dtstart)
            end = parse_ics_timestamp(dtend) if dtend else start + DEFAULT_DURATION
        except ValueError as exc:
            logger.debug("Skipping VEVENT with unreadable dates: %s", exc)
            continue
        if end < start:
            end = start + DEFAULT_DURATION
        if not _overlaps(start, end, range_start, range_end):
            continue
        all_day = len(re.sub(r"\D", "", dtstart)) == 8
        summary = _extract_property(block, "SUMMARY")
        events.append(
            CalendarEvent(
                uid=_extract_property(block, "UID") or _generated_uid(),
                title=_unescape(summary).strip() if summary else UNTITLED_EVENT,
                start=start,
                end=end,
                all_day=all_day,
            )
        )
    return events


def _dedupe(events: list[CalendarEvent]) -> list[CalendarEvent]:
    seen: set[str] = set()
    output: list[CalendarEvent] = []
    for event in events:
        if event.uid in seen:
            continue
        seen.add(event.uid)
        output.append(event)
    output.sort(key=lambda item: item.start)
    return output


def parse_ics_events(
    ics_text: str,
    *,
    now: datetime | None = None,
    window: FeedWindow | None = None,
    strategy: str = "auto",
) -> list[CalendarEvent]:
    window = window or FeedWindow()
    now = _to_local(now) if now is not None else datetime.now()
    range_start, range_end = window.bounds(now)
    text = ics_text.decode("utf-8", errors="replace") if isinstance(ics_text, bytes) else str(ics_text or "")

    if strategy != "pattern":
        try:
            return _dedupe(_parse_with_icalendar(text, range_start, range_end, window.max_occurrences))
        except Exception as exc:
            logger.info("Full ICS grammar rejected feed, using pattern extraction: %s", exc)
    try:
        return _dedupe(_parse_with_patterns(text, range_start, range_end))
    except Exception:
        logger.exception("Pattern extraction failed")
        return []
