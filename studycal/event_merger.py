"""Timeline merge and permission layer for the week calendar.

Combines stored plain events, expanded recurring occurrences and imported
external events into one list, lays them out per day, and decides what a
click on an event does.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from .calendar_importer import ExternalCalendarImporter, ImportResult, SyncFailure
from .models import (
    DEFAULT_DURATION_MINUTES,
    CalendarEvent,
    EventDraft,
    EventType,
    Frequency,
    RecurrenceForm,
)
from .rrule_expander import OccurrenceExpander
from .time_utils import now_local

logger = logging.getLogger(__name__)

DAYS_PER_WEEK = 7
MINUTES_PER_DAY = 24 * 60

SYNC_LOOKBACK_DAYS = 14
SYNC_LOOKAHEAD_DAYS = 45

DEFAULT_EVENT_TIME = "09:00"

ADMIN_EVENT_NOTICE = "This is an official test/event scheduled by your admin. You cannot edit it."
EXTERNAL_EVENT_NOTICE = "This is a Google Calendar event."


@dataclass(frozen=True)
class DateWindow:
    """Inclusive range of calendar days."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"Window end {self.end} is before start {self.start}")

    def contains(self, day: Optional[date]) -> bool:
        return day is not None and self.start <= day <= self.end

    @property
    def days(self) -> list[date]:
        return [
            self.start + timedelta(days=offset)
            for offset in range((self.end - self.start).days + 1)
        ]


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def week_start(view_date: Union[date, datetime]) -> date:
    """Monday of the week containing ``view_date``."""
    day = _as_date(view_date)
    return day - timedelta(days=day.weekday())


def week_window(view_date: Union[date, datetime]) -> DateWindow:
    """Monday..Sunday window containing ``view_date``."""
    start = week_start(view_date)
    return DateWindow(start, start + timedelta(days=DAYS_PER_WEEK - 1))


def navigate_week(view_date: Union[date, datetime], direction: int) -> date:
    """Move the view date by ``direction`` whole weeks (+1 next, -1 previous)."""
    return _as_date(view_date) + timedelta(days=DAYS_PER_WEEK * direction)


def sync_window(view_date: Union[date, datetime], settings: Any = None) -> DateWindow:
    """Padded window for external fetches around the visible week."""
    lookback = getattr(settings, "sync_lookback_days", SYNC_LOOKBACK_DAYS)
    lookahead = getattr(settings, "sync_lookahead_days", SYNC_LOOKAHEAD_DAYS)
    start = week_start(view_date)
    return DateWindow(start - timedelta(days=lookback), start + timedelta(days=lookahead))


@dataclass
class WeekView:
    """Merged events for the visible week and the outcome of the external sync."""

    window: DateWindow
    events: list[CalendarEvent]
    failure: Optional[SyncFailure] = None


class TimelineMerger:
    """Builds the visible event list from stored and external events."""

    def __init__(self, settings: Any = None, expander: Optional[OccurrenceExpander] = None):
        self.settings = settings
        self.expander = expander or OccurrenceExpander(settings)

    def merge(
        self,
        stored_events: Iterable[CalendarEvent],
        external_events: Iterable[CalendarEvent],
        window: DateWindow,
    ) -> list[CalendarEvent]:
        """Concatenate plain events, expanded occurrences and in-window external events.

        Plain stored events pass through unfiltered; day bucketing in
        ``layout_week`` drops those outside the week.
        """
        stored = list(stored_events)
        plain = [event for event in stored if not event.is_master]
        masters = [event for event in stored if event.is_master]
        expanded = self.expander.expand(masters, window.start, window.end)
        external = [event for event in external_events if window.contains(event.date)]

        logger.debug(
            "Merged %d plain, %d expanded, %d external event(s) for %s..%s",
            len(plain),
            len(expanded),
            len(external),
            window.start,
            window.end,
        )
        return plain + expanded + external

    async def build_week(
        self,
        stored_events: Iterable[CalendarEvent],
        view_date: Union[date, datetime],
        importer: Optional[ExternalCalendarImporter] = None,
    ) -> WeekView:
        """Sync external events for the padded window and merge the visible week.

        Without an importer only stored events are merged. A failed sync still
        yields the stored events; the classified failure is returned for display.
        """
        window = week_window(view_date)
        result = ImportResult(events=[])
        if importer is not None:
            fetch = sync_window(view_date, self.settings)
            result = await importer.sync(fetch.start, fetch.end)
        return WeekView(window, self.merge(stored_events, result.events, window), result.failure)


@dataclass
class PositionedEvent:
    """An event placed in a day column; one minute is one pixel."""

    event: CalendarEvent
    top: int
    height: int

    @property
    def all_day(self) -> bool:
        return self.event.is_all_day


@dataclass
class DayColumn:
    day: date
    events: list[PositionedEvent] = field(default_factory=list)


def position_event(event: CalendarEvent) -> PositionedEvent:
    if event.is_all_day:
        return PositionedEvent(event=event, top=0, height=MINUTES_PER_DAY)
    return PositionedEvent(event=event, top=event.start_minutes, height=event.duration_minutes)


def layout_week(events: Iterable[CalendarEvent], window: DateWindow) -> list[DayColumn]:
    """Bucket events into one column per window day, ordered by start time."""
    columns = {day: DayColumn(day) for day in window.days}
    for event in events:
        column = columns.get(event.date) if event.date else None
        if column is not None:
            column.events.append(position_event(event))
    for column in columns.values():
        column.events.sort(key=lambda placed: (not placed.all_day, placed.top))
    return list(columns.values())


def current_time_offset(now: Optional[datetime] = None) -> int:
    """Minutes since midnight, for the "now" line."""
    now = now or now_local()
    return now.hour * 60 + now.minute


def format_hour_label(hour: int) -> str:
    """12-hour label for an hour row: 0 -> "12 AM", 13 -> "1 PM"."""
    if not 0 <= hour <= 23:
        raise ValueError(f"hour must be 0-23, got {hour}")
    suffix = "AM" if hour < 12 else "PM"
    return f"{hour % 12 or 12} {suffix}"


def display_tone(event: CalendarEvent) -> str:
    """Colour key: external, then admin, then the event type."""
    if event.is_external:
        return "external"
    if event.is_admin_assigned:
        return "admin"
    return EventType(event.type).value


class EditForm(BaseModel):
    """State of the event form: editable fields plus recurrence controls."""

    draft: EventDraft = Field(default_factory=EventDraft)
    recurrence: RecurrenceForm = Field(default_factory=RecurrenceForm)

    @classmethod
    def from_event(cls, event: CalendarEvent) -> EditForm:
        """Seed the form from a master or plain event.

        Given an occurrence, the draft points back at the master id so the
        edit applies to the whole series.
        """
        draft = EventDraft.from_event(event)
        if event.is_occurrence:
            draft.id = event.master_id
        return cls(draft=draft, recurrence=RecurrenceForm.from_rrule(event.rrule))

    @classmethod
    def new(cls, today: date, settings: Any = None) -> EditForm:
        """Blank form for a new study event on ``today``."""
        draft = EventDraft(
            title="",
            date=today,
            time=getattr(settings, "default_event_time", DEFAULT_EVENT_TIME),
            duration_minutes=getattr(
                settings, "default_duration_minutes", DEFAULT_DURATION_MINUTES
            ),
            type=EventType.STUDY,
        )
        return cls(draft=draft, recurrence=RecurrenceForm(frequency=Frequency.WEEKLY, interval=1))


class ClickActionKind(str, Enum):
    OPEN_EXTERNAL = "open_external"
    NOTICE = "notice"
    EDIT = "edit"


@dataclass
class ClickAction:
    """What the view should do when an event is clicked."""

    kind: ClickActionKind
    url: Optional[str] = None
    message: Optional[str] = None
    form: Optional[EditForm] = None


def find_master(
    event: CalendarEvent, stored_events: Sequence[CalendarEvent]
) -> Optional[CalendarEvent]:
    """Return the stored document behind ``event`` (itself if it is plain)."""
    master_id = event.master_id
    for candidate in stored_events:
        if candidate.id == master_id:
            return candidate
    return None


def resolve_click(
    event: CalendarEvent, stored_events: Sequence[CalendarEvent] = ()
) -> ClickAction:
    """Decide the click action for a visible event.

    External events open their source link (or a notice without one), admin
    events show a notice, anything else opens the edit form seeded with the
    master's fields.
    """
    if event.is_external:
        link = event.external_link
        if link:
            return ClickAction(kind=ClickActionKind.OPEN_EXTERNAL, url=link)
        return ClickAction(kind=ClickActionKind.NOTICE, message=EXTERNAL_EVENT_NOTICE)
    if event.is_admin_assigned:
        return ClickAction(kind=ClickActionKind.NOTICE, message=ADMIN_EVENT_NOTICE)

    master = find_master(event, stored_events)
    if master is None and event.is_occurrence:
        logger.debug("Master %s not in stored events; seeding from occurrence", event.master_id)
    return ClickAction(kind=ClickActionKind.EDIT, form=EditForm.from_event(master or event))


def can_edit(event: CalendarEvent) -> bool:
    return not event.is_external and not event.is_admin_assigned


def can_delete(event: CalendarEvent) -> bool:
    return can_edit(event)
