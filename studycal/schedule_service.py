"""Event save/delete flows, admin broadcast scheduling and today's timeline."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Optional

from .event_merger import DEFAULT_EVENT_TIME
from .event_store import EventStoreAdapter
from .models import (
    BROADCAST_USER_ID,
    DEFAULT_DURATION_MINUTES,
    EXTERNAL_ID_PREFIX,
    AssignedBy,
    CalendarEvent,
    EventDraft,
    EventType,
    RecurrenceForm,
    coerce_time,
    resolve_master_id,
)
from .rrule_codec import encode_rrule
from .time_utils import today as local_today

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


class ScheduleService:
    """Writes calendar events on behalf of the calendar view and admin dashboard."""

    def __init__(
        self,
        store: EventStoreAdapter,
        settings: Any = None,
        clock: Callable[[], date] = local_today,
    ) -> None:
        """Initialize service.

        Args:
            store: Event store adapter used for all writes
            settings: Optional config with ``default_event_time`` and
                ``default_duration_minutes``
            clock: Returns today's date; used for the default event date
        """
        self.store = store
        self.clock = clock
        self.default_time = getattr(settings, "default_event_time", DEFAULT_EVENT_TIME)
        self.default_duration = getattr(
            settings, "default_duration_minutes", DEFAULT_DURATION_MINUTES
        )

    async def save_event(
        self,
        draft: EventDraft,
        recurrence: Optional[RecurrenceForm],
        user_id: Optional[str],
    ) -> Optional[CalendarEvent]:
        """Create or update an event from the edit form.

        Does nothing (returns None) without a title or an acting user, or for
        an external event id. An occurrence id is redirected to its master so
        the whole series changes.

        Raises:
            EventStoreError: If the store write fails
            InvalidEventError: If the recurrence settings cannot be encoded
        """
        title = (draft.title or "").strip()
        if not title or not user_id:
            logger.debug("Ignoring save without title or user")
            return None
        if draft.id and draft.id.startswith(EXTERNAL_ID_PREFIX):
            logger.warning("Refusing to save external event %s", draft.id)
            return None

        recurrence = recurrence or RecurrenceForm()
        rrule = None
        if recurrence.enabled:
            rrule = encode_rrule(recurrence.frequency, recurrence.interval, recurrence.end_date)

        event = CalendarEvent(
            id=resolve_master_id(draft.id) if draft.id else "",
            title=title,
            date=draft.date or self.clock(),
            time=draft.time or self.default_time,
            duration_minutes=draft.duration_minutes or self.default_duration,
            type=draft.type,
            user_id=user_id,
            is_recurring=rrule is not None,
            rrule=rrule,
            description=draft.description,
            properties=draft.properties,
        )

        if event.id:
            if event.id != draft.id:
                logger.debug("Redirecting save of occurrence %s to master %s", draft.id, event.id)
            await self.store.update(event.id, self._update_fields(event))
            return event
        created = await self.store.create(event)
        logger.info("Created event %s (%s)", created.id, created.title)
        return created

    @staticmethod
    def _update_fields(event: CalendarEvent) -> dict[str, Any]:
        # assigned_by is left as stored
        return {
            "title": event.title,
            "date": event.date,
            "time": event.time,
            "duration_minutes": event.duration_minutes,
            "type": event.type,
            "user_id": event.user_id,
            "is_recurring": event.is_recurring,
            "rrule": event.rrule,
            "description": event.description,
            "properties": event.properties,
        }

    async def delete_event(self, event_id: Optional[str]) -> Optional[str]:
        """Delete the stored event behind ``event_id`` (the master for occurrences).

        Returns the deleted master id, or None when no id was given or the id
        belongs to an external (read-only) event.
        """
        if not event_id:
            return None
        if event_id.startswith(EXTERNAL_ID_PREFIX):
            logger.warning("Refusing to delete external event %s", event_id)
            return None
        master_id = resolve_master_id(event_id)
        await self.store.delete(master_id)
        logger.info("Deleted event %s", master_id)
        return master_id

    async def schedule_broadcast(
        self,
        title: str,
        event_date: date,
        time: str,
        duration_minutes: int = DEFAULT_DURATION_MINUTES,
        target_user_id: str = BROADCAST_USER_ID,
    ) -> Optional[CalendarEvent]:
        """Schedule an admin exam for one user, or for everyone by default."""
        title = (title or "").strip()
        if not title:
            return None
        event = CalendarEvent(
            title=title,
            date=event_date,
            time=time,
            duration_minutes=duration_minutes,
            type=EventType.EXAM,
            user_id=target_user_id or BROADCAST_USER_ID,
            assigned_by=AssignedBy.ADMIN,
        )
        created = await self.store.create(event)
        logger.info("Scheduled admin event %s for %s", created.id, created.user_id)
        return created


@dataclass
class TimelineEntry:
    """One row of the dashboard's "Up Next" panel."""

    event: CalendarEvent
    start: Optional[str]
    end: Optional[str]


def compute_end_time(start: str, duration_minutes: int) -> str:
    """End time ``HH:MM`` for a start time plus duration, wrapping past midnight."""
    normalized = coerce_time(start)
    if normalized is None:
        raise ValueError("start time is required")
    hours, minutes = normalized.split(":")
    total = (int(hours) * 60 + int(minutes) + int(duration_minutes)) % MINUTES_PER_DAY
    return f"{total // 60:02d}:{total % 60:02d}"


def todays_timeline(
    events: Iterable[CalendarEvent], today: Optional[date] = None
) -> list[TimelineEntry]:
    """Stored events dated today, sorted by start time, with end times."""
    today = today or local_today()
    todays = sorted(
        (event for event in events if event.date == today),
        key=lambda event: event.time or "",
    )
    return [
        TimelineEntry(
            event=event,
            start=event.time,
            end=compute_end_time(event.time, event.duration_minutes) if event.time else None,
        )
        for event in todays
    ]
