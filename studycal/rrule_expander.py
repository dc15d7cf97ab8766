"""Occurrence expansion for recurring calendar events.

Expansion is a pure read-time projection: the same masters and window always
produce the same occurrences, so the calendar view re-runs it on every store
update and every week change without caching.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Union

from dateutil.relativedelta import relativedelta

from .models import CalendarEvent, Frequency, OccurrenceKey
from .rrule_codec import DecodedRule, decode_rrule

logger = logging.getLogger(__name__)

# Hard cap on cursor steps per master, counted from the anchor
MAX_EXPANSION_STEPS = 365


@dataclass
class ExpanderConfig:
    """Configuration for occurrence expansion."""

    max_steps: int = MAX_EXPANSION_STEPS

    @classmethod
    def from_settings(cls, settings: Any) -> ExpanderConfig:
        """Extract expansion settings from a config object, dict or None."""
        if settings is None:
            return cls()
        if isinstance(settings, dict):
            raw = settings.get("max_expansion_steps", MAX_EXPANSION_STEPS)
        else:
            raw = getattr(settings, "max_expansion_steps", MAX_EXPANSION_STEPS)
        try:
            max_steps = int(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid max_expansion_steps=%r; using %d", raw, MAX_EXPANSION_STEPS)
            max_steps = MAX_EXPANSION_STEPS
        return cls(max_steps=max(1, max_steps))


class StopReason(str, Enum):
    """Why expansion of one master stopped."""

    WINDOW_END = "window_end"
    UNTIL = "until"
    SAFETY_CAP = "safety_cap"


@dataclass
class MasterExpansion:
    """Occurrences generated for one master plus how the loop ended."""

    master: CalendarEvent
    rule: DecodedRule
    occurrences: list[CalendarEvent] = field(default_factory=list)
    steps: int = 0
    stop_reason: StopReason = StopReason.WINDOW_END


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def occurrence_start(anchor: datetime, rule: DecodedRule, step: int) -> datetime:
    """Start of occurrence number ``step`` (0 is the anchor itself).

    Monthly steps are taken from the anchor with ``relativedelta``, which clamps
    to the last day of shorter months without drifting: a Jan 31 series lands
    on Feb 28/29, Mar 31, Apr 30.
    """
    if rule.frequency == Frequency.MONTHLY:
        return anchor + relativedelta(months=rule.interval * step)
    days = rule.interval * step
    if rule.frequency == Frequency.WEEKLY:
        days *= 7
    return anchor + timedelta(days=days)


class OccurrenceExpander:
    """Expands recurring masters into dated occurrences for a date window."""

    def __init__(self, settings: Any = None):
        """Initialize expander.

        Args:
            settings: Optional config object or dict with ``max_expansion_steps``
        """
        config = ExpanderConfig.from_settings(settings)
        self.max_steps = config.max_steps

    def expand(
        self,
        events: Iterable[CalendarEvent],
        window_start: Union[date, datetime],
        window_end: Union[date, datetime],
    ) -> list[CalendarEvent]:
        """Expand every recurring master in ``events`` over the window.

        Non-recurring events (and masters without a date) pass through
        unchanged and are not filtered by the window.

        Args:
            events: Masters and/or plain events
            window_start: First visible day (inclusive)
            window_end: Last visible day (inclusive)

        Returns:
            Plain events and expanded occurrences, in input order
        """
        start = _as_date(window_start)
        end = _as_date(window_end)
        result: list[CalendarEvent] = []
        for event in events:
            if not event.is_master or event.date is None:
                result.append(event)
                continue
            result.extend(self.expand_master(event, start, end).occurrences)
        return result

    def expand_master(
        self,
        master: CalendarEvent,
        window_start: Union[date, datetime],
        window_end: Union[date, datetime],
    ) -> MasterExpansion:
        """Walk one master's recurrence from its anchor through the window.

        The loop ends at the first of: cursor past ``window_end``, cursor past
        the rule's UNTIL, or ``max_steps`` cursor positions.
        """
        start = _as_date(window_start)
        end = _as_date(window_end)
        rule = decode_rrule(master.rrule)
        expansion = MasterExpansion(master=master, rule=rule)

        if master.date is None:
            return expansion

        anchor = datetime.combine(master.date, time()) + timedelta(minutes=master.start_minutes)

        step = 0
        while step < self.max_steps:
            cursor = occurrence_start(anchor, rule, step)
            if cursor.date() > end:
                expansion.stop_reason = StopReason.WINDOW_END
                break
            if rule.until is not None and cursor > rule.until:
                expansion.stop_reason = StopReason.UNTIL
                break
            if cursor.date() >= start:
                expansion.occurrences.append(self._make_occurrence(master, cursor))
            step += 1
        else:
            expansion.stop_reason = StopReason.SAFETY_CAP
            logger.debug(
                "Expansion of %s stopped at safety cap of %d steps", master.id, self.max_steps
            )
        expansion.steps = step

        logger.debug(
            "Expanded master %s (%s x%d) over %s..%s: %d occurrence(s), stop=%s",
            master.id,
            rule.frequency.value,
            rule.interval,
            start,
            end,
            len(expansion.occurrences),
            expansion.stop_reason.value,
        )
        return expansion

    def _make_occurrence(self, master: CalendarEvent, start: datetime) -> CalendarEvent:
        key = OccurrenceKey.for_start(master.id, start)
        return master.model_copy(
            update={
                "id": key.to_id(),
                "date": start.date(),
                "is_recurring": False,
                "occurrence": key,
            },
            deep=True,
        )


def expand_recurring_events(
    events: Iterable[CalendarEvent],
    window_start: Union[date, datetime],
    window_end: Union[date, datetime],
    settings: Any = None,
) -> list[CalendarEvent]:
    """Convenience wrapper around ``OccurrenceExpander(settings).expand``."""
    return OccurrenceExpander(settings).expand(events, window_start, window_end)
