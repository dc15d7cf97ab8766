"""Data models for the study calendar.

Store documents use camelCase field names (``durationMinutes``, ``isRecurring``);
the models expose snake_case attributes and serialize back with aliases.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from collections.abc import Mapping
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .exceptions import InvalidEventError

logger = logging.getLogger(__name__)

# Owner sentinel for events visible to every user
BROADCAST_USER_ID = "all"

# Id prefix of events imported from Google Calendar; such events are read-only
EXTERNAL_ID_PREFIX = "gcal_"
EXTERNAL_LINK_PROPERTY_ID = "gcal_link"

DEFAULT_DURATION_MINUTES = 60

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")


class EventType(str, Enum):
    """Event classification; drives display colour only."""

    CLASS = "class"
    STUDY = "study"
    EXAM = "exam"
    OTHER = "other"


class AssignedBy(str, Enum):
    """Who created the event. Admin events are read-only for students."""

    USER = "user"
    ADMIN = "admin"


class PropertyType(str, Enum):
    """Kinds of free-form event properties."""

    TEXT = "text"
    SELECT = "select"
    MULTI_SELECT = "multi_select"
    URL = "url"
    STATUS = "status"


class Frequency(str, Enum):
    """Recurrence frequencies supported by the rule codec."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


def coerce_time(value: Any) -> Optional[str]:
    """Normalize a time-of-day value to ``HH:MM`` (24h).

    Accepts ``H:MM``, ``HH:MM`` and ``HH:MM:SS``. Empty values become None.

    Raises:
        ValueError: If the value is not a valid time of day
    """
    if value is None:
        return None
    if isinstance(value, dt.time):
        return value.strftime("%H:%M")
    text = str(value).strip()
    if not text:
        return None
    match = _TIME_RE.match(text)
    if not match:
        raise ValueError(f"time must be HH:MM, got {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"time out of range: {value!r}")
    return f"{hour:02d}:{minute:02d}"


def coerce_date(value: Any) -> Any:
    """Trim ISO datetime strings to their date part; empty strings become None."""
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        return text[:10]
    return value


class EventProperty(BaseModel):
    """Named free-form attribute attached to an event."""

    id: str = Field(..., description="Property id")
    name: str = Field(default="", description="Display name")
    type: PropertyType = Field(default=PropertyType.TEXT, description="Property type")
    value: Any = Field(default=None, description="String, list of strings or option object")

    model_config = ConfigDict(use_enum_values=True, validate_default=True)


class OccurrenceKey(BaseModel):
    """Identity of one expanded occurrence: its master id and its concrete day.

    The flat string id ``{master_id}_{epoch_millis}`` is only produced by
    ``to_id()`` and read back by ``parse()``; everything else works with the
    structured key.
    """

    SEPARATOR: ClassVar[str] = "_"

    master_id: str
    occurrence_date: dt.date
    epoch_millis: int

    model_config = ConfigDict(frozen=True)

    @classmethod
    def for_start(cls, master_id: str, start: dt.datetime) -> OccurrenceKey:
        """Build the key for an occurrence starting at ``start`` (read as UTC)."""
        utc_start = start.replace(tzinfo=dt.timezone.utc) if start.tzinfo is None else start
        millis = int(utc_start.timestamp() * 1000)
        return cls(master_id=master_id, occurrence_date=start.date(), epoch_millis=millis)

    def to_id(self) -> str:
        """Serialize to the flat occurrence id used as a list key."""
        return f"{self.master_id}{self.SEPARATOR}{self.epoch_millis}"

    @classmethod
    def parse(cls, event_id: str) -> Optional[OccurrenceKey]:
        """Parse an occurrence id, or return None if ``event_id`` is not one.

        The suffix after the last separator must be an integer; master ids may
        themselves contain the separator.
        """
        if not event_id or cls.SEPARATOR not in event_id:
            return None
        master_id, suffix = event_id.rsplit(cls.SEPARATOR, 1)
        if not master_id or not suffix.lstrip("-").isdigit():
            return None
        millis = int(suffix)
        try:
            start = dt.datetime.fromtimestamp(millis / 1000, tz=dt.timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
        return cls(master_id=master_id, occurrence_date=start.date(), epoch_millis=millis)


def resolve_master_id(event_id: str) -> str:
    """Return the master id behind an occurrence id, or the id itself.

    External ids are never occurrence ids, even when they end in digits.
    """
    if event_id.startswith(EXTERNAL_ID_PREFIX):
        return event_id
    key = OccurrenceKey.parse(event_id)
    return key.master_id if key else event_id


class CalendarEvent(BaseModel):
    """A calendar event: a plain instance, a recurring master or an expanded occurrence."""

    id: str = Field(default="", description="Document id, or occurrence id for expansions")
    title: str = Field(..., min_length=1, description="User-visible title")
    date: Optional[dt.date] = Field(default=None, description="Concrete day, or anchor for masters")
    time: Optional[str] = Field(default=None, description="Start time HH:MM; None for all-day")
    duration_minutes: int = Field(default=DEFAULT_DURATION_MINUTES, ge=0)
    type: EventType = Field(default=EventType.OTHER)
    user_id: Optional[str] = Field(default=None, description="Owner uid or 'all'")
    assigned_by: AssignedBy = Field(default=AssignedBy.USER)
    is_recurring: bool = Field(default=False, description="True on recurring masters only")
    rrule: Optional[str] = Field(default=None, description="FREQ=..;INTERVAL=..;UNTIL=..")
    description: Optional[str] = None
    properties: list[EventProperty] = Field(default_factory=list)

    # Set only on expanded occurrences; never persisted
    occurrence: Optional[OccurrenceKey] = Field(default=None, exclude=True)

    model_config = ConfigDict(
        use_enum_values=True,
        validate_default=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )

    @field_validator("time", mode="before")
    @classmethod
    def _validate_time(cls, value: Any) -> Optional[str]:
        return coerce_time(value)

    @field_validator("date", mode="before")
    @classmethod
    def _validate_date(cls, value: Any) -> Any:
        return coerce_date(value)

    @field_validator("duration_minutes", mode="before")
    @classmethod
    def _validate_duration(cls, value: Any) -> Any:
        if value is None or value == "":
            return DEFAULT_DURATION_MINUTES
        if isinstance(value, float):
            return int(value)
        return value

    @field_validator("type", mode="before")
    @classmethod
    def _validate_type(cls, value: Any) -> Any:
        if value is None:
            return EventType.OTHER
        try:
            return EventType(value)
        except ValueError:
            logger.debug("Unknown event type %r; using 'other'", value)
            return EventType.OTHER

    @field_validator("assigned_by", mode="before")
    @classmethod
    def _validate_assigned_by(cls, value: Any) -> Any:
        return AssignedBy.USER if value is None else value

    @field_validator("is_recurring", mode="before")
    @classmethod
    def _validate_is_recurring(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("properties", mode="before")
    @classmethod
    def _validate_properties(cls, value: Any) -> Any:
        return [] if value is None else value

    @model_validator(mode="after")
    def _normalize_recurrence(self) -> CalendarEvent:
        if self.occurrence is not None:
            return self
        if self.is_recurring and not self.rrule:
            logger.debug("Event %s flagged recurring without rrule; treating as plain", self.id)
            self.is_recurring = False
        elif not self.is_recurring and self.rrule:
            logger.debug("Event %s has rrule but is not recurring; dropping rrule", self.id)
            self.rrule = None
        return self

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> CalendarEvent:
        """Validate a raw store document into a CalendarEvent.

        Unknown fields are ignored and missing optional fields defaulted.

        Raises:
            InvalidEventError: If the document cannot be decoded
        """
        payload = dict(data)
        payload["id"] = doc_id
        payload.pop("occurrence", None)
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise InvalidEventError(
                f"Document {doc_id!r} is not a valid event ({exc.error_count()} error(s))"
            ) from exc

    def to_document(self) -> dict[str, Any]:
        """Serialize to a store document (camelCase keys, without id)."""
        return self.model_dump(mode="json", by_alias=True, exclude={"id", "occurrence"})

    @property
    def is_external(self) -> bool:
        """True for events imported from an external calendar."""
        return self.id.startswith(EXTERNAL_ID_PREFIX)

    @property
    def is_admin_assigned(self) -> bool:
        return self.assigned_by == AssignedBy.ADMIN

    @property
    def is_master(self) -> bool:
        return bool(self.is_recurring and self.rrule)

    @property
    def is_occurrence(self) -> bool:
        return self.occurrence is not None

    @property
    def master_id(self) -> str:
        """Id of the persisted document this event comes from."""
        if self.occurrence is not None:
            return self.occurrence.master_id
        return self.id

    @property
    def start_minutes(self) -> int:
        """Minutes since midnight of the start time (0 for all-day events)."""
        if not self.time:
            return 0
        hours, minutes = self.time.split(":")
        return int(hours) * 60 + int(minutes)

    @property
    def is_all_day(self) -> bool:
        return self.time is None

    def start_datetime(self) -> Optional[dt.datetime]:
        """Naive start datetime, or None if the event has no date."""
        if self.date is None:
            return None
        return dt.datetime.combine(self.date, dt.time()) + dt.timedelta(minutes=self.start_minutes)

    @property
    def external_link(self) -> Optional[str]:
        """Deep link to the event in its source calendar, if any."""
        for prop in self.properties:
            if prop.id == EXTERNAL_LINK_PROPERTY_ID and prop.value:
                return str(prop.value)
        return None


def document_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Convert a partial field mapping to store document keys and JSON values.

    Accepts either attribute names (``duration_minutes``) or document names
    (``durationMinutes``). ``id`` and ``occurrence`` are never written.
    """
    converted: dict[str, Any] = {}
    model_fields = CalendarEvent.model_fields
    for key, value in fields.items():
        if key in ("id", "occurrence"):
            continue
        info = model_fields.get(key)
        name = info.alias if info is not None and info.alias else key
        converted[name] = _to_json_value(value)
    return converted


def _to_json_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dt.date, dt.datetime)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_to_json_value(item) for item in value]
    return value


class EventDraft(BaseModel):
    """Editable event fields as held by the event form before saving."""

    id: Optional[str] = None
    title: str = ""
    date: Optional[dt.date] = None
    time: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    type: EventType = EventType.STUDY
    description: Optional[str] = None
    properties: list[EventProperty] = Field(default_factory=list)

    model_config = ConfigDict(
        use_enum_values=True, validate_default=True, populate_by_name=True, alias_generator=to_camel
    )

    @field_validator("time", mode="before")
    @classmethod
    def _validate_time(cls, value: Any) -> Optional[str]:
        return coerce_time(value)

    @field_validator("date", mode="before")
    @classmethod
    def _validate_date(cls, value: Any) -> Any:
        return coerce_date(value)

    @classmethod
    def from_event(cls, event: CalendarEvent) -> EventDraft:
        """Seed a draft with an event's current field values."""
        return cls(
            id=event.id or None,
            title=event.title,
            date=event.date,
            time=event.time,
            duration_minutes=event.duration_minutes,
            type=event.type,
            description=event.description,
            properties=[prop.model_copy() for prop in event.properties],
        )


class RecurrenceForm(BaseModel):
    """Recurrence controls of the event form."""

    enabled: bool = False
    frequency: Frequency = Frequency.WEEKLY
    interval: int = Field(default=1, ge=1)
    end_date: Optional[dt.date] = None

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    @field_validator("end_date", mode="before")
    @classmethod
    def _validate_end_date(cls, value: Any) -> Any:
        return coerce_date(value)

    @classmethod
    def from_rrule(cls, rrule: Optional[str]) -> RecurrenceForm:
        """Seed recurrence controls from a stored rule; no rule means disabled."""
        if not rrule:
            return cls()
        from .rrule_codec import decode_rrule

        decoded = decode_rrule(rrule)
        return cls(
            enabled=True,
            frequency=decoded.frequency,
            interval=decoded.interval,
            end_date=decoded.end_date,
        )
