"""Exception hierarchy for studycal.

Specific exception types let callers tell store failures, bad input and
external calendar sync problems apart instead of catching bare Exception.
"""

from __future__ import annotations

from typing import Optional


class StudyCalError(Exception):
    """Base exception for all studycal errors."""


class InvalidEventError(StudyCalError, ValueError):
    """Event data failed validation.

    Raised when:
    - A store document cannot be decoded into a CalendarEvent
    - A recurrence rule is encoded with an unsupported frequency or interval
    - A time or date field is malformed
    """


class EventStoreError(StudyCalError):
    """Document store operation failed."""


class PermissionDeniedError(EventStoreError):
    """The store refused a query or write for the current user.

    The event store adapter treats this on the broadcast query as a signal to
    fall back to the user's own events.
    """


class DocumentNotFoundError(EventStoreError):
    """Update or delete targeted a document id that does not exist."""


class CalendarSyncError(StudyCalError):
    """Base exception for external calendar sync errors."""


class CalendarAuthError(CalendarSyncError):
    """Authorization handshake with the calendar provider failed.

    ``code`` carries the provider's error code (e.g. ``auth/popup-blocked``)
    so failures can be classified into user-facing messages.
    """

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class CalendarFetchError(CalendarSyncError):
    """Fetching events from the calendar API failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
