"""Event store adapter over a document store with live queries.

The adapter subscribes to "events owned by the user OR broadcast to all",
decodes every snapshot into validated CalendarEvent objects and pushes the
full list to the caller on each change. If the store refuses the broadcast
clause, the subscription falls back to the user's own events.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from .exceptions import (
    DocumentNotFoundError,
    EventStoreError,
    InvalidEventError,
    PermissionDeniedError,
)
from .models import BROADCAST_USER_ID, CalendarEvent, document_fields

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "schedule"
OWNER_FIELD = "userId"

Snapshot = list[tuple[str, dict[str, Any]]]
SnapshotCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


class DocumentStore(Protocol):
    """Minimal document database interface used by the adapter."""

    def watch(
        self,
        collection: str,
        field: str,
        values: Sequence[str],
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        """Deliver all documents whose ``field`` is in ``values``, now and on every change."""
        ...

    async def add(self, collection: str, data: Mapping[str, Any]) -> str:
        """Insert a document and return its generated id."""
        ...

    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        """Merge ``fields`` into an existing document."""
        ...

    async def delete(self, collection: str, doc_id: str) -> None:
        """Remove a document."""
        ...


@dataclass
class _Watch:
    collection: str
    field: str
    values: frozenset[str]
    on_snapshot: SnapshotCallback
    on_error: ErrorCallback
    active: bool = True


def _noop() -> None:
    return None


class InMemoryDocumentStore:
    """Process-local DocumentStore with push-on-change watches.

    ``denied_values`` simulates security rules: a watch whose value list
    includes any of them fails with PermissionDeniedError.
    """

    def __init__(self, denied_values: Iterable[str] = ()):
        self.denied_values = frozenset(denied_values)
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._watches: list[_Watch] = []

    def seed(self, collection: str, documents: Mapping[str, Mapping[str, Any]]) -> None:
        """Load documents keyed by id without notifying watchers."""
        docs = self._collections.setdefault(collection, {})
        for doc_id, data in documents.items():
            docs[str(doc_id)] = copy.deepcopy(dict(data))

    def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def watch(
        self,
        collection: str,
        field: str,
        values: Sequence[str],
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        wanted = frozenset(values)
        refused = wanted & self.denied_values
        if refused:
            on_error(
                PermissionDeniedError(
                    f"Missing permission to read {collection} where {field} in {sorted(refused)}"
                )
            )
            return _noop

        entry = _Watch(collection, field, wanted, on_snapshot, on_error)
        self._watches.append(entry)
        on_snapshot(self._snapshot(entry))

        def unsubscribe() -> None:
            entry.active = False
            if entry in self._watches:
                self._watches.remove(entry)

        return unsubscribe

    async def add(self, collection: str, data: Mapping[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(dict(data))
        self._notify(collection)
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        doc = self._collections.get(collection, {}).get(doc_id)
        if doc is None:
            raise DocumentNotFoundError(f"No document {doc_id!r} in {collection}")
        doc.update(copy.deepcopy(dict(fields)))
        self._notify(collection)

    async def delete(self, collection: str, doc_id: str) -> None:
        docs = self._collections.get(collection, {})
        if doc_id not in docs:
            raise DocumentNotFoundError(f"No document {doc_id!r} in {collection}")
        del docs[doc_id]
        self._notify(collection)

    def _snapshot(self, entry: _Watch) -> Snapshot:
        docs = self._collections.get(entry.collection, {})
        return [
            (doc_id, copy.deepcopy(data))
            for doc_id, data in docs.items()
            if data.get(entry.field) in entry.values
        ]

    def _notify(self, collection: str) -> None:
        for entry in list(self._watches):
            if entry.active and entry.collection == collection:
                entry.on_snapshot(self._snapshot(entry))


class SubscriptionMode(str, Enum):
    """Which query a subscription is running."""

    COMBINED = "combined"  # own events plus broadcast events
    USER_ONLY = "user_only"  # fallback after the broadcast clause was refused


class EventSubscription:
    """Handle for a live event subscription."""

    def __init__(self, user_id: str, callback: Callable[[list[CalendarEvent]], None]):
        self.user_id = user_id
        self.callback = callback
        self.mode = SubscriptionMode.COMBINED
        self.active = True
        self.last_events: list[CalendarEvent] = []
        self._unsubscribe: Optional[Unsubscribe] = None

    @property
    def is_fallback(self) -> bool:
        return self.mode == SubscriptionMode.USER_ONLY

    def unsubscribe(self) -> None:
        """Stop receiving updates."""
        self.active = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _replace_handle(self, handle: Unsubscribe) -> None:
        previous, self._unsubscribe = self._unsubscribe, handle
        if previous is not None:
            previous()

    def _deliver(self, events: list[CalendarEvent]) -> None:
        if not self.active:
            return
        self.last_events = events
        self.callback(events)


class EventStoreAdapter:
    """Reads and writes calendar events in a DocumentStore collection."""

    def __init__(self, store: DocumentStore, collection: str = DEFAULT_COLLECTION):
        self.store = store
        self.collection = collection

    def subscribe(
        self, user_id: str, callback: Callable[[list[CalendarEvent]], None]
    ) -> EventSubscription:
        """Subscribe to the user's events plus broadcast events.

        ``callback`` receives the full decoded event list on every change.
        """
        subscription = EventSubscription(user_id, callback)

        def on_snapshot(docs: Snapshot) -> None:
            subscription._deliver(self.decode_snapshot(docs))

        def on_fallback_error(exc: Exception) -> None:
            logger.error("Event subscription for %s failed: %s", user_id, exc)

        def on_error(exc: Exception) -> None:
            if isinstance(exc, PermissionDeniedError) and not subscription.is_fallback:
                logger.warning(
                    "Broadcast events not readable for %s (%s); falling back to own events",
                    user_id,
                    exc,
                )
                subscription.mode = SubscriptionMode.USER_ONLY
                subscription._replace_handle(
                    self.store.watch(
                        self.collection, OWNER_FIELD, [user_id], on_snapshot, on_fallback_error
                    )
                )
                return
            logger.error("Event subscription for %s failed: %s", user_id, exc)

        handle = self.store.watch(
            self.collection, OWNER_FIELD, [user_id, BROADCAST_USER_ID], on_snapshot, on_error
        )
        if subscription.is_fallback:
            # The combined query already failed synchronously; keep the fallback handle
            handle()
        else:
            subscription._replace_handle(handle)
        return subscription

    def decode_snapshot(self, docs: Iterable[tuple[str, Mapping[str, Any]]]) -> list[CalendarEvent]:
        """Validate raw documents, skipping (and logging) the ones that do not decode."""
        events: list[CalendarEvent] = []
        for doc_id, data in docs:
            try:
                events.append(CalendarEvent.from_document(doc_id, data))
            except InvalidEventError as exc:
                logger.warning("Skipping event document: %s", exc)
        return events

    async def create(self, event: Union[CalendarEvent, Mapping[str, Any]]) -> CalendarEvent:
        """Persist a new event and return it with its store id."""
        data = event.to_document() if isinstance(event, CalendarEvent) else document_fields(event)
        doc_id = await self._store_call(
            f"creating event {data.get('title')!r}", self.store.add(self.collection, data)
        )
        logger.debug("Created event %s", doc_id)
        return CalendarEvent.from_document(doc_id, data)

    async def update(self, event_id: str, fields: Mapping[str, Any]) -> None:
        """Update fields of a persisted (plain or master) event."""
        await self._store_call(
            f"updating event {event_id}",
            self.store.update(self.collection, event_id, document_fields(fields)),
        )
        logger.debug("Updated event %s", event_id)

    async def delete(self, event_id: str) -> None:
        """Delete a persisted (plain or master) event."""
        await self._store_call(
            f"deleting event {event_id}", self.store.delete(self.collection, event_id)
        )
        logger.debug("Deleted event %s", event_id)

    @staticmethod
    async def _store_call(action: str, call: Awaitable[Any]) -> Any:
        """Await a store write; backend failures surface as EventStoreError."""
        try:
            return await call
        except EventStoreError:
            logger.error("Error %s", action, exc_info=True)
            raise
        except Exception as e:
            logger.error("Error %s", action, exc_info=True)
            raise EventStoreError(f"Error {action}: {e}") from e
