"""Unit tests for schedule_service module."""

from datetime import date
from unittest.mock import AsyncMock, Mock

import pytest

from studycal.event_store import EventStoreAdapter, InMemoryDocumentStore
from studycal.exceptions import DocumentNotFoundError, InvalidEventError
from studycal.models import CalendarEvent, EventDraft, RecurrenceForm
from studycal.schedule_service import ScheduleService, compute_end_time, todays_timeline

pytestmark = pytest.mark.unit

TODAY = date(2024, 1, 9)


def make_service(store=None, settings=None):
    store = store or InMemoryDocumentStore()
    return ScheduleService(EventStoreAdapter(store), settings, clock=lambda: TODAY), store


class TestSaveEvent:
    """Tests for ScheduleService.save_event."""

    @pytest.mark.asyncio
    async def test_blank_title_or_missing_user_is_a_noop(self):
        adapter = Mock(spec=EventStoreAdapter)
        adapter.create = AsyncMock()
        adapter.update = AsyncMock()
        service = ScheduleService(adapter)

        assert await service.save_event(EventDraft(title="   "), None, "u1") is None
        assert await service.save_event(EventDraft(title="Essay"), None, None) is None

        adapter.create.assert_not_called()
        adapter.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_applies_defaults(self):
        service, store = make_service()

        created = await service.save_event(EventDraft(title=" Essay "), RecurrenceForm(), "u1")

        doc = store.get("schedule", created.id)
        assert doc["title"] == "Essay"
        assert doc["date"] == "2024-01-09"
        assert doc["time"] == "09:00"
        assert doc["durationMinutes"] == 60
        assert doc["type"] == "study"
        assert doc["userId"] == "u1"
        assert doc["assignedBy"] == "user"
        assert doc["isRecurring"] is False
        assert doc["rrule"] is None

    @pytest.mark.asyncio
    async def test_defaults_follow_settings(self, simple_settings):
        simple_settings.default_event_time = "08:00"
        simple_settings.default_duration_minutes = 50
        service, store = make_service(settings=simple_settings)

        created = await service.save_event(EventDraft(title="Reading"), None, "u1")

        assert (created.time, created.duration_minutes) == ("08:00", 50)

    @pytest.mark.asyncio
    async def test_create_recurring_encodes_rule(self):
        service, store = make_service()
        recurrence = RecurrenceForm(enabled=True, frequency="DAILY", interval=2, end_date="2024-03-10")

        created = await service.save_event(
            EventDraft(title="Practice", date="2024-01-02", time="7:30"), recurrence, "u1"
        )

        doc = store.get("schedule", created.id)
        assert doc["isRecurring"] is True
        assert doc["rrule"] == "FREQ=DAILY;INTERVAL=2;UNTIL=20240310"
        assert doc["time"] == "07:30"
        assert created.is_master

    @pytest.mark.asyncio
    async def test_update_from_occurrence_targets_master(self):
        store = InMemoryDocumentStore()
        store.seed(
            "schedule",
            {
                "m1": {
                    "title": "Lecture",
                    "date": "2024-01-01",
                    "time": "09:00",
                    "userId": "u1",
                    "isRecurring": True,
                    "rrule": "FREQ=WEEKLY",
                }
            },
        )
        service, _ = make_service(store)
        draft = EventDraft(id="m1_1704704400000", title="Lecture (room 4)", date="2024-01-01", time="10:00")

        saved = await service.save_event(draft, RecurrenceForm(enabled=True, frequency="WEEKLY"), "u1")

        assert saved.id == "m1"
        doc = store.get("schedule", "m1")
        assert doc["title"] == "Lecture (room 4)"
        assert doc["time"] == "10:00"
        assert doc["rrule"] == "FREQ=WEEKLY"
        assert len(store._collections["schedule"]) == 1

    @pytest.mark.asyncio
    async def test_disabling_recurrence_clears_rule(self):
        store = InMemoryDocumentStore()
        store.seed(
            "schedule",
            {"m1": {"title": "Gym", "userId": "u1", "isRecurring": True, "rrule": "FREQ=DAILY"}},
        )
        service, _ = make_service(store)

        await service.save_event(EventDraft(id="m1", title="Gym"), RecurrenceForm(enabled=False), "u1")

        doc = store.get("schedule", "m1")
        assert doc["isRecurring"] is False
        assert doc["rrule"] is None

    @pytest.mark.asyncio
    async def test_update_keeps_admin_assignment(self):
        store = InMemoryDocumentStore()
        store.seed("schedule", {"a1": {"title": "Quiz", "userId": "u1", "assignedBy": "admin"}})
        service, _ = make_service(store)

        await service.save_event(EventDraft(id="a1", title="Quiz 2"), None, "u1")

        assert store.get("schedule", "a1")["assignedBy"] == "admin"

    @pytest.mark.asyncio
    async def test_external_event_is_not_saved(self):
        store = InMemoryDocumentStore()
        store.seed("schedule", {"gcal": {"title": "Unrelated", "userId": "u1"}})
        service, _ = make_service(store)

        assert await service.save_event(EventDraft(id="gcal_12345", title="X"), None, "u1") is None
        assert store.get("schedule", "gcal")["title"] == "Unrelated"

    @pytest.mark.asyncio
    async def test_store_failures_propagate(self):
        service, _ = make_service()
        with pytest.raises(DocumentNotFoundError):
            await service.save_event(EventDraft(id="missing", title="X"), None, "u1")

    @pytest.mark.asyncio
    async def test_unsupported_frequency_propagates(self):
        service, store = make_service()
        recurrence = RecurrenceForm(enabled=True, frequency="WEEKLY")
        recurrence.frequency = "YEARLY"
        with pytest.raises(InvalidEventError):
            await service.save_event(EventDraft(title="X"), recurrence, "u1")
        assert store._collections == {}


class TestDeleteEvent:
    """Tests for ScheduleService.delete_event."""

    @pytest.mark.asyncio
    async def test_delete_occurrence_deletes_master(self):
        store = InMemoryDocumentStore()
        store.seed("schedule", {"m1": {"title": "Lecture", "userId": "u1"}})
        service, _ = make_service(store)

        assert await service.delete_event("m1_1704704400000") == "m1"
        assert store.get("schedule", "m1") is None

    @pytest.mark.asyncio
    async def test_delete_without_id_is_a_noop(self):
        service, _ = make_service()
        assert await service.delete_event(None) is None

    @pytest.mark.asyncio
    async def test_external_ids_are_never_deleted(self):
        store = InMemoryDocumentStore()
        store.seed("schedule", {"gcal": {"title": "Unrelated", "userId": "u1"}})
        service, _ = make_service(store)

        assert await service.delete_event("gcal_12345") is None
        assert store.get("schedule", "gcal") is not None


class TestScheduleBroadcast:
    """Tests for ScheduleService.schedule_broadcast."""

    @pytest.mark.asyncio
    async def test_broadcast_exam_for_everyone(self):
        service, store = make_service()

        created = await service.schedule_broadcast("Physics midterm", date(2024, 1, 12), "10:00", 90)

        doc = store.get("schedule", created.id)
        assert doc["type"] == "exam"
        assert doc["assignedBy"] == "admin"
        assert doc["userId"] == "all"
        assert doc["durationMinutes"] == 90

    @pytest.mark.asyncio
    async def test_broadcast_to_one_user(self):
        service, _ = make_service()
        created = await service.schedule_broadcast("Retake", date(2024, 1, 12), "10:00", target_user_id="u7")
        assert created.user_id == "u7"

    @pytest.mark.asyncio
    async def test_blank_title_is_a_noop(self):
        service, store = make_service()
        assert await service.schedule_broadcast("", date(2024, 1, 12), "10:00") is None
        assert store._collections == {}


class TestTimeline:
    """Tests for todays_timeline and compute_end_time."""

    @pytest.mark.parametrize(
        ("start", "duration", "end"),
        [("09:00", 60, "10:00"), ("09:45", 30, "10:15"), ("23:30", 90, "01:00"), ("9:05", 0, "09:05")],
    )
    def test_compute_end_time(self, start, duration, end):
        assert compute_end_time(start, duration) == end

    def test_todays_events_sorted_with_end_times(self):
        events = [
            CalendarEvent(id="b", title="Late", date=TODAY, time="14:00", duration_minutes=30),
            CalendarEvent(id="a", title="Early", date=TODAY, time="08:00"),
            CalendarEvent(id="c", title="Tomorrow", date=date(2024, 1, 10), time="07:00"),
            CalendarEvent(id="d", title="All day", date=TODAY),
        ]

        timeline = todays_timeline(events, TODAY)

        assert [entry.event.id for entry in timeline] == ["d", "a", "b"]
        assert [(entry.start, entry.end) for entry in timeline] == [
            (None, None),
            ("08:00", "09:00"),
            ("14:00", "14:30"),
        ]

    def test_uses_test_clock_by_default(self, monkeypatch):
        monkeypatch.setenv("STUDYCAL_TEST_TIME", "2024-01-10T06:00:00")
        events = [CalendarEvent(id="c", title="Tomorrow", date=date(2024, 1, 10), time="07:00")]
        assert [entry.event.id for entry in todays_timeline(events)] == ["c"]
