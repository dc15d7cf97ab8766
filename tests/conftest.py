from __future__ import annotations

import logging
from collections.abc import Callable, Generator
from datetime import date
from types import SimpleNamespace
from typing import Any

import pytest

from studycal.logging_config import PACKAGE_MODULES, THIRD_PARTY_LOGGERS
from studycal.models import CalendarEvent


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: tests exercising several modules together")


@pytest.fixture
def simple_settings() -> SimpleNamespace:
    """Lightweight settings object used across tests.

    Fields mirror studycal.config_loader.Config with the shipped defaults.
    """
    return SimpleNamespace(
        max_expansion_steps=365,
        sync_lookback_days=14,
        sync_lookahead_days=45,
        calendar_api_url="https://calendar.test/v3/calendars/primary/events",
        request_timeout=30,
        default_event_time="09:00",
        default_duration_minutes=60,
        collection="schedule",
    )


@pytest.fixture
def make_event() -> Callable[..., CalendarEvent]:
    """Factory for CalendarEvent objects with sensible defaults."""

    def _make(
        event_id: str = "e1",
        title: str = "Study",
        event_date: date = date(2024, 1, 1),
        time: str | None = "10:00",
        **fields: Any,
    ) -> CalendarEvent:
        return CalendarEvent(id=event_id, title=title, date=event_date, time=time, **fields)

    return _make


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: Any) -> Generator[None, Any, None]:
    """Clear clock and config overrides so tests do not leak into each other."""
    for key in (
        "STUDYCAL_TEST_TIME",
        "STUDYCAL_DEBUG",
        "STUDYCAL_LOG_LEVEL",
        "STUDYCAL_MAX_EXPANSION_STEPS",
        "STUDYCAL_CALENDAR_API_URL",
        "STUDYCAL_REQUEST_TIMEOUT",
        "STUDYCAL_SYNC_LOOKBACK_DAYS",
        "STUDYCAL_SYNC_LOOKAHEAD_DAYS",
        "STUDYCAL_GOOGLE_TOKEN",
    ):
        monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture(autouse=True)
def restore_logger_levels() -> Generator[None, Any, None]:
    """Undo level changes made by logging setup (CLI runs, configure_logging)."""
    names = ["", *PACKAGE_MODULES, *THIRD_PARTY_LOGGERS]
    saved = {name: logging.getLogger(name).level for name in names}
    yield
    for name, level in saved.items():
        logging.getLogger(name).setLevel(level)
