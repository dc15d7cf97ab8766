"""Clock helpers for studycal.

All "now"/"today" lookups go through here so tests and demos can pin the
clock with the STUDYCAL_TEST_TIME environment variable.
"""

from __future__ import annotations

import datetime
import logging
import os

logger = logging.getLogger(__name__)

TEST_TIME_ENV = "STUDYCAL_TEST_TIME"


def now_local() -> datetime.datetime:
    """Return the current local wall-clock time as a naive datetime.

    Can be overridden for testing via STUDYCAL_TEST_TIME.
    Format: ISO 8601 datetime or date string (e.g., "2024-01-08T09:30:00").
    An offset in the override is dropped; the wall-clock part is used as-is.
    """
    test_time = os.environ.get(TEST_TIME_ENV)
    if test_time:
        try:
            from dateutil import parser as date_parser

            return date_parser.isoparse(test_time).replace(tzinfo=None)
        except (ValueError, OverflowError) as e:
            logger.warning("Failed to parse %s=%r: %s", TEST_TIME_ENV, test_time, e)

    return datetime.datetime.now()


def today() -> datetime.date:
    """Return today's local date (honours STUDYCAL_TEST_TIME)."""
    return now_local().date()
