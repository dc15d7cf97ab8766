"""Command-line entry for studycal.

Subcommands:
  week   print the merged calendar week for a user from an events file,
         optionally with Google Calendar events
  rrule  encode recurrence settings into a rule string
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import Any, Optional

import yaml

from . import _init_logging
from .calendar_importer import ExternalCalendarImporter, StaticTokenProvider
from .config_manager import ConfigManager
from .event_merger import TimelineMerger, WeekView, layout_week
from .event_store import EventStoreAdapter, InMemoryDocumentStore
from .exceptions import InvalidEventError
from .http_client import close_all_clients
from .logging_config import configure_logging
from .models import CalendarEvent
from .rrule_codec import encode_rrule
from .schedule_service import compute_end_time
from .time_utils import today

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_ENV = "STUDYCAL_GOOGLE_TOKEN"


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for studycal CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="studycal",
        description="studycal - recurring event engine for a student planner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m studycal week --events events.json --user u1
  python -m studycal week --date 2024-03-04 --events events.yaml --user u1
  python -m studycal week --events events.json --user u1 --google-token "$TOKEN"
  python -m studycal rrule WEEKLY --interval 2 --until 2024-06-30
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    week = subparsers.add_parser("week", help="Print the merged calendar week")
    week.add_argument(
        "--date",
        type=date.fromisoformat,
        metavar="YYYY-MM-DD",
        help="Any day in the week to show (default: today, or STUDYCAL_TEST_TIME)",
    )
    week.add_argument(
        "--events",
        type=Path,
        metavar="FILE",
        help="YAML or JSON file with event documents (list with 'id', or mapping id -> document)",
    )
    week.add_argument("--user", default="me", metavar="UID", help="Acting user id")
    week.add_argument("--config", metavar="FILE", help="YAML config file")
    week.add_argument(
        "--google-token",
        default=os.environ.get(GOOGLE_TOKEN_ENV),
        metavar="TOKEN",
        help="Google OAuth access token; merges Google Calendar events "
        f"(env: {GOOGLE_TOKEN_ENV})",
    )

    rrule = subparsers.add_parser("rrule", help="Encode a recurrence rule")
    rrule.add_argument("frequency", help="DAILY, WEEKLY or MONTHLY")
    rrule.add_argument("--interval", type=int, default=1, metavar="N")
    rrule.add_argument("--until", metavar="YYYY-MM-DD", help="Last day (inclusive)")

    return parser


def load_event_documents(path: Path) -> dict[str, dict[str, Any]]:
    """Read event documents keyed by id from a YAML or JSON file.

    Raises:
        ValueError: If the file does not hold a list or mapping of documents
    """
    text = path.read_text(encoding="utf-8")
    raw = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(doc_id): dict(doc) for doc_id, doc in raw.items()}
    if isinstance(raw, list):
        documents: dict[str, dict[str, Any]] = {}
        for index, doc in enumerate(raw):
            if not isinstance(doc, dict):
                raise ValueError(f"Event entry {index} is not a mapping")
            doc = dict(doc)
            documents[str(doc.pop("id", f"event{index}"))] = doc
        return documents
    raise ValueError("Events file must contain a list or mapping of documents")


def _format_event(event: CalendarEvent) -> str:
    if event.is_all_day:
        span = "all day    "
    else:
        span = f"{event.time}-{compute_end_time(event.time, event.duration_minutes)}"
    flags = []
    if event.is_occurrence:
        flags.append("recurring")
    if event.is_admin_assigned:
        flags.append("admin")
    if event.is_external:
        flags.append("google")
    suffix = f" ({', '.join(flags)})" if flags else ""
    return f"  {span}  {event.title} [{event.type}]{suffix}"


async def _build_week(
    merger: TimelineMerger,
    events: list[CalendarEvent],
    view_date: date,
    importer: Optional[ExternalCalendarImporter],
) -> WeekView:
    try:
        return await merger.build_week(events, view_date, importer)
    finally:
        await close_all_clients()


def _run_week(args: argparse.Namespace) -> int:
    config = ConfigManager().load_full_config(args.config)
    _init_logging(config.log_level)
    configure_logging(debug_mode=config.log_level == "DEBUG", log_level=config.log_level)

    store = InMemoryDocumentStore()
    if args.events:
        store.seed(config.collection, load_event_documents(args.events))
    adapter = EventStoreAdapter(store, collection=config.collection)

    received: list[CalendarEvent] = []

    def on_events(events: list[CalendarEvent]) -> None:
        received[:] = events

    # The in-memory store delivers the first snapshot synchronously
    subscription = adapter.subscribe(args.user, on_events)
    subscription.unsubscribe()

    importer = None
    if args.google_token:
        importer = ExternalCalendarImporter(StaticTokenProvider(args.google_token), settings=config)
    view = asyncio.run(
        _build_week(TimelineMerger(config), received, args.date or today(), importer)
    )
    if view.failure is not None and view.failure.message:
        print(f"warning: {view.failure.message}", file=sys.stderr)

    window = view.window
    print(f"Week of {window.start.isoformat()} for {args.user}")
    for column in layout_week(view.events, window):
        print(f"{column.day.strftime('%a')} {column.day.isoformat()}")
        if not column.events:
            print("  -")
        for placed in column.events:
            print(_format_event(placed.event))
    return 0


def _run_rrule(args: argparse.Namespace) -> int:
    try:
        print(encode_rrule(args.frequency, args.interval, args.until))
    except InvalidEventError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Run the studycal CLI and return the process exit code."""
    parser = _create_parser()
    args = parser.parse_args(argv)
    if args.command == "week":
        return _run_week(args)
    return _run_rrule(args)


if __name__ == "__main__":
    sys.exit(main())
