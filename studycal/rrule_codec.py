"""Recurrence rule codec for the restricted RRULE grammar.

Grammar::

    FREQ=<DAILY|WEEKLY|MONTHLY>[;INTERVAL=<positive integer>][;UNTIL=<YYYYMMDD>]

INTERVAL is omitted when it is 1. Decoding never raises: malformed parts fall
back to defaults and the fallback taken is recorded on the result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import Optional, Union

from .exceptions import InvalidEventError
from .models import Frequency

logger = logging.getLogger(__name__)

UNTIL_FORMAT = "%Y%m%d"

# UNTIL is an inclusive bound on the whole day
_END_OF_DAY = time(23, 59, 59)


class RuleFallback(str, Enum):
    """Named default paths taken while decoding a rule."""

    MISSING_FREQ = "missing_freq"
    UNKNOWN_FREQ = "unknown_freq"
    INVALID_INTERVAL = "invalid_interval"
    INVALID_UNTIL = "invalid_until"


@dataclass(frozen=True)
class DecodedRule:
    """Result of decoding a rule string.

    ``fallbacks`` lists every default that was applied, in the order found;
    ``ignored_fields`` lists parts outside the supported grammar (BYDAY, COUNT...).
    """

    frequency: Frequency = Frequency.DAILY
    interval: int = 1
    until: Optional[datetime] = None
    fallbacks: tuple[RuleFallback, ...] = ()
    ignored_fields: tuple[str, ...] = ()

    @property
    def end_date(self) -> Optional[date]:
        return self.until.date() if self.until else None

    @property
    def used_fallback(self) -> bool:
        return bool(self.fallbacks)

    def as_tuple(self) -> tuple[Frequency, int, Optional[date]]:
        """(frequency, interval, end_date) as passed to ``encode_rrule``."""
        return self.frequency, self.interval, self.end_date


def _coerce_frequency(frequency: Union[Frequency, str]) -> Frequency:
    try:
        return Frequency(str(getattr(frequency, "value", frequency)).upper())
    except ValueError as exc:
        raise InvalidEventError(f"Unsupported recurrence frequency: {frequency!r}") from exc


def _coerce_end_date(end_date: Union[date, str]) -> date:
    if isinstance(end_date, datetime):
        return end_date.date()
    if isinstance(end_date, date):
        return end_date
    try:
        return date.fromisoformat(str(end_date).strip())
    except ValueError as exc:
        raise InvalidEventError(f"Recurrence end date must be YYYY-MM-DD: {end_date!r}") from exc


def encode_rrule(
    frequency: Union[Frequency, str],
    interval: int = 1,
    end_date: Optional[Union[date, str]] = None,
) -> str:
    """Encode recurrence settings into a rule string.

    Args:
        frequency: DAILY, WEEKLY or MONTHLY
        interval: Step multiplier, at least 1
        end_date: Optional last day (inclusive), as a date or ``YYYY-MM-DD``

    Returns:
        Rule string with fields in FREQ, INTERVAL, UNTIL order

    Raises:
        InvalidEventError: For unsupported frequencies, intervals below 1 or bad dates
    """
    freq = _coerce_frequency(frequency)
    try:
        interval = int(interval)
    except (TypeError, ValueError) as exc:
        raise InvalidEventError(f"Recurrence interval must be an integer: {interval!r}") from exc
    if interval < 1:
        raise InvalidEventError(f"Recurrence interval must be >= 1, got {interval}")

    rule = f"FREQ={freq.value}"
    if interval > 1:
        rule += f";INTERVAL={interval}"
    if end_date:
        rule += f";UNTIL={_coerce_end_date(end_date).strftime(UNTIL_FORMAT)}"
    return rule


def parse_until(value: str) -> Optional[datetime]:
    """Parse a ``YYYYMMDD`` UNTIL value into an end-of-day datetime.

    Only the first eight characters are read (fixed-width year, month, day),
    so ``20240310T000000Z`` style values resolve to their date.
    """
    text = value.strip()
    if len(text) < 8 or not text[:8].isdigit():
        return None
    try:
        day = date(int(text[0:4]), int(text[4:6]), int(text[6:8]))
    except ValueError:
        return None
    return datetime.combine(day, _END_OF_DAY)


def decode_rrule(rule: Optional[str]) -> DecodedRule:
    """Decode a rule string, defaulting anything missing or malformed.

    - Missing FREQ -> DAILY (``missing_freq``); unknown FREQ -> DAILY (``unknown_freq``)
    - Missing INTERVAL -> 1; non-numeric or < 1 -> 1 (``invalid_interval``)
    - UNTIL -> end of that day; unparseable UNTIL is dropped (``invalid_until``)
    - Any other field is ignored and reported in ``ignored_fields``
    """
    frequency: Optional[Frequency] = None
    interval = 1
    until: Optional[datetime] = None
    fallbacks: list[RuleFallback] = []
    ignored: list[str] = []

    for part in (rule or "").split(";"):
        if not part.strip():
            continue
        key, _, value = part.partition("=")
        key = key.strip().upper()
        value = value.strip()

        if key == "FREQ":
            try:
                frequency = Frequency(value.upper())
            except ValueError:
                fallbacks.append(RuleFallback.UNKNOWN_FREQ)
        elif key == "INTERVAL":
            try:
                interval = int(value)
            except ValueError:
                interval = 0
            if interval < 1:
                fallbacks.append(RuleFallback.INVALID_INTERVAL)
                interval = 1
        elif key == "UNTIL":
            until = parse_until(value)
            if until is None:
                fallbacks.append(RuleFallback.INVALID_UNTIL)
        else:
            ignored.append(key)

    if frequency is None:
        if RuleFallback.UNKNOWN_FREQ not in fallbacks:
            fallbacks.append(RuleFallback.MISSING_FREQ)
        frequency = Frequency.DAILY

    if fallbacks:
        logger.warning(
            "Recurrence rule %r decoded with defaults: %s",
            rule,
            ", ".join(f.value for f in fallbacks),
        )
    if ignored:
        logger.debug("Ignoring unsupported recurrence fields in %r: %s", rule, ", ".join(ignored))

    return DecodedRule(
        frequency=frequency,
        interval=interval,
        until=until,
        fallbacks=tuple(fallbacks),
        ignored_fields=tuple(ignored),
    )
