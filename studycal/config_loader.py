"""studycal.config_loader

Config loader for studycal.

- Reads YAML (PyYAML); JSON files load too since JSON is valid YAML.
- Exposes a typed dataclass `Config` and a `load_config()` helper that accepts
  an optional path override.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .models import DEFAULT_DURATION_MINUTES, coerce_time
from .rrule_expander import MAX_EXPANSION_STEPS

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_API_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
DEFAULT_CONFIG_PATH = Path("studycal.yaml")


@dataclass
class Config:
    """Typed configuration for studycal.

    Fields:
        log_level: logging level name
        max_expansion_steps: cursor step cap per recurring master (1..3650)
        sync_lookback_days: days before the week start fetched from Google Calendar
        sync_lookahead_days: days after the week start fetched from Google Calendar
        calendar_api_url: Google Calendar events endpoint
        request_timeout: read timeout for calendar requests, in seconds
        default_event_time: time given to new events without one (HH:MM)
        default_duration_minutes: duration given to new events without one
        collection: document store collection holding events
    """

    log_level: str = "INFO"
    max_expansion_steps: int = MAX_EXPANSION_STEPS
    sync_lookback_days: int = 14
    sync_lookahead_days: int = 45
    calendar_api_url: str = DEFAULT_CALENDAR_API_URL
    request_timeout: int = 30
    default_event_time: str = "09:00"
    default_duration_minutes: int = DEFAULT_DURATION_MINUTES
    collection: str = "schedule"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Config:
        """Create Config from a plain mapping, applying defaults and validation.

        Numeric-like values are coerced to int; values that do not coerce or
        fall out of range are replaced by defaults with a warning.
        """
        if data is None:
            data = {}
        defaults = cls()

        def _coerce_int(key: str, default: int, minimum: int, maximum: int | None = None) -> int:
            raw = data.get(key, default)
            try:
                value = int(raw)
            except (TypeError, ValueError):
                logger.warning("Config %s=%r is not an int; using default %d", key, raw, default)
                return default
            if value < minimum:
                logger.warning("Config %s=%d below minimum; coercing to %d", key, value, minimum)
                return minimum
            if maximum is not None and value > maximum:
                logger.warning("Config %s=%d above maximum; coercing to %d", key, value, maximum)
                return maximum
            return value

        log_level = data.get("log_level", defaults.log_level)
        log_level = str(log_level).upper() if log_level is not None else defaults.log_level

        raw_time = data.get("default_event_time", defaults.default_event_time)
        try:
            default_time = coerce_time(raw_time) or defaults.default_event_time
        except ValueError:
            logger.warning("Config default_event_time=%r is not HH:MM; using default", raw_time)
            default_time = defaults.default_event_time

        api_url = data.get("calendar_api_url") or defaults.calendar_api_url
        collection = data.get("collection") or defaults.collection

        return cls(
            log_level=log_level,
            max_expansion_steps=_coerce_int("max_expansion_steps", MAX_EXPANSION_STEPS, 1, 3650),
            sync_lookback_days=_coerce_int("sync_lookback_days", defaults.sync_lookback_days, 0),
            sync_lookahead_days=_coerce_int(
                "sync_lookahead_days", defaults.sync_lookahead_days, 6
            ),
            calendar_api_url=str(api_url),
            request_timeout=_coerce_int("request_timeout", defaults.request_timeout, 1),
            default_event_time=default_time,
            default_duration_minutes=_coerce_int(
                "default_duration_minutes", defaults.default_duration_minutes, 1
            ),
            collection=str(collection),
        )


def _load_yaml(path: Path) -> Any:
    """Load a YAML document; empty files give an empty mapping."""
    loaded = yaml.safe_load(path.read_text())
    # safe_load returns None for empty files
    return {} if loaded is None else loaded


def load_config(path: str | Path | None = None) -> Config:
    """Load configuration from a YAML file and return a Config instance.

    Args:
        path: Optional path to the config file. Defaults to ./studycal.yaml.

    Returns:
        Config dataclass instance with values from file (or defaults).

    Behavior:
    - If file is missing: returns Config() with defaults.
    - If file exists but top-level is not a mapping: raises ValueError.
    """
    p = Path(path) if path else Path.cwd() / DEFAULT_CONFIG_PATH
    logger.debug("Attempting to load config from %s", p)
    if not p.exists():
        logger.info("Config file %s not found; using defaults", p)
        return Config()

    raw = _load_yaml(p)
    if not isinstance(raw, dict):
        logger.warning("Config file %s parsed but top-level is not a mapping: %r", p, raw)
        raise ValueError("Config file must contain a mapping at top level")  # noqa: TRY004
    cfg = Config.from_dict(raw)
    logger.info("Loaded configuration from %s", p)
    logger.debug("Configuration values: %s", cfg)
    return cfg
