"""Configuration management from environment variables and .env files."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Any

from .config_loader import Config, load_config

logger = logging.getLogger(__name__)

ENV_PREFIX = "STUDYCAL_"

# Environment variable suffix -> (config key, parse as int)
_ENV_KEYS: dict[str, tuple[str, bool]] = {
    "LOG_LEVEL": ("log_level", False),
    "MAX_EXPANSION_STEPS": ("max_expansion_steps", True),
    "CALENDAR_API_URL": ("calendar_api_url", False),
    "REQUEST_TIMEOUT": ("request_timeout", True),
    "SYNC_LOOKBACK_DAYS": ("sync_lookback_days", True),
    "SYNC_LOOKAHEAD_DAYS": ("sync_lookahead_days", True),
}


class ConfigManager:
    """Manages application configuration from environment variables and .env files."""

    def __init__(self, env_file_path: Path | None = None):
        """Initialize configuration manager.

        Args:
            env_file_path: Optional path to .env file (defaults to .env in current directory)
        """
        self.env_file_path = env_file_path or Path.cwd() / ".env"

    def load_env_file(self) -> list[str]:
        """Load .env file and set environment variables.

        Only sets variables that are not already in the environment.

        Returns:
            List of environment variable keys that were loaded from .env file
        """
        if not self.env_file_path.exists():
            logger.debug("No .env file found at %s", self.env_file_path)
            return []

        set_keys = []
        try:
            content = self.env_file_path.read_text(encoding="utf-8")
        except OSError:
            logger.debug(
                "Failed to read .env file for defaults (continuing): %s",
                self.env_file_path,
                exc_info=True,
            )
            return []

        for raw_line in content.splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue

            key, val = line.split("=", 1)
            key = key.strip()
            val = val.strip().strip('"').strip("'")

            if key and key not in os.environ:
                os.environ[key] = val
                set_keys.append(key)

        if set_keys:
            logger.debug("Loaded .env defaults for keys: %s", ", ".join(set_keys))
        return set_keys

    def build_config_from_env(self) -> dict[str, Any]:
        """Build a configuration dictionary from STUDYCAL_* environment variables.

        Recognizes STUDYCAL_LOG_LEVEL, STUDYCAL_MAX_EXPANSION_STEPS,
        STUDYCAL_CALENDAR_API_URL, STUDYCAL_REQUEST_TIMEOUT,
        STUDYCAL_SYNC_LOOKBACK_DAYS and STUDYCAL_SYNC_LOOKAHEAD_DAYS.
        Non-numeric values for numeric keys are logged and ignored.
        """
        cfg: dict[str, Any] = {}
        for suffix, (key, numeric) in _ENV_KEYS.items():
            env_name = ENV_PREFIX + suffix
            raw = os.environ.get(env_name)
            if not raw:
                continue
            if numeric:
                try:
                    cfg[key] = int(raw)
                except ValueError:
                    logger.warning("Invalid %s=%r; ignoring", env_name, raw)
                    continue
            else:
                cfg[key] = raw
        return cfg

    def load_full_config(self, config_path: str | Path | None = None) -> Config:
        """Load the YAML config, then apply .env and environment overrides.

        This is the main entry point for loading configuration.
        """
        self.load_env_file()
        base = asdict(load_config(config_path))
        overrides = self.build_config_from_env()
        if overrides:
            logger.debug("Environment overrides: %s", ", ".join(sorted(overrides)))
        base.update(overrides)
        return Config.from_dict(base)


def get_config_value(config: Any, key: str, default: Any = None) -> Any:
    """Get configuration value supporting both dict and dataclass-like objects."""
    if isinstance(config, dict):
        return config.get(key, default)
    return getattr(config, key, default)
