"""
Central logging configuration for studycal.

Keeps studycal module loggers at DEBUG or INFO and holds noisy third-party
libraries at WARNING.
"""

import logging
import os
from typing import Optional

ENV_DEBUG = "STUDYCAL_DEBUG"
ENV_LOG_LEVEL = "STUDYCAL_LOG_LEVEL"
VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

PACKAGE_MODULES = [
    "studycal",
    "studycal.rrule_codec",
    "studycal.rrule_expander",
    "studycal.event_store",
    "studycal.event_merger",
    "studycal.calendar_importer",
    "studycal.schedule_service",
]

THIRD_PARTY_LOGGERS = ["httpx", "httpcore", "asyncio"]


def configure_logging(
    debug_mode: bool = False,
    force_debug: Optional[bool] = None,
    log_level: Optional[str] = None,
) -> None:
    """
    Configure logging levels for studycal.

    Args:
        debug_mode: Whether to enable debug logging for studycal modules
        force_debug: Override debug mode setting (None to use env var detection)
        log_level: Root level from config (DEBUG, INFO, WARNING, ERROR); INFO if unset

    Environment Variables:
        STUDYCAL_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        STUDYCAL_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv(ENV_DEBUG, "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv(ENV_LOG_LEVEL, "").upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.INFO
    config_level = (log_level or "").upper()
    if final_debug:
        root_level = logging.DEBUG
    elif config_level in VALID_LEVELS:
        root_level = getattr(logging, config_level)
    if env_log_level in VALID_LEVELS:
        root_level = getattr(logging, env_log_level)

    # No force=True: keep the coloured handler installed by _init_logging
    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("[%(asctime)s] %(levelname)s - %(name)s - %(message)s")
        )
        root_logger.addHandler(handler)

    logger_config: dict[str, int] = {name: logging.WARNING for name in THIRD_PARTY_LOGGERS}
    package_level = logging.DEBUG if final_debug else max(logging.INFO, root_level)
    for module in PACKAGE_MODULES:
        logger_config[module] = package_level

    for logger_name, level in logger_config.items():
        logging.getLogger(logger_name).setLevel(level)

    if final_debug:
        root_logger.info("Debug logging enabled for studycal modules")
    else:
        root_logger.info("Production logging configuration applied")


def reset_logging_to_debug() -> None:
    """Reset all loggers, including suppressed third-party ones, to DEBUG."""
    logging.getLogger().setLevel(logging.DEBUG)
    for logger_name in THIRD_PARTY_LOGGERS + PACKAGE_MODULES:
        logging.getLogger(logger_name).setLevel(logging.DEBUG)
    logging.getLogger().info("All loggers reset to DEBUG level for troubleshooting")


def get_logging_status() -> dict[str, str]:
    """
    Get current logging configuration status.

    Returns:
        Dictionary mapping logger names to their current levels
    """
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for logger_name in ["studycal", *THIRD_PARTY_LOGGERS]:
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)
    return status
