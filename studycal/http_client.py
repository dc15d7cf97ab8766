"""Shared HTTP client manager for external calendar requests.

Keeps one pooled httpx.AsyncClient per client id instead of creating a client
per sync, and recreates a client after repeated errors.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

# Global state for shared HTTP clients
_shared_clients: dict[str, httpx.AsyncClient] = {}
_client_health: dict[str, dict[str, float]] = {}
_client_lock = asyncio.Lock()

DEFAULT_LIMITS = httpx.Limits(max_connections=4, max_keepalive_connections=2)

DEFAULT_TIMEOUT = httpx.Timeout(connect=10.0, read=30.0, write=10.0, pool=30.0)

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "studycal/0.1",
}

# Health check thresholds
HEALTH_ERROR_THRESHOLD = 3  # Recreate client after 3 consecutive errors
HEALTH_TIMEOUT_SECONDS = 300  # Only errors within the last 5 minutes count


async def get_shared_client(
    client_id: str = "default",
    limits: Optional[httpx.Limits] = None,
    timeout: Optional[httpx.Timeout] = None,
) -> httpx.AsyncClient:
    """Get or create a shared HTTP client with connection pooling.

    Args:
        client_id: Identifier for the client (allows multiple clients if needed)
        limits: Custom connection limits
        timeout: Custom timeout configuration

    Returns:
        Shared httpx.AsyncClient

    Raises:
        RuntimeError: If client creation fails
    """
    async with _client_lock:
        await _recreate_client_if_unhealthy(client_id)

        if client_id not in _shared_clients or _shared_clients[client_id].is_closed:
            try:
                _shared_clients[client_id] = httpx.AsyncClient(
                    limits=limits or DEFAULT_LIMITS,
                    timeout=timeout or DEFAULT_TIMEOUT,
                    follow_redirects=True,
                    headers=DEFAULT_HEADERS,
                )
                _client_health[client_id] = {
                    "error_count": 0,
                    "last_error_time": 0,
                    "created_time": time.time(),
                }
                logger.debug("Created shared HTTP client '%s'", client_id)
            except Exception as e:
                logger.exception("Failed to create shared HTTP client '%s'", client_id)
                raise RuntimeError(f"Failed to create shared HTTP client: {e}") from e

        return _shared_clients[client_id]


async def close_all_clients() -> None:
    """Close all shared HTTP clients. Call on application shutdown."""
    async with _client_lock:
        for client_id, client in _shared_clients.items():
            try:
                if not client.is_closed:
                    await client.aclose()
                    logger.debug("Closed shared HTTP client '%s'", client_id)
            except Exception as e:  # noqa: PERF203
                logger.warning("Error closing shared HTTP client '%s': %s", client_id, e)

        _shared_clients.clear()
        _client_health.clear()


async def record_client_error(client_id: str = "default") -> None:
    """Record an error for health tracking."""
    async with _client_lock:
        health = _client_health.setdefault(
            client_id, {"error_count": 0, "last_error_time": 0, "created_time": time.time()}
        )
        health["error_count"] += 1
        health["last_error_time"] = time.time()
        logger.debug(
            "Recorded error for client '%s', total errors: %d", client_id, health["error_count"]
        )


async def record_client_success(client_id: str = "default") -> None:
    """Reset the error count after a successful request."""
    async with _client_lock:
        if client_id in _client_health:
            _client_health[client_id]["error_count"] = 0


def get_client_health(client_id: str = "default") -> Optional[dict[str, float]]:
    """Return a copy of the health record for a client, if tracked."""
    health = _client_health.get(client_id)
    return dict(health) if health is not None else None


async def _recreate_client_if_unhealthy(client_id: str) -> None:
    """Drop a client that has hit the error threshold so it gets recreated."""
    health = _client_health.get(client_id)
    if health is None:
        return

    should_recreate = (
        health["error_count"] >= HEALTH_ERROR_THRESHOLD
        and (time.time() - health["last_error_time"]) < HEALTH_TIMEOUT_SECONDS
    )
    if not should_recreate or client_id not in _shared_clients:
        return

    logger.warning(
        "Recreating unhealthy client '%s' after %d errors", client_id, health["error_count"]
    )
    old_client = _shared_clients.pop(client_id)
    del _client_health[client_id]
    try:
        if not old_client.is_closed:
            await old_client.aclose()
    except Exception as e:
        logger.warning("Error closing unhealthy client '%s': %s", client_id, e)
