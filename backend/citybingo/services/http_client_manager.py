"""Pooled httpx clients for the three outbound destinations.

- ``openai``: image and text generation calls.
- ``images``: downloads of generated images (asset cache and image proxy),
  sending the configured User-Agent and following redirects.
- ``bingo-api``: batch tasks calling back into this API; its timeout covers
  one full generate-image request.

Clients are recreated when the running event loop changes, since each Celery
task runs on its own loop.
"""
from __future__ import annotations

import asyncio
import logging

import httpx

from citybingo.config import get_settings

logger = logging.getLogger(__name__)

PURPOSES = ("openai", "images", "bingo-api")

_CONNECTION_LIMITS = httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=120)

_clients: dict[str, tuple[int, httpx.AsyncClient]] = {}


def _build_client(purpose: str) -> httpx.AsyncClient:
    settings = get_settings()
    if purpose == "openai":
        return httpx.AsyncClient(timeout=httpx.Timeout(120.0, connect=15.0), limits=_CONNECTION_LIMITS)
    if purpose == "images":
        return httpx.AsyncClient(
            timeout=httpx.Timeout(settings.IMAGE_FETCH_TIMEOUT_SECONDS, connect=10.0),
            headers={"User-Agent": settings.IMAGE_FETCH_USER_AGENT},
            follow_redirects=True,
            limits=_CONNECTION_LIMITS,
        )
    # Generation may take the full route budget plus persistence retries
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.GENERATION_TIMEOUT_SECONDS + 60.0, connect=10.0),
        limits=_CONNECTION_LIMITS,
    )


def get_http_client(purpose: str) -> httpx.AsyncClient:
    """Shared client for *purpose* on the current event loop."""
    if purpose not in PURPOSES:
        raise ValueError(f"Unknown HTTP client purpose {purpose!r}")
    try:
        loop_id = id(asyncio.get_running_loop())
    except RuntimeError:
        loop_id = 0

    cached = _clients.get(purpose)
    if cached is None or cached[0] != loop_id or cached[1].is_closed:
        _clients[purpose] = (loop_id, _build_client(purpose))
        logger.debug("Created HTTP client for %s", purpose)
    return _clients[purpose][1]


async def close_all_clients() -> None:
    """Close every pooled client (application and task shutdown)."""
    for purpose, (_, client) in list(_clients.items()):
        if not client.is_closed:
            try:
                await client.aclose()
            except Exception as exc:
                logger.debug("Error closing HTTP client %s: %s", purpose, exc)
    _clients.clear()
    logger.info("All HTTP clients closed")
