# app/infra/http_client.py
"""
Shared aiohttp session for push gateway deliveries.

One lazily created ``ClientSession`` per profile, so dispatch fan-out and
retry-queue passes reuse pooled TCP connections instead of opening a
session per notification.

Profiles
~~~~~~~~
- **sender**: push gateway (total=``push_timeout_seconds``, connect=5 s, pool limit=20)

Call ``close_all_sessions()`` once during shutdown (app lifespan, one-shot scripts).
"""
from __future__ import annotations

import aiohttp

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(name: str, timeout: aiohttp.ClientTimeout, limit: int) -> aiohttp.ClientSession:
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d, total_timeout=%s)", name, limit, timeout.total)
    return session


def get_sender_session() -> aiohttp.ClientSession:
    """Session for push gateway deliveries."""
    return _get_or_create(
        "sender",
        aiohttp.ClientTimeout(total=settings.push_timeout_seconds, connect=5),
        limit=20,
    )


async def close_all_sessions() -> None:
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
