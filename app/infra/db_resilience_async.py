# app/infra/db_resilience_async.py
"""
Async database resilience utilities.
Retry logic for asyncpg connection acquisition and transient failures.
"""
from __future__ import annotations
import asyncio
from typing import Callable
from contextlib import asynccontextmanager
from functools import wraps

import asyncpg
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
    "server closed",
    "connection reset",
)


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Connection loss, pool exhaustion, deadlocks and serialization
    failures are transient; constraint and syntax errors are not.
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
    )):
        return True

    if isinstance(exc, (ConnectionError, asyncio.TimeoutError)):
        return True

    if isinstance(exc, asyncpg.PostgresError):
        error_message = str(exc).lower()
        return any(pattern in error_message for pattern in _TRANSIENT_PATTERNS)

    return False


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry an async store call on transient database errors.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def count_pending():
            async with db_conn() as conn:
                return await conn.fetchval("SELECT count(*) FROM jobs WHERE status = 'PENDING_DISPATCH'")
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc) or attempt >= max_retries:
                        DispatchMetrics.database_error(func.__name__)
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Database connection with retry on transient acquisition errors.

    Usage:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM appraiser_profiles WHERE verification_status = $1", "VERIFIED")

    Only connection acquisition is retried. Once the block body has run,
    errors propagate unchanged so a statement is never executed twice.
    """
    max_retries = 3
    delay = 0.1

    for attempt in range(max_retries + 1):
        entered = False
        try:
            async with db_conn(autocommit=autocommit) as conn:
                entered = True
                yield conn
                return
        except Exception as exc:
            if entered or not is_transient_error(exc):
                raise

            if attempt >= max_retries:
                logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                DispatchMetrics.database_error("acquire")
                raise

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )

            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)
