# app/infra/migrations_async.py
"""
Async database migrations runner (asyncpg).

Migrations live in ``app/infra/sql`` and are applied in filename order
inside one transaction, under an advisory lock so two deploy jobs cannot
apply the same file concurrently.
"""
from __future__ import annotations
from pathlib import Path

import asyncpg

from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Arbitrary constant shared by every migration runner
_MIGRATION_LOCK_KEY = 7_310_442


def _sql_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def migration_files() -> list[Path]:
    return sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())


async def latest_applied_version(conn: asyncpg.Connection) -> str | None:
    """Filename of the most recently applied migration, or None on a fresh database."""
    exists = await conn.fetchval("SELECT to_regclass('schema_migrations')")
    if exists is None:
        return None
    return await conn.fetchval(
        "SELECT version FROM schema_migrations ORDER BY applied_at DESC, version DESC LIMIT 1"
    )


async def apply_migrations() -> dict:
    """
    Apply pending SQL migrations.

    Returns:
        dict with keys:
            - ok: bool
            - applied: list[str] (filenames applied in this run)
            - count: int
    """
    files = migration_files()

    async with db_conn(autocommit=False) as conn:
        await conn.execute("SELECT pg_advisory_xact_lock($1)", _MIGRATION_LOCK_KEY)
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row["version"] for row in rows}

        applied_now = []
        for path in files:
            if path.name in applied:
                logger.debug(f"Migration {path.name} already applied, skipping")
                continue

            logger.info(f"Applying migration: {path.name}")
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", path.name)
            applied_now.append(path.name)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
