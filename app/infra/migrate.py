#!/usr/bin/env python3
# app/infra/migrate.py
"""
Standalone migration runner.

    python -m app.infra.migrate

Run it in CI/CD or as an init container before the web or worker
process starts. The application checks the schema version at startup
(``/ready``) but never migrates on its own.
"""
import asyncio
import sys

from app.infra.migrations_async import apply_migrations
from app.infra.db_async import init_pool, close_pool
from app.infra.logging_config import setup_logging, get_logger
from app.config import settings

logger = get_logger(__name__)


async def main() -> int:
    logger.info(f"Migration runner: env={settings.app_env} db={settings.pghost}:{settings.pgport}/{settings.pgdatabase}")

    await init_pool()
    try:
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result["applied"]:
        for migration in result["applied"]:
            logger.info(f"  applied {migration}")
    else:
        logger.info("No new migrations to apply")

    return 0 if result["ok"] else 1


def cli() -> None:
    setup_logging(level="INFO", use_json=False)
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
