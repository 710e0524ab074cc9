#!/usr/bin/env python3
"""
Run one SLA sweep and exit. For cron / scheduled-task deployments that
do not keep a worker process running.

Usage:
    python scripts/run_sla_sweep.py                 # sweep and escalate
    python scripts/run_sla_sweep.py --dry-run       # list breaches only
    python scripts/run_sla_sweep.py --json          # machine-readable output

Exit codes: 0 on success, 1 on failure.
"""
import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.config import settings, validate_or_warn  # noqa: E402
from app.core.dispatch.engine import build_dispatch_engine  # noqa: E402
from app.infra.db_async import close_pool, init_pool  # noqa: E402
from app.infra.http_client import close_all_sessions  # noqa: E402
from app.infra.logging_config import get_logger, setup_logging  # noqa: E402
from app.infra.notification_channels import get_notification_facility  # noqa: E402
from app.infra.notification_queue import get_notification_retry_queue  # noqa: E402
from app.infra.pg_dispatch_store_async import get_dispatch_store  # noqa: E402

logger = get_logger("run_sla_sweep")


async def run(dry_run: bool, as_json: bool) -> int:
    await init_pool()
    try:
        facility = get_notification_facility()
        queue = get_notification_retry_queue(facility)
        engine = build_dispatch_engine(get_dispatch_store(), facility, queue)

        if dry_run:
            breaches = await engine.sla_monitor.find_breaches(datetime.now(timezone.utc))
            rows = [
                {
                    "job_id": b.job_id,
                    "breach_type": b.breach_type.value,
                    "level": b.level.value,
                    "hours_overdue": round(b.hours_overdue, 2),
                }
                for b in breaches
            ]
            if as_json:
                print(json.dumps({"breaches": rows}, indent=2))
            else:
                for row in rows:
                    print(f"{row['job_id']}  {row['breach_type']:<20} {row['level']:<9} +{row['hours_overdue']}h")
                print(f"{len(rows)} breach(es)")
            return 0

        result = await engine.check_slas()

        # Give failed sends one immediate retry pass before the process exits
        if queue.queue_size:
            await queue.process()

        if as_json:
            print(json.dumps({"breached": result.breached, "escalated": result.escalated}))
        else:
            print(f"breached={result.breached} escalated={result.escalated}")
        return 0
    except Exception as exc:
        logger.critical(f"SLA sweep failed: {exc}", exc_info=True)
        return 1
    finally:
        await close_all_sessions()
        await close_pool()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one SLA sweep")
    parser.add_argument("--dry-run", action="store_true", help="report breaches without escalating")
    parser.add_argument("--json", action="store_true", help="print JSON output")
    args = parser.parse_args()

    setup_logging(level=settings.log_level, use_json=settings.is_production)
    validate_or_warn(settings)
    return asyncio.run(run(args.dry_run, args.json))


if __name__ == "__main__":
    sys.exit(main())
