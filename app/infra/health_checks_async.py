# app/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any
from enum import Enum

from app.config import settings
from app.infra.db_async import db_conn, pool_initialized
from app.infra.logging_config import get_logger
from app.infra.migrations_async import latest_applied_version

logger = get_logger(__name__)

REQUIRED_TABLES = ("jobs", "appraiser_profiles", "users", "audit_logs", "notifications")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    """Base class for async health checks"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        """
        Perform health check.
        Returns dict with 'status', 'details', and optionally 'error'
        """
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Check database connectivity and that the dispatch tables exist"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        if not pool_initialized():
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Connection pool not initialized",
            }

        start = time.time()
        try:
            async with db_conn() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Unexpected query result",
                        "error": f"Expected 1, got {result}"
                    }

                missing_tables = []
                for table in REQUIRED_TABLES:
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None:
                        missing_tables.append(table)

            if missing_tables:
                return {
                    "status": HealthStatus.UNHEALTHY,
                    "details": "Missing required tables",
                    "error": f"Missing: {', '.join(missing_tables)}"
                }

            duration = time.time() - start
            if duration > 1.0:
                return {
                    "status": HealthStatus.DEGRADED,
                    "details": f"Slow database response: {duration:.3f}s",
                    "response_time": duration
                }

            return {
                "status": HealthStatus.HEALTHY,
                "details": "Database operational",
                "response_time": duration
            }

        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200]
            }


class AsyncSchemaVersionCheck(AsyncHealthCheck):
    """Compare the latest applied migration with the version this build expects"""

    def __init__(self):
        super().__init__("schema", critical=True)

    async def check(self) -> Dict[str, Any]:
        try:
            async with db_conn() as conn:
                current = await latest_applied_version(conn)
        except Exception as exc:
            logger.error("Schema version check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Schema version check failed",
                "error": str(exc)[:200]
            }

        expected = settings.expected_schema_version
        if current is None:
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "No migrations applied. Run: python -m app.infra.migrate",
                "expected_version": expected,
            }
        if current < expected:
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Schema is behind this build",
                "current_version": current,
                "expected_version": expected,
            }
        return {
            "status": HealthStatus.HEALTHY,
            "details": "Schema up to date",
            "current_version": current,
            "expected_version": expected,
        }


class AsyncDispatchBacklogCheck(AsyncHealthCheck):
    """Report dispatch backlog; a large overdue pile degrades, never fails"""

    def __init__(self, overdue_threshold: int = 50):
        super().__init__("dispatch_backlog", critical=False)
        self.overdue_threshold = overdue_threshold

    async def check(self) -> Dict[str, Any]:
        try:
            async with db_conn() as conn:
                pending = await conn.fetchval(
                    "SELECT COUNT(*) FROM jobs WHERE status = 'PENDING_DISPATCH'"
                )
                overdue = await conn.fetchval(
                    """
                    SELECT COUNT(*) FROM jobs
                    WHERE status IN ('DISPATCHED', 'ACCEPTED', 'IN_PROGRESS')
                      AND sla_due_at < now()
                    """
                )
        except Exception as exc:
            logger.error("Dispatch backlog check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Dispatch backlog check failed",
                "error": str(exc)[:200]
            }

        status = HealthStatus.DEGRADED if overdue > self.overdue_threshold else HealthStatus.HEALTHY
        return {
            "status": status,
            "details": "Dispatch backlog",
            "pending_dispatch": pending,
            "overdue": overdue,
        }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, checks: list[AsyncHealthCheck] | None = None):
        self.checks: list[AsyncHealthCheck] = checks if checks is not None else [
            AsyncDatabaseHealthCheck(),
            AsyncSchemaVersionCheck(),
            AsyncDispatchBacklogCheck(),
        ]

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {
                "status": "healthy" | "degraded" | "unhealthy",
                "checks": {...},
                "timestamp": float
            }
        """
        results = {}
        overall_status = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall_status = HealthStatus.UNHEALTHY
            elif result["status"] != HealthStatus.HEALTHY and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        return {
            "status": overall_status.value,
            "checks": results,
            "timestamp": time.time()
        }


# Global async health checker instance
_async_health_checker = AsyncHealthChecker()


def get_async_health_checker() -> AsyncHealthChecker:
    """Get the global async health checker"""
    return _async_health_checker
