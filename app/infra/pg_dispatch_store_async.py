# app/infra/pg_dispatch_store_async.py
"""
Async PostgreSQL dispatch store (asyncpg).

Implements ``DispatchStore`` over the ``jobs``, ``appraiser_profiles``,
``users``, ``audit_logs`` and ``notifications`` tables.

Status transitions are single conditional UPDATEs (``WHERE status = $n``)
that append to ``status_history`` in the same statement, so a lost race
shows up as zero rows rather than a half-applied change.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

from app.core.dispatch.domain import (
    ACTIVE_JOB_STATUSES,
    AppraiserProfile,
    AuditEntry,
    Coordinates,
    EscalationLevel,
    HistoryEvent,
    Job,
    JobStatus,
    JobTransition,
    JobType,
    LicenseType,
    Notification,
    TRANSITION_FIELDS,
    UserContact,
    VerificationStatus,
    WeeklySchedule,
    history_event_from_record,
)
from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)

ADMIN_ROLES = ("ADMIN", "SUPER_ADMIN")

# Timestamp columns find_jobs may order by
_ORDERABLE_COLUMNS = frozenset({"created_at", "dispatched_at", "accepted_at", "started_at"})


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_job(row) -> Job:
    """Convert an asyncpg Record to a Job."""
    history = _decode_json(row["status_history"]) or []
    payout = row["payout_amount"]
    return Job(
        id=row["id"],
        job_type=JobType(row["job_type"]),
        location=Coordinates(row["latitude"], row["longitude"]),
        status=JobStatus(row["status"]),
        created_at=row["created_at"],
        sla_due_at=row["sla_due_at"],
        dispatched_at=row["dispatched_at"],
        accepted_at=row["accepted_at"],
        started_at=row["started_at"],
        submitted_at=row["submitted_at"],
        completed_at=row["completed_at"],
        assigned_appraiser_id=row["assigned_appraiser_id"],
        requested_by_id=row["requested_by_id"],
        address=row["address"],
        payout_amount=float(payout) if payout is not None else None,
        status_history=tuple(history_event_from_record(r) for r in history),
    )


def _row_to_profile(row) -> AppraiserProfile:
    """Convert an appraiser_profiles ⋈ users Record to an AppraiserProfile."""
    lat, lng = row["home_base_lat"], row["home_base_lng"]
    return AppraiserProfile(
        user_id=row["user_id"],
        license_type=LicenseType(row["license_type"]),
        verification_status=VerificationStatus(row["verification_status"]),
        home_base=Coordinates(lat, lng) if lat is not None and lng is not None else None,
        coverage_radius_miles=row["coverage_radius_miles"],
        license_expiry=row["license_expiry"],
        completed_jobs=row["completed_jobs"],
        cancelled_jobs=row["cancelled_jobs"],
        rating=row["rating"],
        schedule=WeeklySchedule.from_json(_decode_json(row["preferred_schedule"])),
        email=row["email"],
        display_name=row["name"],
    )


def _row_to_user(row) -> UserContact:
    return UserContact(user_id=row["id"], email=row["email"], name=row["name"], role=row["role"])


def _history_payload(event: HistoryEvent) -> str:
    """One-element JSON array, ready for ``status_history || $n::jsonb``."""
    return json.dumps([event.to_record()])


def _status_values(statuses: Iterable[JobStatus]) -> list[str]:
    return [s.value for s in statuses]


_PROFILE_SELECT = """
    SELECT p.*, u.email, u.name
    FROM appraiser_profiles p
    JOIN users u ON u.id = p.user_id
"""


class AsyncPostgresDispatchStore:
    """PostgreSQL implementation of the dispatch store."""

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
            return _row_to_job(row) if row else None

    async def find_jobs(
        self,
        statuses: Sequence[JobStatus],
        *,
        order_by: str = "created_at",
        limit: Optional[int] = None,
    ) -> list[Job]:
        if order_by not in _ORDERABLE_COLUMNS:
            raise ValueError(f"Cannot order jobs by {order_by!r}")

        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""
                SELECT * FROM jobs
                WHERE status = ANY($1::text[])
                  AND {order_by} IS NOT NULL
                ORDER BY {order_by} ASC, id ASC
                LIMIT $2
                """,
                _status_values(statuses),
                limit,
            )
            return [_row_to_job(row) for row in rows]

    async def apply_transition(self, job_id: str, transition: JobTransition) -> Optional[Job]:
        args: list[Any] = [
            job_id,
            transition.expected_status.value,
            transition.new_status.value,
            _history_payload(transition.event),
        ]
        assignments = [
            "status = $3",
            "status_history = status_history || $4::jsonb",
            "updated_at = now()",
        ]
        for column, value in transition.fields.items():
            # Column names come from a fixed whitelist, never from input
            if column not in TRANSITION_FIELDS:
                raise ValueError(f"Unsupported transition field: {column}")
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")

        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE jobs
                SET {', '.join(assignments)}
                WHERE id = $1 AND status = $2
                RETURNING *
                """,
                *args,
            )

        if row is None:
            logger.info(
                f"Conditional update missed: expected {transition.expected_status.value}",
                extra={"job_id": job_id},
            )
            return None

        inc_counter("job_transitions_total", to_status=transition.new_status.value)
        return _row_to_job(row)

    async def append_history(self, job_id: str, event: HistoryEvent) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET status_history = status_history || $2::jsonb, updated_at = now()
                WHERE id = $1
                """,
                job_id,
                _history_payload(event),
            )

    async def append_escalation(
        self,
        job_id: str,
        event: HistoryEvent,
        expected_level: Optional[EscalationLevel],
    ) -> bool:
        new_level = event.level.value if event.level is not None else None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET status_history = status_history || $2::jsonb,
                    escalation_level = $3,
                    updated_at = now()
                WHERE id = $1
                  AND escalation_level IS NOT DISTINCT FROM $4::text
                RETURNING id
                """,
                job_id,
                _history_payload(event),
                new_level,
                expected_level.value if expected_level is not None else None,
            )
            return row is not None

    # ------------------------------------------------------------------
    # Appraisers
    # ------------------------------------------------------------------

    async def get_appraiser(self, user_id: str) -> Optional[AppraiserProfile]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(_PROFILE_SELECT + " WHERE p.user_id = $1", user_id)
            return _row_to_profile(row) if row else None

    async def list_appraisers(
        self,
        verification_status: VerificationStatus = VerificationStatus.VERIFIED,
        *,
        exclude_ids: Iterable[str] = (),
    ) -> list[AppraiserProfile]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                _PROFILE_SELECT
                + """
                WHERE p.verification_status = $1
                  AND NOT (p.user_id = ANY($2::text[]))
                ORDER BY p.user_id
                """,
                verification_status.value,
                list(exclude_ids),
            )
            return [_row_to_profile(row) for row in rows]

    async def active_job_counts(self, user_ids: Sequence[str]) -> Mapping[str, int]:
        if not user_ids:
            return {}
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT assigned_appraiser_id AS user_id, count(*) AS n
                FROM jobs
                WHERE assigned_appraiser_id = ANY($1::text[])
                  AND status = ANY($2::text[])
                GROUP BY assigned_appraiser_id
                """,
                list(user_ids),
                _status_values(ACTIVE_JOB_STATUSES),
            )
            return {row["user_id"]: row["n"] for row in rows}

    async def recent_assignment_counts(self, user_ids: Sequence[str], since: datetime) -> Mapping[str, int]:
        if not user_ids:
            return {}
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT assigned_appraiser_id AS user_id, count(*) AS n
                FROM jobs
                WHERE assigned_appraiser_id = ANY($1::text[])
                  AND accepted_at >= $2
                GROUP BY assigned_appraiser_id
                """,
                list(user_ids),
                since,
            )
            return {row["user_id"]: row["n"] for row in rows}

    # ------------------------------------------------------------------
    # Users, audit, notifications
    # ------------------------------------------------------------------

    async def get_users(self, user_ids: Sequence[str]) -> Mapping[str, UserContact]:
        if not user_ids:
            return {}
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT id, email, name, role FROM users WHERE id = ANY($1::text[])",
                list(user_ids),
            )
            return {row["id"]: _row_to_user(row) for row in rows}

    async def list_admins(self) -> list[UserContact]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT id, email, name, role FROM users WHERE role = ANY($1::text[]) ORDER BY id",
                list(ADMIN_ROLES),
            )
            return [_row_to_user(row) for row in rows]

    async def create_audit_log(self, entry: AuditEntry) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO audit_logs (resource, resource_id, action, actor_id, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                """,
                entry.resource,
                entry.resource_id,
                entry.action,
                entry.actor_id,
                json.dumps(dict(entry.metadata)),
                entry.created_at,
            )

    async def create_notifications(self, notifications: Sequence[Notification]) -> None:
        if not notifications:
            return
        async with safe_db_conn() as conn:
            await conn.executemany(
                """
                INSERT INTO notifications (user_id, type, title, body, channel, data)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                """,
                [
                    (n.user_id, n.type.value, n.title, n.body, n.channel.value, json.dumps(dict(n.data), default=str))
                    for n in notifications
                ],
            )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def count_jobs_by_status(self, statuses: Sequence[JobStatus]) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                "SELECT count(*) FROM jobs WHERE status = ANY($1::text[])",
                _status_values(statuses),
            )

    async def count_overdue_jobs(self, statuses: Sequence[JobStatus], now: datetime) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                "SELECT count(*) FROM jobs WHERE status = ANY($1::text[]) AND sla_due_at < $2",
                _status_values(statuses),
                now,
            )

    async def find_recent_dispatched(self, since: datetime, limit: int) -> list[Job]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM jobs
                WHERE dispatched_at IS NOT NULL AND created_at >= $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                since,
                limit,
            )
            return [_row_to_job(row) for row in rows]

    async def find_completed_jobs(self, start: datetime, end: datetime) -> list[Job]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM jobs
                WHERE status = 'COMPLETED' AND created_at >= $1 AND completed_at <= $2
                ORDER BY completed_at
                """,
                start,
                end,
            )
            return [_row_to_job(row) for row in rows]


# Global store instance
_dispatch_store: AsyncPostgresDispatchStore | None = None


def get_dispatch_store() -> AsyncPostgresDispatchStore:
    """Get or create the global dispatch store."""
    global _dispatch_store
    if _dispatch_store is None:
        _dispatch_store = AsyncPostgresDispatchStore()
    return _dispatch_store
