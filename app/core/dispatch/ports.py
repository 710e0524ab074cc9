# app/core/dispatch/ports.py
from __future__ import annotations
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

from app.core.dispatch.domain import (
    AppraiserProfile,
    AuditEntry,
    HistoryEvent,
    Job,
    JobStatus,
    JobTransition,
    Notification,
    UserContact,
    VerificationStatus,
    EscalationLevel,
)


# ============================================================================
# JOB / APPRAISER STORE
# ============================================================================

class DispatchStore(Protocol):
    # --- Jobs ---
    async def get_job(self, job_id: str) -> Optional[Job]: ...

    async def find_jobs(
        self,
        statuses: Sequence[JobStatus],
        *,
        order_by: str = "created_at",
        limit: Optional[int] = None,
    ) -> list[Job]:
        """Jobs in any of ``statuses``, oldest first by ``order_by``.

        ``order_by`` names a timestamp column; rows where it is NULL are skipped.
        """
        ...

    async def apply_transition(self, job_id: str, transition: JobTransition) -> Optional[Job]:
        """
        Conditional update: set status + fields and append the event only if
        the job's status still equals ``transition.expected_status``.

        Returns the updated job, or None when the status no longer matched.
        """
        ...

    async def append_history(self, job_id: str, event: HistoryEvent) -> None: ...

    async def append_escalation(
        self,
        job_id: str,
        event: HistoryEvent,
        expected_level: Optional[EscalationLevel],
    ) -> bool:
        """
        Append an escalation entry only if the job's latest recorded level is
        still ``expected_level``.

        True  => appended, caller owns the escalation
        False => another sweep recorded a level first, skip
        """
        ...

    # --- Appraisers ---
    async def get_appraiser(self, user_id: str) -> Optional[AppraiserProfile]: ...

    async def list_appraisers(
        self,
        verification_status: VerificationStatus = VerificationStatus.VERIFIED,
        *,
        exclude_ids: Iterable[str] = (),
    ) -> list[AppraiserProfile]: ...

    async def active_job_counts(self, user_ids: Sequence[str]) -> Mapping[str, int]:
        """Jobs in ACCEPTED / IN_PROGRESS / SUBMITTED per appraiser (missing ids => 0)."""
        ...

    async def recent_assignment_counts(self, user_ids: Sequence[str], since: datetime) -> Mapping[str, int]:
        """Jobs accepted by each appraiser at or after ``since``."""
        ...

    # --- Users, audit, notifications ---
    async def get_users(self, user_ids: Sequence[str]) -> Mapping[str, UserContact]: ...

    async def list_admins(self) -> list[UserContact]: ...

    async def create_audit_log(self, entry: AuditEntry) -> None: ...

    async def create_notifications(self, notifications: Sequence[Notification]) -> None: ...

    # --- Reporting ---
    async def count_jobs_by_status(self, statuses: Sequence[JobStatus]) -> int: ...

    async def count_overdue_jobs(self, statuses: Sequence[JobStatus], now: datetime) -> int: ...

    async def find_recent_dispatched(self, since: datetime, limit: int) -> list[Job]:
        """Jobs created since ``since`` that have a ``dispatched_at``, newest first."""
        ...

    async def find_completed_jobs(self, start: datetime, end: datetime) -> list[Job]: ...


# ============================================================================
# NOTIFICATION FACILITY
# ============================================================================

class NotificationFacility(Protocol):
    """Outbound e-mail and push delivery. Either call may raise."""

    async def send_email(self, template: str, recipient: str, payload: Mapping[str, Any]) -> None: ...

    async def send_push(self, user_id: str, payload: Mapping[str, Any]) -> None: ...


class NotificationRetrySink(Protocol):
    """Receives notifications whose first delivery attempt failed."""

    def enqueue(self, notification: Notification, error: str) -> None: ...
