# app/core/dispatch/engine.py
"""
Dispatch engine: the entry point for dispatch, assignment and SLA queries.

Every status change is a single compare-and-swap through
``DispatchStore.apply_transition``. The engine re-reads the job, checks
the expected pre-state, and raises ``StaleStateError`` when the store
reports the status moved underneath it. Notifications are sent after the
transition commits and never undo it.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from app.core.dispatch.domain import (
    AutoAssigned,
    Coordinates,
    CoverageSummary,
    DispatchOptions,
    DispatchResult,
    DispatchStats,
    Dispatched,
    Job,
    JobStatus,
    JobTransition,
    MatchedAppraiser,
    NoMatches,
    REASSIGNABLE_STATUSES,
    ReassignResult,
    Reassigned,
    SLAMetrics,
    SLAStatus,
    SweepResult,
    Unassigned,
    VerificationStatus,
)
from app.core.dispatch.errors import (
    AppraiserNotFoundError,
    InvalidTransitionError,
    JobNotFoundError,
    StaleStateError,
)
from app.core.dispatch.matcher import AppraiserMatcher
from app.core.dispatch.notifications import (
    NotificationDispatcher,
    job_assigned,
    job_available,
    job_unassigned,
)
from app.core.dispatch.ports import DispatchStore
from app.core.dispatch.sla_monitor import SLAMonitor
from app.infra.audit_log import audit_event
from app.infra.logging_config import LogContext, get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

STATS_WINDOW = timedelta(days=7)
STATS_SAMPLE_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _minutes(delta: timedelta) -> float:
    return delta.total_seconds() / 60.0


class DispatchEngine:
    def __init__(
        self,
        store: DispatchStore,
        matcher: AppraiserMatcher,
        sla_monitor: SLAMonitor,
        notifier: NotificationDispatcher,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.matcher = matcher
        self.sla_monitor = sla_monitor
        self.notifier = notifier
        self._clock = clock

    async def _load(self, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _transition(self, job_id: str, transition: JobTransition, operation: str) -> Job:
        updated = await self.store.apply_transition(job_id, transition)
        if updated is None:
            DispatchMetrics.stale_state(operation)
            raise StaleStateError(job_id, transition.expected_status.value)
        return updated

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, job_id: str, options: Optional[DispatchOptions] = None) -> DispatchResult:
        """Notify every eligible candidate that the job exists.

        Zero candidates is an outcome, not an error: a NO_MATCHES entry is
        appended and the job stays PENDING_DISPATCH.
        """
        log = LogContext(logger, job_id=job_id)
        job = await self._load(job_id)

        if job.status != JobStatus.PENDING_DISPATCH:
            raise InvalidTransitionError(f"Job is not pending dispatch (status: {job.status.value})")

        matches = await self.matcher.find_matches(job, options)
        now = self._clock()

        if not matches:
            await self.store.append_history(job_id, NoMatches(timestamp=now, message="No available appraisers found"))
            DispatchMetrics.dispatch_attempt("no_matches")
            log.info("No eligible appraisers, job left pending")
            return DispatchResult(
                success=False,
                job_id=job_id,
                message="No available appraisers found within range",
            )

        dispatched = await self._transition(job_id, JobTransition(
            expected_status=JobStatus.PENDING_DISPATCH,
            new_status=JobStatus.DISPATCHED,
            event=Dispatched(timestamp=now, matched_count=len(matches)),
            fields={"dispatched_at": now},
        ), "dispatch")

        DispatchMetrics.dispatch_attempt("dispatched")
        log.info(f"Dispatched to {len(matches)} appraisers")

        await self._notify_matches(dispatched, matches)

        return DispatchResult(
            success=True,
            job_id=job_id,
            message=f"Job dispatched to {len(matches)} appraisers",
            matched_appraisers=tuple(matches),
        )

    async def _notify_matches(self, job: Job, matches: list[MatchedAppraiser]) -> None:
        try:
            notifications = [n for match in matches for n in job_available(job, match)]
            await self.notifier.deliver(notifications)
        except Exception as exc:
            logger.error(f"Failed to notify matched appraisers: {exc}", exc_info=True, extra={"job_id": job.id})

    async def auto_assign(self, job_id: str, options: Optional[DispatchOptions] = None) -> DispatchResult:
        """Dispatch, then commit the top-ranked candidate."""
        result = await self.dispatch(job_id, options)
        if not result.success or not result.matched_appraisers:
            return result

        best = result.matched_appraisers[0]
        try:
            assigned = await self._assign_best(job_id, best)
        except StaleStateError:
            # Dispatch has committed; only the assignment step is retried
            job = await self._load(job_id)
            if job.status != JobStatus.DISPATCHED:
                raise
            logger.info("Stale state on auto-assign, retrying assignment once", extra={"job_id": job_id})
            assigned = await self._assign_best(job_id, best)

        DispatchMetrics.auto_assigned()
        audit_event(
            "AUTO_ASSIGNED", resource="JOB", resource_id=job_id,
            detail=f"appraiser={best.user_id} score={best.score}",
        )
        await self._notify_one(job_assigned(assigned, best.user_id))

        return DispatchResult(
            success=True,
            job_id=job_id,
            message="Job auto-assigned to appraiser",
            matched_appraisers=result.matched_appraisers,
            assigned_appraiser_id=best.user_id,
        )

    async def _assign_best(self, job_id: str, best: MatchedAppraiser) -> Job:
        now = self._clock()
        job = await self._load(job_id)

        fields = {"assigned_appraiser_id": best.user_id, "accepted_at": now}
        if job.sla_due_at is None:
            fields["sla_due_at"] = now + timedelta(
                hours=self.sla_monitor.config.completion_budget_hours(job.job_type)
            )

        return await self._transition(job_id, JobTransition(
            expected_status=JobStatus.DISPATCHED,
            new_status=JobStatus.ACCEPTED,
            event=AutoAssigned(timestamp=now, appraiser_id=best.user_id, score=best.score),
            fields=fields,
        ), "auto_assign")

    # ------------------------------------------------------------------
    # Reassignment
    # ------------------------------------------------------------------

    async def reassign(self, job_id: str, new_appraiser_id: Optional[str], reason: str) -> ReassignResult:
        """Hand the job to another appraiser, or unassign it (``None``) for re-dispatch."""
        job = await self._load(job_id)
        if job.status not in REASSIGNABLE_STATUSES:
            raise InvalidTransitionError(f"Job cannot be reassigned from status {job.status.value}")

        previous = job.assigned_appraiser_id
        now = self._clock()

        if new_appraiser_id is not None:
            profile = await self.store.get_appraiser(new_appraiser_id)
            if profile is None:
                raise AppraiserNotFoundError(new_appraiser_id)
            if profile.verification_status != VerificationStatus.VERIFIED:
                raise InvalidTransitionError(f"Appraiser {new_appraiser_id} is not verified")

            fields = {"assigned_appraiser_id": new_appraiser_id, "accepted_at": now}
            if job.sla_due_at is None:
                fields["sla_due_at"] = now + timedelta(
                    hours=self.sla_monitor.config.completion_budget_hours(job.job_type)
                )
            updated = await self._transition(job_id, JobTransition(
                expected_status=job.status,
                new_status=JobStatus.ACCEPTED,
                event=Reassigned(
                    timestamp=now,
                    previous_appraiser_id=previous,
                    new_appraiser_id=new_appraiser_id,
                    reason=reason,
                ),
                fields=fields,
            ), "reassign")
            DispatchMetrics.reassigned("assign")
            message = "Job reassigned successfully"
        else:
            updated = await self._transition(job_id, JobTransition(
                expected_status=job.status,
                new_status=JobStatus.PENDING_DISPATCH,
                event=Unassigned(timestamp=now, previous_appraiser_id=previous, reason=reason),
                fields={"assigned_appraiser_id": None, "accepted_at": None},
            ), "unassign")
            DispatchMetrics.reassigned("unassign")
            message = "Job unassigned and returned to dispatch"

        audit_event(
            "REASSIGNED" if new_appraiser_id else "UNASSIGNED",
            resource="JOB",
            resource_id=job_id,
            detail=f"from={previous or '-'} to={new_appraiser_id or '-'} reason={reason}",
        )

        notifications = []
        if previous and previous != new_appraiser_id:
            notifications.append(job_unassigned(updated, previous, reason))
        if new_appraiser_id:
            notifications.append(job_assigned(updated, new_appraiser_id))
        for notification in notifications:
            await self._notify_one(notification)

        return ReassignResult(
            success=True,
            job_id=job_id,
            message=message,
            previous_appraiser_id=previous,
            new_appraiser_id=new_appraiser_id,
        )

    async def _notify_one(self, notification) -> None:
        try:
            await self.notifier.deliver([notification])
        except Exception as exc:
            logger.error(f"Notification delivery failed: {exc}", exc_info=True)

    # ------------------------------------------------------------------
    # SLA and reporting
    # ------------------------------------------------------------------

    async def check_slas(self) -> SweepResult:
        return await self.sla_monitor.check_and_escalate()

    async def get_job_sla_status(self, job_id: str) -> SLAStatus:
        return await self.sla_monitor.get_job_sla_status(job_id)

    async def get_sla_metrics(self, start: datetime, end: datetime) -> SLAMetrics:
        return await self.sla_monitor.get_sla_metrics(start, end)

    async def get_stats(self) -> DispatchStats:
        now = self._clock()
        pending, dispatched, active, breaches, recent = await asyncio.gather(
            self.store.count_jobs_by_status([JobStatus.PENDING_DISPATCH]),
            self.store.count_jobs_by_status([JobStatus.DISPATCHED]),
            self.store.count_jobs_by_status([JobStatus.ACCEPTED, JobStatus.IN_PROGRESS]),
            self.store.count_overdue_jobs(
                [JobStatus.DISPATCHED, JobStatus.ACCEPTED, JobStatus.IN_PROGRESS], now,
            ),
            self.store.find_recent_dispatched(now - STATS_WINDOW, STATS_SAMPLE_SIZE),
        )

        dispatch_minutes = [
            _minutes(job.dispatched_at - job.created_at)
            for job in recent if job.dispatched_at is not None
        ]
        acceptance_minutes = [
            _minutes(job.accepted_at - job.dispatched_at)
            for job in recent if job.dispatched_at is not None and job.accepted_at is not None
        ]

        return DispatchStats(
            pending_jobs=pending,
            dispatched_jobs=dispatched,
            active_jobs=active,
            sla_breaches=breaches,
            avg_dispatch_time_minutes=round(sum(dispatch_minutes) / len(dispatch_minutes), 1) if dispatch_minutes else 0.0,
            avg_acceptance_time_minutes=round(sum(acceptance_minutes) / len(acceptance_minutes), 1) if acceptance_minutes else 0.0,
        )

    async def get_coverage(self, center: Coordinates, radius_miles: float) -> CoverageSummary:
        return await self.matcher.calculate_coverage(center, radius_miles)


def build_dispatch_engine(store: DispatchStore, facility, retry_sink=None, *, clock: Callable[[], datetime] = _utcnow) -> DispatchEngine:
    """Wire matcher, SLA monitor and notifier from application settings."""
    from app.config import settings
    from app.core.dispatch.matcher import MatcherConfig
    from app.core.dispatch.sla_monitor import SLAConfig

    notifier = NotificationDispatcher(store, facility, retry_sink)
    matcher = AppraiserMatcher(store, MatcherConfig.from_settings(settings), clock=clock)
    monitor = SLAMonitor(store, notifier, SLAConfig.from_settings(settings), clock=clock)
    return DispatchEngine(store, matcher, monitor, notifier, clock=clock)
