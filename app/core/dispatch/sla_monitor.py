# app/core/dispatch/sla_monitor.py
"""
SLA monitor: periodic breach detection and tiered escalation.

Four independent deadline checks compare time spent in the current phase
against a budget:

    dispatch    PENDING_DISPATCH              since created_at     by urgency
    acceptance  DISPATCHED                    since dispatched_at  by urgency
    completion  ACCEPTED/IN_PROGRESS/SUBMITTED since accepted_at   sla_due_at or job type
    evidence    IN_PROGRESS                   since started_at     by urgency

The sweep keeps no cursor. Every run re-derives state from job records,
so a skipped or repeated run causes no drift. Escalation is idempotent:
a job is only escalated when its last recorded level differs from the
newly computed one, and the append itself is conditional on that level.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional

from app.core.dispatch.domain import (
    ACTIVE_JOB_STATUSES,
    AuditEntry,
    BreachType,
    EscalationLevel,
    Job,
    JobStatus,
    JobType,
    SLABreach,
    SLABreachRecorded,
    SLAMetrics,
    SLAState,
    SLAStatus,
    SweepResult,
    Urgency,
)
from app.core.dispatch.errors import JobNotFoundError
from app.core.dispatch.notifications import NotificationDispatcher, escalation_notifications
from app.core.dispatch.ports import DispatchStore
from app.infra.audit_log import audit_event
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

_HOUR = 3600.0


@dataclass(frozen=True)
class SLAConfig:
    dispatch_hours: Mapping[Urgency, float] = field(default_factory=lambda: {
        Urgency.NORMAL: 1.0, Urgency.URGENT: 0.5, Urgency.CRITICAL: 0.25,
    })
    acceptance_hours: Mapping[Urgency, float] = field(default_factory=lambda: {
        Urgency.NORMAL: 4.0, Urgency.URGENT: 2.0, Urgency.CRITICAL: 1.0,
    })
    evidence_hours: Mapping[Urgency, float] = field(default_factory=lambda: {
        Urgency.NORMAL: 24.0, Urgency.URGENT: 12.0, Urgency.CRITICAL: 6.0,
    })
    completion_hours: Mapping[JobType, float] = field(default_factory=lambda: {
        JobType.AI_REPORT: 0.5, JobType.ONSITE_PHOTOS: 48.0, JobType.CERTIFIED_APPRAISAL: 72.0,
    })
    default_completion_hours: float = 48.0
    critical_within_hours: float = 4.0
    urgent_within_hours: float = 12.0
    at_risk_hours: float = 2.0
    batch_size: int = 100

    @classmethod
    def from_settings(cls, s) -> "SLAConfig":
        return cls(at_risk_hours=s.sla_at_risk_hours, batch_size=s.sla_sweep_batch_size)

    def completion_budget_hours(self, job_type: JobType) -> float:
        return self.completion_hours.get(job_type, self.default_completion_hours)


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------

def _hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / _HOUR


def determine_urgency(sla_due_at: Optional[datetime], now: datetime, config: SLAConfig = SLAConfig()) -> Urgency:
    """Urgency from proximity to the job's deadline (a passed deadline is critical)."""
    if sla_due_at is None:
        return Urgency.NORMAL
    hours_until_due = _hours_between(now, sla_due_at)
    if hours_until_due <= config.critical_within_hours:
        return Urgency.CRITICAL
    if hours_until_due <= config.urgent_within_hours:
        return Urgency.URGENT
    return Urgency.NORMAL


def determine_escalation_level(elapsed_hours: float, budget_hours: float) -> EscalationLevel:
    """Severity from the elapsed/budget ratio; monotonic in the ratio."""
    if budget_hours <= 0:
        return EscalationLevel.CRITICAL
    ratio = elapsed_hours / budget_hours
    if ratio >= 4:
        return EscalationLevel.CRITICAL
    if ratio >= 2.5:
        return EscalationLevel.LEVEL_3
    if ratio >= 1.5:
        return EscalationLevel.LEVEL_2
    return EscalationLevel.LEVEL_1


def completion_budget_hours(job: Job, config: SLAConfig = SLAConfig()) -> float:
    """The job's own deadline when it has one, else the default for its type."""
    if job.sla_due_at is not None and job.accepted_at is not None:
        return _hours_between(job.accepted_at, job.sla_due_at)
    return config.completion_budget_hours(job.job_type)


# Statuses a breach type applies to; re-checked before escalating
_BREACH_STATUSES: dict[BreachType, tuple[JobStatus, ...]] = {
    BreachType.DISPATCH_DELAYED: (JobStatus.PENDING_DISPATCH,),
    BreachType.ACCEPTANCE_DELAYED: (JobStatus.DISPATCHED,),
    BreachType.COMPLETION_DELAYED: ACTIVE_JOB_STATUSES,
    BreachType.EVIDENCE_DELAYED: (JobStatus.IN_PROGRESS,),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# MONITOR
# ============================================================================

class SLAMonitor:
    def __init__(
        self,
        store: DispatchStore,
        notifier: NotificationDispatcher,
        config: Optional[SLAConfig] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.config = config or SLAConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def check_and_escalate(self) -> SweepResult:
        """Run all four checks and escalate what changed since the last sweep."""
        now = self._clock()

        with DispatchMetrics.track_sweep_time():
            breaches = await self.find_breaches(now)

            # One escalation per job per sweep: the most severe breach wins,
            # earlier checks win ties
            worst: dict[str, SLABreach] = {}
            for breach in breaches:
                DispatchMetrics.sla_breach(breach.breach_type.value, breach.level.value)
                current = worst.get(breach.job_id)
                if current is None or breach.level.rank > current.level.rank:
                    worst[breach.job_id] = breach

            escalated = 0
            for breach in worst.values():
                try:
                    if await self._escalate(breach):
                        escalated += 1
                except Exception as exc:
                    logger.error(
                        f"Escalation failed for {breach.breach_type.value}: {exc}",
                        exc_info=True,
                        extra={"job_id": breach.job_id},
                    )

        if breaches:
            logger.info(f"SLA sweep: {len(breaches)} breached, {escalated} escalated")
        return SweepResult(breached=len(breaches), escalated=escalated)

    async def find_breaches(self, now: datetime) -> list[SLABreach]:
        breaches: list[SLABreach] = []
        breaches.extend(await self._check_dispatch(now))
        breaches.extend(await self._check_acceptance(now))
        breaches.extend(await self._check_completion(now))
        breaches.extend(await self._check_evidence(now))
        return breaches

    async def _check_dispatch(self, now: datetime) -> list[SLABreach]:
        jobs = await self.store.find_jobs(
            [JobStatus.PENDING_DISPATCH], order_by="created_at", limit=self.config.batch_size,
        )
        result = []
        for job in jobs:
            budget = self.config.dispatch_hours[determine_urgency(job.sla_due_at, now, self.config)]
            breach = self._breach(job, BreachType.DISPATCH_DELAYED, job.created_at, budget, now)
            if breach:
                result.append(breach)
        return result

    async def _check_acceptance(self, now: datetime) -> list[SLABreach]:
        jobs = await self.store.find_jobs(
            [JobStatus.DISPATCHED], order_by="dispatched_at", limit=self.config.batch_size,
        )
        result = []
        for job in jobs:
            if job.dispatched_at is None:
                continue
            budget = self.config.acceptance_hours[determine_urgency(job.sla_due_at, now, self.config)]
            breach = self._breach(job, BreachType.ACCEPTANCE_DELAYED, job.dispatched_at, budget, now)
            if breach:
                result.append(breach)
        return result

    async def _check_completion(self, now: datetime) -> list[SLABreach]:
        jobs = await self.store.find_jobs(
            ACTIVE_JOB_STATUSES, order_by="accepted_at", limit=self.config.batch_size,
        )
        result = []
        for job in jobs:
            if job.accepted_at is None:
                continue
            budget = completion_budget_hours(job, self.config)
            breach = self._breach(job, BreachType.COMPLETION_DELAYED, job.accepted_at, budget, now)
            if breach:
                result.append(breach)
        return result

    async def _check_evidence(self, now: datetime) -> list[SLABreach]:
        jobs = await self.store.find_jobs(
            [JobStatus.IN_PROGRESS], order_by="started_at", limit=self.config.batch_size,
        )
        result = []
        for job in jobs:
            if job.started_at is None:
                continue
            budget = self.config.evidence_hours[determine_urgency(job.sla_due_at, now, self.config)]
            breach = self._breach(job, BreachType.EVIDENCE_DELAYED, job.started_at, budget, now)
            if breach:
                result.append(breach)
        return result

    @staticmethod
    def _breach(
        job: Job,
        breach_type: BreachType,
        phase_start: datetime,
        budget_hours: float,
        now: datetime,
    ) -> Optional[SLABreach]:
        elapsed = _hours_between(phase_start, now)
        if elapsed <= budget_hours:
            return None
        return SLABreach(
            job_id=job.id,
            breach_type=breach_type,
            level=determine_escalation_level(elapsed, budget_hours),
            hours_overdue=elapsed - budget_hours,
            budget_hours=budget_hours,
            elapsed_hours=elapsed,
        )

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    async def _escalate(self, breach: SLABreach) -> bool:
        job = await self.store.get_job(breach.job_id)
        if job is None or job.status not in _BREACH_STATUSES[breach.breach_type]:
            return False

        last_level = job.last_escalation_level()
        if last_level == breach.level:
            return False

        now = self._clock()
        event = SLABreachRecorded(
            timestamp=now,
            breach_type=breach.breach_type,
            escalation=breach.level,
            hours_overdue=round(breach.hours_overdue, 4),
        )
        if not await self.store.append_escalation(job.id, event, last_level):
            logger.info(
                f"Escalation to {breach.level.value} already recorded by a concurrent sweep",
                extra={"job_id": job.id},
            )
            return False

        DispatchMetrics.sla_escalated(breach.level.value)
        logger.warning(
            f"SLA breach {breach.breach_type.value} escalated to {breach.level.value} "
            f"({breach.hours_overdue:.2f}h overdue)",
            extra={"job_id": job.id, "breach_type": breach.breach_type.value, "level": breach.level.value},
        )

        await self._write_audit(job, breach, now)
        await self._notify(job, breach)
        return True

    async def _write_audit(self, job: Job, breach: SLABreach, now: datetime) -> None:
        metadata = {
            "breach_type": breach.breach_type.value,
            "level": breach.level.value,
            "hours_overdue": round(breach.hours_overdue, 4),
        }
        audit_event(
            "SLA_BREACH",
            resource="JOB",
            resource_id=job.id,
            detail=f"{breach.breach_type.value} {breach.level.value}",
            extra={"breach": metadata},
        )
        try:
            await self.store.create_audit_log(AuditEntry(
                resource="JOB",
                resource_id=job.id,
                action="SLA_BREACH",
                created_at=now,
                metadata=metadata,
            ))
        except Exception as exc:
            logger.error(f"Failed to write audit log: {exc}", exc_info=True, extra={"job_id": job.id})
            DispatchMetrics.audit_write_failed()

    async def _notify(self, job: Job, breach: SLABreach) -> None:
        try:
            client = None
            if job.requested_by_id and breach.level.at_least(EscalationLevel.LEVEL_2):
                users = await self.store.get_users([job.requested_by_id])
                client = users.get(job.requested_by_id)
            admins = await self.store.list_admins() if breach.level == EscalationLevel.CRITICAL else []
            await self.notifier.deliver(escalation_notifications(job, breach, client=client, admins=admins))
        except Exception as exc:
            logger.error(f"Escalation notifications failed: {exc}", exc_info=True, extra={"job_id": job.id})

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_job_sla_status(self, job_id: str) -> SLAStatus:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        now = self._clock()
        deadline: Optional[datetime] = None
        breach_type: Optional[BreachType] = None

        if job.status == JobStatus.PENDING_DISPATCH:
            budget = self.config.dispatch_hours[determine_urgency(job.sla_due_at, now, self.config)]
            deadline = job.created_at + timedelta(hours=budget)
            breach_type = BreachType.DISPATCH_DELAYED
        elif job.status == JobStatus.DISPATCHED and job.dispatched_at is not None:
            budget = self.config.acceptance_hours[determine_urgency(job.sla_due_at, now, self.config)]
            deadline = job.dispatched_at + timedelta(hours=budget)
            breach_type = BreachType.ACCEPTANCE_DELAYED
        elif job.status in ACTIVE_JOB_STATUSES:
            if job.sla_due_at is not None:
                deadline = job.sla_due_at
            elif job.accepted_at is not None:
                deadline = job.accepted_at + timedelta(hours=self.config.completion_budget_hours(job.job_type))
            breach_type = BreachType.COMPLETION_DELAYED

        if deadline is None:
            return SLAStatus(status=SLAState.ON_TRACK)

        hours_remaining = round(_hours_between(now, deadline), 2)
        if hours_remaining < 0:
            return SLAStatus(SLAState.BREACHED, hours_remaining, breach_type)
        if hours_remaining < self.config.at_risk_hours:
            return SLAStatus(SLAState.AT_RISK, hours_remaining)
        return SLAStatus(SLAState.ON_TRACK, hours_remaining)

    async def get_sla_metrics(self, start: datetime, end: datetime) -> SLAMetrics:
        """On-time rate and completion time for jobs created since ``start`` and completed by ``end``."""
        jobs = await self.store.find_completed_jobs(start, end)

        on_time = 0
        timed = 0
        total_hours = 0.0
        for job in jobs:
            if job.completed_at is None:
                continue
            if job.sla_due_at is not None and job.completed_at <= job.sla_due_at:
                on_time += 1
            if job.accepted_at is not None:
                timed += 1
                total_hours += _hours_between(job.accepted_at, job.completed_at)

        total = len(jobs)
        if total == 0:
            return SLAMetrics(total_jobs=0, on_time_completion_pct=100.0, avg_completion_hours=0.0, breach_rate_pct=0.0)

        return SLAMetrics(
            total_jobs=total,
            on_time_completion_pct=round(on_time / total * 100, 2),
            avg_completion_hours=round(total_hours / timed, 2) if timed else 0.0,
            breach_rate_pct=round((total - on_time) / total * 100, 2),
        )
