# tests/test_sla_monitor.py
"""Tests for breach detection, escalation and SLA reporting"""
from datetime import timedelta

import pytest

from app.core.dispatch.domain import (
    BreachType,
    EscalationLevel,
    JobStatus,
    NotificationType,
    SLABreach,
    SLABreachRecorded,
    SLAState,
    Urgency,
    UserContact,
)
from app.core.dispatch.errors import JobNotFoundError
from app.core.dispatch.notifications import NotificationDispatcher
from app.core.dispatch.sla_monitor import (
    SLAConfig,
    SLAMonitor,
    completion_budget_hours,
    determine_escalation_level,
    determine_urgency,
)
from tests.fakes import (
    NOW,
    InMemoryDispatchStore,
    RecordingNotificationFacility,
    make_job,
)

CLIENT = UserContact("client-1", email="client@example.com", name="Client", role="CLIENT")
ADMINS = [
    UserContact("admin-1", email="a1@example.com", role="ADMIN"),
    UserContact("admin-2", email="a2@example.com", role="ADMIN"),
]


def _late_accepted_job(job_id: str, overdue_ratio: float, **fields):
    """ACCEPTED job with an 8h completion budget, ``overdue_ratio`` of it elapsed."""
    accepted_at = NOW - timedelta(hours=8 * overdue_ratio)
    return make_job(
        job_id,
        status=JobStatus.ACCEPTED,
        created_at=accepted_at - timedelta(hours=1),
        dispatched_at=accepted_at - timedelta(minutes=30),
        accepted_at=accepted_at,
        sla_due_at=accepted_at + timedelta(hours=8),
        assigned_appraiser_id="appr-1",
        requested_by_id=CLIENT.user_id,
        **fields,
    )


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _monitor(store, clock=None, facility=None):
    facility = facility or RecordingNotificationFacility()
    notifier = NotificationDispatcher(store, facility)
    return SLAMonitor(store, notifier, SLAConfig(), clock=clock or (lambda: NOW)), facility


class TestRules:
    @pytest.mark.parametrize("elapsed,expected", [
        (1.1, EscalationLevel.LEVEL_1),
        (1.5, EscalationLevel.LEVEL_2),
        (2.5, EscalationLevel.LEVEL_3),
        (4.0, EscalationLevel.CRITICAL),
        (9.0, EscalationLevel.CRITICAL),
    ])
    def test_escalation_thresholds(self, elapsed, expected):
        assert determine_escalation_level(elapsed, 1.0) == expected

    def test_escalation_is_monotonic_in_ratio(self):
        ratios = [1.0 + i * 0.05 for i in range(100)]
        ranks = [determine_escalation_level(r * 3.0, 3.0).rank for r in ratios]
        assert ranks == sorted(ranks)

    def test_zero_budget_is_critical(self):
        assert determine_escalation_level(0.1, 0) == EscalationLevel.CRITICAL

    def test_urgency_from_deadline(self):
        assert determine_urgency(None, NOW) == Urgency.NORMAL
        assert determine_urgency(NOW + timedelta(hours=24), NOW) == Urgency.NORMAL
        assert determine_urgency(NOW + timedelta(hours=10), NOW) == Urgency.URGENT
        assert determine_urgency(NOW + timedelta(hours=3), NOW) == Urgency.CRITICAL
        assert determine_urgency(NOW - timedelta(hours=3), NOW) == Urgency.CRITICAL

    def test_completion_budget_prefers_job_deadline(self):
        job = _late_accepted_job("j", 1.0)
        assert completion_budget_hours(job) == pytest.approx(8.0)
        assert completion_budget_hours(make_job("k")) == 48.0


class TestFindBreaches:
    @pytest.mark.asyncio
    async def test_pending_job_over_an_hour(self):
        store = InMemoryDispatchStore(jobs=[make_job("late", created_at=NOW - timedelta(minutes=70))])
        monitor, _ = _monitor(store)

        breaches = await monitor.find_breaches(NOW)

        assert len(breaches) == 1
        assert breaches[0].breach_type == BreachType.DISPATCH_DELAYED
        assert breaches[0].level == EscalationLevel.LEVEL_1
        assert breaches[0].hours_overdue == pytest.approx(1 / 6)

    @pytest.mark.asyncio
    async def test_within_budget_is_not_a_breach(self):
        store = InMemoryDispatchStore(jobs=[make_job("fresh", created_at=NOW - timedelta(minutes=50))])
        monitor, _ = _monitor(store)

        assert await monitor.find_breaches(NOW) == []

    @pytest.mark.asyncio
    async def test_acceptance_uses_urgency_budget(self):
        job = make_job(
            "dispatched",
            status=JobStatus.DISPATCHED,
            dispatched_at=NOW - timedelta(hours=1.5),
            sla_due_at=NOW + timedelta(hours=3),
        )
        monitor, _ = _monitor(InMemoryDispatchStore(jobs=[job]))

        [breach] = await monitor.find_breaches(NOW)

        # CRITICAL urgency: 1h budget, 1.5h elapsed
        assert breach.breach_type == BreachType.ACCEPTANCE_DELAYED
        assert breach.level == EscalationLevel.LEVEL_2

    @pytest.mark.asyncio
    async def test_terminal_jobs_are_ignored(self):
        store = InMemoryDispatchStore(jobs=[
            make_job("done", status=JobStatus.COMPLETED, created_at=NOW - timedelta(days=3)),
            make_job("gone", status=JobStatus.CANCELLED, created_at=NOW - timedelta(days=3)),
        ])
        monitor, _ = _monitor(store)

        assert await monitor.find_breaches(NOW) == []


class TestEscalation:
    @pytest.mark.asyncio
    async def test_two_immediate_sweeps_escalate_once(self):
        store = InMemoryDispatchStore(jobs=[make_job("late", created_at=NOW - timedelta(minutes=70))])
        monitor, _ = _monitor(store)

        first = await monitor.check_and_escalate()
        second = await monitor.check_and_escalate()

        assert (first.breached, first.escalated) == (1, 1)
        assert (second.breached, second.escalated) == (1, 0)
        assert store.history_statuses("late") == ["SLA_BREACH"]

    @pytest.mark.asyncio
    async def test_level_change_escalates_again(self):
        store = InMemoryDispatchStore(jobs=[make_job("late", created_at=NOW - timedelta(minutes=70))])
        clock = _Clock(NOW)
        monitor, _ = _monitor(store, clock=clock)

        await monitor.check_and_escalate()
        clock.now = NOW + timedelta(minutes=30)
        result = await monitor.check_and_escalate()

        assert result.escalated == 1
        levels = [e.level for e in store.jobs["late"].status_history]
        assert levels == [EscalationLevel.LEVEL_1, EscalationLevel.LEVEL_2]

    @pytest.mark.asyncio
    async def test_worst_breach_per_job_wins(self):
        accepted_at = NOW - timedelta(hours=20)
        job = make_job(
            "both",
            status=JobStatus.IN_PROGRESS,
            accepted_at=accepted_at,
            started_at=NOW - timedelta(hours=19),
            sla_due_at=accepted_at + timedelta(hours=16),
            assigned_appraiser_id="appr-1",
        )
        store = InMemoryDispatchStore(jobs=[job])
        monitor, _ = _monitor(store)

        first = await monitor.check_and_escalate()
        second = await monitor.check_and_escalate()

        assert (first.breached, first.escalated) == (2, 1)
        assert second.escalated == 0
        [event] = store.jobs["both"].status_history
        assert isinstance(event, SLABreachRecorded)
        assert event.breach_type == BreachType.EVIDENCE_DELAYED
        assert event.escalation == EscalationLevel.LEVEL_3

    @pytest.mark.asyncio
    async def test_audit_log_written(self):
        store = InMemoryDispatchStore(jobs=[make_job("late", created_at=NOW - timedelta(minutes=70))])
        monitor, _ = _monitor(store)

        await monitor.check_and_escalate()

        [entry] = store.audit_logs
        assert entry.action == "SLA_BREACH"
        assert entry.resource_id == "late"
        assert entry.metadata["level"] == "LEVEL_1"

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_abort_escalation(self):
        store = InMemoryDispatchStore(jobs=[make_job("late", created_at=NOW - timedelta(minutes=70))])

        async def broken(entry):
            raise RuntimeError("audit table locked")

        store.create_audit_log = broken
        monitor, _ = _monitor(store)

        result = await monitor.check_and_escalate()

        assert result.escalated == 1
        assert store.history_statuses("late") == ["SLA_BREACH"]

    @pytest.mark.asyncio
    async def test_level_1_notifies_nobody(self):
        store = InMemoryDispatchStore(jobs=[_late_accepted_job("j", 1.2)], users=[CLIENT, *ADMINS])
        monitor, facility = _monitor(store)

        await monitor.check_and_escalate()

        assert facility.pushes == []
        assert facility.emails == []

    @pytest.mark.asyncio
    async def test_level_3_notifies_appraiser_and_client(self):
        store = InMemoryDispatchStore(jobs=[_late_accepted_job("j", 2.6)], users=[CLIENT, *ADMINS])
        monitor, facility = _monitor(store)

        await monitor.check_and_escalate()

        assert [user for user, _ in facility.pushes] == ["appr-1"]
        assert facility.pushes[0][1]["type"] == NotificationType.SLA_WARNING.value
        [(template, recipient, payload)] = facility.emails
        assert template == "sla_breach"
        assert recipient == "client@example.com"
        assert payload["data"]["level"] == "LEVEL_3"

    @pytest.mark.asyncio
    async def test_critical_also_notifies_admins(self):
        store = InMemoryDispatchStore(jobs=[_late_accepted_job("j", 5.0)], users=[CLIENT, *ADMINS])
        monitor, facility = _monitor(store)

        await monitor.check_and_escalate()

        pushed = sorted(user for user, _ in facility.pushes)
        assert pushed == ["admin-1", "admin-2", "appr-1"]
        assert len(facility.emails) == 1

    @pytest.mark.asyncio
    async def test_notification_failure_is_swallowed(self):
        store = InMemoryDispatchStore(jobs=[_late_accepted_job("j", 5.0)], users=[CLIENT, *ADMINS])
        monitor, _ = _monitor(store, facility=RecordingNotificationFacility(fail_with=ConnectionError("down")))

        result = await monitor.check_and_escalate()

        assert result.escalated == 1

    @pytest.mark.asyncio
    async def test_job_that_moved_on_is_not_escalated(self):
        store = InMemoryDispatchStore(jobs=[make_job("moved", status=JobStatus.DISPATCHED, dispatched_at=NOW)])
        monitor, _ = _monitor(store)
        stale = SLABreach("moved", BreachType.DISPATCH_DELAYED, EscalationLevel.LEVEL_2, 1.0, 1.0, 2.0)

        assert await monitor._escalate(stale) is False
        assert store.jobs["moved"].status_history == ()

    @pytest.mark.asyncio
    async def test_concurrent_sweep_wins(self):
        store = InMemoryDispatchStore(jobs=[make_job("late", created_at=NOW - timedelta(minutes=70))])

        async def lost_race(job_id, event, expected_level):
            return False

        store.append_escalation = lost_race
        monitor, _ = _monitor(store)

        result = await monitor.check_and_escalate()

        assert result.escalated == 0
        assert store.audit_logs == []


class TestJobSLAStatus:
    @pytest.mark.asyncio
    async def test_missing_job(self):
        monitor, _ = _monitor(InMemoryDispatchStore())
        with pytest.raises(JobNotFoundError):
            await monitor.get_job_sla_status("nope")

    @pytest.mark.asyncio
    async def test_pending_job_at_risk(self):
        monitor, _ = _monitor(InMemoryDispatchStore(jobs=[make_job("p")]))

        status = await monitor.get_job_sla_status("p")

        assert status.status == SLAState.AT_RISK
        assert status.due_in_hours == pytest.approx(0.83)

    @pytest.mark.asyncio
    async def test_active_job_on_track(self):
        job = make_job("a", status=JobStatus.ACCEPTED, accepted_at=NOW, sla_due_at=NOW + timedelta(hours=10))
        monitor, _ = _monitor(InMemoryDispatchStore(jobs=[job]))

        status = await monitor.get_job_sla_status("a")

        assert status.status == SLAState.ON_TRACK
        assert status.due_in_hours == 10.0
        assert status.breach_type is None

    @pytest.mark.asyncio
    async def test_active_job_breached(self):
        job = make_job("a", status=JobStatus.IN_PROGRESS, accepted_at=NOW - timedelta(hours=9),
                       sla_due_at=NOW - timedelta(hours=1))
        monitor, _ = _monitor(InMemoryDispatchStore(jobs=[job]))

        status = await monitor.get_job_sla_status("a")

        assert status.status == SLAState.BREACHED
        assert status.due_in_hours == -1.0
        assert status.breach_type == BreachType.COMPLETION_DELAYED

    @pytest.mark.asyncio
    async def test_active_job_without_deadline_uses_type_budget(self):
        job = make_job("a", status=JobStatus.ACCEPTED, accepted_at=NOW - timedelta(hours=1))
        monitor, _ = _monitor(InMemoryDispatchStore(jobs=[job]))

        status = await monitor.get_job_sla_status("a")

        # ONSITE_PHOTOS: 48h from acceptance
        assert status.status == SLAState.ON_TRACK
        assert status.due_in_hours == 47.0

    @pytest.mark.asyncio
    async def test_terminal_job_on_track(self):
        monitor, _ = _monitor(InMemoryDispatchStore(jobs=[make_job("c", status=JobStatus.COMPLETED)]))

        status = await monitor.get_job_sla_status("c")

        assert status.status == SLAState.ON_TRACK
        assert status.due_in_hours is None


class TestSLAMetrics:
    @pytest.mark.asyncio
    async def test_on_time_rate_and_average(self):
        base = NOW - timedelta(days=5)
        jobs = [
            make_job("on-time", status=JobStatus.COMPLETED, created_at=base, accepted_at=base,
                     completed_at=base + timedelta(hours=24), sla_due_at=base + timedelta(hours=48)),
            make_job("late", status=JobStatus.COMPLETED, created_at=base, accepted_at=base,
                     completed_at=base + timedelta(hours=72), sla_due_at=base + timedelta(hours=48)),
        ]
        monitor, _ = _monitor(InMemoryDispatchStore(jobs=jobs))

        metrics = await monitor.get_sla_metrics(NOW - timedelta(days=30), NOW)

        assert metrics.total_jobs == 2
        assert metrics.on_time_completion_pct == 50.0
        assert metrics.avg_completion_hours == 48.0
        assert metrics.breach_rate_pct == 50.0

    @pytest.mark.asyncio
    async def test_no_jobs(self):
        monitor, _ = _monitor(InMemoryDispatchStore())

        metrics = await monitor.get_sla_metrics(NOW - timedelta(days=30), NOW)

        assert metrics.total_jobs == 0
        assert metrics.on_time_completion_pct == 100.0
