# tests/test_engine.py
"""Tests for dispatch, auto-assignment, reassignment and stats"""
import dataclasses
from datetime import timedelta

import pytest

from app.core.dispatch.domain import (
    AutoAssigned,
    DispatchOptions,
    JobStatus,
    NotificationChannel,
    NotificationType,
    VerificationStatus,
)
from app.core.dispatch.engine import DispatchEngine, build_dispatch_engine
from app.core.dispatch.errors import (
    AppraiserNotFoundError,
    InvalidTransitionError,
    JobNotFoundError,
    StaleStateError,
)
from app.infra.metrics import get_metrics_collector
from app.infra.notification_channels import DeliveryError
from tests.fakes import AUSTIN, KYLE, NOW, RecordingNotificationFacility, make_job, make_profile


def _seed(store, *jobs, appraisers=()):
    for job in jobs:
        store.jobs[job.id] = job
    for profile in appraisers:
        store.appraisers[profile.user_id] = profile


def _push_types(facility):
    return [(user, payload["type"]) for user, payload in facility.pushes]


class TestDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_to_matched_appraisers(self, engine, store, facility):
        _seed(
            store,
            make_job(),
            appraisers=[
                make_profile("near", email="near@example.com"),
                make_profile("farther", home_base=KYLE),
            ],
        )

        result = await engine.dispatch("job-1")

        assert result.success is True
        assert [m.user_id for m in result.matched_appraisers] == ["near", "farther"]
        assert result.message == "Job dispatched to 2 appraisers"

        job = store.jobs["job-1"]
        assert job.status == JobStatus.DISPATCHED
        assert job.dispatched_at == NOW
        assert store.history_statuses("job-1") == ["DISPATCHED"]
        assert job.status_history[0].matched_count == 2

        assert sorted(user for user, _ in facility.pushes) == ["farther", "near"]
        assert [recipient for _, recipient, _ in facility.emails] == ["near@example.com"]
        in_app = [n for n in store.notifications if n.channel == NotificationChannel.IN_APP]
        assert len(in_app) == 2

    @pytest.mark.asyncio
    async def test_no_matches_leaves_job_pending(self, engine, store, facility):
        _seed(store, make_job())

        result = await engine.dispatch("job-1")

        assert result.success is False
        assert result.matched_appraisers == ()
        assert store.jobs["job-1"].status == JobStatus.PENDING_DISPATCH
        assert store.history_statuses("job-1") == ["NO_MATCHES"]
        assert store.transition_calls == 0
        assert facility.pushes == []

    @pytest.mark.asyncio
    async def test_missing_job(self, engine):
        with pytest.raises(JobNotFoundError):
            await engine.dispatch("nope")

    @pytest.mark.asyncio
    async def test_job_not_pending(self, engine, store):
        _seed(store, make_job(status=JobStatus.DISPATCHED), appraisers=[make_profile()])

        with pytest.raises(InvalidTransitionError):
            await engine.dispatch("job-1")

    @pytest.mark.asyncio
    async def test_concurrent_change_raises_stale_state(self, engine, store):
        _seed(store, make_job(), appraisers=[make_profile()])

        async def moved(job_id, transition):
            store.transition_calls += 1
            return None

        store.apply_transition = moved

        with pytest.raises(StaleStateError) as exc_info:
            await engine.dispatch("job-1")

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 409
        metrics = get_metrics_collector().get_metrics()
        assert metrics["counters"]["stale_state_conflicts_total{operation=dispatch}"] == 1

    @pytest.mark.asyncio
    async def test_notification_failure_goes_to_retry_queue(self, engine, store, facility, retry_sink):
        _seed(store, make_job(), appraisers=[make_profile("a")])
        facility.fail_with = ConnectionError("push gateway down")

        result = await engine.dispatch("job-1")

        assert result.success is True
        assert store.jobs["job-1"].status == JobStatus.DISPATCHED
        [(notification, error)] = retry_sink.entries
        assert notification.user_id == "a"
        assert notification.channel == NotificationChannel.PUSH
        assert "push gateway down" in error

    @pytest.mark.asyncio
    async def test_permanent_notification_failure_is_not_retried(self, engine, store, facility, retry_sink):
        _seed(store, make_job(), appraisers=[make_profile("a")])
        facility.fail_with = DeliveryError("push", "gateway status=404", retryable=False)

        result = await engine.dispatch("job-1")

        assert result.success is True
        assert retry_sink.entries == []
        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["notifications_dropped_total{channel=push}"] == 1

    @pytest.mark.asyncio
    async def test_options_are_passed_to_matcher(self, engine, store):
        _seed(store, make_job(), appraisers=[make_profile("a"), make_profile("b")])

        result = await engine.dispatch("job-1", DispatchOptions(exclude_appraisers=("a",)))

        assert [m.user_id for m in result.matched_appraisers] == ["b"]


class TestAutoAssign:
    @pytest.mark.asyncio
    async def test_assigns_top_candidate(self, engine, store, facility):
        _seed(
            store,
            make_job(),
            appraisers=[make_profile("near", home_base=AUSTIN), make_profile("farther", home_base=KYLE)],
        )

        result = await engine.auto_assign("job-1")

        assert result.success is True
        assert result.assigned_appraiser_id == "near"

        job = store.jobs["job-1"]
        assert job.status == JobStatus.ACCEPTED
        assert job.assigned_appraiser_id == "near"
        assert job.accepted_at == NOW
        # ONSITE_PHOTOS completion budget
        assert job.sla_due_at == NOW + timedelta(hours=48)
        assert store.history_statuses("job-1") == ["DISPATCHED", "AUTO_ASSIGNED"]
        event = job.status_history[-1]
        assert isinstance(event, AutoAssigned)
        assert event.appraiser_id == "near"
        assert event.score == result.matched_appraisers[0].score

        assert ("near", NotificationType.JOB_ASSIGNED.value) in _push_types(facility)

    @pytest.mark.asyncio
    async def test_existing_deadline_is_kept(self, engine, store):
        due = NOW + timedelta(hours=6)
        _seed(store, make_job(sla_due_at=due), appraisers=[make_profile()])

        await engine.auto_assign("job-1")

        assert store.jobs["job-1"].sla_due_at == due

    @pytest.mark.asyncio
    async def test_lost_accept_race_raises_stale(self, engine, store, facility):
        _seed(store, make_job(), appraisers=[make_profile("near")])
        real_apply = store.apply_transition

        async def accepted_elsewhere(job_id, transition):
            if transition.expected_status == JobStatus.DISPATCHED:
                store.jobs[job_id] = dataclasses.replace(
                    store.jobs[job_id], status=JobStatus.ACCEPTED, assigned_appraiser_id="rival",
                )
                return None
            return await real_apply(job_id, transition)

        store.apply_transition = accepted_elsewhere

        with pytest.raises(StaleStateError) as exc_info:
            await engine.auto_assign("job-1")

        assert exc_info.value.retryable is True
        assert exc_info.value.expected_status == JobStatus.DISPATCHED.value
        assert store.jobs["job-1"].assigned_appraiser_id == "rival"
        assert ("near", NotificationType.JOB_ASSIGNED.value) not in _push_types(facility)
        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["stale_state_conflicts_total{operation=auto_assign}"] == 1

    @pytest.mark.asyncio
    async def test_no_candidates(self, engine, store):
        _seed(store, make_job())

        result = await engine.auto_assign("job-1")

        assert result.success is False
        assert result.matched_appraisers == ()
        assert result.assigned_appraiser_id is None
        assert store.jobs["job-1"].status == JobStatus.PENDING_DISPATCH


class TestReassign:
    @pytest.mark.asyncio
    async def test_unassign_returns_job_to_dispatch(self, engine, store, facility):
        _seed(store, make_job(
            status=JobStatus.ACCEPTED,
            assigned_appraiser_id="appr-1",
            accepted_at=NOW - timedelta(hours=2),
        ))

        result = await engine.reassign("job-1", None, "client requested")

        assert result.success is True
        assert result.previous_appraiser_id == "appr-1"
        assert result.new_appraiser_id is None

        job = store.jobs["job-1"]
        assert job.status == JobStatus.PENDING_DISPATCH
        assert job.assigned_appraiser_id is None
        assert job.accepted_at is None
        assert store.history_statuses("job-1") == ["UNASSIGNED"]
        assert job.status_history[0].reason == "client requested"
        assert _push_types(facility) == [("appr-1", NotificationType.JOB_UNASSIGNED.value)]

    @pytest.mark.asyncio
    async def test_reassign_to_another_appraiser(self, engine, store, facility):
        due = NOW + timedelta(hours=20)
        _seed(
            store,
            make_job(status=JobStatus.IN_PROGRESS, assigned_appraiser_id="appr-1",
                     accepted_at=NOW - timedelta(hours=4), sla_due_at=due),
            appraisers=[make_profile("appr-2")],
        )

        result = await engine.reassign("job-1", "appr-2", "appraiser sick")

        assert result.new_appraiser_id == "appr-2"
        job = store.jobs["job-1"]
        assert job.status == JobStatus.ACCEPTED
        assert job.assigned_appraiser_id == "appr-2"
        assert job.accepted_at == NOW
        assert job.sla_due_at == due
        assert store.history_statuses("job-1") == ["REASSIGNED"]
        assert _push_types(facility) == [
            ("appr-1", NotificationType.JOB_UNASSIGNED.value),
            ("appr-2", NotificationType.JOB_ASSIGNED.value),
        ]

    @pytest.mark.asyncio
    async def test_assign_pending_job_sets_deadline(self, engine, store):
        _seed(store, make_job(), appraisers=[make_profile("appr-2")])

        await engine.reassign("job-1", "appr-2", "manual pick")

        assert store.jobs["job-1"].sla_due_at == NOW + timedelta(hours=48)

    @pytest.mark.asyncio
    async def test_unverified_target_rejected(self, engine, store):
        _seed(
            store,
            make_job(status=JobStatus.ACCEPTED, assigned_appraiser_id="appr-1"),
            appraisers=[make_profile("appr-2", verification_status=VerificationStatus.SUSPENDED)],
        )

        with pytest.raises(InvalidTransitionError):
            await engine.reassign("job-1", "appr-2", "swap")

        assert store.jobs["job-1"].assigned_appraiser_id == "appr-1"

    @pytest.mark.asyncio
    async def test_unknown_target(self, engine, store):
        _seed(store, make_job(status=JobStatus.ACCEPTED, assigned_appraiser_id="appr-1"))

        with pytest.raises(AppraiserNotFoundError) as exc_info:
            await engine.reassign("job-1", "ghost", "swap")

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_completed_job_cannot_be_reassigned(self, engine, store):
        _seed(store, make_job(status=JobStatus.COMPLETED, assigned_appraiser_id="appr-1"))

        with pytest.raises(InvalidTransitionError):
            await engine.reassign("job-1", None, "too late")


class TestReporting:
    @pytest.mark.asyncio
    async def test_stats(self, engine, store):
        _seed(
            store,
            make_job("pending"),
            make_job(
                "dispatched",
                status=JobStatus.DISPATCHED,
                created_at=NOW - timedelta(minutes=90),
                dispatched_at=NOW - timedelta(minutes=60),
            ),
            make_job(
                "late",
                status=JobStatus.ACCEPTED,
                created_at=NOW - timedelta(minutes=130),
                dispatched_at=NOW - timedelta(minutes=120),
                accepted_at=NOW - timedelta(minutes=90),
                sla_due_at=NOW - timedelta(hours=1),
                assigned_appraiser_id="appr-1",
            ),
        )

        stats = await engine.get_stats()

        assert stats.pending_jobs == 1
        assert stats.dispatched_jobs == 1
        assert stats.active_jobs == 1
        assert stats.sla_breaches == 1
        assert stats.avg_dispatch_time_minutes == 20.0
        assert stats.avg_acceptance_time_minutes == 30.0

    @pytest.mark.asyncio
    async def test_stats_empty(self, engine):
        stats = await engine.get_stats()

        assert stats.pending_jobs == 0
        assert stats.avg_dispatch_time_minutes == 0.0
        assert stats.avg_acceptance_time_minutes == 0.0

    @pytest.mark.asyncio
    async def test_check_slas_delegates_to_monitor(self, engine, store):
        _seed(store, make_job(created_at=NOW - timedelta(minutes=70)))

        result = await engine.check_slas()

        assert (result.breached, result.escalated) == (1, 1)

    @pytest.mark.asyncio
    async def test_coverage(self, engine, store):
        _seed(store, appraisers=[make_profile("a", rating=4.0)])

        summary = await engine.get_coverage(AUSTIN, 10)

        assert summary.total_appraisers == 1
        assert summary.avg_rating == 4.0


def test_build_dispatch_engine_wires_components(store):
    engine = build_dispatch_engine(store, RecordingNotificationFacility(), clock=lambda: NOW)

    assert isinstance(engine, DispatchEngine)
    assert engine.matcher.store is store
    assert engine.sla_monitor.notifier is engine.notifier
    assert engine.notifier.retry_sink is None
