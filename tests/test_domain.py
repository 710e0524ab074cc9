# tests/test_domain.py
"""Tests for domain models"""
from datetime import date, datetime, time, timezone

import pytest

from app.core.dispatch.domain import (
    AutoAssigned,
    BreachType,
    DayWindow,
    Dispatched,
    EscalationLevel,
    JobStatus,
    JobTransition,
    JobType,
    LicenseType,
    NoMatches,
    Reassigned,
    SLABreachRecorded,
    StatusChanged,
    WeeklySchedule,
    Weekday,
    history_event_from_record,
)
from tests.fakes import NOW, make_job, make_profile


class TestLicenseType:
    def test_certified_appraisal_needs_certification(self):
        assert not LicenseType.TRAINEE.can_perform(JobType.CERTIFIED_APPRAISAL)
        assert not LicenseType.LICENSED.can_perform(JobType.CERTIFIED_APPRAISAL)
        assert LicenseType.CERTIFIED_RESIDENTIAL.can_perform(JobType.CERTIFIED_APPRAISAL)
        assert LicenseType.CERTIFIED_GENERAL.can_perform(JobType.CERTIFIED_APPRAISAL)

    def test_any_license_does_photos(self):
        for license_type in LicenseType:
            assert license_type.can_perform(JobType.ONSITE_PHOTOS)
            assert license_type.can_perform(JobType.AI_REPORT)

    def test_tiers_ascend(self):
        assert LicenseType.TRAINEE.tier < LicenseType.LICENSED.tier < LicenseType.CERTIFIED_GENERAL.tier


class TestEscalationLevel:
    def test_rank_order(self):
        ranks = [level.rank for level in EscalationLevel]
        assert ranks == [0, 1, 2, 3]

    def test_at_least(self):
        assert EscalationLevel.CRITICAL.at_least(EscalationLevel.LEVEL_2)
        assert EscalationLevel.LEVEL_2.at_least(EscalationLevel.LEVEL_2)
        assert not EscalationLevel.LEVEL_1.at_least(EscalationLevel.LEVEL_2)


class TestWeekday:
    @pytest.mark.parametrize("key", ["monday", "Mon", "MON", " mon "])
    def test_parse_forms(self, key):
        assert Weekday.parse(key) == Weekday.MONDAY

    def test_parse_unknown(self):
        assert Weekday.parse("holiday") is None
        assert Weekday.parse("mo") is None

    def test_of_date(self):
        assert Weekday.of(date(2026, 10, 14)) == Weekday.WEDNESDAY


class TestWeeklySchedule:
    def test_from_json_mixed_keys(self):
        schedule = WeeklySchedule.from_json({
            "Mon": {"isAvailable": True, "startTime": "07:30", "endTime": "16:00"},
            "tuesday": {"enabled": False},
            "dateOverrides": {"2026-10-14": {"isAvailable": False}, "not-a-date": {}},
            "timezone": "America/Chicago",
        })

        assert schedule.by_day[Weekday.MONDAY] == DayWindow(True, time(7, 30), time(16, 0))
        assert schedule.by_day[Weekday.TUESDAY].is_available is False
        assert list(schedule.overrides) == [date(2026, 10, 14)]

    def test_from_json_empty(self):
        assert WeeklySchedule.from_json(None) is None
        assert WeeklySchedule.from_json({}) is None

    def test_end_of_day_clock(self):
        window = DayWindow.from_dict({"start": "0:00", "end": "24:00"})
        assert window.end == time(23, 59, 59)

    @pytest.mark.parametrize("value", ["9am", "08:75", "-1:00", "noon"])
    def test_malformed_clock_is_unset(self, value):
        window = DayWindow.from_dict({"startTime": value, "endTime": "17:00"})

        assert window.start is None
        assert window.end == time(17, 0)
        # No start bound: open all day
        assert window.is_open_at(time(6, 0)) is True

    def test_malformed_day_does_not_discard_schedule(self):
        schedule = WeeklySchedule.from_json({
            "monday": {"startTime": "9am"},
            "friday": {"startTime": "08:00", "endTime": "12:00"},
        })

        assert schedule.by_day[Weekday.MONDAY] == DayWindow(True, None, None)
        assert schedule.by_day[Weekday.FRIDAY] == DayWindow(True, time(8, 0), time(12, 0))

    def test_malformed_overrides_are_skipped(self):
        schedule = WeeklySchedule.from_json({
            "monday": {"isAvailable": True},
            "dateOverrides": {"2026-10-14": "closed", "2026-10-15": None, "2026-10-16": {"isAvailable": False}},
        })

        assert list(schedule.overrides) == [date(2026, 10, 15), date(2026, 10, 16)]
        assert schedule.overrides[date(2026, 10, 16)].is_available is False

    def test_overrides_not_a_mapping(self):
        schedule = WeeklySchedule.from_json({"monday": {}, "dateOverrides": ["2026-10-14"]})

        assert schedule.overrides == {}
        assert Weekday.MONDAY in schedule.by_day

    def test_to_json_round_trip(self):
        schedule = WeeklySchedule(
            by_day={Weekday.FRIDAY: DayWindow(True, time(9, 0), time(17, 0))},
            overrides={date(2026, 12, 25): DayWindow(False)},
        )

        doc = schedule.to_json()

        assert doc["friday"] == {"isAvailable": True, "startTime": "09:00", "endTime": "17:00"}
        assert doc["dateOverrides"]["2026-12-25"]["isAvailable"] is False
        assert WeeklySchedule.from_json(doc) == schedule

    def test_window_for_prefers_override(self):
        schedule = WeeklySchedule(
            by_day={Weekday.WEDNESDAY: DayWindow(True)},
            overrides={date(2026, 10, 14): DayWindow(False)},
        )
        assert schedule.window_for(date(2026, 10, 14)).is_available is False
        assert schedule.window_for(date(2026, 10, 21)).is_available is True
        assert schedule.window_for(date(2026, 10, 15)) is None

    def test_minutes_remaining(self):
        window = DayWindow(True, time(8, 0), time(18, 0))
        assert window.minutes_remaining(time(17, 15)) == 45
        assert window.minutes_remaining(time(19, 0)) == 0
        assert DayWindow(True).minutes_remaining(time(12, 0)) is None


class TestHistoryEvents:
    def test_record_shape(self):
        event = AutoAssigned(timestamp=NOW, appraiser_id="appr-1", score=91.5)
        assert event.to_record() == {
            "status": "AUTO_ASSIGNED",
            "timestamp": NOW.isoformat(),
            "metadata": {"appraiser_id": "appr-1", "score": 91.5},
        }

    @pytest.mark.parametrize("event", [
        Dispatched(timestamp=NOW, matched_count=3),
        NoMatches(timestamp=NOW, message="No available appraisers found"),
        Reassigned(timestamp=NOW, previous_appraiser_id="a", new_appraiser_id="b", reason="sick"),
        SLABreachRecorded(
            timestamp=NOW,
            breach_type=BreachType.EVIDENCE_DELAYED,
            escalation=EscalationLevel.LEVEL_3,
            hours_overdue=2.5,
        ),
    ])
    def test_from_record_restores_type(self, event):
        assert history_event_from_record(event.to_record()) == event

    def test_flat_legacy_record(self):
        event = history_event_from_record({
            "status": "SLA_BREACH",
            "timestamp": "2026-10-14T15:00:00Z",
            "breach_type": "DISPATCH_DELAYED",
            "level": "LEVEL_2",
            "hours_overdue": 0.75,
        })

        assert isinstance(event, SLABreachRecorded)
        assert event.level == EscalationLevel.LEVEL_2
        assert event.timestamp == datetime(2026, 10, 14, 15, 0, tzinfo=timezone.utc)

    def test_unknown_status_is_kept(self):
        event = history_event_from_record({
            "status": "SUBMITTED",
            "timestamp": "2026-10-14T15:00:00",
            "metadata": {"by": "appr-1"},
        })

        assert isinstance(event, StatusChanged)
        assert event.status == "SUBMITTED"
        assert event.metadata() == {"by": "appr-1"}
        assert event.level is None
        assert event.timestamp.tzinfo is not None


class TestJob:
    def test_last_escalation_level(self):
        job = make_job(status_history=(
            SLABreachRecorded(timestamp=NOW, escalation=EscalationLevel.LEVEL_1),
            Dispatched(timestamp=NOW, matched_count=1),
            SLABreachRecorded(timestamp=NOW, escalation=EscalationLevel.LEVEL_2),
            StatusChanged(timestamp=NOW, name="ACCEPTED"),
        ))
        assert job.last_escalation_level() == EscalationLevel.LEVEL_2

    def test_no_escalation(self):
        assert make_job().last_escalation_level() is None

    def test_license_validity(self):
        assert make_profile(license_expiry=None).license_valid_at(NOW)
        assert not make_profile(license_expiry=NOW).license_valid_at(NOW)


class TestJobTransition:
    def test_rejects_unknown_fields(self):
        with pytest.raises(ValueError, match="status_history"):
            JobTransition(
                expected_status=JobStatus.PENDING_DISPATCH,
                new_status=JobStatus.DISPATCHED,
                event=Dispatched(timestamp=NOW),
                fields={"status_history": []},
            )

    def test_allows_known_fields(self):
        transition = JobTransition(
            expected_status=JobStatus.DISPATCHED,
            new_status=JobStatus.ACCEPTED,
            event=AutoAssigned(timestamp=NOW, appraiser_id="a"),
            fields={"assigned_appraiser_id": "a", "accepted_at": NOW},
        )
        assert transition.fields["assigned_appraiser_id"] == "a"
