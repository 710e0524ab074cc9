# app/core/dispatch/domain.py
"""
Dispatch domain model.

Everything the matcher, the SLA monitor and the dispatch engine exchange
lives here: job and appraiser records, the typed weekly schedule, the
closed set of status-history events, and the transient values each
operation returns. Nothing in this module performs I/O.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum, IntEnum
from typing import Any, ClassVar, Mapping, Optional


# ============================================================================
# ENUMERATIONS
# ============================================================================

class JobStatus(str, Enum):
    PENDING_DISPATCH = "PENDING_DISPATCH"
    DISPATCHED = "DISPATCHED"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_MATCHES = "NO_MATCHES"


# Statuses that count against an appraiser's concurrency cap
ACTIVE_JOB_STATUSES: tuple[JobStatus, ...] = (
    JobStatus.ACCEPTED,
    JobStatus.IN_PROGRESS,
    JobStatus.SUBMITTED,
)

# Statuses from which an assignment may still change hands
REASSIGNABLE_STATUSES: tuple[JobStatus, ...] = (
    JobStatus.PENDING_DISPATCH,
    JobStatus.DISPATCHED,
    JobStatus.ACCEPTED,
    JobStatus.IN_PROGRESS,
)


class JobType(str, Enum):
    AI_REPORT = "AI_REPORT"
    ONSITE_PHOTOS = "ONSITE_PHOTOS"
    CERTIFIED_APPRAISAL = "CERTIFIED_APPRAISAL"


class LicenseType(str, Enum):
    """Appraiser license tiers, lowest first."""
    TRAINEE = "TRAINEE"
    LICENSED = "LICENSED"
    CERTIFIED_RESIDENTIAL = "CERTIFIED_RESIDENTIAL"
    CERTIFIED_GENERAL = "CERTIFIED_GENERAL"

    @property
    def tier(self) -> int:
        return _LICENSE_TIERS.index(self)

    def can_perform(self, job_type: JobType) -> bool:
        if job_type == JobType.CERTIFIED_APPRAISAL:
            return self in (LicenseType.CERTIFIED_RESIDENTIAL, LicenseType.CERTIFIED_GENERAL)
        return True


_LICENSE_TIERS = list(LicenseType)


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"
    EXPIRED = "EXPIRED"


class Urgency(str, Enum):
    NORMAL = "NORMAL"
    URGENT = "URGENT"
    CRITICAL = "CRITICAL"


class EscalationLevel(str, Enum):
    """Escalation severity, least severe first."""
    LEVEL_1 = "LEVEL_1"
    LEVEL_2 = "LEVEL_2"
    LEVEL_3 = "LEVEL_3"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _ESCALATION_ORDER.index(self)

    def at_least(self, other: "EscalationLevel") -> bool:
        return self.rank >= other.rank


_ESCALATION_ORDER = list(EscalationLevel)


class BreachType(str, Enum):
    DISPATCH_DELAYED = "DISPATCH_DELAYED"
    ACCEPTANCE_DELAYED = "ACCEPTANCE_DELAYED"
    COMPLETION_DELAYED = "COMPLETION_DELAYED"
    EVIDENCE_DELAYED = "EVIDENCE_DELAYED"


class SLAState(str, Enum):
    ON_TRACK = "ON_TRACK"
    AT_RISK = "AT_RISK"
    BREACHED = "BREACHED"


class NotificationType(str, Enum):
    JOB_AVAILABLE = "JOB_AVAILABLE"
    JOB_ASSIGNED = "JOB_ASSIGNED"
    JOB_UNASSIGNED = "JOB_UNASSIGNED"
    SLA_WARNING = "SLA_WARNING"
    SLA_BREACH = "SLA_BREACH"
    CRITICAL_SLA_BREACH = "CRITICAL_SLA_BREACH"


class NotificationChannel(str, Enum):
    IN_APP = "in_app"
    PUSH = "push"
    EMAIL = "email"


class Weekday(IntEnum):
    """Matches ``date.weekday()`` numbering."""
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6

    @classmethod
    def of(cls, day: date) -> "Weekday":
        return cls(day.weekday())

    @classmethod
    def parse(cls, key: str) -> Optional["Weekday"]:
        """Accept "monday", "Mon", "MON" style keys; None if unrecognised."""
        prefix = key.strip().lower()[:3]
        for member in cls:
            if member.name.lower().startswith(prefix) and len(prefix) == 3:
                return member
        return None


# ============================================================================
# GEOMETRY
# ============================================================================

@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


# ============================================================================
# SCHEDULE
# ============================================================================

def _parse_clock(value: Any) -> Optional[time]:
    """Parse "HH:MM" (or "H:MM", "HH:MM:SS") into a time; None if absent or malformed."""
    if value in (None, ""):
        return None
    if isinstance(value, time):
        return value
    parts = str(value).strip().split(":")
    try:
        hours = int(parts[0]) if parts[0] else 0
        minutes = int(parts[1]) if len(parts) > 1 and parts[1] else 0
        if hours >= 24:
            return time(23, 59, 59)
        return time(hours, minutes)
    except ValueError:
        return None


@dataclass(frozen=True)
class DayWindow:
    """Availability for one day. A window with no bounds is open all day."""
    is_available: bool = True
    start: Optional[time] = None
    end: Optional[time] = None

    def is_open_at(self, at: time) -> bool:
        if not self.is_available:
            return False
        if self.start is None or self.end is None:
            return True
        return self.start <= at <= self.end

    def minutes_remaining(self, at: time) -> Optional[int]:
        """Minutes until the window closes, or None when it has no end."""
        if not self.is_available or self.end is None:
            return None
        end_minutes = self.end.hour * 60 + self.end.minute
        now_minutes = at.hour * 60 + at.minute
        return max(0, end_minutes - now_minutes)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DayWindow":
        """Unparseable bounds are treated as unset."""
        if "isAvailable" in raw:
            available = bool(raw["isAvailable"])
        elif "is_available" in raw:
            available = bool(raw["is_available"])
        elif "enabled" in raw:
            available = bool(raw["enabled"])
        else:
            available = True
        start = _parse_clock(raw.get("startTime", raw.get("start")))
        end = _parse_clock(raw.get("endTime", raw.get("end")))
        return cls(is_available=available, start=start, end=end)

    def to_dict(self) -> dict:
        return {
            "isAvailable": self.is_available,
            "startTime": self.start.strftime("%H:%M") if self.start else None,
            "endTime": self.end.strftime("%H:%M") if self.end else None,
        }


@dataclass(frozen=True)
class WeeklySchedule:
    """Per-weekday windows plus date-specific overrides."""
    by_day: Mapping[Weekday, DayWindow] = field(default_factory=dict)
    overrides: Mapping[date, DayWindow] = field(default_factory=dict)

    def window_for(self, day: date) -> Optional[DayWindow]:
        """Override for the date first, then the weekday window. None when neither is set."""
        override = self.overrides.get(day)
        if override is not None:
            return override
        return self.by_day.get(Weekday.of(day))

    @classmethod
    def from_json(cls, raw: Optional[Mapping[str, Any]]) -> Optional["WeeklySchedule"]:
        """Parse the persisted preferred-schedule document.

        Accepts weekday keys in any of the forms ``Mon``/``monday``, and a
        ``dateOverrides`` map keyed by ISO date. Unknown keys are ignored.
        """
        if not raw or not isinstance(raw, Mapping):
            return None

        by_day: dict[Weekday, DayWindow] = {}
        overrides: dict[date, DayWindow] = {}

        for key, value in raw.items():
            if key in ("dateOverrides", "date_overrides"):
                if not isinstance(value, Mapping):
                    continue
                for day_str, window in value.items():
                    if window is None:
                        window = {}
                    if not isinstance(window, Mapping):
                        continue
                    try:
                        overrides[date.fromisoformat(day_str)] = DayWindow.from_dict(window)
                    except (TypeError, ValueError):
                        continue
                continue
            weekday = Weekday.parse(key)
            if weekday is not None and isinstance(value, Mapping):
                by_day[weekday] = DayWindow.from_dict(value)

        return cls(by_day=by_day, overrides=overrides)

    def to_json(self) -> dict:
        doc: dict[str, Any] = {
            day.name.lower(): window.to_dict() for day, window in sorted(self.by_day.items())
        }
        if self.overrides:
            doc["dateOverrides"] = {
                day.isoformat(): window.to_dict() for day, window in sorted(self.overrides.items())
            }
        return doc


# ============================================================================
# STATUS HISTORY (closed set of events)
# ============================================================================

def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class HistoryEvent:
    """One append-only ``statusHistory`` entry."""
    timestamp: datetime

    STATUS: ClassVar[str] = ""

    @property
    def status(self) -> str:
        return self.STATUS

    @property
    def level(self) -> Optional[EscalationLevel]:
        return None

    def metadata(self) -> dict:
        return {}

    def to_record(self) -> dict:
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata(),
        }


@dataclass(frozen=True)
class StatusChanged(HistoryEvent):
    """A lifecycle transition recorded by the surrounding application."""
    name: str = ""
    details: Mapping[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return self.name

    def metadata(self) -> dict:
        return dict(self.details)


@dataclass(frozen=True)
class Dispatched(HistoryEvent):
    STATUS: ClassVar[str] = "DISPATCHED"
    matched_count: int = 0

    def metadata(self) -> dict:
        return {"matched_count": self.matched_count}


@dataclass(frozen=True)
class NoMatches(HistoryEvent):
    STATUS: ClassVar[str] = "NO_MATCHES"
    message: str = ""

    def metadata(self) -> dict:
        return {"message": self.message}


@dataclass(frozen=True)
class AutoAssigned(HistoryEvent):
    STATUS: ClassVar[str] = "AUTO_ASSIGNED"
    appraiser_id: str = ""
    score: float = 0.0

    def metadata(self) -> dict:
        return {"appraiser_id": self.appraiser_id, "score": self.score}


@dataclass(frozen=True)
class Reassigned(HistoryEvent):
    STATUS: ClassVar[str] = "REASSIGNED"
    previous_appraiser_id: Optional[str] = None
    new_appraiser_id: str = ""
    reason: str = ""

    def metadata(self) -> dict:
        return {
            "previous_appraiser_id": self.previous_appraiser_id,
            "new_appraiser_id": self.new_appraiser_id,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Unassigned(HistoryEvent):
    STATUS: ClassVar[str] = "UNASSIGNED"
    previous_appraiser_id: Optional[str] = None
    reason: str = ""

    def metadata(self) -> dict:
        return {"previous_appraiser_id": self.previous_appraiser_id, "reason": self.reason}


@dataclass(frozen=True)
class SLABreachRecorded(HistoryEvent):
    STATUS: ClassVar[str] = "SLA_BREACH"
    breach_type: BreachType = BreachType.DISPATCH_DELAYED
    escalation: EscalationLevel = EscalationLevel.LEVEL_1
    hours_overdue: float = 0.0

    @property
    def level(self) -> Optional[EscalationLevel]:
        return self.escalation

    def metadata(self) -> dict:
        return {
            "breach_type": self.breach_type.value,
            "level": self.escalation.value,
            "hours_overdue": self.hours_overdue,
        }


def history_event_from_record(record: Mapping[str, Any]) -> HistoryEvent:
    """Rebuild a typed event from its persisted ``{status, timestamp, metadata}`` form.

    Records written before metadata was nested keep their keys at the top
    level; both shapes are accepted. Statuses without a dedicated event type
    come back as ``StatusChanged``.
    """
    status = str(record.get("status", ""))
    ts = _parse_timestamp(record.get("timestamp"))
    meta = record.get("metadata")
    if not isinstance(meta, Mapping):
        meta = {k: v for k, v in record.items() if k not in ("status", "timestamp", "metadata")}

    if status == Dispatched.STATUS:
        return Dispatched(timestamp=ts, matched_count=int(meta.get("matched_count", 0)))
    if status == NoMatches.STATUS:
        return NoMatches(timestamp=ts, message=str(meta.get("message", "")))
    if status == AutoAssigned.STATUS:
        return AutoAssigned(
            timestamp=ts,
            appraiser_id=str(meta.get("appraiser_id", "")),
            score=float(meta.get("score", 0.0)),
        )
    if status == Reassigned.STATUS:
        return Reassigned(
            timestamp=ts,
            previous_appraiser_id=meta.get("previous_appraiser_id"),
            new_appraiser_id=str(meta.get("new_appraiser_id", "")),
            reason=str(meta.get("reason", "")),
        )
    if status == Unassigned.STATUS:
        return Unassigned(
            timestamp=ts,
            previous_appraiser_id=meta.get("previous_appraiser_id"),
            reason=str(meta.get("reason", "")),
        )
    if status == SLABreachRecorded.STATUS and "level" in meta:
        return SLABreachRecorded(
            timestamp=ts,
            breach_type=BreachType(meta.get("breach_type", BreachType.DISPATCH_DELAYED.value)),
            escalation=EscalationLevel(meta["level"]),
            hours_overdue=float(meta.get("hours_overdue", 0.0)),
        )
    return StatusChanged(timestamp=ts, name=status, details=dict(meta))


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True)
class Job:
    id: str
    job_type: JobType
    location: Coordinates
    status: JobStatus
    created_at: datetime
    sla_due_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    assigned_appraiser_id: Optional[str] = None
    requested_by_id: Optional[str] = None
    address: Optional[str] = None
    payout_amount: Optional[float] = None
    status_history: tuple[HistoryEvent, ...] = ()

    def last_escalation_level(self) -> Optional[EscalationLevel]:
        """Level of the most recent history entry that carries one."""
        for event in reversed(self.status_history):
            if event.level is not None:
                return event.level
        return None


@dataclass(frozen=True)
class AppraiserProfile:
    user_id: str
    license_type: LicenseType
    verification_status: VerificationStatus
    home_base: Optional[Coordinates] = None
    coverage_radius_miles: Optional[float] = None
    license_expiry: Optional[datetime] = None
    completed_jobs: int = 0
    cancelled_jobs: int = 0
    rating: Optional[float] = None
    schedule: Optional[WeeklySchedule] = None
    email: Optional[str] = None
    display_name: Optional[str] = None

    def license_valid_at(self, now: datetime) -> bool:
        return self.license_expiry is None or self.license_expiry > now


@dataclass(frozen=True)
class UserContact:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: str = "CLIENT"


# ============================================================================
# TRANSIENT VALUES
# ============================================================================

@dataclass(frozen=True)
class DispatchOptions:
    max_radius_miles: Optional[float] = None
    urgency: Urgency = Urgency.NORMAL
    preferred_appraisers: tuple[str, ...] = ()
    exclude_appraisers: tuple[str, ...] = ()
    traffic_factor: float = 1.0


@dataclass(frozen=True)
class MatchedAppraiser:
    user_id: str
    distance_miles: float
    score: float
    estimated_arrival_minutes: int
    profile: Optional[AppraiserProfile] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    job_id: str
    message: str
    matched_appraisers: tuple[MatchedAppraiser, ...] = ()
    assigned_appraiser_id: Optional[str] = None


@dataclass(frozen=True)
class ReassignResult:
    success: bool
    job_id: str
    message: str
    previous_appraiser_id: Optional[str] = None
    new_appraiser_id: Optional[str] = None


@dataclass(frozen=True)
class SLABreach:
    job_id: str
    breach_type: BreachType
    level: EscalationLevel
    hours_overdue: float
    budget_hours: float
    elapsed_hours: float


@dataclass(frozen=True)
class SweepResult:
    breached: int
    escalated: int


@dataclass(frozen=True)
class SLAStatus:
    status: SLAState
    due_in_hours: Optional[float] = None
    breach_type: Optional[BreachType] = None


@dataclass(frozen=True)
class SLAMetrics:
    total_jobs: int
    on_time_completion_pct: float
    avg_completion_hours: float
    breach_rate_pct: float


@dataclass(frozen=True)
class DispatchStats:
    pending_jobs: int
    dispatched_jobs: int
    active_jobs: int
    sla_breaches: int
    avg_dispatch_time_minutes: float
    avg_acceptance_time_minutes: float


@dataclass(frozen=True)
class CoverageSummary:
    total_appraisers: int
    avg_distance_miles: float
    avg_rating: float


@dataclass(frozen=True)
class AuditEntry:
    resource: str
    resource_id: str
    action: str
    created_at: datetime
    actor_id: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Notification:
    user_id: str
    type: NotificationType
    title: str
    body: str
    channel: NotificationChannel
    data: Mapping[str, Any] = field(default_factory=dict)
    email: Optional[str] = None


# Columns a transition may set besides ``status``
TRANSITION_FIELDS = frozenset({
    "dispatched_at",
    "accepted_at",
    "assigned_appraiser_id",
    "sla_due_at",
})


@dataclass(frozen=True)
class JobTransition:
    """A compare-and-swap status change plus the history event that explains it.

    ``fields`` may only name columns in ``TRANSITION_FIELDS``; a value of
    None clears the column.
    """
    expected_status: JobStatus
    new_status: JobStatus
    event: HistoryEvent
    fields: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        unknown = set(self.fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")
