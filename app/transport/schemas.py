# app/transport/schemas.py
from __future__ import annotations

from pydantic import BaseModel, Field

from app.core.dispatch.domain import (
    CoverageSummary,
    DispatchOptions,
    DispatchResult,
    DispatchStats,
    MatchedAppraiser,
    ReassignResult,
    SLAMetrics,
    SLAStatus,
    SweepResult,
    Urgency,
)


class DispatchOptionsIn(BaseModel):
    max_radius_miles: float | None = Field(default=None, gt=0, le=500)
    urgency: Urgency = Urgency.NORMAL
    preferred_appraisers: list[str] = Field(default_factory=list, max_length=50)
    exclude_appraisers: list[str] = Field(default_factory=list, max_length=200)
    traffic_factor: float = Field(default=1.0, gt=0, le=10)

    def to_options(self) -> DispatchOptions:
        return DispatchOptions(
            max_radius_miles=self.max_radius_miles,
            urgency=self.urgency,
            preferred_appraisers=tuple(self.preferred_appraisers),
            exclude_appraisers=tuple(self.exclude_appraisers),
            traffic_factor=self.traffic_factor,
        )


class ReassignIn(BaseModel):
    new_appraiser_id: str | None = Field(default=None, min_length=1, max_length=64)
    reason: str = Field(min_length=1, max_length=500)


class MatchedAppraiserOut(BaseModel):
    user_id: str
    distance_miles: float
    score: float
    estimated_arrival_minutes: int

    @classmethod
    def from_domain(cls, match: MatchedAppraiser) -> "MatchedAppraiserOut":
        return cls(
            user_id=match.user_id,
            distance_miles=match.distance_miles,
            score=match.score,
            estimated_arrival_minutes=match.estimated_arrival_minutes,
        )


class DispatchResultOut(BaseModel):
    success: bool
    job_id: str
    message: str
    matched_appraisers: list[MatchedAppraiserOut]
    assigned_appraiser_id: str | None = None

    @classmethod
    def from_domain(cls, result: DispatchResult) -> "DispatchResultOut":
        return cls(
            success=result.success,
            job_id=result.job_id,
            message=result.message,
            matched_appraisers=[MatchedAppraiserOut.from_domain(m) for m in result.matched_appraisers],
            assigned_appraiser_id=result.assigned_appraiser_id,
        )


class ReassignResultOut(BaseModel):
    success: bool
    job_id: str
    message: str
    previous_appraiser_id: str | None = None
    new_appraiser_id: str | None = None

    @classmethod
    def from_domain(cls, result: ReassignResult) -> "ReassignResultOut":
        return cls(
            success=result.success,
            job_id=result.job_id,
            message=result.message,
            previous_appraiser_id=result.previous_appraiser_id,
            new_appraiser_id=result.new_appraiser_id,
        )


class SLAStatusOut(BaseModel):
    status: str
    due_in_hours: float | None = None
    breach_type: str | None = None

    @classmethod
    def from_domain(cls, status: SLAStatus) -> "SLAStatusOut":
        return cls(
            status=status.status.value,
            due_in_hours=status.due_in_hours,
            breach_type=status.breach_type.value if status.breach_type else None,
        )


class SweepResultOut(BaseModel):
    breached: int
    escalated: int

    @classmethod
    def from_domain(cls, result: SweepResult) -> "SweepResultOut":
        return cls(breached=result.breached, escalated=result.escalated)


class DispatchStatsOut(BaseModel):
    pending_jobs: int
    dispatched_jobs: int
    active_jobs: int
    sla_breaches: int
    avg_dispatch_time_minutes: float
    avg_acceptance_time_minutes: float

    @classmethod
    def from_domain(cls, stats: DispatchStats) -> "DispatchStatsOut":
        return cls(
            pending_jobs=stats.pending_jobs,
            dispatched_jobs=stats.dispatched_jobs,
            active_jobs=stats.active_jobs,
            sla_breaches=stats.sla_breaches,
            avg_dispatch_time_minutes=stats.avg_dispatch_time_minutes,
            avg_acceptance_time_minutes=stats.avg_acceptance_time_minutes,
        )


class CoverageOut(BaseModel):
    total_appraisers: int
    avg_distance_miles: float
    avg_rating: float

    @classmethod
    def from_domain(cls, summary: CoverageSummary) -> "CoverageOut":
        return cls(
            total_appraisers=summary.total_appraisers,
            avg_distance_miles=summary.avg_distance_miles,
            avg_rating=summary.avg_rating,
        )


class SLAMetricsOut(BaseModel):
    total_jobs: int
    on_time_completion_pct: float
    avg_completion_hours: float
    breach_rate_pct: float

    @classmethod
    def from_domain(cls, metrics: SLAMetrics) -> "SLAMetricsOut":
        return cls(
            total_jobs=metrics.total_jobs,
            on_time_completion_pct=metrics.on_time_completion_pct,
            avg_completion_hours=metrics.avg_completion_hours,
            breach_rate_pct=metrics.breach_rate_pct,
        )
