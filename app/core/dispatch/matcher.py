# app/core/dispatch/matcher.py
"""
Appraiser matcher: finds and ranks eligible appraisers for a job.

Candidates pass through a fixed chain of gates (bounding box, distance,
own service area, license tier, license expiry, concurrency cap,
schedule window) and the survivors are scored as a weighted sum of five
0–100 sub-scores. Weights and limits come from an immutable
``MatcherConfig`` handed in at construction.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional
from zoneinfo import ZoneInfo

from app.core.dispatch import geofencing
from app.core.dispatch.availability import availability_score, is_available_at
from app.core.dispatch.domain import (
    AppraiserProfile,
    Coordinates,
    CoverageSummary,
    DispatchOptions,
    Job,
    MatchedAppraiser,
    Urgency,
    VerificationStatus,
)
from app.core.dispatch.ports import DispatchStore
from app.infra.logging_config import get_logger, mask_coordinates
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

DEFAULT_RATING = 4.0
DEFAULT_COMPLETION_RATE = 90.0
RECENT_WORKLOAD_WINDOW = timedelta(days=7)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True)
class ScoringWeights:
    distance: float = 0.30
    rating: float = 0.25
    completion_rate: float = 0.20
    availability: float = 0.15
    experience: float = 0.10

    def __post_init__(self) -> None:
        total = self.distance + self.rating + self.completion_rate + self.availability + self.experience
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1.0, got {total:.4f}")


@dataclass(frozen=True)
class MatcherConfig:
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    default_radius_miles: float = 25.0
    max_radius_miles: float = 50.0
    max_results: int = 10
    max_concurrent_jobs: int = 5
    prep_buffer_minutes: int = 15
    urgency_bonus: float = 1.1
    urgency_bonus_min_rating: float = 4.5
    schedule_timezone: str = "America/Chicago"

    @classmethod
    def from_settings(cls, s) -> "MatcherConfig":
        return cls(
            weights=ScoringWeights(
                distance=s.score_weight_distance,
                rating=s.score_weight_rating,
                completion_rate=s.score_weight_completion,
                availability=s.score_weight_availability,
                experience=s.score_weight_experience,
            ),
            default_radius_miles=s.dispatch_default_radius_miles,
            max_radius_miles=s.dispatch_max_radius_miles,
            max_results=s.dispatch_max_results,
            max_concurrent_jobs=s.dispatch_max_concurrent_jobs,
            prep_buffer_minutes=s.dispatch_prep_buffer_minutes,
            schedule_timezone=s.dispatch_schedule_timezone,
        )

    def effective_radius(self, requested: Optional[float]) -> float:
        radius = requested if requested and requested > 0 else self.default_radius_miles
        return min(radius, self.max_radius_miles)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# MATCHER
# ============================================================================

class AppraiserMatcher:
    def __init__(
        self,
        store: DispatchStore,
        config: Optional[MatcherConfig] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.config = config or MatcherConfig()
        self._clock = clock
        self._tz = ZoneInfo(self.config.schedule_timezone)

    async def find_matches(self, job: Job, options: Optional[DispatchOptions] = None) -> list[MatchedAppraiser]:
        """Ranked eligible appraisers for ``job``; empty when nobody qualifies."""
        options = options or DispatchOptions()
        radius = self.config.effective_radius(options.max_radius_miles)
        now = self._clock()

        with DispatchMetrics.track_matching_time():
            profiles = await self.store.list_appraisers(
                VerificationStatus.VERIFIED,
                exclude_ids=options.exclude_appraisers,
            )

            box = geofencing.bounding_box(job.location, radius)
            nearby = [
                p for p in profiles
                if p.user_id not in options.exclude_appraisers
                and p.home_base is not None
                and geofencing.is_within_bounding_box(p.home_base, box)
            ]

            if not nearby:
                logger.info(
                    f"No appraisers within {radius:.0f} mi of {mask_coordinates(job.location.lat, job.location.lng)}",
                    extra={"job_id": job.id},
                )
                DispatchMetrics.candidates_matched(0)
                return []

            ids = [p.user_id for p in nearby]
            active_counts, recent_counts = await asyncio.gather(
                self.store.active_job_counts(ids),
                self.store.recent_assignment_counts(ids, now - RECENT_WORKLOAD_WINDOW),
            )

            # All per-candidate reads happened in the two bulk queries above; scoring is CPU only.
            # Input order is kept, which keeps score ties stable.
            evaluated = [
                self._evaluate(
                    job, profile, options, radius, now,
                    active_counts.get(profile.user_id, 0),
                    recent_counts.get(profile.user_id, 0),
                )
                for profile in nearby
            ]

        candidates = [c for c in evaluated if c is not None]
        preferred = set(options.preferred_appraisers)
        candidates.sort(key=lambda c: (c.user_id not in preferred, -c.score))
        result = candidates[: self.config.max_results]

        DispatchMetrics.candidates_matched(len(result))
        logger.info(
            f"Matched {len(result)}/{len(nearby)} nearby appraisers (radius={radius:.0f} mi)",
            extra={"job_id": job.id},
        )
        return result

    async def find_best_match(self, job: Job, options: Optional[DispatchOptions] = None) -> Optional[MatchedAppraiser]:
        matches = await self.find_matches(job, options)
        return matches[0] if matches else None

    async def calculate_coverage(self, center: Coordinates, radius_miles: float) -> CoverageSummary:
        """How many verified appraisers are based within ``radius_miles`` of a point."""
        profiles = await self.store.list_appraisers(VerificationStatus.VERIFIED)

        in_range = 0
        total_distance = 0.0
        total_rating = 0.0
        for profile in profiles:
            if profile.home_base is None:
                continue
            d = geofencing.distance(center, profile.home_base)
            if d <= radius_miles:
                in_range += 1
                total_distance += d
                total_rating += profile.rating if profile.rating is not None else DEFAULT_RATING

        return CoverageSummary(
            total_appraisers=in_range,
            avg_distance_miles=round(total_distance / in_range, 2) if in_range else 0.0,
            avg_rating=round(total_rating / in_range, 2) if in_range else 0.0,
        )

    # ------------------------------------------------------------------
    # Gates and scoring
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        job: Job,
        profile: AppraiserProfile,
        options: DispatchOptions,
        radius: float,
        now: datetime,
        active_jobs: int,
        recent_assignments: int,
    ) -> Optional[MatchedAppraiser]:
        if profile.home_base is None:
            return None

        distance = geofencing.distance(job.location, profile.home_base)
        if distance > radius:
            return None
        if not geofencing.is_within_service_area(job.location, profile):
            return None
        if not profile.license_type.can_perform(job.job_type):
            return None
        if not profile.license_valid_at(now):
            return None
        if active_jobs >= self.config.max_concurrent_jobs:
            return None

        local_now = now.astimezone(self._tz)
        if not is_available_at(profile.schedule, local_now):
            return None

        score = self._score(profile, distance, radius, options.urgency, local_now, recent_assignments)
        arrival = (
            geofencing.estimate_travel_time(profile.home_base, job.location, options.traffic_factor)
            + self.config.prep_buffer_minutes
        )
        return MatchedAppraiser(
            user_id=profile.user_id,
            distance_miles=round(distance, 2),
            score=score,
            estimated_arrival_minutes=arrival,
            profile=profile,
        )

    def _score(
        self,
        profile: AppraiserProfile,
        distance: float,
        radius: float,
        urgency: Urgency,
        local_now: datetime,
        recent_assignments: int,
    ) -> float:
        w = self.config.weights

        distance_score = max(0.0, 100.0 - (distance / radius) * 100.0)

        rating = profile.rating if profile.rating is not None else DEFAULT_RATING
        rating_score = rating / 5.0 * 100.0

        total_jobs = profile.completed_jobs + profile.cancelled_jobs
        completion_score = (
            profile.completed_jobs / total_jobs * 100.0 if total_jobs > 0 else DEFAULT_COMPLETION_RATE
        )

        avail_score = availability_score(profile.schedule, local_now, recent_assignments)
        experience_score = min(100.0, total_jobs * 2.0)

        score = (
            distance_score * w.distance
            + rating_score * w.rating
            + completion_score * w.completion_rate
            + avail_score * w.availability
            + experience_score * w.experience
        )

        if urgency == Urgency.CRITICAL and rating >= self.config.urgency_bonus_min_rating:
            score *= self.config.urgency_bonus

        return round(score, 2)
