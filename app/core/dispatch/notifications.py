# app/core/dispatch/notifications.py
"""
Notification builders and fire-and-forget delivery.

Builders turn dispatch outcomes into ``Notification`` records. The
``NotificationDispatcher`` persists them, then pushes e-mail/push
deliveries through the ``NotificationFacility``. A failed send is logged,
counted and handed to the retry sink; it never propagates to the caller,
whose state transition has already committed.
"""
from __future__ import annotations

import asyncio
from typing import Any, Mapping, Optional, Sequence

from app.core.dispatch.domain import (
    EscalationLevel,
    Job,
    MatchedAppraiser,
    Notification,
    NotificationChannel,
    NotificationType,
    SLABreach,
    UserContact,
)
from app.core.dispatch.ports import DispatchStore, NotificationFacility, NotificationRetrySink
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


# ============================================================================
# BUILDERS
# ============================================================================

def _job_data(job: Job, **extra: Any) -> dict:
    data = {
        "job_id": job.id,
        "job_type": job.job_type.value,
        "url": f"/appraiser/jobs/{job.id}",
    }
    if job.payout_amount is not None:
        data["payout"] = job.payout_amount
    if job.address:
        data["address"] = job.address
    data.update(extra)
    return data


def job_available(job: Job, match: MatchedAppraiser) -> list[Notification]:
    """In-app record, e-mail and push for one matched candidate."""
    profile = match.profile
    title = "New Job Available"
    body = f"New {job.job_type.value} job available {match.distance_miles:.1f} miles away"
    data = _job_data(
        job,
        distance=match.distance_miles,
        estimated_arrival_minutes=match.estimated_arrival_minutes,
        deadline=job.sla_due_at.isoformat() if job.sla_due_at else None,
        appraiser_name=profile.display_name if profile else None,
    )

    notifications = [
        Notification(match.user_id, NotificationType.JOB_AVAILABLE, title, body, NotificationChannel.IN_APP, data),
        Notification(match.user_id, NotificationType.JOB_AVAILABLE, title, body, NotificationChannel.PUSH, data),
    ]
    email = profile.email if profile else None
    if email:
        notifications.append(
            Notification(
                match.user_id, NotificationType.JOB_AVAILABLE, title, body,
                NotificationChannel.EMAIL, data, email=email,
            )
        )
    return notifications


def job_assigned(job: Job, appraiser_id: str) -> Notification:
    return Notification(
        appraiser_id,
        NotificationType.JOB_ASSIGNED,
        "Job Assigned",
        f"You have been assigned a {job.job_type.value} job",
        NotificationChannel.PUSH,
        _job_data(job),
    )


def job_unassigned(job: Job, appraiser_id: str, reason: str) -> Notification:
    return Notification(
        appraiser_id,
        NotificationType.JOB_UNASSIGNED,
        "Job Unassigned",
        f"You are no longer assigned to job {job.id}: {reason}",
        NotificationChannel.PUSH,
        _job_data(job, reason=reason),
    )


def escalation_notifications(
    job: Job,
    breach: SLABreach,
    *,
    client: Optional[UserContact] = None,
    admins: Sequence[UserContact] = (),
) -> list[Notification]:
    """Recipients widen with severity: appraiser and client from LEVEL_2, admins at CRITICAL."""
    data = _job_data(
        job,
        breach_type=breach.breach_type.value,
        level=breach.level.value,
        hours_overdue=round(breach.hours_overdue, 2),
    )
    notifications: list[Notification] = []

    if job.assigned_appraiser_id and breach.level != EscalationLevel.LEVEL_1:
        notifications.append(Notification(
            job.assigned_appraiser_id,
            NotificationType.SLA_WARNING,
            "Job SLA Warning",
            f"Your assigned job is {breach.hours_overdue:.1f} hours overdue. Please complete soon.",
            NotificationChannel.PUSH,
            data,
        ))

    if client is not None and breach.level.at_least(EscalationLevel.LEVEL_2):
        notifications.append(Notification(
            client.user_id,
            NotificationType.SLA_BREACH,
            "Appraisal Delay Notice",
            "Your appraisal request is experiencing delays. We're working to resolve this.",
            NotificationChannel.EMAIL,
            data,
            email=client.email,
        ))

    if breach.level == EscalationLevel.CRITICAL:
        for admin in admins:
            notifications.append(Notification(
                admin.user_id,
                NotificationType.CRITICAL_SLA_BREACH,
                "Critical SLA Breach",
                f"Job {job.id} has critical SLA breach: {breach.breach_type.value}. Immediate attention required.",
                NotificationChannel.PUSH,
                data,
            ))

    return notifications


# ============================================================================
# DELIVERY
# ============================================================================

def _payload(notification: Notification) -> Mapping[str, Any]:
    return {
        "type": notification.type.value,
        "title": notification.title,
        "body": notification.body,
        "data": dict(notification.data),
    }


async def send_notification(facility: NotificationFacility, notification: Notification) -> None:
    """Deliver one e-mail or push notification. Raises on failure.

    In-app notifications are stored records only and need no send.
    """
    if notification.channel == NotificationChannel.PUSH:
        await facility.send_push(notification.user_id, _payload(notification))
    elif notification.channel == NotificationChannel.EMAIL:
        if not notification.email:
            raise ValueError(f"No e-mail address for user {notification.user_id}")
        await facility.send_email(notification.type.value.lower(), notification.email, _payload(notification))


class NotificationDispatcher:
    def __init__(
        self,
        store: DispatchStore,
        facility: NotificationFacility,
        retry_sink: Optional[NotificationRetrySink] = None,
    ):
        self.store = store
        self.facility = facility
        self.retry_sink = retry_sink

    async def deliver(self, notifications: Sequence[Notification]) -> int:
        """Persist and send; returns how many sends succeeded."""
        if not notifications:
            return 0

        try:
            await self.store.create_notifications(notifications)
        except Exception as exc:
            logger.error(f"Failed to persist {len(notifications)} notifications: {exc}", exc_info=True)
            DispatchMetrics.notification_failed("store")

        outbound = [n for n in notifications if n.channel != NotificationChannel.IN_APP]
        results = await asyncio.gather(*(self._send_one(n) for n in outbound))
        return sum(1 for ok in results if ok)

    async def _send_one(self, notification: Notification) -> bool:
        channel = notification.channel.value

        if notification.channel == NotificationChannel.EMAIL and not notification.email:
            logger.debug(f"Skipping {notification.type.value} e-mail to {notification.user_id}: no address")
            DispatchMetrics.notification_dropped(channel)
            return False

        try:
            await send_notification(self.facility, notification)
        except Exception as exc:
            logger.warning(
                f"{notification.type.value} {channel} to {notification.user_id} failed: {exc}",
                extra={"appraiser_id": notification.user_id},
            )
            DispatchMetrics.notification_failed(channel)
            # Channels mark permanent failures (4xx, refused recipient) retryable=False
            if not getattr(exc, "retryable", True):
                DispatchMetrics.notification_dropped(channel)
            elif self.retry_sink is not None:
                self.retry_sink.enqueue(notification, str(exc))
            return False

        DispatchMetrics.notification_sent(channel)
        return True
