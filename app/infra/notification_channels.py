# app/infra/notification_channels.py
"""
Outbound delivery channels behind the dispatch ``NotificationFacility``.

Channels:
- E-mail - SMTP, sent from a worker thread
- Push   - JSON POST to a push gateway over the shared aiohttp session
- Disabled - no-op when notifications are switched off or unconfigured

Every ``send_*`` call raises ``DeliveryError`` on failure. Deciding what
a failure means (log, retry, ignore) is the caller's job.

Usage:
    facility = get_notification_facility()
    await facility.send_push(user_id, payload)
"""
from __future__ import annotations

import abc
import asyncio
import smtplib
from email.message import EmailMessage
from typing import Any, Mapping

import aiohttp

from app.config import settings
from app.infra.http_client import get_sender_session
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Subject lines per e-mail template
EMAIL_SUBJECTS = {
    "job_available": "New job available near you",
    "job_assigned": "You have been assigned a job",
    "job_unassigned": "A job has been unassigned from you",
    "sla_warning": "Job SLA warning",
    "sla_breach": "Appraisal delay notice",
    "critical_sla_breach": "Critical SLA breach",
}


class DeliveryError(Exception):
    """A channel failed to hand off a notification."""

    def __init__(self, channel: str, detail: str, *, retryable: bool = True):
        self.channel = channel
        self.retryable = retryable
        super().__init__(f"{channel}: {detail}")


class DeliveryChannel(abc.ABC):
    """Abstract base class for delivery channels"""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Channel name for logging/metrics"""

    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Check if channel is properly configured"""


class EmailChannel(DeliveryChannel):
    """E-mail via SMTP. smtplib is blocking, so sends run in the default executor."""

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        user: str | None = None,
        password: str | None = None,
        sender: str | None = None,
    ):
        self._host = host or settings.smtp_host
        self._port = port or settings.smtp_port
        self._user = user if user is not None else settings.smtp_user
        self._password = password if password is not None else settings.smtp_password
        self._sender = sender or settings.smtp_from

    @property
    def name(self) -> str:
        return "email"

    def is_configured(self) -> bool:
        return bool(self._host)

    def build_message(self, template: str, recipient: str, payload: Mapping[str, Any]) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self._sender
        msg["To"] = recipient
        msg["Subject"] = payload.get("title") or EMAIL_SUBJECTS.get(template, "Dispatch notification")

        lines = [str(payload.get("body", ""))]
        data = payload.get("data") or {}
        if data.get("address"):
            lines.append(f"\nProperty: {data['address']}")
        if data.get("payout") is not None:
            lines.append(f"Payout: ${data['payout']}")
        if data.get("job_id"):
            lines.append(f"Job: {data['job_id']}")
        msg.set_content("\n".join(lines))
        return msg

    async def send_email(self, template: str, recipient: str, payload: Mapping[str, Any]) -> None:
        if not self.is_configured():
            raise DeliveryError(self.name, "SMTP host not configured", retryable=False)

        msg = self.build_message(template, recipient, payload)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_smtp, msg)
        except (smtplib.SMTPException, OSError) as exc:
            permanent = isinstance(exc, smtplib.SMTPRecipientsRefused)
            raise DeliveryError(self.name, type(exc).__name__, retryable=not permanent) from exc

        logger.info(f"E-mail '{template}' sent")

    def _send_smtp(self, msg: EmailMessage) -> None:
        """Send e-mail via SMTP (blocking)"""
        with smtplib.SMTP(self._host, self._port, timeout=30) as server:
            server.starttls()
            if self._user and self._password:
                server.login(self._user, self._password)
            server.send_message(msg)


class PushChannel(DeliveryChannel):
    """Push notifications through an HTTP push gateway."""

    def __init__(self, gateway_url: str | None = None, token: str | None = None):
        self._url = gateway_url or settings.push_gateway_url
        self._token = token if token is not None else settings.push_gateway_token

    @property
    def name(self) -> str:
        return "push"

    def is_configured(self) -> bool:
        return bool(self._url)

    async def send_push(self, user_id: str, payload: Mapping[str, Any]) -> None:
        if not self.is_configured():
            raise DeliveryError(self.name, "push gateway not configured", retryable=False)

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        body = {
            "user_id": user_id,
            "title": payload.get("title"),
            "body": payload.get("body"),
            "icon": "/icons/icon-192x192.png",
            "data": payload.get("data") or {},
        }

        session = get_sender_session()
        try:
            async with session.post(self._url, json=body, headers=headers) as resp:
                if resp.status >= 400:
                    retryable = resp.status == 429 or resp.status >= 500
                    raise DeliveryError(self.name, f"gateway status={resp.status}", retryable=retryable)
        except aiohttp.ClientError as exc:
            raise DeliveryError(self.name, type(exc).__name__) from exc
        except asyncio.TimeoutError as exc:
            raise DeliveryError(self.name, "timeout") from exc


class DisabledChannel(DeliveryChannel):
    """Dummy channel when notifications are disabled"""

    @property
    def name(self) -> str:
        return "disabled"

    def is_configured(self) -> bool:
        return True

    async def send_email(self, template: str, recipient: str, payload: Mapping[str, Any]) -> None:
        logger.debug(f"Notifications disabled, skipping e-mail '{template}'")

    async def send_push(self, user_id: str, payload: Mapping[str, Any]) -> None:
        logger.debug(f"Notifications disabled, skipping push to {user_id}")


class ChannelNotificationFacility:
    """``NotificationFacility`` backed by one e-mail and one push channel."""

    def __init__(self, email: DeliveryChannel, push: DeliveryChannel):
        self.email = email
        self.push = push

    async def send_email(self, template: str, recipient: str, payload: Mapping[str, Any]) -> None:
        await self.email.send_email(template, recipient, payload)

    async def send_push(self, user_id: str, payload: Mapping[str, Any]) -> None:
        await self.push.send_push(user_id, payload)

    def describe(self) -> dict:
        return {"email": self.email.name, "push": self.push.name}


def get_notification_facility() -> ChannelNotificationFacility:
    """
    Build the facility from settings.

    Unconfigured channels fall back to ``DisabledChannel`` with a warning;
    everything is disabled when ``notifications_enabled`` is off.
    """
    if not settings.notifications_enabled:
        logger.info("Notifications disabled")
        return ChannelNotificationFacility(DisabledChannel(), DisabledChannel())

    email: DeliveryChannel = EmailChannel()
    if not email.is_configured():
        logger.warning("E-mail channel not configured, e-mail notifications will be skipped")
        email = DisabledChannel()

    push: DeliveryChannel = PushChannel()
    if not push.is_configured():
        logger.warning("Push channel not configured, push notifications will be skipped")
        push = DisabledChannel()

    return ChannelNotificationFacility(email, push)
