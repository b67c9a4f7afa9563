"""
Outbound price-drop notifications.

SaveStep hands every Notification produced by PriceAlertEvaluator to a
NotificationSender. Failures are raised as UpstreamError; the step logs them
and carries on, since alerts are a side effect of a completed analysis.
"""

import asyncio
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Optional

from competitor_intel.config.settings import Settings, get_settings
from competitor_intel.models.schemas import Notification
from competitor_intel.utils.errors import UpstreamError
from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)


class NotificationSender(ABC):
    """Abstract notification channel."""

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver one notification. Raises UpstreamError on failure."""


class LogNotificationSender(NotificationSender):
    """Writes alerts to the structured log and keeps them for inspection."""

    def __init__(self):
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)
        logger.info(
            "Price alert",
            to=notification.to,
            subject=notification.subject,
            diff_pct=str(notification.diff_pct),
        )


class SmtpNotificationSender(NotificationSender):
    """Sends alerts as plain-text email. smtplib is blocking, so it runs in a worker thread."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def send(self, notification: Notification) -> None:
        message = self._build_message(notification)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send price alert", to=notification.to, error=str(e))
            raise UpstreamError(f"Failed to send notification to {notification.to}: {e}") from e
        logger.info("Price alert sent", to=notification.to, subject=notification.subject)

    def _build_message(self, notification: Notification) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = notification.subject
        message["From"] = self.settings.smtp_sender
        message["To"] = notification.to
        message.set_content(notification.body)
        return message

    def _deliver(self, message: EmailMessage) -> None:
        settings = self.settings
        with smtplib.SMTP(
            settings.smtp_host,
            settings.smtp_port,
            timeout=settings.request_timeout_seconds,
        ) as server:
            if settings.smtp_use_tls:
                server.starttls()
            if settings.smtp_user and settings.smtp_password:
                server.login(settings.smtp_user, settings.smtp_password.get_secret_value())
            server.send_message(message)


def create_notification_sender(settings: Optional[Settings] = None) -> NotificationSender:
    """Instantiate the sender selected by ``NOTIFICATION_BACKEND``."""
    settings = settings or get_settings()
    if settings.notification_backend == "smtp":
        return SmtpNotificationSender(settings)
    return LogNotificationSender()
