"""
Mock Notification Service

Simulates operator SMS and email alerts for development and tests.
No actual messages are sent - they are logged and kept in memory.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
import random
import uuid
from typing import Optional

from app.core.config import Settings
from app.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class MockNotificationService(BaseNotificationService):
    """
    Mock alert channel.

    Attributes:
        failure_rate: Probability of a simulated delivery failure
        alerts: (subject, message) of every operator alert raised
        sent: Every simulated SMS/email, in order
    """

    def __init__(
        self,
        failure_rate: float = 0.0,
        latency: float = 0.0,
        settings: Optional[Settings] = None,
    ):
        super().__init__(settings)
        self.failure_rate = failure_rate
        self.latency = latency
        self.alerts: list[tuple[str, str]] = []
        self.sent: list[dict] = []
        logger.info(f"MockNotificationService initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def send_sms(self, to_phone: str, message: str) -> NotificationResult:
        """Simulate sending SMS."""
        await self._simulate_latency()

        if self._should_fail():
            logger.warning(f"Mock SMS failed (simulated) to {to_phone}")
            return NotificationResult(
                success=False,
                error_message="Simulated SMS failure",
                provider="mock",
            )

        message_id = f"sms_mock_{uuid.uuid4().hex[:12]}"
        self.sent.append({"channel": "sms", "to": to_phone, "body": message})
        logger.info(f"Mock SMS sent to {to_phone}: {message[:50]}... (ID: {message_id})")
        return NotificationResult(success=True, message_id=message_id, provider="mock")

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_text: str,
    ) -> NotificationResult:
        """Simulate sending email."""
        await self._simulate_latency()

        if self._should_fail():
            logger.warning(f"Mock email failed (simulated) to {to_email}")
            return NotificationResult(
                success=False,
                error_message="Simulated email failure",
                provider="mock",
            )

        message_id = f"email_mock_{uuid.uuid4().hex[:12]}"
        self.sent.append({"channel": "email", "to": to_email, "subject": subject, "body": body_text})
        logger.info(f"Mock email sent to {to_email}: {subject} (ID: {message_id})")
        return NotificationResult(success=True, message_id=message_id, provider="mock")

    async def send_operator_alert(self, subject: str, message: str) -> NotificationResult:
        self.alerts.append((subject, message))
        logger.warning(f"OPERATOR ALERT: {subject} - {message}")
        return await super().send_operator_alert(subject, message)

    async def health_check(self) -> bool:
        return True
