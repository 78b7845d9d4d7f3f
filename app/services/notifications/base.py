"""
Operator Alert Service Abstract Base Class

Payment events that need a human (callbacks for unknown payments,
retry tasks that exhausted their attempts) are pushed to the on-call
operator by SMS and/or email.

Supports both Mock (development) and Real (staging/production)
implementations.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    """Result from sending a notification."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


class BaseNotificationService(ABC):
    """Abstract base class for operator alert channels."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def send_sms(self, to_phone: str, message: str) -> NotificationResult:
        """Send an SMS message."""
        pass

    @abstractmethod
    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_text: str,
    ) -> NotificationResult:
        """Send a plain-text email."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass

    async def send_operator_alert(self, subject: str, message: str) -> NotificationResult:
        """
        Alert the configured operator contacts.

        Never raises: a failed alert is logged and reported in the result,
        it must not fail the payment path that raised it.
        """
        channels = []
        if self.settings.operator_alert_phone:
            channels.append(
                ("sms", self.send_sms(self.settings.operator_alert_phone, f"[{subject}] {message}"))
            )
        if self.settings.operator_alert_email:
            channels.append(
                ("email", self.send_email(self.settings.operator_alert_email, subject, message))
            )

        results = []
        for channel, delivery in channels:
            try:
                results.append(await delivery)
            except Exception as e:
                logger.exception(f"Operator alert {channel} channel raised: {e}")
                results.append(NotificationResult(
                    success=False,
                    error_message=str(e),
                    provider=self.provider_name,
                ))

        if not results:
            logger.warning(f"No operator contact configured, alert not delivered: {subject}")
            return NotificationResult(
                success=False,
                error_message="No operator contact configured",
                provider=self.provider_name,
            )

        delivered = [r for r in results if r.success]
        if not delivered:
            logger.error(f"Operator alert failed on every channel: {subject}")
        return NotificationResult(
            success=bool(delivered),
            message_id=delivered[0].message_id if delivered else None,
            error_message=None if delivered else "; ".join(
                r.error_message or "unknown error" for r in results
            ),
            provider=self.provider_name,
        )
