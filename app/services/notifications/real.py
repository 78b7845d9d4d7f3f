"""
Real Notification Service

Operator alerts delivered through:
- Twilio for SMS
- SendGrid for Email

Both SDKs are synchronous; calls run in a worker thread so the event
loop keeps serving callbacks.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
from typing import Optional

from python_http_client.exceptions import HTTPError as SendGridHTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from app.core.config import Settings
from app.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class RealNotificationService(BaseNotificationService):
    """Production alert channel using Twilio and SendGrid."""

    def __init__(self, settings: Optional[Settings] = None):
        super().__init__(settings)

        # Initialize Twilio
        if self.settings.twilio_account_sid and self.settings.twilio_auth_token:
            self.twilio_client = TwilioClient(
                self.settings.twilio_account_sid,
                self.settings.twilio_auth_token,
            )
            self.twilio_from_number = self.settings.twilio_phone_number
        else:
            self.twilio_client = None
            logger.warning("Twilio credentials not configured")

        # Initialize SendGrid
        if self.settings.sendgrid_api_key:
            self.sendgrid_client = SendGridAPIClient(self.settings.sendgrid_api_key)
            self.sendgrid_from_email = self.settings.sendgrid_from_email
        else:
            self.sendgrid_client = None
            logger.warning("SendGrid credentials not configured")

        logger.info("RealNotificationService initialized")

    @property
    def provider_name(self) -> str:
        return "real"

    async def send_sms(self, to_phone: str, message: str) -> NotificationResult:
        """Send SMS via Twilio."""
        if not self.twilio_client:
            return NotificationResult(
                success=False,
                error_message="Twilio not configured",
                provider="twilio",
            )

        try:
            result = await asyncio.to_thread(
                self.twilio_client.messages.create,
                body=message,
                from_=self.twilio_from_number,
                to=to_phone,
            )
        except TwilioException as e:
            logger.error(f"Twilio error: {e}")
            return NotificationResult(success=False, error_message=str(e), provider="twilio")
        except Exception as e:
            logger.error(f"Twilio delivery failed: {e}")
            return NotificationResult(success=False, error_message=str(e), provider="twilio")

        logger.info(f"SMS sent to {to_phone}: {result.sid}")
        return NotificationResult(success=True, message_id=result.sid, provider="twilio")

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_text: str,
    ) -> NotificationResult:
        """Send email via SendGrid."""
        if not self.sendgrid_client:
            return NotificationResult(
                success=False,
                error_message="SendGrid not configured",
                provider="sendgrid",
            )

        message = Mail(
            from_email=self.sendgrid_from_email,
            to_emails=to_email,
            subject=subject,
            plain_text_content=body_text,
        )
        try:
            response = await asyncio.to_thread(self.sendgrid_client.send, message)
        except SendGridHTTPError as e:
            logger.error(f"SendGrid error: {e}")
            return NotificationResult(success=False, error_message=str(e), provider="sendgrid")
        except Exception as e:
            logger.error(f"SendGrid delivery failed: {e}")
            return NotificationResult(success=False, error_message=str(e), provider="sendgrid")

        logger.info(f"Email sent to {to_email}: {response.status_code}")
        return NotificationResult(
            success=response.status_code in [200, 201, 202],
            message_id=response.headers.get("X-Message-Id"),
            provider="sendgrid",
        )

    async def health_check(self) -> bool:
        """At least one alert channel is configured."""
        return self.twilio_client is not None or self.sendgrid_client is not None
