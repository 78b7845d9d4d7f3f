"""
Tests for the operator alert channels.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock
from urllib.error import URLError

from twilio.base.exceptions import TwilioException

from app.core.config import Settings
from app.services.notifications import MockNotificationService, RealNotificationService


def _settings(**overrides) -> Settings:
    values = {"operator_alert_email": None, "operator_alert_phone": None}
    values.update(overrides)
    return Settings(**values)


async def test_alert_fans_out_to_every_contact():
    service = MockNotificationService(
        settings=_settings(operator_alert_email="ops@example.com", operator_alert_phone="+251911000000")
    )

    result = await service.send_operator_alert("Callback for unknown payment", "X")

    assert result.success
    assert [m["channel"] for m in service.sent] == ["sms", "email"]
    assert service.sent[0]["body"] == "[Callback for unknown payment] X"
    assert service.alerts == [("Callback for unknown payment", "X")]


async def test_alert_without_contacts_is_reported_not_raised():
    service = MockNotificationService(settings=_settings())

    result = await service.send_operator_alert("Retry task dead-lettered", "task 1")

    assert not result.success
    assert service.sent == []


async def test_alert_failure_on_every_channel():
    service = MockNotificationService(
        failure_rate=1.0,
        settings=_settings(operator_alert_email="ops@example.com"),
    )

    result = await service.send_operator_alert("Retry task dead-lettered", "task 1")

    assert not result.success
    assert "Simulated email failure" in result.error_message


class TestRealService:
    def _service(self) -> RealNotificationService:
        return RealNotificationService(_settings(
            twilio_account_sid="AC00000000000000000000000000000000",
            twilio_auth_token="token",
            twilio_phone_number="+15550000000",
            operator_alert_phone="+251911000000",
        ))

    async def test_sms_through_twilio(self):
        service = self._service()
        service.twilio_client = MagicMock()
        service.twilio_client.messages.create.return_value = SimpleNamespace(sid="SM123")

        result = await service.send_operator_alert("Retry task dead-lettered", "task 1")

        assert result.success
        assert result.message_id == "SM123"
        kwargs = service.twilio_client.messages.create.call_args.kwargs
        assert kwargs["to"] == "+251911000000"
        assert kwargs["from_"] == "+15550000000"

    async def test_twilio_error_does_not_raise(self):
        service = self._service()
        service.twilio_client = MagicMock()
        service.twilio_client.messages.create.side_effect = TwilioException("unreachable")

        result = await service.send_operator_alert("Retry task dead-lettered", "task 1")

        assert not result.success
        assert "unreachable" in result.error_message

    async def test_health_requires_a_channel(self):
        assert await self._service().health_check()
        assert not await RealNotificationService(_settings()).health_check()

    async def test_email_without_sendgrid(self):
        result = await RealNotificationService(_settings()).send_email("ops@example.com", "s", "b")
        assert not result.success
        assert result.provider == "sendgrid"

    async def test_network_failure_does_not_raise(self):
        service = RealNotificationService(_settings(
            sendgrid_api_key="SG.test-key",
            operator_alert_email="ops@example.com",
        ))
        service.sendgrid_client = MagicMock()
        service.sendgrid_client.send.side_effect = URLError("connection refused")

        result = await service.send_operator_alert("Retry task dead-lettered", "task 1")

        assert not result.success
        assert "connection refused" in result.error_message

    async def test_twilio_transport_failure_does_not_raise(self):
        service = self._service()
        service.twilio_client = MagicMock()
        service.twilio_client.messages.create.side_effect = ConnectionError("reset by peer")

        result = await service.send_sms("+251911000000", "hello")

        assert not result.success
        assert result.provider == "twilio"


class ExplodingChannel(MockNotificationService):
    """Channel whose SMS leg raises instead of reporting failure."""

    async def send_sms(self, to_phone, message):
        raise RuntimeError("modem on fire")


async def test_raising_channel_does_not_block_the_others():
    service = ExplodingChannel(
        settings=_settings(operator_alert_email="ops@example.com", operator_alert_phone="+251911000000")
    )

    result = await service.send_operator_alert("Callback for unknown payment", "X")

    assert result.success
    assert [m["channel"] for m in service.sent] == ["email"]
