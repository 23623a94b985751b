"""
Tests for channel selection and multi-channel notification delivery
"""

import logging
import pytest
from datetime import datetime
from unittest.mock import MagicMock, patch

from clinical_alerts.core.logging import ContactRedactionFilter, sanitize_message
from clinical_alerts.models.alert_models import NotificationDeliveryLog
from clinical_alerts.services.alert_engine.enums import (
    NotificationChannel,
    NotificationEventType,
    Severity,
)
from clinical_alerts.services.alert_engine import notification_service
from clinical_alerts.services.alert_engine.notification_service import (
    AlertSnapshot,
    ChannelNotConfiguredError,
    EmailChannel,
    NotificationDispatcher,
    NotificationRequest,
    PhoneCallChannel,
    Recipient,
    SmsChannel,
    channels_for_escalation,
    channels_for_new_alert,
    resolve_channels,
)


T0 = datetime(2026, 3, 2, 9, 0, 0)

EMAIL = NotificationChannel.EMAIL
SMS = NotificationChannel.SMS
PHONE = NotificationChannel.PHONE_CALL


def snapshot(severity=Severity.HIGH, alert_id="alert-1"):
    return AlertSnapshot(
        id=alert_id,
        rule_id="pain-high",
        enrollment_id="enr-1",
        severity=severity,
        message="High pain: pain_scale_0_10 is 9",
        status="PENDING",
        patient_id="pat-1",
        metric_key="pain_scale_0_10",
        triggered_at=T0,
    )


def clinician(**overrides):
    fields = dict(role="clinician", recipient_id="c-1", name="Dr. Rivera", email="rivera@clinic.test", phone="+15550001111")
    fields.update(overrides)
    return Recipient(**fields)


class TestChannelSelection:
    """Severity decides the channel set"""

    def test_new_alert_channels(self):
        assert channels_for_new_alert(Severity.LOW) == []
        assert channels_for_new_alert(Severity.MEDIUM) == [EMAIL]
        assert channels_for_new_alert(Severity.HIGH) == [EMAIL, SMS]
        assert channels_for_new_alert(Severity.CRITICAL) == [EMAIL, SMS, PHONE]

    def test_escalation_channels(self):
        assert channels_for_escalation(Severity.LOW) == [EMAIL]
        assert channels_for_escalation(Severity.MEDIUM) == [EMAIL]
        assert channels_for_escalation(Severity.HIGH) == [EMAIL, SMS]
        assert channels_for_escalation(Severity.CRITICAL) == [EMAIL, SMS]

    def test_reminders_are_email_only(self):
        assert resolve_channels(NotificationEventType.REMINDER, Severity.CRITICAL) == [EMAIL]

    def test_accepts_raw_values(self):
        assert resolve_channels("new_alert", "HIGH") == [EMAIL, SMS]


class TestDispatch:

    @pytest.mark.asyncio
    async def test_critical_alert_uses_every_channel(self, fake_channels):
        """Phone call is a placeholder and reports not_implemented"""
        fake_channels[PHONE] = PhoneCallChannel()
        dispatcher = NotificationDispatcher(channels=fake_channels)

        results = await dispatcher.dispatch(NotificationRequest(
            alert=snapshot(Severity.CRITICAL),
            event_type=NotificationEventType.NEW_ALERT,
            recipients=[clinician()]
        ))

        by_channel = {r.channel: r for r in results}
        assert by_channel[EMAIL].status == "delivered"
        assert by_channel[EMAIL].success is True
        assert by_channel[SMS].status == "delivered"
        assert by_channel[PHONE].status == "not_implemented"
        assert by_channel[PHONE].success is False
        assert fake_channels[EMAIL].sent == [("alert-1", "new_alert", "rivera@clinic.test")]
        assert fake_channels[SMS].sent == [("alert-1", "new_alert", "+15550001111")]

    @pytest.mark.asyncio
    async def test_low_severity_sends_nothing(self, fake_channels):
        dispatcher = NotificationDispatcher(channels=fake_channels)

        results = await dispatcher.dispatch(NotificationRequest(
            alert=snapshot(Severity.LOW),
            event_type=NotificationEventType.NEW_ALERT,
            recipients=[clinician()]
        ))

        assert results == []
        assert fake_channels[EMAIL].calls == 0

    @pytest.mark.asyncio
    async def test_missing_contact_is_reported_not_retried(self, fake_channels):
        dispatcher = NotificationDispatcher(channels=fake_channels)

        results = await dispatcher.dispatch(NotificationRequest(
            alert=snapshot(Severity.HIGH),
            event_type=NotificationEventType.NEW_ALERT,
            recipients=[clinician(phone=None)]
        ))

        by_channel = {r.channel: r for r in results}
        assert by_channel[EMAIL].status == "delivered"
        assert by_channel[SMS].status == "missing_contact"
        assert by_channel[SMS].attempts == 0
        assert fake_channels[SMS].calls == 0

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_block_others(self, fake_channels, fake_channel):
        fake_channels[SMS] = fake_channel(SMS, "phone", failures=10)
        dispatcher = NotificationDispatcher(channels=fake_channels)

        results = await dispatcher.dispatch(NotificationRequest(
            alert=snapshot(Severity.HIGH),
            event_type=NotificationEventType.NEW_ALERT,
            recipients=[clinician()]
        ))

        by_channel = {r.channel: r for r in results}
        assert by_channel[EMAIL].success is True
        assert by_channel[SMS].status == "failed"
        assert by_channel[SMS].attempts == 3
        assert "provider unavailable" in by_channel[SMS].error_message
        assert fake_channels[SMS].calls == 3

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, fake_channels, fake_channel):
        fake_channels[EMAIL] = fake_channel(EMAIL, "email", failures=1)
        dispatcher = NotificationDispatcher(channels=fake_channels)

        results = await dispatcher.dispatch(NotificationRequest(
            alert=snapshot(Severity.MEDIUM),
            event_type=NotificationEventType.NEW_ALERT,
            recipients=[clinician()]
        ))

        assert len(results) == 1
        assert results[0].status == "delivered"
        assert results[0].attempts == 2

    @pytest.mark.asyncio
    async def test_slow_provider_times_out_without_retry(self, fake_channels, fake_channel, engine_config):
        """A timed-out send may still land, so it is not attempted again"""
        engine_config.update_config({"delivery_timeout_seconds": 0.05, "delivery_max_attempts": 3})
        slow = fake_channel(EMAIL, "email", delay=0.3)
        fake_channels[EMAIL] = slow
        dispatcher = NotificationDispatcher(channels=fake_channels)

        results = await dispatcher.dispatch(NotificationRequest(
            alert=snapshot(Severity.MEDIUM),
            event_type=NotificationEventType.NEW_ALERT,
            recipients=[clinician()]
        ))

        assert results[0].status == "timed_out"
        assert results[0].success is False
        assert results[0].attempts == 1
        assert "timed out" in results[0].error_message
        assert slow.calls == 1

    @pytest.mark.asyncio
    async def test_disabled_channel(self, fake_channels, engine_config):
        engine_config.update_config({"sms_enabled": False})
        dispatcher = NotificationDispatcher(channels=fake_channels)

        results = await dispatcher.dispatch(NotificationRequest(
            alert=snapshot(Severity.HIGH),
            event_type=NotificationEventType.NEW_ALERT,
            recipients=[clinician()]
        ))

        assert {r.channel: r.status for r in results} == {EMAIL: "delivered", SMS: "disabled"}

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self):
        """No SES credentials in the test environment"""
        dispatcher = NotificationDispatcher(channels={EMAIL: EmailChannel()})

        results = await dispatcher.dispatch(NotificationRequest(
            alert=snapshot(Severity.MEDIUM),
            event_type=NotificationEventType.NEW_ALERT,
            recipients=[clinician()]
        ))

        assert results[0].status == "not_configured"

    @pytest.mark.asyncio
    async def test_same_person_in_two_roles_gets_one_message(self, fake_channels):
        dispatcher = NotificationDispatcher(channels=fake_channels)

        results = await dispatcher.dispatch(NotificationRequest(
            alert=snapshot(Severity.MEDIUM),
            event_type=NotificationEventType.ESCALATION,
            recipients=[clinician(), clinician(role="care_team")]
        ))

        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_delivery_outcomes_are_persisted(self, fake_channels, session_factory, db):
        dispatcher = NotificationDispatcher(session_factory=session_factory, channels=fake_channels)

        await dispatcher.dispatch(NotificationRequest(
            alert=snapshot(Severity.HIGH),
            event_type=NotificationEventType.ESCALATION,
            recipients=[clinician(), Recipient(role="supervisor", recipient_id="s-1", email="lead@clinic.test")]
        ))

        rows = db.query(NotificationDeliveryLog).all()
        assert len(rows) == 4
        assert {r.event_type for r in rows} == {"escalation"}
        statuses = sorted((r.channel, r.recipient_role, r.status) for r in rows)
        assert statuses == [
            ("email", "clinician", "delivered"),
            ("email", "supervisor", "delivered"),
            ("sms", "clinician", "delivered"),
            ("sms", "supervisor", "missing_contact"),
        ]


class TestProviderChannels:
    """SES and Twilio senders with mocked clients"""

    def test_email_send(self):
        client = MagicMock()
        client.send_email.return_value = {"MessageId": "ses-123"}
        channel = EmailChannel(client=client, sender_email="alerts@clinic.test")

        message_id = channel.send(snapshot(), NotificationEventType.NEW_ALERT, "rivera@clinic.test")

        assert message_id == "ses-123"
        kwargs = client.send_email.call_args.kwargs
        assert kwargs["Destination"] == {"ToAddresses": ["rivera@clinic.test"]}
        assert kwargs["Message"]["Subject"]["Data"] == "[HIGH] Clinical Alert - Requires Review"

    def test_escalation_subject(self):
        content = EmailChannel(client=MagicMock()).build_content(snapshot(), NotificationEventType.ESCALATION)

        assert content["subject"].startswith("[ESCALATION]")
        assert "/alerts/alert-1" in content["text"]

    def test_email_without_credentials(self):
        with pytest.raises(ChannelNotConfiguredError):
            EmailChannel().send(snapshot(), NotificationEventType.NEW_ALERT, "rivera@clinic.test")

    def test_sms_body_has_no_clinical_detail(self):
        client = MagicMock()
        client.messages.create.return_value = MagicMock(sid="SM123")
        channel = SmsChannel(client=client, from_number="+15559990000")

        sid = channel.send(snapshot(), NotificationEventType.NEW_ALERT, "+15550001111")

        assert sid == "SM123"
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["to"] == "+15550001111"
        assert kwargs["from_"] == "+15559990000"
        assert "pain" not in kwargs["body"].lower()
        assert "HIGH" in kwargs["body"]

    def test_ses_client_uses_delivery_timeout(self):
        channel = EmailChannel(timeout=4.0)

        with patch.object(notification_service, "settings"), \
                patch.object(notification_service.boto3, "client") as mock_client:
            channel.client

        boto_config = mock_client.call_args.kwargs["config"]
        assert boto_config.connect_timeout == 4.0
        assert boto_config.read_timeout == 4.0

    def test_twilio_client_uses_delivery_timeout(self):
        channel = SmsChannel(timeout=4.0)

        with patch.object(notification_service, "settings"), \
                patch.object(notification_service, "TwilioClient") as mock_client:
            channel.client

        http_client = mock_client.call_args.kwargs["http_client"]
        assert http_client.timeout == 4.0

    def test_default_channels_follow_config(self, engine_config):
        engine_config.update_config({"delivery_timeout_seconds": 7.5})

        dispatcher = NotificationDispatcher()

        assert dispatcher.channels[EMAIL].timeout == 7.5
        assert dispatcher.channels[SMS].timeout == 7.5


class TestContactRedaction:

    def test_sanitize_message(self):
        text = sanitize_message("Sent to rivera@clinic.test and +15550001111")

        assert "rivera@clinic.test" not in text
        assert "+15550001111" not in text
        assert "[email]" in text and "[phone]" in text

    def test_filter_rewrites_record(self):
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "contact %s", ("rivera@clinic.test",), None)

        assert ContactRedactionFilter().filter(record) is True
        assert record.getMessage() == "contact [email]"
