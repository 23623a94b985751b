"""
Multi-Channel Notification Dispatcher - Email, SMS, Phone call.

Channels:
1. Email - Via AWS SES with secure portal links
2. SMS - Via Twilio for HIGH/CRITICAL alerts and escalations (PHI-minimal)
3. Phone call - Placeholder channel for CRITICAL alerts, not wired to a provider

Severity decides the channel set. Every (channel, recipient) delivery is
attempted independently with a timeout and bounded retry; the outcome of
each is persisted to notification_delivery_log. Nothing raised by a provider
escapes dispatch().
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from clinical_alerts.config import settings
from clinical_alerts.models.alert_models import NotificationDeliveryLog

from .config_service import AlertConfigService
from .enums import NotificationChannel, NotificationEventType, Severity
from .utils import utcnow

logger = logging.getLogger(__name__)


class ChannelDeliveryError(Exception):
    """Provider rejected or failed a delivery"""


class ChannelNotConfiguredError(ChannelDeliveryError):
    """Provider credentials are missing"""


class ChannelNotImplementedError(ChannelDeliveryError):
    """Channel exists but has no provider yet"""


@dataclass
class Recipient:
    """Resolved contact for a notify role"""
    role: str
    recipient_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class AlertSnapshot:
    """Detached copy of the alert fields used in notification content"""
    id: str
    rule_id: str
    enrollment_id: str
    severity: Severity
    message: str
    status: str
    patient_id: Optional[str] = None
    metric_key: Optional[str] = None
    triggered_at: Optional[datetime] = None
    sla_breach_time: Optional[datetime] = None
    escalation_level: int = 0

    @classmethod
    def from_instance(cls, instance) -> "AlertSnapshot":
        return cls(
            id=instance.id,
            rule_id=instance.rule_id,
            enrollment_id=instance.enrollment_id,
            severity=Severity(instance.severity),
            message=instance.message or "",
            status=instance.status,
            patient_id=instance.patient_id,
            metric_key=instance.metric_key,
            triggered_at=instance.triggered_at,
            sla_breach_time=instance.sla_breach_time,
            escalation_level=instance.escalation_level or 0,
        )


@dataclass
class NotificationRequest:
    """Request to notify recipients about an alert event"""
    alert: AlertSnapshot
    event_type: NotificationEventType
    recipients: List[Recipient] = field(default_factory=list)
    # None = derive from severity and event type
    channels: Optional[List[NotificationChannel]] = None


@dataclass
class NotificationResult:
    """Result of one channel delivery to one recipient"""
    notification_id: str
    channel: NotificationChannel
    recipient_role: str
    success: bool
    status: str
    recipient_id: Optional[str] = None
    attempts: int = 0
    error_message: Optional[str] = None
    delivered_at: Optional[datetime] = None


def channels_for_new_alert(severity: Severity) -> List[NotificationChannel]:
    """Channel set for a newly raised alert"""
    severity = Severity(severity)
    if severity == Severity.LOW:
        return []
    elif severity == Severity.MEDIUM:
        return [NotificationChannel.EMAIL]
    elif severity == Severity.HIGH:
        return [NotificationChannel.EMAIL, NotificationChannel.SMS]
    elif severity == Severity.CRITICAL:
        return [NotificationChannel.EMAIL, NotificationChannel.SMS, NotificationChannel.PHONE_CALL]
    raise ValueError(f"Unknown severity: {severity}")


def channels_for_escalation(severity: Severity) -> List[NotificationChannel]:
    """Channel set for an SLA escalation"""
    severity = Severity(severity)
    if severity in (Severity.LOW, Severity.MEDIUM):
        return [NotificationChannel.EMAIL]
    elif severity in (Severity.HIGH, Severity.CRITICAL):
        return [NotificationChannel.EMAIL, NotificationChannel.SMS]
    raise ValueError(f"Unknown severity: {severity}")


def resolve_channels(event_type: NotificationEventType, severity: Severity) -> List[NotificationChannel]:
    event_type = NotificationEventType(event_type)
    if event_type == NotificationEventType.NEW_ALERT:
        return channels_for_new_alert(severity)
    elif event_type == NotificationEventType.ESCALATION:
        return channels_for_escalation(severity)
    elif event_type == NotificationEventType.REMINDER:
        return [NotificationChannel.EMAIL]
    raise ValueError(f"Unknown notification event: {event_type}")


def _portal_link(alert: AlertSnapshot) -> str:
    return f"{settings.ALERT_PORTAL_BASE_URL.rstrip('/')}/alerts/{alert.id}"


class EmailChannel:
    """E-mail via AWS SES"""

    channel = NotificationChannel.EMAIL

    def __init__(self, client=None, sender_email: Optional[str] = None, timeout: float = 10.0):
        self._client = client
        self.sender_email = sender_email or settings.AWS_SES_SENDER_EMAIL
        self.timeout = timeout

    @property
    def client(self):
        if self._client is None:
            if not settings.ses_configured():
                raise ChannelNotConfiguredError("AWS SES credentials are not configured")
            self._client = boto3.client(
                'ses',
                region_name=settings.AWS_REGION,
                aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
                aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
                config=BotoConfig(
                    connect_timeout=self.timeout,
                    read_timeout=self.timeout,
                    retries={'max_attempts': 1}
                )
            )
            logger.info("AWS SES email notifications enabled")
        return self._client

    def address_for(self, recipient: Recipient) -> Optional[str]:
        return recipient.email or None

    def build_content(self, alert: AlertSnapshot, event_type: NotificationEventType) -> Dict[str, str]:
        portal_link = _portal_link(alert)
        severity = alert.severity.value

        if event_type == NotificationEventType.REMINDER:
            subject = "Reminder: please complete your health check-in"
            text_body = (
                "Your care team would like an update on how you are doing.\n\n"
                f"Open your check-in: {portal_link}\n"
            )
            html_body = f"""
            <html>
            <body style="font-family: Arial, sans-serif; line-height: 1.6;">
                <h2>Health Check-in Reminder</h2>
                <p>Your care team would like an update on how you are doing.</p>
                <p><a href="{portal_link}">Open your check-in</a></p>
            </body>
            </html>
            """
            return {"subject": subject, "text": text_body, "html": html_body}

        subject = f"[{severity}] Clinical Alert - Requires Review"
        if event_type == NotificationEventType.ESCALATION:
            subject = f"[ESCALATION] {subject}"

        sla_line = ""
        if alert.sla_breach_time:
            sla_line = f"Acknowledge by: {alert.sla_breach_time.isoformat()} UTC"

        text_body = f"""
Clinical Alert Notification
===========================

{alert.message}
Severity: {severity}
{sla_line}

View full details: {portal_link}

For security, full patient details are only available in the authenticated portal.
        """
        html_body = f"""
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6;">
            <h2>Clinical Alert Notification</h2>
            <div style="padding: 20px; border-radius: 8px; margin: 20px 0;">
                <h3>{alert.message}</h3>
                <p><strong>Severity:</strong> {severity}</p>
                <p>{sla_line}</p>
            </div>
            <p><a href="{portal_link}">View Full Details in Secure Portal</a></p>
            <p style="font-size: 12px; color: #6b7280;">
                For security, full patient details are only available in the authenticated portal.
            </p>
        </body>
        </html>
        """
        return {"subject": subject, "text": text_body, "html": html_body}

    def send(self, alert: AlertSnapshot, event_type: NotificationEventType, address: str) -> str:
        content = self.build_content(alert, event_type)
        try:
            response = self.client.send_email(
                Source=self.sender_email,
                Destination={'ToAddresses': [address]},
                Message={
                    'Subject': {'Data': content["subject"]},
                    'Body': {
                        'Text': {'Data': content["text"]},
                        'Html': {'Data': content["html"]}
                    }
                }
            )
        except ChannelNotConfiguredError:
            raise
        except Exception as e:
            raise ChannelDeliveryError(f"SES send failed: {e}") from e
        return response['MessageId']


class SmsChannel:
    """SMS via Twilio; message bodies carry no PHI"""

    channel = NotificationChannel.SMS

    def __init__(self, client=None, from_number: Optional[str] = None, timeout: float = 10.0):
        self._client = client
        self.from_number = from_number or settings.TWILIO_PHONE_NUMBER
        self.timeout = timeout

    @property
    def client(self):
        if self._client is None:
            if not settings.twilio_configured():
                raise ChannelNotConfiguredError("Twilio credentials are not configured")
            self._client = TwilioClient(
                settings.TWILIO_ACCOUNT_SID,
                settings.TWILIO_AUTH_TOKEN,
                http_client=TwilioHttpClient(timeout=self.timeout)
            )
            logger.info("Twilio SMS notifications enabled")
        return self._client

    def address_for(self, recipient: Recipient) -> Optional[str]:
        return recipient.phone or None

    def build_body(self, alert: AlertSnapshot, event_type: NotificationEventType) -> str:
        severity = alert.severity.value
        if event_type == NotificationEventType.ESCALATION:
            return (
                f"[ESCALATION] Clinical alert not acknowledged in time. "
                f"Severity: {severity}. "
                f"Please review in secure portal."
            )
        return (
            f"Clinical Alert: {severity} priority condition detected. "
            f"Review details in secure portal."
        )

    def send(self, alert: AlertSnapshot, event_type: NotificationEventType, address: str) -> str:
        try:
            message = self.client.messages.create(
                body=self.build_body(alert, event_type),
                from_=self.from_number,
                to=address
            )
        except ChannelNotConfiguredError:
            raise
        except Exception as e:
            raise ChannelDeliveryError(f"Twilio send failed: {e}") from e
        return message.sid


class PhoneCallChannel:
    """Voice call placeholder for CRITICAL alerts; no provider is wired in"""

    channel = NotificationChannel.PHONE_CALL

    def address_for(self, recipient: Recipient) -> Optional[str]:
        return recipient.phone or None

    def send(self, alert: AlertSnapshot, event_type: NotificationEventType, address: str) -> str:
        raise ChannelNotImplementedError("Phone call channel has no provider")


def default_channels(timeout: float = 10.0) -> Dict[NotificationChannel, Any]:
    """Provider channels; timeout bounds each provider HTTP call"""
    return {
        NotificationChannel.EMAIL: EmailChannel(timeout=timeout),
        NotificationChannel.SMS: SmsChannel(timeout=timeout),
        NotificationChannel.PHONE_CALL: PhoneCallChannel(),
    }


class NotificationDispatcher:
    """Fans an alert event out to every (channel, recipient) pair"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]] = None,
        channels: Optional[Dict[NotificationChannel, Any]] = None,
        config_service: Optional[AlertConfigService] = None
    ):
        self.session_factory = session_factory
        self.config_service = config_service or AlertConfigService()
        if channels is None:
            channels = default_channels(self.config_service.config.delivery_timeout_seconds)
        self.channels = channels

    async def dispatch(self, request: NotificationRequest) -> List[NotificationResult]:
        """
        Deliver a notification request.

        Returns one result per (channel, recipient) attempted. Never raises
        for delivery problems.
        """
        channels = request.channels
        if channels is None:
            channels = resolve_channels(request.event_type, request.alert.severity)

        if not channels:
            logger.debug(f"No notification channels for {request.alert.severity.value} alert {request.alert.id}")
            return []
        if not request.recipients:
            logger.warning(f"No recipients resolved for alert {request.alert.id} ({request.event_type.value})")
            return []

        deliveries = []
        for channel in channels:
            seen = set()
            for recipient in request.recipients:
                # Same person reachable via several roles gets one message per channel
                marker = (recipient.recipient_id, recipient.email, recipient.phone)
                if marker in seen:
                    continue
                seen.add(marker)
                deliveries.append(self._deliver(request, channel, recipient))

        results = list(await asyncio.gather(*deliveries))

        delivered = sum(1 for r in results if r.success)
        logger.info(
            f"Alert {request.alert.id} {request.event_type.value}: "
            f"{delivered}/{len(results)} deliveries succeeded"
        )
        self._record_results(request, results)
        return results

    async def _deliver(
        self,
        request: NotificationRequest,
        channel: NotificationChannel,
        recipient: Recipient
    ) -> NotificationResult:
        config = self.config_service.config
        notification_id = str(uuid.uuid4())

        def result(success: bool, status: str, attempts: int = 0, error: Optional[str] = None) -> NotificationResult:
            return NotificationResult(
                notification_id=notification_id,
                channel=channel,
                recipient_role=recipient.role,
                recipient_id=recipient.recipient_id,
                success=success,
                status=status,
                attempts=attempts,
                error_message=error,
                delivered_at=utcnow() if success else None
            )

        if not self.config_service.channel_enabled(channel.value):
            return result(False, "disabled", error=f"{channel.value} channel disabled")

        sender = self.channels.get(channel)
        if sender is None:
            return result(False, "not_configured", error=f"No sender registered for {channel.value}")

        address = sender.address_for(recipient)
        if not address:
            logger.warning(f"Missing {channel.value} contact for {recipient.role} on alert {request.alert.id}")
            return result(False, "missing_contact", error=f"No {channel.value} contact for {recipient.role}")

        last_error = None
        for attempt in range(1, config.delivery_max_attempts + 1):
            try:
                provider_id = await asyncio.wait_for(
                    asyncio.to_thread(sender.send, request.alert, request.event_type, address),
                    timeout=config.delivery_timeout_seconds
                )
                logger.info(f"{channel.value} sent for alert {request.alert.id}: {provider_id}")
                return result(True, "delivered", attempt)
            except ChannelNotImplementedError as e:
                logger.info(f"{channel.value} placeholder for alert {request.alert.id}: {e}")
                return result(False, "not_implemented", attempt, str(e))
            except ChannelNotConfiguredError as e:
                logger.warning(f"{channel.value} not configured: {e}")
                return result(False, "not_configured", attempt, str(e))
            except asyncio.TimeoutError:
                # The provider call may still complete in its thread; a retry could send twice
                error = f"timed out after {config.delivery_timeout_seconds}s, delivery outcome unknown"
                logger.error(f"{channel.value} delivery for alert {request.alert.id} {error}")
                return result(False, "timed_out", attempt, error)
            except Exception as e:
                last_error = str(e)

            logger.warning(
                f"{channel.value} delivery attempt {attempt}/{config.delivery_max_attempts} "
                f"failed for alert {request.alert.id}: {last_error}"
            )
            if attempt < config.delivery_max_attempts:
                await asyncio.sleep(config.delivery_backoff_seconds * (2 ** (attempt - 1)))

        logger.error(f"Giving up on {channel.value} for alert {request.alert.id}: {last_error}")
        return result(False, "failed", config.delivery_max_attempts, last_error)

    def _record_results(self, request: NotificationRequest, results: List[NotificationResult]):
        """Persist delivery outcomes for audit"""
        if self.session_factory is None or not results:
            return

        db = self.session_factory()
        try:
            now = utcnow()
            for r in results:
                db.add(NotificationDeliveryLog(
                    id=r.notification_id,
                    alert_instance_id=request.alert.id,
                    event_type=request.event_type.value,
                    channel=r.channel.value,
                    recipient_role=r.recipient_role,
                    recipient_id=r.recipient_id,
                    success=r.success,
                    status=r.status,
                    attempts=r.attempts,
                    error_message=r.error_message,
                    delivered_at=r.delivered_at,
                    created_at=now
                ))
            db.commit()
        except Exception as e:
            logger.warning(f"Error logging notification delivery: {e}")
            db.rollback()
        finally:
            db.close()
