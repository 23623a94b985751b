"""
End-to-end tests for the alert engine worker: evaluation cycle, SLA escalation
and notification fan-out against an in-memory database
"""

import asyncio
import pytest
from datetime import datetime, timedelta

from clinical_alerts.models.alert_models import (
    AlertInstance,
    AlertRuleRecord,
    CareTeamContact,
    Enrollment,
    MetricObservation,
    NotificationDeliveryLog,
)
from clinical_alerts.services.alert_engine.background_worker import AlertEngineWorker
from clinical_alerts.services.alert_engine.enums import AlertStatus, NotificationChannel
from clinical_alerts.services.alert_engine.notification_service import NotificationDispatcher
from clinical_alerts.services.alert_engine.utils import utcnow


T0 = datetime(2026, 3, 2, 9, 0, 0)

EMAIL = NotificationChannel.EMAIL
SMS = NotificationChannel.SMS


def seed(db, pain_actions=None):
    pain_rule = {
        "condition": "pain_scale_0_10",
        "operator": "gte",
        "threshold": 8,
        "severity": "HIGH",
        "cooldown": "1h",
    }
    if pain_actions is not None:
        pain_rule["actions"] = pain_actions

    db.add_all([
        Enrollment(id="enr-pain", patient_id="pat-1", condition_preset_id="chronic_pain"),
        Enrollment(id="enr-diabetes", patient_id="pat-2", condition_preset_id="diabetes"),
        AlertRuleRecord(id="pain-high", name="High pain", definition=pain_rule, condition_preset_id="chronic_pain"),
        AlertRuleRecord(
            id="glucose-low",
            name="Low glucose",
            definition={"condition": "blood_glucose", "operator": "lt", "threshold": 70, "severity": "CRITICAL"},
            condition_preset_id="diabetes",
        ),
        AlertRuleRecord(id="broken", name="Broken", definition={"condition": "pain_scale_0_10", "severity": "HIGH"}),
        CareTeamContact(enrollment_id="enr-pain", role="clinician", email="rivera@clinic.test", phone="+15550001111"),
        CareTeamContact(enrollment_id="enr-pain", role="patient", email="patient1@mail.test"),
        CareTeamContact(enrollment_id="enr-diabetes", role="clinician", email="okafor@clinic.test", phone="+15550003333"),
        CareTeamContact(enrollment_id=None, role="supervisor", email="lead@clinic.test", phone="+15550002222"),
    ])
    db.commit()


def observe(db, enrollment_id, metric_key, value, recorded_at):
    db.add(MetricObservation(
        enrollment_id=enrollment_id, metric_key=metric_key, value_numeric=value, recorded_at=recorded_at
    ))
    db.commit()


@pytest.fixture
def worker(session_factory, fake_channels):
    dispatcher = NotificationDispatcher(session_factory=session_factory, channels=fake_channels)
    return AlertEngineWorker(session_factory, dispatcher=dispatcher)


class TestEvaluationCycle:

    @pytest.mark.asyncio
    async def test_new_alert_notifies_clinician(self, worker, db, fake_channels):
        seed(db)
        observe(db, "enr-pain", "pain_scale_0_10", 9, T0 - timedelta(minutes=10))

        summary = await worker.run_evaluation_cycle(T0)
        await worker.drain()

        assert summary.enrollments == 2
        assert summary.rules_loaded == 2
        assert "broken" in summary.rules_rejected
        assert summary.triggers == 1
        assert summary.created == 1

        instance = db.query(AlertInstance).one()
        assert instance.status == AlertStatus.PENDING.value
        assert instance.message == "High pain: pain_scale_0_10 is 9"
        assert fake_channels[EMAIL].sent == [(instance.id, "new_alert", "rivera@clinic.test")]
        assert fake_channels[SMS].sent == [(instance.id, "new_alert", "+15550001111")]
        assert db.query(NotificationDeliveryLog).count() == 2

    @pytest.mark.asyncio
    async def test_unchanged_data_does_not_renotify(self, worker, db, fake_channels):
        seed(db)
        observe(db, "enr-pain", "pain_scale_0_10", 9, T0 - timedelta(minutes=10))

        await worker.run_evaluation_cycle(T0)
        summary = await worker.run_evaluation_cycle(T0 + timedelta(minutes=5))
        await worker.drain()

        assert summary.created == 0
        assert summary.suppressed == 1
        assert len(fake_channels[EMAIL].sent) == 1
        assert db.query(AlertInstance).count() == 1

    @pytest.mark.asyncio
    async def test_reminder_goes_to_patient(self, worker, db, fake_channels):
        seed(db, pain_actions={"notify": ["clinician"], "reminder": True})
        observe(db, "enr-pain", "pain_scale_0_10", 9, T0 - timedelta(minutes=10))

        await worker.run_evaluation_cycle(T0)
        await worker.drain()

        reminders = [s for s in fake_channels[EMAIL].sent if s[1] == "reminder"]
        assert [s[2] for s in reminders] == ["patient1@mail.test"]
        # Reminders are e-mail only
        assert all(s[1] == "new_alert" for s in fake_channels[SMS].sent)

    @pytest.mark.asyncio
    async def test_auto_resolve_over_cycles(self, worker, db):
        seed(db, pain_actions={"autoResolve": True})
        observe(db, "enr-pain", "pain_scale_0_10", 9, T0 - timedelta(minutes=10))

        await worker.run_evaluation_cycle(T0)
        observe(db, "enr-pain", "pain_scale_0_10", 3, T0 + timedelta(minutes=10))
        cleared = await worker.run_evaluation_cycle(T0 + timedelta(minutes=15))
        resolved = await worker.run_evaluation_cycle(T0 + timedelta(minutes=80))
        await worker.drain()

        assert cleared.auto_resolved == 0
        assert resolved.auto_resolved == 1
        db.expire_all()
        assert db.query(AlertInstance).one().status == AlertStatus.RESOLVED.value


class TestEscalationCheck:

    @pytest.mark.asyncio
    async def test_critical_glucose_escalates_to_supervisor(self, worker, db, fake_channels):
        """CRITICAL alert unacknowledged past SLA reaches the supervisor by e-mail and SMS"""
        seed(db)
        observe(db, "enr-diabetes", "blood_glucose", 62, T0 - timedelta(minutes=2))

        summary = await worker.run_evaluation_cycle(T0)
        await worker.drain()
        assert summary.created == 1

        assert await worker.run_escalation_check(T0 + timedelta(minutes=10)) == 0
        assert await worker.run_escalation_check(T0 + timedelta(minutes=20)) == 1
        await worker.drain()

        instance = db.query(AlertInstance).one()
        escalation_email = {s[2] for s in fake_channels[EMAIL].sent if s[1] == "escalation"}
        escalation_sms = {s[2] for s in fake_channels[SMS].sent if s[1] == "escalation"}
        assert escalation_email == {"lead@clinic.test", "okafor@clinic.test"}
        assert escalation_sms == {"+15550002222", "+15550003333"}
        assert instance.status == AlertStatus.ESCALATED.value

        # Later sweeps do not escalate or notify again
        assert await worker.run_escalation_check(T0 + timedelta(minutes=40)) == 0


class TestWorkerLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, worker, db, engine_config):
        engine_config.update_config({
            "evaluation_interval_seconds": 0.01,
            "escalation_check_interval_seconds": 0.01,
        })
        seed(db)
        observe(db, "enr-pain", "pain_scale_0_10", 9, utcnow() - timedelta(minutes=1))

        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.1)
        await worker.stop(timeout=5)
        await asyncio.wait_for(task, timeout=5)

        assert worker.running is False
        db.expire_all()
        assert db.query(AlertInstance).count() == 1
