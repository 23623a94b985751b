"""
Alert Engine Database Models
Rules, enrollments, observations, alert instances, audit trail, notification delivery
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, JSON, Text, Index
from sqlalchemy.sql import func
from clinical_alerts.database import Base


class AlertRuleRecord(Base):
    """Rule definitions authored by the rule-authoring workflow (read-only for the engine)"""
    __tablename__ = "alert_rules"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)

    # Full structured rule definition: condition, operator, threshold, actions, ...
    definition = Column(JSON, nullable=False)

    # NULL = global rule, applies to every active enrollment
    condition_preset_id = Column(String, index=True)

    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    __table_args__ = (
        Index('idx_alert_rule_active', 'is_active'),
    )


class Enrollment(Base):
    """Patient enrollment in a monitoring program"""
    __tablename__ = "enrollments"

    id = Column(String, primary_key=True, index=True)
    patient_id = Column(String, nullable=False, index=True)
    clinician_id = Column(String)
    condition_preset_id = Column(String, index=True)
    status = Column(String, default="ACTIVE")  # ACTIVE, PAUSED, ENDED

    created_at = Column(DateTime, server_default=func.now())


class MetricObservation(Base):
    """Patient-reported metric value; immutable once recorded"""
    __tablename__ = "metric_observations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    enrollment_id = Column(String, nullable=False, index=True)
    metric_key = Column(String, nullable=False, index=True)

    # Exactly one of these is set
    value_numeric = Column(Float)
    value_text = Column(String)

    recorded_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_observation_lookup', 'enrollment_id', 'metric_key', 'recorded_at'),
    )


class CareTeamContact(Base):
    """Notification recipient for a role; enrollment_id NULL = organisation-wide"""
    __tablename__ = "care_team_contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    enrollment_id = Column(String, index=True)
    role = Column(String, nullable=False)  # clinician, care_team, patient, supervisor
    name = Column(String)
    email = Column(String)
    phone = Column(String)


class AlertInstance(Base):
    """One raised clinical alert and its lifecycle state"""
    __tablename__ = "alert_instances"

    id = Column(String, primary_key=True, index=True)
    rule_id = Column(String, nullable=False, index=True)
    enrollment_id = Column(String, nullable=False, index=True)
    patient_id = Column(String)
    metric_key = Column(String)

    severity = Column(String, nullable=False)  # LOW, MEDIUM, HIGH, CRITICAL
    status = Column(String, nullable=False, default="PENDING")

    dedupe_key = Column(String, nullable=False, index=True)
    # Equals dedupe_key while the instance is non-terminal, NULL afterwards.
    # The unique constraint makes "one open instance per dedupe key" a store invariant.
    active_dedupe_key = Column(String, unique=True)

    message = Column(Text)
    evidence = Column(JSON)
    notify_roles = Column(JSON)
    escalation_enabled = Column(Boolean, default=True)
    auto_resolve = Column(Boolean, default=False)
    reminder = Column(Boolean, default=False)

    triggered_at = Column(DateTime, nullable=False)
    last_triggered_at = Column(DateTime, nullable=False)
    trigger_count = Column(Integer, default=1)
    sla_breach_time = Column(DateTime)  # NULL = never breaches (LOW)

    acknowledged_at = Column(DateTime)
    acknowledged_by = Column(String)
    resolved_at = Column(DateTime)
    resolved_by = Column(String)
    resolution_notes = Column(Text)

    snooze_until = Column(DateTime)
    snoozed_from_status = Column(String)

    escalated_at = Column(DateTime)
    escalation_level = Column(Integer, default=0)

    cleared_since = Column(DateTime)
    superseded_by = Column(String)

    __table_args__ = (
        Index('idx_alert_instance_status', 'status'),
        Index('idx_alert_instance_sla', 'status', 'sla_breach_time'),
    )


class AlertAuditEntry(Base):
    """Append-only record of every alert status change"""
    __tablename__ = "alert_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_instance_id = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    from_status = Column(String)
    to_status = Column(String)
    actor = Column(String, nullable=False)
    details = Column(JSON)
    created_at = Column(DateTime, nullable=False)


class NotificationDeliveryLog(Base):
    """One row per channel delivery attempt sequence"""
    __tablename__ = "notification_delivery_log"

    id = Column(String, primary_key=True)
    alert_instance_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)  # new_alert, escalation, reminder
    channel = Column(String, nullable=False)
    recipient_role = Column(String)
    recipient_id = Column(String)
    success = Column(Boolean, default=False)
    status = Column(String)  # delivered, failed, missing_contact, not_configured, not_implemented, timed_out, disabled
    attempts = Column(Integer, default=0)
    error_message = Column(Text)
    delivered_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False)
