"""
Closed vocabularies shared across the alert engine.
"""

from enum import Enum


class Severity(str, Enum):
    """Alert severity levels"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def parse(cls, raw: str) -> "Severity":
        return cls(str(raw).strip().upper())


class ValueType(str, Enum):
    """Value type of a monitored condition"""
    NUMERIC = "numeric"
    PERCENTAGE = "percentage"
    CATEGORICAL = "categorical"
    DURATION = "duration"


class Operator(str, Enum):
    """Rule operators"""
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    EQUAL = "equal"
    EQUALS = "equals"
    NOT_EQUAL = "not_equal"
    TREND_INCREASING = "trend_increasing"
    TREND_DECREASING = "trend_decreasing"

    @property
    def is_trend(self) -> bool:
        return self in (Operator.TREND_INCREASING, Operator.TREND_DECREASING)


class AlertStatus(str, Enum):
    """Alert instance lifecycle states"""
    PENDING = "PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    ESCALATED = "ESCALATED"
    SNOOZED = "SNOOZED"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (AlertStatus.RESOLVED, AlertStatus.CANCELLED)


NON_TERMINAL_STATUSES = [s.value for s in AlertStatus if not s.is_terminal]


class EvidenceStatus(str, Enum):
    """Outcome tag attached to every evaluation"""
    TRIGGERED = "triggered"
    NOT_MET = "not_met"
    INSUFFICIENT_DATA = "insufficient_data"


class NotificationChannel(str, Enum):
    """Available notification channels"""
    EMAIL = "email"
    SMS = "sms"
    PHONE_CALL = "phone_call"


class NotificationEventType(str, Enum):
    NEW_ALERT = "new_alert"
    ESCALATION = "escalation"
    REMINDER = "reminder"
