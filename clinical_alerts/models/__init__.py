from clinical_alerts.models.alert_models import (
    AlertRuleRecord,
    Enrollment,
    MetricObservation,
    CareTeamContact,
    AlertInstance,
    AlertAuditEntry,
    NotificationDeliveryLog
)

__all__ = [
    "AlertRuleRecord",
    "Enrollment",
    "MetricObservation",
    "CareTeamContact",
    "AlertInstance",
    "AlertAuditEntry",
    "NotificationDeliveryLog",
]
