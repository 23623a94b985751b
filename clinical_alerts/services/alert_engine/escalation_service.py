"""
Escalation Service - SLA sweep for unacknowledged alerts.

Runs on its own timer, independent of evaluation. An instance escalates when:
- status is PENDING or ACKNOWLEDGED
- sla_breach_time has passed (LOW alerts have none and never escalate)
- escalated_at is unset
- the rule did not opt out of escalation

escalated_at is claimed with a conditional UPDATE, so overlapping or repeated
sweeps escalate each instance exactly once.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinical_alerts.models.alert_models import AlertInstance

from .alert_manager import ACTOR_SLA, DedupeLockRegistry, append_audit_entry, emit_audit_log, get_lock_registry
from .enums import AlertStatus, Severity
from .utils import utcnow

logger = logging.getLogger(__name__)


ESCALATABLE_STATUSES = [AlertStatus.PENDING.value, AlertStatus.ACKNOWLEDGED.value]


@dataclass
class EscalationEvent:
    """Emitted once per escalated instance"""
    alert_instance_id: str
    escalation_level: int
    occurred_at: datetime
    severity: Severity
    enrollment_id: str
    from_status: str
    minutes_overdue: float


class EscalationService:
    """Service for SLA-driven alert escalation"""

    def __init__(self, db: Session, lock_registry: Optional[DedupeLockRegistry] = None):
        self.db = db
        self._lock_registry = lock_registry

    @property
    def locks(self) -> DedupeLockRegistry:
        if self._lock_registry is None:
            self._lock_registry = get_lock_registry()
        return self._lock_registry

    def _get_breached_alerts(self, now: datetime) -> List[AlertInstance]:
        return self.db.query(AlertInstance).filter(
            AlertInstance.status.in_(ESCALATABLE_STATUSES),
            AlertInstance.sla_breach_time.isnot(None),
            AlertInstance.sla_breach_time <= now,
            AlertInstance.escalated_at.is_(None),
            AlertInstance.escalation_enabled == True  # noqa: E712
        ).order_by(AlertInstance.sla_breach_time.asc()).all()

    async def sweep(self, now: Optional[datetime] = None) -> List[EscalationEvent]:
        """
        Escalate every SLA-breached instance.

        Safe to call at any frequency. Returns the events for instances this
        call escalated.
        """
        now = now or utcnow()
        try:
            candidates = self._get_breached_alerts(now)
        except SQLAlchemyError as e:
            logger.error(f"Error getting alerts for escalation: {e}")
            self.db.rollback()
            return []

        events = []
        for alert in candidates:
            async with self.locks.hold(alert.dedupe_key):
                event = self._escalate_alert(alert, now)
            if event is not None:
                events.append(event)

        if events:
            logger.info(f"Escalated {len(events)} alerts past SLA")
        return events

    def _escalate_alert(self, alert: AlertInstance, now: datetime) -> Optional[EscalationEvent]:
        alert_id = alert.id
        from_status = alert.status
        new_level = (alert.escalation_level or 0) + 1

        try:
            claimed = self.db.query(AlertInstance).filter(
                AlertInstance.id == alert_id,
                AlertInstance.escalated_at.is_(None),
                AlertInstance.status.in_(ESCALATABLE_STATUSES)
            ).update(
                {
                    AlertInstance.status: AlertStatus.ESCALATED.value,
                    AlertInstance.escalated_at: now,
                    AlertInstance.escalation_level: new_level,
                },
                synchronize_session=False
            )
            if claimed != 1:
                self.db.rollback()
                logger.debug(f"Alert {alert_id} already escalated or closed")
                return None

            overdue = (now - alert.sla_breach_time).total_seconds() / 60.0
            entry = append_audit_entry(
                self.db, alert, "ESCALATED", from_status, AlertStatus.ESCALATED.value, ACTOR_SLA, now,
                {
                    "escalation_level": new_level,
                    "sla_breach_time": alert.sla_breach_time.isoformat(),
                    "minutes_overdue": round(overdue, 1),
                }
            )
            self.db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error escalating alert {alert_id}: {e}")
            self.db.rollback()
            return None

        self.db.expire(alert)
        emit_audit_log(entry)
        logger.warning(f"Alert {alert_id} escalated to level {new_level} ({overdue:.1f} min past SLA)")

        return EscalationEvent(
            alert_instance_id=alert_id,
            escalation_level=new_level,
            occurred_at=now,
            severity=Severity(alert.severity),
            enrollment_id=alert.enrollment_id,
            from_status=from_status,
            minutes_overdue=overdue,
        )
