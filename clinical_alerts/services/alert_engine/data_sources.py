"""
Store access for the evaluation pipeline: active enrollments, rule records,
metric observations and care-team contacts.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinical_alerts.models.alert_models import (
    AlertRuleRecord,
    CareTeamContact,
    Enrollment,
    MetricObservation,
)

from .condition_evaluator import Observation
from .condition_registry import ConditionRegistry
from .notification_service import Recipient
from .rule_definitions import RuleLoadReport, load_rules

logger = logging.getLogger(__name__)


class ObservationFetchError(Exception):
    """Observation store stayed unavailable after retries"""


@dataclass
class EnrollmentContext:
    """What the evaluator needs to know about an enrollment"""
    id: str
    patient_id: str
    clinician_id: Optional[str] = None
    condition_preset_id: Optional[str] = None


class EnrollmentRepository:

    def __init__(self, db: Session):
        self.db = db

    def list_active(self) -> List[EnrollmentContext]:
        rows = self.db.query(Enrollment).filter(Enrollment.status == "ACTIVE").all()
        return [
            EnrollmentContext(
                id=row.id,
                patient_id=row.patient_id,
                clinician_id=row.clinician_id,
                condition_preset_id=row.condition_preset_id,
            )
            for row in rows
        ]


class RuleRepository:
    """Reads authored rules; the engine never writes them"""

    def __init__(self, db: Session, registry: Optional[ConditionRegistry] = None):
        self.db = db
        self.registry = registry

    def load_active_rules(self, default_cooldown: Optional[timedelta] = None) -> RuleLoadReport:
        records = self.db.query(AlertRuleRecord).filter(AlertRuleRecord.is_active == True).all()  # noqa: E712

        raw_rules = []
        for record in records:
            raw = dict(record.definition or {})
            raw.setdefault("id", record.id)
            raw.setdefault("name", record.name)
            if record.description:
                raw.setdefault("description", record.description)
            if record.condition_preset_id:
                raw.setdefault("conditionPresetId", record.condition_preset_id)
            raw_rules.append(raw)

        return load_rules(raw_rules, self.registry, default_cooldown)


class ObservationRepository:
    """Bounded reads of recent metric observations with retry on store errors"""

    def __init__(self, db: Session, max_attempts: int = 3, backoff_seconds: float = 0.5):
        self.db = db
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    def _query(
        self,
        enrollment_id: str,
        metric_key: Optional[str],
        since: Optional[datetime],
        until: datetime
    ) -> List[Observation]:
        query = self.db.query(MetricObservation).filter(
            MetricObservation.enrollment_id == enrollment_id,
            MetricObservation.recorded_at <= until
        )
        if metric_key is not None:
            query = query.filter(MetricObservation.metric_key == metric_key)

        if since is None:
            # Only the latest value matters
            rows = query.order_by(MetricObservation.recorded_at.desc()).limit(1).all()
        else:
            rows = query.filter(MetricObservation.recorded_at >= since).order_by(
                MetricObservation.recorded_at.asc()
            ).all()

        return [
            Observation(
                metric_key=row.metric_key,
                value=row.value_numeric if row.value_numeric is not None else row.value_text,
                recorded_at=row.recorded_at,
                enrollment_id=row.enrollment_id,
            )
            for row in rows
        ]

    async def fetch(
        self,
        enrollment_id: str,
        metric_key: Optional[str],
        since: Optional[datetime],
        until: datetime
    ) -> List[Observation]:
        """
        Observations of one metric (or any metric when metric_key is None)
        recorded in [since, until]. since=None returns only the latest one.
        """
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._query(enrollment_id, metric_key, since, until)
            except SQLAlchemyError as e:
                last_error = e
                self.db.rollback()
                logger.warning(
                    f"Observation fetch attempt {attempt}/{self.max_attempts} failed "
                    f"for enrollment {enrollment_id}: {e}"
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        raise ObservationFetchError(
            f"Could not fetch {metric_key or 'observations'} for enrollment {enrollment_id}: {last_error}"
        )


class RecipientDirectory:
    """Resolves notify roles to contacts for an enrollment"""

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, enrollment_id: str, roles: Sequence[str]) -> List[Recipient]:
        if not roles:
            return []

        rows = self.db.query(CareTeamContact).filter(
            CareTeamContact.role.in_(list(roles)),
            or_(
                CareTeamContact.enrollment_id == enrollment_id,
                CareTeamContact.enrollment_id.is_(None)
            )
        ).order_by(CareTeamContact.id).all()

        recipients = []
        for role in roles:
            matches = [r for r in rows if r.role == role]
            # Enrollment-specific contacts win over organisation-wide ones
            scoped = [r for r in matches if r.enrollment_id == enrollment_id]
            for row in scoped or matches:
                recipients.append(Recipient(
                    role=row.role,
                    recipient_id=str(row.id),
                    name=row.name,
                    email=row.email,
                    phone=row.phone,
                ))
            if not matches:
                logger.warning(f"No contact for role '{role}' on enrollment {enrollment_id}")
        return recipients
