"""
Alert Instance Manager - deduplication, cooldown and the alert lifecycle.

State machine:

    PENDING -> ACKNOWLEDGED -> RESOLVED
    PENDING / ACKNOWLEDGED -> ESCALATED (SLA sweep)
    any non-terminal -> SNOOZED -> prior state (next trigger after snooze_until)
    any non-terminal -> RESOLVED / CANCELLED

At most one non-terminal instance exists per dedupe key. The decision for a
key runs under a per-key asyncio lock, and the store enforces the same
invariant through the unique active_dedupe_key column (set while the
instance is open, NULL once terminal).
"""

import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinical_alerts.core.logging import log_audit
from clinical_alerts.models.alert_models import AlertAuditEntry, AlertInstance

from .config_service import AlertConfigService
from .enums import NON_TERMINAL_STATUSES, AlertStatus, EvidenceStatus
from .rule_definitions import AlertRuleDefinition
from .rule_engine import TriggerEvent
from .utils import utcnow

logger = logging.getLogger(__name__)


ACTOR_EVALUATOR = "system/evaluator"
ACTOR_SLA = "system/SLA"
ACTOR_AUTO_RESOLVE = "system/auto-resolve"
ACTOR_RECONCILE = "system/reconcile"
ACTOR_SUPERSEDE = "system/supersede"
ACTOR_SNOOZE_EXPIRED = "system/snooze-expired"


ALLOWED_TRANSITIONS: Dict[AlertStatus, Tuple[AlertStatus, ...]] = {
    AlertStatus.PENDING: (
        AlertStatus.ACKNOWLEDGED, AlertStatus.ESCALATED, AlertStatus.SNOOZED,
        AlertStatus.RESOLVED, AlertStatus.CANCELLED,
    ),
    AlertStatus.ACKNOWLEDGED: (
        AlertStatus.ESCALATED, AlertStatus.SNOOZED, AlertStatus.RESOLVED, AlertStatus.CANCELLED,
    ),
    AlertStatus.ESCALATED: (
        AlertStatus.ACKNOWLEDGED, AlertStatus.SNOOZED, AlertStatus.RESOLVED, AlertStatus.CANCELLED,
    ),
    AlertStatus.SNOOZED: (AlertStatus.RESOLVED, AlertStatus.CANCELLED),
    AlertStatus.RESOLVED: (),
    AlertStatus.CANCELLED: (),
}


def allowed_transitions(status: str) -> List[str]:
    return [s.value for s in ALLOWED_TRANSITIONS[AlertStatus(status)]]


class AlertNotFoundError(LookupError):

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Alert instance {instance_id} not found")


class InvalidTransitionError(Exception):
    """Command is not valid for the instance's current state"""

    def __init__(self, instance_id: str, current_status: str, attempted: str):
        self.instance_id = instance_id
        self.current_status = current_status
        self.attempted = attempted
        self.allowed = allowed_transitions(current_status)
        super().__init__(
            f"Cannot move alert {instance_id} from {current_status} to {attempted}; "
            f"allowed: {self.allowed or 'none (terminal)'}"
        )


class SnoozeDurationError(ValueError):
    pass


class TriggerAction(str, Enum):
    CREATED = "created"
    SUPPRESSED = "suppressed"
    REACTIVATED = "reactivated"
    REPLAYED = "replayed"


@dataclass
class TriggerOutcome:
    """What handle_trigger did with a trigger event"""
    action: TriggerAction
    instance: Optional[AlertInstance]
    superseded: Optional[AlertInstance] = None

    @property
    def notify(self) -> bool:
        return self.action in (TriggerAction.CREATED, TriggerAction.REACTIVATED)


class DedupeLockRegistry:
    """Per-dedupe-key asyncio locks, dropped when nobody holds or waits on them"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            self._holders[key] = 0
        self._holders[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


_lock_registries: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, DedupeLockRegistry]" = weakref.WeakKeyDictionary()


def get_lock_registry() -> DedupeLockRegistry:
    """Lock registry shared by everything running on the current event loop"""
    loop = asyncio.get_running_loop()
    registry = _lock_registries.get(loop)
    if registry is None:
        registry = _lock_registries[loop] = DedupeLockRegistry()
    return registry


def append_audit_entry(
    db: Session,
    instance: AlertInstance,
    action: str,
    from_status: Optional[str],
    to_status: Optional[str],
    actor: str,
    now: datetime,
    details: Optional[Dict[str, Any]] = None
) -> AlertAuditEntry:
    """Stage an audit row; the caller commits"""
    entry = AlertAuditEntry(
        alert_instance_id=instance.id,
        action=action,
        from_status=from_status,
        to_status=to_status,
        actor=actor,
        details=details or {},
        created_at=now,
    )
    db.add(entry)
    return entry


def emit_audit_log(entry: AlertAuditEntry):
    log_audit(
        f"ALERT_{entry.action}",
        entry.actor,
        {
            "alert_instance_id": entry.alert_instance_id,
            "from_status": entry.from_status,
            "to_status": entry.to_status,
            **(entry.details or {}),
        }
    )


class AlertInstanceManager:
    """Owns every write to alert_instances except SLA escalation"""

    def __init__(
        self,
        db: Session,
        config_service: Optional[AlertConfigService] = None,
        lock_registry: Optional[DedupeLockRegistry] = None
    ):
        self.db = db
        self.config_service = config_service or AlertConfigService()
        self._lock_registry = lock_registry
        self._staged_audit: List[AlertAuditEntry] = []

    @property
    def locks(self) -> DedupeLockRegistry:
        if self._lock_registry is None:
            self._lock_registry = get_lock_registry()
        return self._lock_registry

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------

    def _audit(self, instance, action, from_status, to_status, actor, now, details=None):
        entry = append_audit_entry(self.db, instance, action, from_status, to_status, actor, now, details)
        self._staged_audit.append(entry)

    def _commit(self):
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            self._staged_audit = []
            raise
        staged, self._staged_audit = self._staged_audit, []
        for entry in staged:
            emit_audit_log(entry)

    def _set_status(
        self,
        instance: AlertInstance,
        target: AlertStatus,
        action: str,
        actor: str,
        now: datetime,
        details: Optional[Dict[str, Any]] = None
    ):
        from_status = instance.status
        instance.status = target.value
        if target.is_terminal:
            instance.active_dedupe_key = None
        self._audit(instance, action, from_status, target.value, actor, now, details)

    def _open_instances(self, dedupe_key: str) -> List[AlertInstance]:
        return self.db.query(AlertInstance).filter(
            AlertInstance.dedupe_key == dedupe_key,
            AlertInstance.status.in_(NON_TERMINAL_STATUSES)
        ).order_by(AlertInstance.triggered_at.asc(), AlertInstance.id.asc()).all()

    def _latest_trigger_time(self, dedupe_key: str) -> Optional[datetime]:
        return self.db.query(func.max(AlertInstance.last_triggered_at)).filter(
            AlertInstance.dedupe_key == dedupe_key
        ).scalar()

    def get_instance(self, instance_id: str) -> AlertInstance:
        instance = self.db.query(AlertInstance).filter(AlertInstance.id == instance_id).first()
        if instance is None:
            raise AlertNotFoundError(instance_id)
        return instance

    def get_audit_trail(self, instance_id: str) -> List[AlertAuditEntry]:
        return self.db.query(AlertAuditEntry).filter(
            AlertAuditEntry.alert_instance_id == instance_id
        ).order_by(AlertAuditEntry.created_at.asc(), AlertAuditEntry.id.asc()).all()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def handle_trigger(self, event: TriggerEvent, now: Optional[datetime] = None) -> TriggerOutcome:
        """
        Create, suppress or reactivate the instance for a trigger event.
        The whole read-decide-write step for the dedupe key is atomic.
        """
        now = now or utcnow()
        dedupe_key = event.rule.dedupe_key(event.enrollment_id)

        async with self.locks.hold(dedupe_key):
            try:
                return self._apply_trigger(event, dedupe_key, now)
            except IntegrityError:
                # Another process opened an instance for this key first
                self.db.rollback()
                self._staged_audit = []
                logger.warning(f"Concurrent open instance for {dedupe_key}; re-evaluating decision")
                return self._apply_trigger(event, dedupe_key, now)

    def _apply_trigger(self, event: TriggerEvent, dedupe_key: str, now: datetime) -> TriggerOutcome:
        open_instances = self._open_instances(dedupe_key)
        if len(open_instances) > 1:
            current = self._merge_duplicates(open_instances, now)
        else:
            current = open_instances[0] if open_instances else None

        if current is not None and current.status == AlertStatus.SNOOZED.value:
            if current.snooze_until is not None and now < current.snooze_until:
                self._touch(current, event.occurred_at)
                self._commit()
                logger.debug(f"Trigger for {dedupe_key} suppressed: snoozed until {current.snooze_until}")
                return TriggerOutcome(TriggerAction.SUPPRESSED, current)
            return self._reactivate(current, event, now)

        latest = self._latest_trigger_time(dedupe_key)
        if latest is not None and event.occurred_at <= latest:
            # Same evidence seen again on a later cycle
            if current is not None and current.cleared_since is not None:
                current.cleared_since = None
                self._commit()
            return TriggerOutcome(TriggerAction.REPLAYED, current)

        if current is not None:
            if event.occurred_at - current.last_triggered_at < event.rule.cooldown:
                self._touch(current, event.occurred_at)
                self._commit()
                logger.info(
                    f"Trigger for {dedupe_key} suppressed within cooldown "
                    f"(count={current.trigger_count})"
                )
                return TriggerOutcome(TriggerAction.SUPPRESSED, current)

            instance = self._create(event, dedupe_key, now, superseded=current)
            return TriggerOutcome(TriggerAction.CREATED, instance, superseded=current)

        instance = self._create(event, dedupe_key, now)
        return TriggerOutcome(TriggerAction.CREATED, instance)

    def _touch(self, instance: AlertInstance, occurred_at: datetime):
        if occurred_at > instance.last_triggered_at:
            instance.last_triggered_at = occurred_at
            instance.trigger_count = (instance.trigger_count or 0) + 1
        instance.cleared_since = None

    def _create(
        self,
        event: TriggerEvent,
        dedupe_key: str,
        now: datetime,
        superseded: Optional[AlertInstance] = None
    ) -> AlertInstance:
        rule = event.rule
        sla_window = self.config_service.get_sla_window(rule.severity)
        instance_id = str(uuid.uuid4())

        if superseded is not None:
            superseded.superseded_by = instance_id
            self._set_status(
                superseded, AlertStatus.CANCELLED, "SUPERSEDED", ACTOR_SUPERSEDE, now,
                {"superseded_by": instance_id}
            )
            # Release the unique key before the new row claims it
            self.db.flush()

        instance = AlertInstance(
            id=instance_id,
            rule_id=rule.id,
            enrollment_id=event.enrollment_id,
            patient_id=event.patient_id,
            metric_key=rule.metric_key,
            severity=rule.severity.value,
            status=AlertStatus.PENDING.value,
            dedupe_key=dedupe_key,
            active_dedupe_key=dedupe_key,
            message=event.message,
            evidence=event.evidence,
            notify_roles=list(rule.actions.notify),
            escalation_enabled=rule.actions.escalate,
            auto_resolve=rule.actions.auto_resolve,
            reminder=rule.actions.reminder,
            triggered_at=event.occurred_at,
            last_triggered_at=event.occurred_at,
            trigger_count=1,
            sla_breach_time=event.occurred_at + sla_window if sla_window is not None else None,
            escalation_level=0,
        )
        self.db.add(instance)
        self._audit(
            instance, "CREATED", None, AlertStatus.PENDING.value, ACTOR_EVALUATOR, now,
            {"rule_id": rule.id, "severity": rule.severity.value}
        )
        self._commit()

        logger.info(f"Created {rule.severity.value} alert {instance_id} for {dedupe_key}")
        return instance

    def _reactivate(self, instance: AlertInstance, event: TriggerEvent, now: datetime) -> TriggerOutcome:
        prior = AlertStatus(instance.snoozed_from_status or AlertStatus.PENDING.value)
        self._set_status(
            instance, prior, "REACTIVATED", ACTOR_SNOOZE_EXPIRED, now,
            {"snooze_until": instance.snooze_until.isoformat() if instance.snooze_until else None}
        )
        instance.snooze_until = None
        instance.snoozed_from_status = None
        self._touch(instance, event.occurred_at)
        self._commit()

        logger.info(f"Alert {instance.id} reactivated to {prior.value} after snooze")
        return TriggerOutcome(TriggerAction.REACTIVATED, instance)

    def _merge_duplicates(self, instances: List[AlertInstance], now: datetime) -> AlertInstance:
        """Keep the earliest open instance and cancel the others into it"""
        keeper, duplicates = instances[0], instances[1:]
        logger.warning(
            f"Data integrity: {len(instances)} open instances for dedupe key {keeper.dedupe_key}; "
            f"merging into {keeper.id}"
        )

        for duplicate in duplicates:
            keeper.trigger_count = (keeper.trigger_count or 0) + (duplicate.trigger_count or 0)
            if duplicate.last_triggered_at > keeper.last_triggered_at:
                keeper.last_triggered_at = duplicate.last_triggered_at
            duplicate.superseded_by = keeper.id
            self._set_status(
                duplicate, AlertStatus.CANCELLED, "RECONCILED", ACTOR_RECONCILE, now,
                {"merged_into": keeper.id}
            )
        self.db.flush()

        keeper.active_dedupe_key = keeper.dedupe_key
        self.db.flush()
        return keeper

    async def reconcile_duplicates(self, now: Optional[datetime] = None) -> int:
        """Sweep for dedupe keys with more than one open instance; returns instances merged away"""
        now = now or utcnow()
        keys = [
            row[0] for row in self.db.query(AlertInstance.dedupe_key).filter(
                AlertInstance.status.in_(NON_TERMINAL_STATUSES)
            ).group_by(AlertInstance.dedupe_key).having(func.count(AlertInstance.id) > 1).all()
        ]

        merged = 0
        for key in keys:
            async with self.locks.hold(key):
                open_instances = self._open_instances(key)
                if len(open_instances) > 1:
                    self._merge_duplicates(open_instances, now)
                    self._commit()
                    merged += len(open_instances) - 1
        return merged

    async def process_evaluation(
        self,
        rule: AlertRuleDefinition,
        enrollment_id: str,
        status: EvidenceStatus,
        now: Optional[datetime] = None
    ) -> Optional[AlertInstance]:
        """
        Auto-resolve bookkeeping for a non-triggering evaluation.

        The grace clock starts at the first not_met outcome and is cleared by
        the next trigger. insufficient_data leaves it untouched. Returns the
        instance when it was resolved.
        """
        if not rule.actions.auto_resolve or status != EvidenceStatus.NOT_MET:
            return None

        now = now or utcnow()
        dedupe_key = rule.dedupe_key(enrollment_id)
        async with self.locks.hold(dedupe_key):
            open_instances = self._open_instances(dedupe_key)
            if not open_instances or not open_instances[0].auto_resolve:
                return None
            instance = open_instances[0]

            if instance.cleared_since is None:
                instance.cleared_since = now

            grace = self.config_service.get_auto_resolve_grace()
            if now - instance.cleared_since < grace:
                self._commit()
                return None

            instance.resolved_at = now
            instance.resolved_by = ACTOR_AUTO_RESOLVE
            instance.resolution_notes = "Condition no longer met"
            self._set_status(
                instance, AlertStatus.RESOLVED, "RESOLVED", ACTOR_AUTO_RESOLVE, now,
                {"cleared_since": instance.cleared_since.isoformat()}
            )
            self._commit()

        logger.info(f"Alert {instance.id} auto-resolved")
        return instance

    # ------------------------------------------------------------------
    # Inbound commands
    # ------------------------------------------------------------------

    def _check_transition(self, instance: AlertInstance, target: AlertStatus):
        current = AlertStatus(instance.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(instance.id, current.value, target.value)

    async def _run_command(self, instance_id: str, target: AlertStatus, apply):
        instance = self.get_instance(instance_id)
        async with self.locks.hold(instance.dedupe_key):
            self.db.refresh(instance)
            self._check_transition(instance, target)
            apply(instance)
            self._commit()
        return instance

    async def acknowledge(self, instance_id: str, actor_id: str, now: Optional[datetime] = None) -> AlertInstance:
        now = now or utcnow()

        def apply(instance):
            instance.acknowledged_at = now
            instance.acknowledged_by = actor_id
            self._set_status(instance, AlertStatus.ACKNOWLEDGED, "ACKNOWLEDGED", actor_id, now)

        return await self._run_command(instance_id, AlertStatus.ACKNOWLEDGED, apply)

    async def resolve(
        self,
        instance_id: str,
        actor_id: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> AlertInstance:
        now = now or utcnow()

        def apply(instance):
            instance.resolved_at = now
            instance.resolved_by = actor_id
            instance.resolution_notes = notes
            self._set_status(instance, AlertStatus.RESOLVED, "RESOLVED", actor_id, now, {"notes": notes})

        return await self._run_command(instance_id, AlertStatus.RESOLVED, apply)

    async def snooze(
        self,
        instance_id: str,
        actor_id: str,
        duration_minutes: int,
        now: Optional[datetime] = None
    ) -> AlertInstance:
        now = now or utcnow()
        max_minutes = self.config_service.config.max_snooze_minutes
        if duration_minutes is None or duration_minutes <= 0 or duration_minutes > max_minutes:
            raise SnoozeDurationError(
                f"Snooze duration must be between 1 and {max_minutes} minutes, got {duration_minutes}"
            )

        def apply(instance):
            instance.snoozed_from_status = instance.status
            instance.snooze_until = now + timedelta(minutes=duration_minutes)
            self._set_status(
                instance, AlertStatus.SNOOZED, "SNOOZED", actor_id, now,
                {"duration_minutes": duration_minutes, "snooze_until": instance.snooze_until.isoformat()}
            )

        return await self._run_command(instance_id, AlertStatus.SNOOZED, apply)

    async def cancel(
        self,
        instance_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> AlertInstance:
        now = now or utcnow()

        def apply(instance):
            self._set_status(instance, AlertStatus.CANCELLED, "CANCELLED", actor_id, now, {"reason": reason})

        return await self._run_command(instance_id, AlertStatus.CANCELLED, apply)
