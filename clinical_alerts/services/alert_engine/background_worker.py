"""
Alert Engine Background Worker - Orchestrates the complete alert pipeline.

This worker runs two independent loops:
1. Evaluation: load rules -> evaluate active enrollments -> dedupe triggers
   into alert instances -> notify -> auto-resolve bookkeeping
2. Escalation: SLA sweep -> escalation notifications

Notification delivery runs in tracked background tasks so slow or failing
providers never delay the next evaluation cycle or escalation sweep.

Can be run as:
- Task inside the FastAPI lifespan
- Standalone worker thread (start_worker_in_thread)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from clinical_alerts.models.alert_models import AlertInstance

from .alert_manager import AlertInstanceManager, TriggerAction
from .condition_registry import ConditionRegistry
from .config_service import AlertConfigService
from .data_sources import EnrollmentRepository, RecipientDirectory, RuleRepository
from .enums import EvidenceStatus, NotificationEventType
from .escalation_service import EscalationService
from .notification_service import AlertSnapshot, NotificationDispatcher, NotificationRequest
from .rule_engine import RuleEvaluationOrchestrator
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class EvaluationCycleSummary:
    """Counts from one evaluation cycle"""
    enrollments: int = 0
    rules_loaded: int = 0
    rules_rejected: Dict[str, List[str]] = field(default_factory=dict)
    triggers: int = 0
    created: int = 0
    suppressed: int = 0
    reactivated: int = 0
    auto_resolved: int = 0
    reconciled: int = 0
    skipped_rules: int = 0
    failed_triggers: int = 0


class AlertEngineWorker:
    """Background worker that orchestrates the Alert Engine pipeline"""

    def __init__(
        self,
        db_session_factory,
        dispatcher: Optional[NotificationDispatcher] = None,
        config_service: Optional[AlertConfigService] = None,
        registry: Optional[ConditionRegistry] = None
    ):
        """
        Initialize the worker.

        Args:
            db_session_factory: Callable that returns a database session
            dispatcher: Notification dispatcher; defaults to SES/Twilio channels
            config_service: Engine policy configuration
            registry: Condition registry used to validate rules
        """
        self.db_session_factory = db_session_factory
        self.config_service = config_service or AlertConfigService()
        self.dispatcher = dispatcher or NotificationDispatcher(
            session_factory=db_session_factory,
            config_service=self.config_service
        )
        self.registry = registry
        self.running = False
        self._dispatch_tasks: Set[asyncio.Task] = set()

    async def start(self):
        """Start the background worker"""
        self.running = True
        logger.info("Alert Engine Worker starting...")

        await asyncio.gather(
            self._evaluation_loop(),
            self._escalation_check_loop()
        )

    async def stop(self, timeout: float = 30.0):
        """Stop the background worker, letting in-flight notifications finish"""
        self.running = False
        logger.info("Alert Engine Worker stopping...")
        await self.drain(timeout)

    async def drain(self, timeout: Optional[float] = None):
        """Wait for scheduled notification deliveries"""
        if not self._dispatch_tasks:
            return
        done, pending = await asyncio.wait(list(self._dispatch_tasks), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} notification deliveries still running")

    def _schedule_dispatch(self, request: NotificationRequest):
        task = asyncio.create_task(self._dispatch(request))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def _dispatch(self, request: NotificationRequest):
        try:
            await self.dispatcher.dispatch(request)
        except Exception as e:
            logger.error(f"Notification dispatch failed for alert {request.alert.id}: {e}")

    async def _evaluation_loop(self):
        """Periodically evaluate every active enrollment"""
        while self.running:
            try:
                await self.run_evaluation_cycle()
            except Exception as e:
                logger.error(f"Error in evaluation cycle: {e}")
            await asyncio.sleep(self.config_service.config.evaluation_interval_seconds)

    async def _escalation_check_loop(self):
        """Periodically check for alerts that need escalation"""
        while self.running:
            try:
                await self.run_escalation_check()
            except Exception as e:
                logger.error(f"Error in escalation check: {e}")
            await asyncio.sleep(self.config_service.config.escalation_check_interval_seconds)

    async def run_evaluation_cycle(self, now: Optional[datetime] = None) -> EvaluationCycleSummary:
        """Run one full evaluation pass"""
        now = now or utcnow()
        summary = EvaluationCycleSummary()
        db = self.db_session_factory()

        try:
            report = RuleRepository(db, self.registry).load_active_rules(
                self.config_service.get_default_cooldown()
            )
            summary.rules_loaded = report.loaded_count
            summary.rules_rejected = report.rejected

            enrollments = EnrollmentRepository(db).list_active()
            summary.enrollments = len(enrollments)

            manager = AlertInstanceManager(db, self.config_service)
            summary.reconciled = await manager.reconcile_duplicates(now)

            orchestrator = RuleEvaluationOrchestrator(db, self.config_service)
            results = await orchestrator.evaluate_all(enrollments, report.rules, now)
            directory = RecipientDirectory(db)

            for result in results:
                summary.skipped_rules += len(result.skipped_rules)

                for trigger in result.triggers:
                    summary.triggers += 1
                    try:
                        outcome = await manager.handle_trigger(trigger, now)
                    except Exception as e:
                        summary.failed_triggers += 1
                        logger.error(f"Error handling trigger {trigger.rule_id}/{trigger.enrollment_id}: {e}")
                        continue

                    if outcome.action == TriggerAction.CREATED:
                        summary.created += 1
                    elif outcome.action == TriggerAction.REACTIVATED:
                        summary.reactivated += 1
                    else:
                        summary.suppressed += 1

                    if outcome.notify:
                        self._notify_new_alert(directory, outcome.instance)

                for rule in result.outcomes(EvidenceStatus.NOT_MET):
                    try:
                        resolved = await manager.process_evaluation(
                            rule, result.enrollment.id, EvidenceStatus.NOT_MET, now
                        )
                    except Exception as e:
                        logger.error(f"Error in auto-resolve for {rule.id}/{result.enrollment.id}: {e}")
                        continue
                    if resolved is not None:
                        summary.auto_resolved += 1

            logger.info(
                f"Evaluation cycle: {summary.enrollments} enrollments, {summary.triggers} triggers, "
                f"{summary.created} created, {summary.suppressed} suppressed, "
                f"{summary.auto_resolved} auto-resolved"
            )
            return summary

        finally:
            db.close()

    async def run_escalation_check(self, now: Optional[datetime] = None) -> int:
        """Run one SLA sweep and notify escalation recipients"""
        db = self.db_session_factory()

        try:
            events = await EscalationService(db).sweep(now)
            directory = RecipientDirectory(db)
            config = self.config_service.config

            for event in events:
                instance = db.query(AlertInstance).filter(AlertInstance.id == event.alert_instance_id).first()
                if instance is None:
                    continue
                roles = list(config.escalation_roles)
                for role in instance.notify_roles or config.default_notify_roles:
                    if role not in roles:
                        roles.append(role)

                self._schedule_dispatch(NotificationRequest(
                    alert=AlertSnapshot.from_instance(instance),
                    event_type=NotificationEventType.ESCALATION,
                    recipients=directory.resolve(instance.enrollment_id, roles)
                ))

            return len(events)

        finally:
            db.close()

    def _notify_new_alert(self, directory: RecipientDirectory, instance: AlertInstance):
        config = self.config_service.config
        snapshot = AlertSnapshot.from_instance(instance)

        self._schedule_dispatch(NotificationRequest(
            alert=snapshot,
            event_type=NotificationEventType.NEW_ALERT,
            recipients=directory.resolve(instance.enrollment_id, instance.notify_roles or config.default_notify_roles)
        ))

        if instance.reminder:
            self._schedule_dispatch(NotificationRequest(
                alert=snapshot,
                event_type=NotificationEventType.REMINDER,
                recipients=directory.resolve(instance.enrollment_id, [config.reminder_role])
            ))


def start_worker_in_thread(db_session_factory):
    """
    Start the Alert Engine Worker in a background thread.
    Useful for embedding in processes that do not run an event loop.
    """
    import threading

    def run_worker():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

        worker = AlertEngineWorker(db_session_factory)
        loop.run_until_complete(worker.start())

    thread = threading.Thread(target=run_worker, daemon=True)
    thread.start()
    logger.info("Alert Engine Worker thread started")
    return thread
