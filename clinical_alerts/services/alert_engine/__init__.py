"""
Alert Engine Service Package - Clinical metric alerting for enrolled patients.

Components:
1. ConditionRegistry - Catalog of monitorable conditions and their operators
2. Rule definitions - Parsing and load-time validation of authored rules
3. Condition evaluator / Trend analyzer - Pure evaluation over fetched observations
4. RuleEvaluationOrchestrator - Concurrent per-enrollment evaluation
5. AlertInstanceManager - Dedupe, cooldown and the alert lifecycle
6. EscalationService - Idempotent SLA escalation sweep
7. NotificationDispatcher - Multi-channel delivery (Email, SMS, Phone call)
8. AlertConfigService - Admin-configurable thresholds and policies
9. AlertEngineWorker - Background worker running evaluation and escalation loops
"""

from .condition_registry import ConditionRegistry, get_condition_registry
from .rule_definitions import AlertRuleDefinition, RuleValidationError, parse_rule, load_rules
from .rule_engine import RuleEvaluationOrchestrator, TriggerEvent
from .alert_manager import AlertInstanceManager, InvalidTransitionError, AlertNotFoundError
from .escalation_service import EscalationService, EscalationEvent
from .notification_service import NotificationDispatcher
from .config_service import AlertConfigService
from .background_worker import AlertEngineWorker, start_worker_in_thread

__all__ = [
    'ConditionRegistry',
    'get_condition_registry',
    'AlertRuleDefinition',
    'RuleValidationError',
    'parse_rule',
    'load_rules',
    'RuleEvaluationOrchestrator',
    'TriggerEvent',
    'AlertInstanceManager',
    'InvalidTransitionError',
    'AlertNotFoundError',
    'EscalationService',
    'EscalationEvent',
    'NotificationDispatcher',
    'AlertConfigService',
    'AlertEngineWorker',
    'start_worker_in_thread'
]
