"""
Rule Evaluation Orchestrator - evaluates active rules for every enrollment.

Per cycle:
1. Select the rules that apply to each enrollment (preset-scoped or global)
2. Fetch the bounded observation window each rule needs
3. Evaluate the rule (pure) and emit a TriggerEvent when it holds

Enrollments are evaluated concurrently, bounded by the configured pool size.
A store failure skips only the affected rule for this cycle.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from .condition_evaluator import Observation, RuleEvaluation, evaluate_rule, lookback_start
from .config_service import AlertConfigService
from .data_sources import EnrollmentContext, ObservationFetchError, ObservationRepository
from .enums import EvidenceStatus, ValueType
from .rule_definitions import AlertRuleDefinition
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class TriggerEvent:
    """A rule held for an enrollment; handed to the alert instance manager"""
    rule: AlertRuleDefinition
    enrollment_id: str
    evidence: Dict[str, Any]
    occurred_at: datetime
    patient_id: Optional[str] = None
    message: str = ""

    @property
    def rule_id(self) -> str:
        return self.rule.id


@dataclass
class EnrollmentEvaluation:
    """Everything one enrollment's evaluation produced this cycle"""
    enrollment: EnrollmentContext
    evaluations: List[Tuple[AlertRuleDefinition, RuleEvaluation]] = field(default_factory=list)
    triggers: List[TriggerEvent] = field(default_factory=list)
    skipped_rules: Dict[str, str] = field(default_factory=dict)

    def outcomes(self, status: EvidenceStatus) -> List[AlertRuleDefinition]:
        return [rule for rule, evaluation in self.evaluations if evaluation.status == status]


def _format_value(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def build_alert_message(rule: AlertRuleDefinition, evaluation: RuleEvaluation) -> str:
    """'<rule name>: <metric> is <value><unit>'"""
    condition = rule.primary
    result = evaluation.primary
    observed = result.observed

    if condition.value_type == ValueType.DURATION:
        text = f"{_format_value(observed)} {condition.unit} since last observation"
    elif result.count is not None:
        text = f"{_format_value(result.expected)} ({result.count} times)"
    else:
        if isinstance(observed, list):
            observed = observed[-1] if observed else None
        if condition.value_type == ValueType.PERCENTAGE and isinstance(observed, (int, float)):
            text = f"{observed * 100:g}%"
        else:
            unit = getattr(condition.spec, "unit", None)
            text = _format_value(observed) + (f" {unit}" if unit else "")

    return f"{rule.name}: {rule.metric_key} is {text}"


class RuleEvaluationOrchestrator:
    """Runs the evaluator across enrollments and collects trigger events"""

    def __init__(
        self,
        db: Session,
        config_service: Optional[AlertConfigService] = None,
        observations: Optional[ObservationRepository] = None
    ):
        self.db = db
        self.config_service = config_service or AlertConfigService()
        config = self.config_service.config
        self.observations = observations or ObservationRepository(
            db,
            max_attempts=config.fetch_max_attempts,
            backoff_seconds=config.fetch_backoff_seconds
        )

    async def _fetch_for_rule(
        self,
        enrollment_id: str,
        rule: AlertRuleDefinition,
        now: datetime
    ) -> List[Observation]:
        """Union of the observation windows every condition of the rule needs"""
        requests = []
        for condition in rule.conditions:
            request = (condition.metric_key, lookback_start(rule, condition, now))
            if request not in requests:
                requests.append(request)

        observations: List[Observation] = []
        for metric_key, since in requests:
            observations.extend(await self.observations.fetch(enrollment_id, metric_key, since, now))
        return observations

    async def evaluate_enrollment(
        self,
        enrollment: EnrollmentContext,
        rules: Sequence[AlertRuleDefinition],
        now: Optional[datetime] = None
    ) -> EnrollmentEvaluation:
        now = now or utcnow()
        result = EnrollmentEvaluation(enrollment=enrollment)

        for rule in rules:
            if not rule.applies_to(enrollment.condition_preset_id):
                continue

            try:
                observations = await self._fetch_for_rule(enrollment.id, rule, now)
            except ObservationFetchError as e:
                logger.warning(f"Skipping rule {rule.id} for enrollment {enrollment.id} this cycle: {e}")
                result.skipped_rules[rule.id] = str(e)
                continue

            evaluation = evaluate_rule(rule, observations, now, enrollment_id=enrollment.id)
            result.evaluations.append((rule, evaluation))

            if evaluation.triggered:
                result.triggers.append(TriggerEvent(
                    rule=rule,
                    enrollment_id=enrollment.id,
                    evidence=evaluation.to_evidence(),
                    occurred_at=evaluation.occurred_at,
                    patient_id=enrollment.patient_id,
                    message=build_alert_message(rule, evaluation)
                ))
                logger.info(f"Rule {rule.id} triggered for enrollment {enrollment.id}")

        return result

    async def evaluate_all(
        self,
        enrollments: Sequence[EnrollmentContext],
        rules: Sequence[AlertRuleDefinition],
        now: Optional[datetime] = None
    ) -> List[EnrollmentEvaluation]:
        """Evaluate enrollments concurrently; one failing enrollment does not abort the rest"""
        now = now or utcnow()
        semaphore = asyncio.Semaphore(max(1, self.config_service.config.evaluation_concurrency))

        async def run(enrollment: EnrollmentContext) -> EnrollmentEvaluation:
            async with semaphore:
                return await self.evaluate_enrollment(enrollment, rules, now)

        outcomes = await asyncio.gather(*(run(e) for e in enrollments), return_exceptions=True)

        results = []
        for enrollment, outcome in zip(enrollments, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"Evaluation failed for enrollment {enrollment.id}: {outcome}")
                continue
            results.append(outcome)
        return results
