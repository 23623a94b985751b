"""
Condition Evaluator - pure evaluation of rule conditions over fetched observations.

Nothing here touches the store or the clock: callers pass the observations and
"now". A condition evaluates to one of three evidence tags:

- triggered: the comparison holds
- not_met: data was present and the comparison does not hold
- insufficient_data: nothing to compare against (never an error)

Multi-condition rules combine their conditions with AND.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .enums import EvidenceStatus, Operator, ValueType
from .rule_definitions import AlertRuleDefinition, RuleCondition
from .trend_analyzer import TrendResult, analyze_persistence, analyze_trend, daily_values

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Observation:
    """A metric value as read from the observation store"""
    metric_key: str
    value: Any
    recorded_at: datetime
    enrollment_id: Optional[str] = None


@dataclass
class ConditionResult:
    """Evidence for a single condition"""
    condition: str
    operator: Operator
    status: EvidenceStatus
    observed: Any = None
    expected: Any = None
    occurred_at: Optional[datetime] = None
    count: Optional[int] = None
    required: Optional[int] = None
    trend: Optional[TrendResult] = None
    detail: Optional[str] = None

    @property
    def triggered(self) -> bool:
        return self.status == EvidenceStatus.TRIGGERED

    def to_evidence(self) -> Dict[str, Any]:
        evidence = {
            "condition": self.condition,
            "operator": self.operator.value,
            "status": self.status.value,
            "observed": self.observed,
            "expected": self.expected,
        }
        if self.occurred_at is not None:
            evidence["occurredAt"] = self.occurred_at.isoformat()
        if self.count is not None:
            evidence["count"] = self.count
            evidence["required"] = self.required
        if self.trend is not None:
            evidence.update(self.trend.to_evidence())
        elif self.detail:
            evidence["detail"] = self.detail
        return evidence


@dataclass
class RuleEvaluation:
    """AND-combined outcome of every condition of a rule"""
    rule_id: str
    status: EvidenceStatus
    evaluated_at: datetime
    conditions: List[ConditionResult] = field(default_factory=list)
    enrollment_id: Optional[str] = None

    @property
    def triggered(self) -> bool:
        return self.status == EvidenceStatus.TRIGGERED

    @property
    def primary(self) -> ConditionResult:
        return self.conditions[0]

    @property
    def occurred_at(self) -> datetime:
        """Time of the latest evidence that made the rule true"""
        times = [c.occurred_at for c in self.conditions if c.occurred_at is not None]
        return max(times) if times else self.evaluated_at

    def to_evidence(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "evaluatedAt": self.evaluated_at.isoformat(),
            "conditions": [c.to_evidence() for c in self.conditions],
        }


def compare(operator: Operator, observed: Any, expected: Any) -> bool:
    """Apply a point-comparison operator"""
    if operator == Operator.GREATER_THAN:
        return observed > expected
    elif operator == Operator.GREATER_THAN_OR_EQUAL:
        return observed >= expected
    elif operator == Operator.LESS_THAN:
        return observed < expected
    elif operator == Operator.LESS_THAN_OR_EQUAL:
        return observed <= expected
    elif operator in (Operator.EQUAL, Operator.EQUALS):
        return _equal(observed, expected)
    elif operator == Operator.NOT_EQUAL:
        return not _equal(observed, expected)
    raise ValueError(f"{operator.value} is not a point comparison")


def _equal(observed: Any, expected: Any) -> bool:
    if isinstance(observed, (int, float)) and isinstance(expected, (int, float)):
        return math.isclose(observed, expected, rel_tol=1e-9, abs_tol=1e-9)
    return observed == expected


def lookback_start(rule: AlertRuleDefinition, condition: RuleCondition, now: datetime) -> Optional[datetime]:
    """
    Earliest recorded_at relevant to a condition.
    None means only the latest observation matters.
    """
    start = None
    window = rule.window_for(condition)
    if window is not None and condition.value_type != ValueType.DURATION:
        start = now - window
    if condition.consecutive_days:
        # N days ending yesterday, so a streak still counts before today's first reading
        first_day = now.date() - timedelta(days=condition.consecutive_days)
        day_start = datetime.combine(first_day, time.min)
        start = day_start if start is None else min(start, day_start)
    return start


def _coerce(condition: RuleCondition, raw: Any) -> Any:
    if raw is None:
        return None
    if condition.value_type == ValueType.CATEGORICAL:
        return str(raw).strip()
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if math.isnan(value):
        return None
    return condition.spec.normalize(value)


def _select(
    condition: RuleCondition,
    observations: Iterable[Observation],
    start: Optional[datetime],
    now: datetime
) -> List[Observation]:
    """In-window observations of the condition's metric, oldest first, with coerced values"""
    selected = []
    for obs in observations:
        if condition.metric_key is not None and obs.metric_key != condition.metric_key:
            continue
        if obs.recorded_at > now or (start is not None and obs.recorded_at < start):
            continue
        if condition.value_type == ValueType.DURATION:
            selected.append(obs)
            continue
        value = _coerce(condition, obs.value)
        if value is None:
            logger.debug(f"Skipping unusable {obs.metric_key} value {obs.value!r}")
            continue
        selected.append(Observation(obs.metric_key, value, obs.recorded_at, obs.enrollment_id))
    selected.sort(key=lambda o: o.recorded_at)
    return selected


def _expected(condition: RuleCondition) -> Any:
    if condition.value_type == ValueType.CATEGORICAL:
        return condition.value
    return condition.spec.normalize(condition.threshold)


def _evaluate_duration(condition: RuleCondition, observations: List[Observation], now: datetime) -> ConditionResult:
    if not observations:
        return ConditionResult(
            condition.condition, condition.operator, EvidenceStatus.INSUFFICIENT_DATA,
            expected=condition.threshold,
            detail=f"no observation of {condition.metric_key or 'any metric'}"
        )

    latest = observations[-1]
    elapsed_hours = (now - latest.recorded_at).total_seconds() / 3600.0
    if condition.unit == "days":
        observed = elapsed_hours / 24.0
        threshold_delta = timedelta(days=condition.threshold)
    else:
        observed = elapsed_hours
        threshold_delta = timedelta(hours=condition.threshold)

    met = compare(condition.operator, observed, condition.threshold)
    return ConditionResult(
        condition.condition, condition.operator,
        EvidenceStatus.TRIGGERED if met else EvidenceStatus.NOT_MET,
        observed=round(observed, 2),
        expected=condition.threshold,
        occurred_at=latest.recorded_at + threshold_delta,
        detail=f"last observation at {latest.recorded_at.isoformat()}"
    )


def _evaluate_multi_day(condition: RuleCondition, observations: List[Observation], now: datetime) -> ConditionResult:
    daily = daily_values((o.recorded_at, o.value) for o in observations)
    if condition.is_trend:
        result = analyze_trend(daily, condition.consecutive_days, condition.operator, now.date())
        expected = condition.consecutive_days
    else:
        expected = _expected(condition)
        result = analyze_persistence(
            daily,
            condition.consecutive_days,
            lambda v: compare(condition.operator, v, expected),
            now.date()
        )

    latest = observations[-1] if observations else None
    return ConditionResult(
        condition.condition, condition.operator, result.status,
        observed=[v for _, v in result.days],
        expected=expected,
        occurred_at=latest.recorded_at if latest else None,
        required=condition.consecutive_days,
        trend=result
    )


def _evaluate_occurrences(condition: RuleCondition, observations: List[Observation]) -> ConditionResult:
    expected = _expected(condition)
    if not observations:
        return ConditionResult(
            condition.condition, condition.operator, EvidenceStatus.INSUFFICIENT_DATA,
            expected=expected, count=0, required=condition.occurrences,
            detail="no observation in window"
        )

    qualifying = [o for o in observations if compare(condition.operator, o.value, expected)]
    count = len(qualifying)
    met = count >= condition.occurrences
    return ConditionResult(
        condition.condition, condition.operator,
        EvidenceStatus.TRIGGERED if met else EvidenceStatus.NOT_MET,
        observed=[o.value for o in qualifying],
        expected=expected,
        occurred_at=qualifying[-1].recorded_at if qualifying else None,
        count=count,
        required=condition.occurrences
    )


def _evaluate_latest(condition: RuleCondition, observations: List[Observation]) -> ConditionResult:
    expected = _expected(condition)
    if not observations:
        return ConditionResult(
            condition.condition, condition.operator, EvidenceStatus.INSUFFICIENT_DATA,
            expected=expected, detail="no observation in window"
        )

    latest = observations[-1]
    met = compare(condition.operator, latest.value, expected)
    return ConditionResult(
        condition.condition, condition.operator,
        EvidenceStatus.TRIGGERED if met else EvidenceStatus.NOT_MET,
        observed=latest.value,
        expected=expected,
        occurred_at=latest.recorded_at
    )


def evaluate_condition(
    rule: AlertRuleDefinition,
    condition: RuleCondition,
    observations: Iterable[Observation],
    now: datetime
) -> ConditionResult:
    """Evaluate one condition of a rule against already-fetched observations"""
    selected = _select(condition, observations, lookback_start(rule, condition, now), now)

    if condition.value_type == ValueType.DURATION:
        return _evaluate_duration(condition, selected, now)
    if condition.consecutive_days:
        return _evaluate_multi_day(condition, selected, now)
    if condition.occurrences:
        return _evaluate_occurrences(condition, selected)
    return _evaluate_latest(condition, selected)


def evaluate_rule(
    rule: AlertRuleDefinition,
    observations: Iterable[Observation],
    now: datetime,
    enrollment_id: Optional[str] = None
) -> RuleEvaluation:
    """Evaluate every condition of a rule; all must trigger (AND)"""
    observations = list(observations)
    results = [evaluate_condition(rule, c, observations, now) for c in rule.conditions]

    statuses = {r.status for r in results}
    if EvidenceStatus.NOT_MET in statuses:
        status = EvidenceStatus.NOT_MET
    elif EvidenceStatus.INSUFFICIENT_DATA in statuses:
        status = EvidenceStatus.INSUFFICIENT_DATA
    else:
        status = EvidenceStatus.TRIGGERED

    if status == EvidenceStatus.INSUFFICIENT_DATA:
        logger.debug(f"Rule {rule.id} enrollment {enrollment_id}: insufficient_data")

    return RuleEvaluation(
        rule_id=rule.id,
        status=status,
        evaluated_at=now,
        conditions=results,
        enrollment_id=enrollment_id
    )
