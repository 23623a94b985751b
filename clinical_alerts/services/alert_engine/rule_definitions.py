"""
Alert Rule Definitions - parsing and load-time validation of authored rules.

Rules are authored elsewhere and arrive as camelCase JSON records:

    {
        "id": "pain-high",
        "name": "High pain",
        "condition": "pain_scale_0_10",
        "operator": "greater_than_or_equal",
        "threshold": 8,
        "severity": "HIGH",
        "cooldown": "1h",
        "actions": {"notify": ["clinician"], "escalate": true}
    }

Condition fields may also be nested under "conditions" (rule templates) or
"expression" (rule builder drafts). Every problem found is collected into a
single RuleValidationError so authors see all of them at once. A rule that
fails validation is excluded from evaluation; it never fails at evaluation time.
"""

import logging
import re
import string
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .condition_registry import ConditionRegistry, ConditionSpec, get_condition_registry
from .enums import Operator, Severity, ValueType

logger = logging.getLogger(__name__)


DEFAULT_DEDUPE_KEY_TEMPLATE = "{ruleId}:{enrollmentId}:{metricKey}"
TEMPLATE_FIELDS = {"ruleId", "enrollmentId", "metricKey", "rule_id", "enrollment_id", "metric_key"}

OPERATOR_ALIASES = {
    "gt": Operator.GREATER_THAN,
    ">": Operator.GREATER_THAN,
    "gte": Operator.GREATER_THAN_OR_EQUAL,
    ">=": Operator.GREATER_THAN_OR_EQUAL,
    "lt": Operator.LESS_THAN,
    "<": Operator.LESS_THAN,
    "lte": Operator.LESS_THAN_OR_EQUAL,
    "<=": Operator.LESS_THAN_OR_EQUAL,
    "eq": Operator.EQUAL,
    "==": Operator.EQUAL,
    "neq": Operator.NOT_EQUAL,
    "!=": Operator.NOT_EQUAL,
    "not_equals": Operator.NOT_EQUAL,
}

_DURATION_PATTERN = re.compile(
    r'^\s*(\d+(?:\.\d+)?)\s*(m|min|mins|minutes?|h|hr|hrs|hours?|d|days?|w|weeks?)\s*$',
    re.IGNORECASE
)


class RuleValidationError(Exception):
    """A rule definition is malformed; carries every error found"""

    def __init__(self, rule_id: str, errors: List[str]):
        self.rule_id = rule_id
        self.errors = list(errors)
        super().__init__(f"Rule '{rule_id}' is invalid: " + "; ".join(self.errors))


def parse_duration(raw: Union[str, int, float, timedelta]) -> timedelta:
    """
    Parse "30m", "24h", "7d", "2w" into a timedelta.
    Bare numbers are minutes.
    """
    if isinstance(raw, timedelta):
        return raw
    if isinstance(raw, bool):
        raise ValueError(f"Invalid duration: {raw!r}")
    if isinstance(raw, (int, float)):
        if raw < 0:
            raise ValueError(f"Duration must not be negative: {raw!r}")
        return timedelta(minutes=raw)

    match = _DURATION_PATTERN.match(str(raw or ""))
    if not match:
        raise ValueError(f"Invalid duration: {raw!r}")
    amount = float(match.group(1))
    unit = match.group(2).lower()
    if unit.startswith("m"):
        return timedelta(minutes=amount)
    if unit.startswith("h"):
        return timedelta(hours=amount)
    if unit.startswith("d"):
        return timedelta(days=amount)
    return timedelta(weeks=amount)


def parse_operator(raw: Any) -> Operator:
    text = str(raw or "").strip().lower()
    if text in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[text]
    return Operator(text)


@dataclass(frozen=True)
class RuleActions:
    """What happens when a rule triggers"""
    notify: Tuple[str, ...] = ("clinician",)
    escalate: bool = True
    reminder: bool = False
    auto_resolve: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], errors: List[str]) -> "RuleActions":
        data = data or {}
        if not isinstance(data, dict):
            errors.append("actions must be an object")
            return cls()

        notify = data.get("notify", ["clinician"])
        if isinstance(notify, str):
            notify = [notify]
        if not isinstance(notify, (list, tuple)) or not all(isinstance(r, str) and r for r in notify):
            errors.append("actions.notify must be a list of recipient roles")
            notify = ["clinician"]

        auto_resolve = data.get("autoResolve", data.get("auto_resolve", False))
        return cls(
            notify=tuple(notify),
            escalate=bool(data.get("escalate", True)),
            reminder=bool(data.get("reminder", False)),
            auto_resolve=bool(auto_resolve),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notify": list(self.notify),
            "escalate": self.escalate,
            "reminder": self.reminder,
            "autoResolve": self.auto_resolve,
        }


@dataclass(frozen=True)
class RuleCondition:
    """One comparison of a rule, bound to its registered condition spec"""
    condition: str
    operator: Operator
    spec: ConditionSpec = field(compare=False, repr=False)
    threshold: Optional[float] = None
    value: Optional[str] = None
    time_window: Optional[timedelta] = None
    occurrences: Optional[int] = None
    consecutive_days: Optional[int] = None
    unit: Optional[str] = None
    # Observed metric. For duration conditions None means "any metric".
    metric_key: Optional[str] = None

    @property
    def value_type(self) -> ValueType:
        return self.spec.value_type

    @property
    def is_trend(self) -> bool:
        return self.operator.is_trend

    @property
    def is_persistence(self) -> bool:
        """Non-trend comparison that must hold on consecutive days"""
        return not self.operator.is_trend and bool(self.consecutive_days)

    def describe(self) -> Dict[str, Any]:
        data = {"condition": self.condition, "operator": self.operator.value}
        if self.threshold is not None:
            data["threshold"] = self.threshold
        if self.value is not None:
            data["value"] = self.value
        if self.consecutive_days:
            data["consecutiveDays"] = self.consecutive_days
        if self.occurrences:
            data["occurrences"] = self.occurrences
        if self.unit:
            data["unit"] = self.unit
        return data


@dataclass(frozen=True)
class AlertRuleDefinition:
    """Validated, immutable rule configuration"""
    id: str
    name: str
    severity: Severity
    conditions: Tuple[RuleCondition, ...]
    cooldown: timedelta
    dedupe_key_template: str = DEFAULT_DEDUPE_KEY_TEMPLATE
    actions: RuleActions = field(default_factory=RuleActions)
    window: Optional[timedelta] = None
    description: Optional[str] = None
    condition_preset_id: Optional[str] = None

    @property
    def primary(self) -> RuleCondition:
        return self.conditions[0]

    @property
    def metric_key(self) -> str:
        return self.primary.metric_key or self.primary.condition

    def window_for(self, condition: RuleCondition) -> Optional[timedelta]:
        """Condition lookback, falling back to the rule-level window"""
        return condition.time_window or self.window

    def dedupe_key(self, enrollment_id: str) -> str:
        return self.dedupe_key_template.format(
            ruleId=self.id,
            enrollmentId=enrollment_id,
            metricKey=self.metric_key,
            rule_id=self.id,
            enrollment_id=enrollment_id,
            metric_key=self.metric_key,
        )

    def applies_to(self, condition_preset_id: Optional[str]) -> bool:
        """Global rules (no preset) apply to every enrollment"""
        return self.condition_preset_id is None or self.condition_preset_id == condition_preset_id


@dataclass
class RuleLoadReport:
    """Outcome of loading a batch of rule records"""
    rules: List[AlertRuleDefinition] = field(default_factory=list)
    rejected: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def loaded_count(self) -> int:
        return len(self.rules)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loaded": [r.id for r in self.rules],
            "rejected": self.rejected,
        }


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _condition_body(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Condition fields live at the top level or nested in 'conditions'/'expression'"""
    for key in ("conditions", "expression"):
        nested = raw.get(key)
        if isinstance(nested, dict):
            return nested
    return raw


def _optional_duration(raw: Any, label: str, errors: List[str]) -> Optional[timedelta]:
    if raw is None or raw == "":
        return None
    try:
        return parse_duration(raw)
    except ValueError as e:
        errors.append(f"{label}: {e}")
        return None


def _optional_int(raw: Any, label: str, errors: List[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        errors.append(f"{label} must be an integer, got {raw!r}")
        return None
    if value != float(raw):
        errors.append(f"{label} must be an integer, got {raw!r}")
        return None
    return value


def _parse_condition(
    data: Dict[str, Any],
    registry: ConditionRegistry,
    label: str,
    errors: List[str]
) -> Optional[RuleCondition]:
    if not isinstance(data, dict):
        errors.append(f"{label}: must be an object")
        return None

    key = _first(data, "condition", "metricKey", "metric_key")
    if not key:
        errors.append(f"{label}: condition is required")
        return None
    spec = registry.get(key)
    if spec is None:
        errors.append(f"{label}: unknown condition '{key}'")
        return None

    try:
        operator = parse_operator(data.get("operator"))
    except ValueError:
        errors.append(f"{label}: unknown operator '{data.get('operator')}'")
        return None

    local_errors: List[str] = []
    threshold = None
    raw_threshold = data.get("threshold")
    if raw_threshold is not None and raw_threshold != "":
        try:
            threshold = float(raw_threshold)
        except (TypeError, ValueError):
            local_errors.append(f"threshold must be numeric, got {raw_threshold!r}")

    value = data.get("value")
    if value is not None:
        value = str(value)

    if spec.value_type == ValueType.DURATION:
        metric_key = _first(data, "metricKey", "metric_key") if data.get("condition") else None
        unit = data.get("unit") or "hours"
    else:
        metric_key = _first(data, "metricKey", "metric_key") or key
        unit = data.get("unit")

    condition = RuleCondition(
        condition=key,
        operator=operator,
        spec=spec,
        threshold=threshold,
        value=value,
        time_window=_optional_duration(_first(data, "timeWindow", "time_window"), "timeWindow", local_errors),
        occurrences=_optional_int(data.get("occurrences"), "occurrences", local_errors),
        consecutive_days=_optional_int(
            _first(data, "consecutiveDays", "consecutive_days"), "consecutiveDays", local_errors
        ),
        unit=unit,
        metric_key=metric_key,
    )
    if not local_errors:
        local_errors.extend(spec.validate(condition))
    errors.extend(f"{label}: {e}" for e in local_errors)
    return condition


def validate_dedupe_template(template: str) -> List[str]:
    errors = []
    try:
        parsed = list(string.Formatter().parse(template))
    except ValueError as e:
        return [f"dedupeKeyTemplate is malformed: {e}"]
    for _, field_name, _, _ in parsed:
        if field_name is None:
            continue
        if field_name not in TEMPLATE_FIELDS:
            errors.append(f"dedupeKeyTemplate has unknown placeholder '{{{field_name}}}'")
    return errors


def parse_rule(
    raw: Dict[str, Any],
    registry: Optional[ConditionRegistry] = None,
    default_cooldown: Optional[timedelta] = None
) -> AlertRuleDefinition:
    """Parse and validate one rule record; raises RuleValidationError"""
    registry = registry or get_condition_registry()
    errors: List[str] = []

    rule_id = str(_first(raw, "id", "ruleId", "rule_id") or "").strip()
    if not rule_id:
        errors.append("rule id is required")

    try:
        severity = Severity.parse(raw.get("severity"))
    except ValueError:
        errors.append(f"unknown severity '{raw.get('severity')}'")
        severity = None

    body = _condition_body(raw)
    conditions = []
    primary = _parse_condition(body, registry, "condition", errors)
    if primary is not None:
        conditions.append(primary)

    logic = str(_first(body, "logic") or _first(raw, "logic") or "AND").upper()
    if logic != "AND":
        errors.append(f"logic '{logic}' is not supported; multi-condition rules are AND-only")

    additional = _first(body, "additionalConditions", "additional_conditions") or []
    if not isinstance(additional, list):
        errors.append("additionalConditions must be a list")
        additional = []
    for idx, extra in enumerate(additional):
        parsed = _parse_condition(extra, registry, f"additionalConditions[{idx}]", errors)
        if parsed is not None:
            conditions.append(parsed)

    window = _optional_duration(_first(body, "window") or _first(raw, "window"), "window", errors)
    for cond in conditions:
        if cond.occurrences and not (cond.time_window or window):
            errors.append(f"condition '{cond.condition}': occurrences requires a timeWindow")

    cooldown = _optional_duration(raw.get("cooldown"), "cooldown", errors)
    if cooldown is None:
        cooldown = default_cooldown if default_cooldown is not None else timedelta(hours=1)

    template = _first(raw, "dedupeKeyTemplate", "dedupe_key_template") or DEFAULT_DEDUPE_KEY_TEMPLATE
    errors.extend(validate_dedupe_template(str(template)))

    actions = RuleActions.from_dict(raw.get("actions"), errors)

    if errors:
        raise RuleValidationError(rule_id or "<unnamed>", errors)

    return AlertRuleDefinition(
        id=rule_id,
        name=str(raw.get("name") or rule_id),
        severity=severity,
        conditions=tuple(conditions),
        cooldown=cooldown,
        dedupe_key_template=str(template),
        actions=actions,
        window=window,
        description=raw.get("description"),
        condition_preset_id=_first(raw, "conditionPresetId", "condition_preset_id"),
    )


def validate_rule_draft(raw: Dict[str, Any], registry: Optional[ConditionRegistry] = None) -> List[str]:
    """Errors for a draft rule; empty list means it can be committed"""
    try:
        parse_rule(raw, registry)
    except RuleValidationError as e:
        return e.errors
    return []


def load_rules(
    raw_rules: Iterable[Dict[str, Any]],
    registry: Optional[ConditionRegistry] = None,
    default_cooldown: Optional[timedelta] = None
) -> RuleLoadReport:
    """Parse a batch of rules, excluding invalid ones"""
    report = RuleLoadReport()
    for raw in raw_rules:
        try:
            report.rules.append(parse_rule(raw, registry, default_cooldown))
        except RuleValidationError as e:
            report.rejected[e.rule_id] = e.errors
            logger.warning(f"Excluding invalid rule {e.rule_id}: {e.errors}")

    logger.info(f"Loaded {report.loaded_count} alert rules ({len(report.rejected)} rejected)")
    return report
