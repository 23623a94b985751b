"""
Condition-Type Registry - catalog of monitorable clinical conditions.

Every condition a rule may reference is registered here with its value type,
the operators valid for it and the operand checks applied at rule load time.
One spec class per condition family:

1. NumericConditionSpec - point comparisons, trends, persistence (pain 0-10, glucose)
2. PercentageConditionSpec - numeric on a 0-1 fraction, accepts 0-100 input
3. CategoricalConditionSpec - equality against an enumerated option set
4. DurationConditionSpec - elapsed time since the last observation

Adding a metric means registering a spec; the evaluator core is untouched.
"""

import logging
import threading
from typing import Dict, List, Optional, Sequence, Tuple, Any

from .enums import Operator, ValueType

logger = logging.getLogger(__name__)


NUMERIC_COMPARISONS: Tuple[Operator, ...] = (
    Operator.GREATER_THAN,
    Operator.GREATER_THAN_OR_EQUAL,
    Operator.LESS_THAN,
    Operator.LESS_THAN_OR_EQUAL,
    Operator.EQUAL,
    Operator.NOT_EQUAL,
)
TREND_OPERATORS: Tuple[Operator, ...] = (Operator.TREND_INCREASING, Operator.TREND_DECREASING)
CATEGORICAL_OPERATORS: Tuple[Operator, ...] = (Operator.EQUALS, Operator.NOT_EQUAL)


def normalize_fraction(value: float) -> float:
    """0-100 percentages become 0-1 fractions; values already <= 1 are kept"""
    value = float(value)
    return value / 100.0 if value > 1 else value


class ConditionSpec:
    """Base class for a registered condition"""

    value_type: ValueType = None

    def __init__(
        self,
        key: str,
        label: str,
        allowed_operators: Sequence[Operator],
        description: str = ""
    ):
        self.key = key
        self.label = label
        self.allowed_operators = tuple(allowed_operators)
        self.description = description

    def validate(self, condition) -> List[str]:
        """Return every configuration error for a parsed rule condition"""
        errors = []
        if condition.operator not in self.allowed_operators:
            allowed = ", ".join(op.value for op in self.allowed_operators)
            errors.append(
                f"operator '{condition.operator.value}' is not valid for {self.value_type.value} "
                f"condition '{self.key}' (allowed: {allowed})"
            )
            return errors
        if condition.occurrences is not None and condition.occurrences <= 0:
            errors.append("occurrences must be a positive integer")
        errors.extend(self._validate_operands(condition))
        return errors

    def _validate_operands(self, condition) -> List[str]:
        return []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "valueType": self.value_type.value,
            "operators": [op.value for op in self.allowed_operators],
            "description": self.description,
        }


class NumericConditionSpec(ConditionSpec):
    """Numeric scale; supports comparisons, trends and multi-day persistence"""

    value_type = ValueType.NUMERIC

    def __init__(
        self,
        key: str,
        label: str,
        threshold_range: Tuple[float, float],
        allowed_operators: Sequence[Operator] = NUMERIC_COMPARISONS + TREND_OPERATORS,
        unit: Optional[str] = None,
        description: str = ""
    ):
        super().__init__(key, label, allowed_operators, description)
        self.threshold_range = threshold_range
        self.unit = unit

    def normalize(self, value: float) -> float:
        return float(value)

    def _validate_operands(self, condition) -> List[str]:
        errors = []
        if condition.operator.is_trend:
            if not condition.consecutive_days or condition.consecutive_days <= 0:
                errors.append(f"{condition.operator.value} requires consecutiveDays > 0")
            return errors

        if condition.consecutive_days is not None and condition.consecutive_days <= 0:
            errors.append("consecutiveDays must be a positive integer")
        if condition.threshold is None:
            errors.append(f"condition '{self.key}' requires a numeric threshold")
            return errors

        low, high = self.threshold_range
        threshold = self.normalize(condition.threshold)
        if not (low <= threshold <= high):
            errors.append(f"threshold {condition.threshold} is outside the range {low}-{high} for '{self.key}'")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["thresholdRange"] = {"min": self.threshold_range[0], "max": self.threshold_range[1]}
        if self.unit:
            data["unit"] = self.unit
        return data


class PercentageConditionSpec(NumericConditionSpec):
    """Rate expressed as a 0-1 fraction; 0-100 inputs are divided by 100"""

    value_type = ValueType.PERCENTAGE

    def __init__(
        self,
        key: str,
        label: str,
        allowed_operators: Sequence[Operator] = NUMERIC_COMPARISONS[:5],
        description: str = ""
    ):
        super().__init__(key, label, (0.0, 1.0), allowed_operators, unit="%", description=description)

    def normalize(self, value: float) -> float:
        return normalize_fraction(value)


class CategoricalConditionSpec(ConditionSpec):
    """Enumerated status; the rule value must be one of the options"""

    value_type = ValueType.CATEGORICAL

    def __init__(
        self,
        key: str,
        label: str,
        options: Sequence[str],
        allowed_operators: Sequence[Operator] = CATEGORICAL_OPERATORS,
        description: str = ""
    ):
        super().__init__(key, label, allowed_operators, description)
        self.options = tuple(options)

    def _validate_operands(self, condition) -> List[str]:
        errors = []
        if condition.value is None or condition.value == "":
            errors.append(f"condition '{self.key}' requires a value")
        elif condition.value not in self.options:
            errors.append(
                f"value '{condition.value}' is not one of {list(self.options)} for '{self.key}'"
            )
        if condition.consecutive_days is not None:
            errors.append("consecutiveDays is not supported for categorical conditions")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["values"] = list(self.options)
        return data


class DurationConditionSpec(ConditionSpec):
    """Elapsed time since the most recent observation of a target metric"""

    value_type = ValueType.DURATION

    def __init__(
        self,
        key: str,
        label: str,
        threshold_range: Tuple[float, float] = (1, 168),
        units: Sequence[str] = ("hours", "days"),
        allowed_operators: Sequence[Operator] = (Operator.GREATER_THAN, Operator.GREATER_THAN_OR_EQUAL),
        description: str = ""
    ):
        super().__init__(key, label, allowed_operators, description)
        self.threshold_range = threshold_range
        self.units = tuple(units)

    def _validate_operands(self, condition) -> List[str]:
        errors = []
        if condition.threshold is None:
            errors.append(f"condition '{self.key}' requires a threshold")
        else:
            low, high = self.threshold_range
            if not (low <= condition.threshold <= high):
                errors.append(f"threshold {condition.threshold} is outside the range {low}-{high} for '{self.key}'")
        if condition.unit not in self.units:
            errors.append(f"unit '{condition.unit}' is not one of {list(self.units)}")
        if condition.occurrences is not None or condition.consecutive_days is not None:
            errors.append("occurrences/consecutiveDays are not supported for duration conditions")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["thresholdRange"] = {"min": self.threshold_range[0], "max": self.threshold_range[1]}
        data["units"] = list(self.units)
        return data


class ConditionRegistry:
    """Lookup of condition specs by condition key"""

    def __init__(self, specs: Optional[Sequence[ConditionSpec]] = None):
        self._specs: Dict[str, ConditionSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: ConditionSpec, replace: bool = False) -> None:
        if spec.key in self._specs and not replace:
            raise ValueError(f"Condition '{spec.key}' is already registered")
        self._specs[spec.key] = spec
        logger.debug(f"Registered {spec.value_type.value} condition '{spec.key}'")

    def get(self, key: str) -> Optional[ConditionSpec]:
        return self._specs.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._specs

    def keys(self) -> List[str]:
        return sorted(self._specs)

    def catalog(self) -> List[Dict[str, Any]]:
        return [self._specs[k].to_dict() for k in self.keys()]


def build_default_registry() -> ConditionRegistry:
    """Clinical conditions available to rule authors out of the box"""
    return ConditionRegistry([
        NumericConditionSpec(
            "pain_scale_0_10", "Pain Scale (0-10)", (0, 10),
            allowed_operators=NUMERIC_COMPARISONS[:5] + TREND_OPERATORS,
            description="Patient-reported pain level on a scale of 0-10"
        ),
        NumericConditionSpec(
            "side_effects_severity", "Side Effects Severity", (0, 10),
            allowed_operators=NUMERIC_COMPARISONS[:5] + TREND_OPERATORS,
            description="Severity of medication side effects (0-10)"
        ),
        NumericConditionSpec(
            "medication_effectiveness", "Medication Effectiveness", (0, 10),
            allowed_operators=NUMERIC_COMPARISONS[:5] + TREND_OPERATORS,
            description="Patient-reported medication effectiveness (0-10)"
        ),
        NumericConditionSpec(
            "mood_scale", "Mood Scale", (1, 10),
            allowed_operators=NUMERIC_COMPARISONS[:5] + TREND_OPERATORS,
            description="Patient-reported mood level (1-10)"
        ),
        NumericConditionSpec(
            "sleep_quality", "Sleep Quality", (1, 10),
            allowed_operators=NUMERIC_COMPARISONS[:5] + TREND_OPERATORS,
            description="Patient-reported sleep quality (1-10)"
        ),
        NumericConditionSpec(
            "activity_level", "Activity Level", (1, 10),
            allowed_operators=NUMERIC_COMPARISONS[:5] + TREND_OPERATORS,
            description="Patient-reported activity level (1-10)"
        ),
        NumericConditionSpec(
            "missed_medication_doses", "Missed Medication Doses", (1, 20),
            allowed_operators=(Operator.GREATER_THAN, Operator.GREATER_THAN_OR_EQUAL, Operator.EQUAL),
            description="Number of missed medication doses"
        ),
        NumericConditionSpec(
            "blood_glucose", "Blood Glucose", (20, 600),
            unit="mg/dL",
            description="Self-measured blood glucose"
        ),
        PercentageConditionSpec(
            "medication_adherence_rate", "Medication Adherence Rate",
            description="Percentage of medications taken as prescribed"
        ),
        PercentageConditionSpec(
            "assessment_completion_rate", "Assessment Completion Rate",
            description="Percentage of assessments completed on time"
        ),
        CategoricalConditionSpec(
            "medication_adherence", "Medication Adherence Status",
            ["compliant", "non_compliant", "partially_compliant"],
            description="Categorical medication adherence status"
        ),
        CategoricalConditionSpec(
            "medication_dose_status", "Medication Dose Status",
            ["taken", "missed_dose", "late_dose", "skipped"],
            description="Outcome of a scheduled medication dose"
        ),
        DurationConditionSpec(
            "no_assessment_for", "No Assessment For",
            description="Time since last patient assessment"
        ),
    ])


_registry: Optional[ConditionRegistry] = None
_registry_lock = threading.Lock()


def get_condition_registry() -> ConditionRegistry:
    """Process-wide registry with the default catalog"""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = build_default_registry()
        return _registry
