"""
Trend Analyzer - multi-day pattern detection over per-day metric values.

Observations are collapsed to one value per UTC calendar day (the latest
observation of that day). A streak is the run of N consecutive days ending at
the latest day with data; a missing day breaks the streak.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .enums import EvidenceStatus, Operator

logger = logging.getLogger(__name__)


@dataclass
class TrendResult:
    """Outcome of a multi-day analysis"""
    status: EvidenceStatus
    days: List[Tuple[date, Optional[float]]] = field(default_factory=list)
    detail: Optional[str] = None

    @property
    def triggered(self) -> bool:
        return self.status == EvidenceStatus.TRIGGERED

    def to_evidence(self) -> Dict[str, object]:
        return {
            "days": [
                {"date": d.isoformat(), "value": v}
                for d, v in self.days
            ],
            "detail": self.detail,
        }


def daily_values(observations: Iterable[Tuple[datetime, float]]) -> Dict[date, float]:
    """Latest value of each UTC day from (recorded_at, value) pairs"""
    latest: Dict[date, Tuple[datetime, float]] = {}
    for recorded_at, value in observations:
        day = recorded_at.date()
        current = latest.get(day)
        if current is None or recorded_at >= current[0]:
            latest[day] = (recorded_at, value)
    return {day: value for day, (_, value) in latest.items()}


def _window_days(daily: Dict[date, float], consecutive_days: int, today: date) -> Tuple[Optional[date], List[Tuple[date, Optional[float]]]]:
    candidates = [d for d in daily if d <= today]
    if not candidates:
        return None, []
    end = max(candidates)
    days = []
    for offset in range(consecutive_days - 1, -1, -1):
        day = end - timedelta(days=offset)
        days.append((day, daily.get(day)))
    return end, days


def analyze_trend(
    daily: Dict[date, float],
    consecutive_days: int,
    direction: Operator,
    today: date
) -> TrendResult:
    """
    Strictly monotonic run over the N days ending at the latest day with data.

    Args:
        daily: one value per calendar day
        consecutive_days: N, must be > 0
        direction: trend_increasing or trend_decreasing
        today: days after this are ignored
    """
    if not direction.is_trend:
        raise ValueError(f"{direction} is not a trend operator")
    if consecutive_days <= 0:
        raise ValueError("consecutive_days must be positive")

    available = sum(1 for d in daily if d <= today)
    end, days = _window_days(daily, consecutive_days, today)
    if end is None or available < consecutive_days:
        return TrendResult(
            EvidenceStatus.INSUFFICIENT_DATA,
            days,
            f"{available} of {consecutive_days} days with data"
        )

    missing = [d.isoformat() for d, v in days if v is None]
    if missing:
        return TrendResult(EvidenceStatus.NOT_MET, days, f"streak broken by missing days {missing}")

    values = [v for _, v in days]
    if direction == Operator.TREND_INCREASING:
        monotonic = all(b > a for a, b in zip(values, values[1:]))
    else:
        monotonic = all(b < a for a, b in zip(values, values[1:]))

    if monotonic:
        return TrendResult(EvidenceStatus.TRIGGERED, days)
    return TrendResult(EvidenceStatus.NOT_MET, days, "sequence is not strictly monotonic")


def analyze_persistence(
    daily: Dict[date, float],
    consecutive_days: int,
    predicate: Callable[[float], bool],
    today: date
) -> TrendResult:
    """Comparison holds on each of the N days ending at the latest day with data"""
    if consecutive_days <= 0:
        raise ValueError("consecutive_days must be positive")

    available = sum(1 for d in daily if d <= today)
    end, days = _window_days(daily, consecutive_days, today)
    if end is None or available < consecutive_days:
        return TrendResult(
            EvidenceStatus.INSUFFICIENT_DATA,
            days,
            f"{available} of {consecutive_days} days with data"
        )

    missing = [d.isoformat() for d, v in days if v is None]
    if missing:
        return TrendResult(EvidenceStatus.NOT_MET, days, f"streak broken by missing days {missing}")

    failing = [d.isoformat() for d, v in days if not predicate(v)]
    if failing:
        return TrendResult(EvidenceStatus.NOT_MET, days, f"condition not met on {failing}")
    return TrendResult(EvidenceStatus.TRIGGERED, days)
