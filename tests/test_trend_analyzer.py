"""
Tests for multi-day trend and persistence analysis
"""

import pytest
from datetime import date, datetime

from clinical_alerts.services.alert_engine.enums import EvidenceStatus, Operator
from clinical_alerts.services.alert_engine.trend_analyzer import (
    analyze_persistence,
    analyze_trend,
    daily_values,
)


TODAY = date(2026, 3, 5)


class TestDailyValues:

    def test_latest_observation_of_each_day_wins(self):
        daily = daily_values([
            (datetime(2026, 3, 4, 8, 0), 9),
            (datetime(2026, 3, 4, 20, 0), 4),
            (datetime(2026, 3, 5, 7, 0), 6),
        ])

        assert daily == {date(2026, 3, 4): 4, date(2026, 3, 5): 6}

    def test_input_order_does_not_matter(self):
        daily = daily_values([
            (datetime(2026, 3, 4, 20, 0), 4),
            (datetime(2026, 3, 4, 8, 0), 9),
        ])

        assert daily == {date(2026, 3, 4): 4}


class TestTrend:
    """Strictly monotonic runs of N consecutive days"""

    def test_increasing_run_triggers(self):
        daily = {date(2026, 3, 3): 3, date(2026, 3, 4): 5, date(2026, 3, 5): 7}

        result = analyze_trend(daily, 3, Operator.TREND_INCREASING, TODAY)

        assert result.status == EvidenceStatus.TRIGGERED
        assert [v for _, v in result.days] == [3, 5, 7]

    def test_flat_step_breaks_strict_increase(self):
        daily = {date(2026, 3, 3): 3, date(2026, 3, 4): 3, date(2026, 3, 5): 7}

        result = analyze_trend(daily, 3, Operator.TREND_INCREASING, TODAY)

        assert result.status == EvidenceStatus.NOT_MET

    def test_decreasing_run(self):
        daily = {date(2026, 3, 3): 8, date(2026, 3, 4): 6, date(2026, 3, 5): 2}

        assert analyze_trend(daily, 3, Operator.TREND_DECREASING, TODAY).triggered
        assert not analyze_trend(daily, 3, Operator.TREND_INCREASING, TODAY).triggered

    def test_missing_day_breaks_the_streak(self):
        """Enough days overall, but not consecutive"""
        daily = {date(2026, 3, 2): 1, date(2026, 3, 3): 3, date(2026, 3, 5): 7}

        result = analyze_trend(daily, 3, Operator.TREND_INCREASING, TODAY)

        assert result.status == EvidenceStatus.NOT_MET
        assert "missing" in result.detail

    def test_fewer_days_than_required_is_insufficient(self):
        daily = {date(2026, 3, 4): 5, date(2026, 3, 5): 7}

        result = analyze_trend(daily, 3, Operator.TREND_INCREASING, TODAY)

        assert result.status == EvidenceStatus.INSUFFICIENT_DATA

    def test_streak_ends_at_latest_day_with_data(self):
        daily = {date(2026, 3, 1): 1, date(2026, 3, 2): 2, date(2026, 3, 3): 3}

        result = analyze_trend(daily, 3, Operator.TREND_INCREASING, TODAY)

        assert result.status == EvidenceStatus.TRIGGERED
        assert result.days[-1][0] == date(2026, 3, 3)

    def test_days_after_today_are_ignored(self):
        daily = {
            date(2026, 3, 3): 3,
            date(2026, 3, 4): 5,
            date(2026, 3, 5): 7,
            date(2026, 3, 6): 1,
        }

        assert analyze_trend(daily, 3, Operator.TREND_INCREASING, TODAY).triggered

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            analyze_trend({}, 0, Operator.TREND_INCREASING, TODAY)
        with pytest.raises(ValueError):
            analyze_trend({}, 3, Operator.GREATER_THAN, TODAY)

    def test_evidence_lists_each_day(self):
        daily = {date(2026, 3, 4): 5, date(2026, 3, 5): 7}

        evidence = analyze_trend(daily, 2, Operator.TREND_INCREASING, TODAY).to_evidence()

        assert evidence["days"] == [
            {"date": "2026-03-04", "value": 5},
            {"date": "2026-03-05", "value": 7},
        ]


class TestPersistence:
    """A comparison holding on each of N consecutive days"""

    def test_holds_every_day(self):
        daily = {date(2026, 3, 3): 6, date(2026, 3, 4): 7, date(2026, 3, 5): 9}

        result = analyze_persistence(daily, 3, lambda v: v >= 6, TODAY)

        assert result.status == EvidenceStatus.TRIGGERED

    def test_one_day_fails(self):
        daily = {date(2026, 3, 3): 6, date(2026, 3, 4): 2, date(2026, 3, 5): 9}

        result = analyze_persistence(daily, 3, lambda v: v >= 6, TODAY)

        assert result.status == EvidenceStatus.NOT_MET
        assert "2026-03-04" in result.detail

    def test_not_enough_days(self):
        result = analyze_persistence({date(2026, 3, 5): 9}, 3, lambda v: v >= 6, TODAY)

        assert result.status == EvidenceStatus.INSUFFICIENT_DATA
