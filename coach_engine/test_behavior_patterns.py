"""
Behavior Pattern Tests
======================

Detector thresholds, confidence gating and per-user pattern memory.
"""

import pytest
from datetime import datetime, timedelta

from coach_engine.behavior_patterns import (
    PatternDetector, confidence, describe, meal_slot, time_slot,
)
from coach_engine.models import HealthMetrics


START = datetime(2025, 3, 1)


def daily(n, hour, **metrics):
    """n daily points at `hour`, oldest first."""
    return [HealthMetrics(**metrics, timestamp=START + timedelta(days=i, hours=hour)) for i in range(n)]


def by_type(patterns):
    return {p.pattern_type: p for p in patterns}


@pytest.fixture
def detector():
    return PatternDetector(clock=lambda: datetime(2025, 4, 1, 9, 0))


# ==============================================================================
# Detectors
# ==============================================================================

class TestDetectors:
    """Each detector on data that shows its pattern."""

    def test_1_needs_a_week_of_data(self, detector):
        """Scenario 1: Six points are not enough for any pattern."""
        assert detector.detect("u1", daily(6, 7, activity_level=8)) == []

    def test_2_workout_timing(self, detector):
        """Scenario 2: Hard sessions that all land in the early morning."""
        patterns = detector.detect("u1", daily(10, 7, activity_level=8))

        assert [p.pattern_type for p in patterns] == ["workout_timing"]
        pattern = patterns[0]
        assert pattern.trigger.value == "early_morning"
        assert pattern.frequency == 1.0
        assert pattern.confidence == pytest.approx(0.8)
        assert pattern.outcome.impact == "positive"

    def test_3_scattered_workouts(self, detector):
        """Scenario 3: Sessions spread across three slots are no pattern."""
        history = []
        for i, hour in enumerate([7, 14, 19] * 3):
            history.append(HealthMetrics(activity_level=8, timestamp=START + timedelta(days=i, hours=hour)))

        assert detector.detect("u1", history) == []

    def test_4_sleep_schedule(self, detector):
        """Scenario 4: Waking at 07:00 every day means a steady 23:00 bedtime."""
        pattern = by_type(detector.detect("u1", daily(10, 7, sleep_score=8)))["sleep_schedule"]

        assert pattern.trigger.value == 23
        assert pattern.frequency == 1.0
        assert pattern.outcome.impact == "positive"
        assert describe(pattern) == "Your bedtime has been steady, around 23:00. Your sleep quality shows it."

    def test_5_nutrition_habits(self, detector):
        """Scenario 5: Steady calories logged at lunch time."""
        pattern = by_type(detector.detect("u1", daily(10, 12, calories_consumed=2000)))["nutrition_habits"]

        assert pattern.trigger.value == "lunch"
        assert pattern.outcome.impact == "positive"
        assert pattern.outcome.magnitude == pytest.approx(1.0)

    def test_6_stress_response(self, detector):
        """Scenario 6: Stressful days followed by active, calmer days."""
        history = []
        for i in range(30):
            if i % 2 == 0:
                history.append(HealthMetrics(stress_level=9, timestamp=START + timedelta(days=i, hours=20)))
            else:
                history.append(HealthMetrics(stress_level=3, activity_level=8,
                                             timestamp=START + timedelta(days=i, hours=20)))

        pattern = by_type(detector.detect("u1", history))["stress_response"]

        assert pattern.frequency == 1.0
        assert pattern.outcome.impact == "positive"
        assert pattern.outcome.magnitude == pytest.approx(0.6)
        assert "bounce back" in describe(pattern)

    def test_7_recovery_patterns(self, detector):
        """Scenario 7: Good recovery days come with better sleep."""
        history = []
        for i in range(16):
            recovery, sleep = (8, 8) if i % 2 == 0 else (3, 5)
            history.append(HealthMetrics(recovery_score=recovery, sleep_score=sleep,
                                         timestamp=START + timedelta(days=i, hours=7)))

        pattern = by_type(detector.detect("u1", history))["recovery_patterns"]

        assert pattern.frequency == 0.5
        assert pattern.outcome.impact == "positive"
        assert pattern.outcome.magnitude == pytest.approx(0.3)

    def test_8_recovery_without_poor_days(self, detector):
        """Scenario 8: Recovery that never dips has nothing to compare."""
        history = daily(16, 7, recovery_score=8)

        assert "recovery_patterns" not in by_type(detector.detect("u1", history))


# ==============================================================================
# Confidence & Memory
# ==============================================================================

class TestConfidence:
    """Confidence gating and what the detector remembers."""

    def test_9_confidence_formula(self):
        """Scenario 9: Consistency weighs 70%, data volume 30% capped at 30 points."""
        assert confidence(1.0, 30) == pytest.approx(1.0)
        assert confidence(1.0, 60) == pytest.approx(1.0)
        assert confidence(0.6, 15) == pytest.approx(0.57)

    def test_10_low_confidence_is_dropped(self):
        """Scenario 10: A week of stress follow-ups falls short of the default threshold."""
        history = []
        for i in range(14):
            stress = 9 if i % 2 == 0 else 3
            history.append(HealthMetrics(stress_level=stress, timestamp=START + timedelta(days=i, hours=20)))

        strict = PatternDetector()
        lenient = PatternDetector(confidence_threshold=0.0)

        assert "stress_response" not in by_type(strict.detect("u1", history))
        pattern = by_type(lenient.detect("u1", history))["stress_response"]
        assert pattern.outcome.impact == "neutral"

    def test_11_repeat_detection_keeps_identity(self, detector):
        """Scenario 11: A pattern seen again keeps its id and is no longer new."""
        history = daily(10, 7, activity_level=8)

        first = detector.detect("u1", history)[0]
        second = detector.detect("u1", history)[0]

        assert first.is_new
        assert not second.is_new
        assert second.id == first.id
        assert second.times_detected == 2
        assert detector.has_pattern("u1", "workout_timing")
        assert not detector.has_pattern("u2", "workout_timing")
        assert [p.id for p in detector.patterns("u1")] == [first.id]

    def test_12_missing_metrics_ignored(self, detector):
        """Scenario 12: Points without the detector's metric do not count toward it."""
        history = daily(10, 7, steps=5000)

        assert detector.detect("u1", history) == []

    def test_13_to_dict(self, detector):
        """Scenario 13: Serialized patterns carry trigger and outcome."""
        data = detector.detect("u1", daily(10, 7, activity_level=8))[0].to_dict()

        assert data["pattern_type"] == "workout_timing"
        assert data["trigger"] == {"type": "time_of_day", "value": "early_morning", "operator": "equals"}
        assert data["first_detected_at"] == "2025-04-01T09:00:00"


class TestSlots:
    """Hour to slot mapping."""

    @pytest.mark.parametrize("hour,slot", [
        (5, "early_morning"), (8, "early_morning"), (9, "morning"), (12, "afternoon"),
        (17, "evening"), (21, "night"), (2, "night"),
    ])
    def test_14_time_slots(self, hour, slot):
        """Scenario 14: Workout time slots."""
        assert time_slot(hour) == slot

    @pytest.mark.parametrize("hour,slot", [
        (6, "breakfast"), (10, "snack"), (11, "lunch"), (15, "snack"), (17, "dinner"), (22, "snack"),
    ])
    def test_15_meal_slots(self, hour, slot):
        """Scenario 15: Meal time slots."""
        assert meal_slot(hour) == slot
