"""
Trigger Evaluator Tests
=======================

Rule conditions, delivery timing, do-not-disturb, daily cap and escalation.
"""

import pytest
from datetime import datetime, timedelta

from coach_engine.config import TriggerConfig
from coach_engine.errors import ValidationError
from coach_engine.models import HealthMetrics
from coach_engine.notification_timing import (
    DeliveryLimiter, DeliveryTiming, TimeWindow, defer_for_dnd, scheduled_time,
)
from coach_engine.triggers import (
    CoachingAction, ConsecutiveDaysCondition, DeclineCondition, ThresholdCondition,
    TimeWindowCondition, TriggerEvaluator, TriggerRule,
)


class FakeClock:
    def __init__(self, start=datetime(2025, 3, 9, 8, 0)):   # a Sunday
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


def days(metric, values, end=datetime(2025, 3, 8, 22, 0)):
    """One HealthMetrics per day, oldest first, ending on `end`."""
    n = len(values)
    return [
        HealthMetrics(**{metric: v}, timestamp=end - timedelta(days=n - 1 - i))
        for i, v in enumerate(values)
    ]


def fired(notifications):
    return sorted(n.rule_id for n in notifications)


# ==============================================================================
# Conditions
# ==============================================================================

class TestConditions:
    """Condition semantics."""

    def test_1_threshold_operators(self):
        """Scenario 1: greater_than, less_than and a tolerant equals."""
        metrics = HealthMetrics(sleep_score=6.005)

        assert ThresholdCondition("sleep_score", "less_than", 7).holds(metrics)
        assert not ThresholdCondition("sleep_score", "greater_than", 7).holds(metrics)
        assert ThresholdCondition("sleep_score", "equals", 6).holds(metrics)
        assert not ThresholdCondition("stress_level", "less_than", 7).holds(metrics)

    def test_2_bad_condition_rejected(self):
        """Scenario 2: Unknown operators and metrics are validation errors."""
        with pytest.raises(ValidationError):
            ThresholdCondition("sleep_score", "roughly", 7)
        with pytest.raises(ValidationError):
            ThresholdCondition("vibes", "less_than", 7)

    @pytest.mark.parametrize("values,expected", [
        ([5, 5, 5], True),
        ([7, 5, 5, 5], True),
        ([5, 7, 5], False),
        ([5, 5], False),
    ])
    def test_3_consecutive_days(self, values, expected):
        """Scenario 3: Fires iff each of the last N points meets the threshold."""
        condition = ConsecutiveDaysCondition(ThresholdCondition("sleep_score", "less_than", 6), days=3)

        assert condition.evaluate(HealthMetrics(), days("sleep_score", values), None) is expected

    def test_4_consecutive_days_missing_value(self):
        """Scenario 4: A day without the metric breaks the streak."""
        condition = ConsecutiveDaysCondition(ThresholdCondition("sleep_score", "less_than", 6), days=3)
        history = days("sleep_score", [5, 5, 5])
        history[1] = HealthMetrics(steps=3000, timestamp=history[1].timestamp)

        assert condition.evaluate(HealthMetrics(), history, None) is False

    @pytest.mark.parametrize("previous,recent,expected", [
        (8, 6, True),      # -25%
        (10, 8, True),     # -20%
        (8, 7, False),     # -12.5%
        (0, 0, False),
    ])
    def test_5_decline(self, previous, recent, expected):
        """Scenario 5: Mean of the last K vs the prior K."""
        condition = DeclineCondition("activity_level", 0.2, window_days=7)
        history = days("activity_level", [previous] * 7 + [recent] * 7)

        assert condition.evaluate(HealthMetrics(), history, None) is expected

    def test_6_decline_needs_two_windows(self):
        """Scenario 6: Fewer than 2K points never fires."""
        condition = DeclineCondition("activity_level", 0.2, window_days=7)

        assert condition.evaluate(HealthMetrics(), days("activity_level", [9] * 7 + [1] * 6), None) is False

    def test_7_time_window_condition(self):
        """Scenario 7: Windows wrap midnight and honour weekdays."""
        condition = TimeWindowCondition(TimeWindow("22:00", "06:00", days_of_week=[4]))   # Friday nights

        assert condition.evaluate(None, [], datetime(2025, 3, 7, 23, 0))        # Friday 23:00
        assert condition.evaluate(None, [], datetime(2025, 3, 8, 5, 59))        # Saturday 05:59, Friday's window
        assert not condition.evaluate(None, [], datetime(2025, 3, 8, 6, 0))     # end is exclusive
        assert not condition.evaluate(None, [], datetime(2025, 3, 8, 23, 0))    # Saturday night


# ==============================================================================
# Default Rules
# ==============================================================================

class TestDefaultRules:
    """The built-in rule set."""

    def test_8_poor_sleep(self, clock):
        """Scenario 8: Low sleep schedules a nutrition plan 30 minutes out."""
        evaluator = TriggerEvaluator(clock=clock)

        [notification] = evaluator.evaluate("u1", HealthMetrics(sleep_score=5))

        assert notification.rule_id == "poor_sleep_nutrition"
        assert notification.type == "health_alert"
        assert notification.priority == "low"
        assert notification.title == "Sleep Recovery Plan"
        assert notification.scheduled_for == clock.now + timedelta(minutes=30)
        assert notification.expires_at == clock.now + timedelta(hours=12)
        assert len(notification.suggested_actions) == 2

    def test_9_stress_is_high_priority_and_immediate(self, clock):
        """Scenario 9: High stress notifies immediately with high priority."""
        evaluator = TriggerEvaluator(clock=clock)

        [notification] = evaluator.evaluate("u1", HealthMetrics(stress_level=9))

        assert notification.rule_id == "high_stress_recovery"
        assert notification.priority == "high"
        assert notification.scheduled_for == clock.now

    def test_10_correlated_rules(self, clock):
        """Scenario 10: High activity with low fuel and low water fire together."""
        evaluator = TriggerEvaluator(clock=clock)

        notifications = evaluator.evaluate(
            "u1", HealthMetrics(activity_level=9, calories_consumed=1200, water_intake=800)
        )

        assert fired(notifications) == ["activity_dehydration", "high_activity_low_fuel"]

    def test_11_consecutive_poor_sleep_uses_preferred_window(self, clock):
        """Scenario 11: Conversation starters wait for their evening window."""
        evaluator = TriggerEvaluator(clock=clock)

        notifications = evaluator.evaluate("u1", HealthMetrics(), days("sleep_score", [5, 4, 5]))

        [notification] = [n for n in notifications if n.rule_id == "consistent_poor_sleep"]
        assert notification.type == "coaching_suggestion"
        assert notification.scheduled_for == datetime(2025, 3, 9, 19, 0)

    def test_12_trigger_data_uses_history(self, clock):
        """Scenario 12: Trigger data carries previous and current values."""
        evaluator = TriggerEvaluator(clock=clock)

        [notification] = evaluator.evaluate(
            "u1", HealthMetrics(recovery_score=4), days("recovery_score", [8])
        )

        data = notification.trigger_data
        assert notification.rule_id == "low_recovery_workout"
        assert notification.priority == "medium"
        assert (data.metric, data.previous_value, data.current_value) == ("recovery_score", 8, 4)
        assert data.change_percentage == -50.0
        assert data.trend == "decreasing"

    def test_13_nothing_fires_on_healthy_metrics(self, clock):
        """Scenario 13: Healthy metrics produce no notifications."""
        evaluator = TriggerEvaluator(clock=clock)

        assert evaluator.evaluate("u1", HealthMetrics(sleep_score=8, stress_level=3, recovery_score=8)) == []


# ==============================================================================
# Delivery
# ==============================================================================

class TestDelivery:
    """Do-not-disturb, cap and escalation."""

    def test_14_dnd_defers_to_window_end(self):
        """Scenario 14: A delivery inside DND moves to the window's end."""
        clock = FakeClock(datetime(2025, 3, 9, 23, 0))
        evaluator = TriggerEvaluator(TriggerConfig(dnd_windows=[("22:00", "07:00")]), clock=clock)

        notifications = evaluator.evaluate("u1", HealthMetrics(sleep_score=5, stress_level=9))
        by_rule = {n.rule_id: n for n in notifications}

        assert by_rule["poor_sleep_nutrition"].scheduled_for == datetime(2025, 3, 10, 7, 0)
        # Stress alerts ignore user preferences
        assert by_rule["high_stress_recovery"].scheduled_for == clock.now

    def test_15_daily_cap(self, clock):
        """Scenario 15: Non-urgent notifications stop at the daily cap."""
        evaluator = TriggerEvaluator(TriggerConfig(daily_cap=2), clock=clock)

        counts = [len(evaluator.evaluate("u1", HealthMetrics(stress_level=9))) for _ in range(3)]

        assert counts == [1, 1, 0]
        assert evaluator.get_trigger_stats("high_stress_recovery")["trigger_count"] == 3

    def test_16_cap_is_rolling_and_per_user(self, clock):
        """Scenario 16: The cap resets after 24 hours and is tracked per user."""
        evaluator = TriggerEvaluator(TriggerConfig(daily_cap=1), clock=clock)
        evaluator.evaluate("u1", HealthMetrics(stress_level=9))

        assert evaluator.evaluate("u1", HealthMetrics(stress_level=9)) == []
        assert len(evaluator.evaluate("u2", HealthMetrics(stress_level=9))) == 1

        clock.advance(hours=24)
        assert len(evaluator.evaluate("u1", HealthMetrics(stress_level=9))) == 1

    def test_17_stressed_user_escalates_to_urgent(self, clock):
        """Scenario 17: High mood stress escalates high priority to urgent, past the cap."""
        evaluator = TriggerEvaluator(TriggerConfig(daily_cap=0), clock=clock, mood_lookup=lambda user_id: 9)

        [notification] = evaluator.evaluate("u1", HealthMetrics(stress_level=9))

        assert notification.priority == "urgent"

    def test_18_calm_user_not_escalated(self, clock):
        """Scenario 18: Without high mood stress priority is unchanged."""
        evaluator = TriggerEvaluator(clock=clock, mood_lookup=lambda user_id: 3)

        [notification] = evaluator.evaluate("u1", HealthMetrics(stress_level=9))

        assert notification.priority == "high"


# ==============================================================================
# Rule Management
# ==============================================================================

class TestRuleManagement:
    """Enable/disable, add/remove, stats."""

    def test_19_disabled_from_config(self, clock):
        """Scenario 19: Rules listed as disabled never fire."""
        evaluator = TriggerEvaluator(TriggerConfig(disabled_rules=["high_stress_recovery"]), clock=clock)

        assert evaluator.evaluate("u1", HealthMetrics(stress_level=9)) == []

    def test_20_toggle_rule(self, clock):
        """Scenario 20: set_rule_enabled toggles a rule; unknown ids return False."""
        evaluator = TriggerEvaluator(clock=clock)

        assert evaluator.set_rule_enabled("high_stress_recovery", False) is True
        assert evaluator.evaluate("u1", HealthMetrics(stress_level=9)) == []
        assert evaluator.set_rule_enabled("nope", False) is False

    def test_21_custom_rule(self, clock):
        """Scenario 21: Custom rules can be added, fire and be removed."""
        evaluator = TriggerEvaluator(rules=[], clock=clock)
        evaluator.add_rule(TriggerRule(
            id="low_steps",
            name="Low Steps",
            condition=ThresholdCondition("steps", "less_than", 2000),
            action=CoachingAction("scheduled_reminder", "Time for a walk?", timing=DeliveryTiming()),
        ))

        [notification] = evaluator.evaluate("u1", HealthMetrics(steps=500))

        assert notification.title == "Coaching Suggestion"
        assert notification.type == "coaching_suggestion"
        stats = evaluator.get_trigger_stats("low_steps")
        assert stats["trigger_count"] == 1
        assert stats["last_triggered_at"] == clock.now

        assert evaluator.remove_rule("low_steps") is True
        assert evaluator.get_trigger_stats("low_steps") is None


# ==============================================================================
# Timing Helpers
# ==============================================================================

class TestTiming:
    """notification_timing helpers."""

    def test_22_scheduled_time_window(self):
        """Scenario 22: Preferred windows resolve to now, today or tomorrow."""
        timing = DeliveryTiming(immediate=False, preferred_window=TimeWindow("07:00", "10:00"))

        assert scheduled_time(timing, datetime(2025, 3, 9, 8, 0)) == datetime(2025, 3, 9, 8, 0)
        assert scheduled_time(timing, datetime(2025, 3, 9, 6, 0)) == datetime(2025, 3, 9, 7, 0)
        assert scheduled_time(timing, datetime(2025, 3, 9, 12, 0)) == datetime(2025, 3, 10, 7, 0)

    def test_23_chained_dnd_windows(self):
        """Scenario 23: Adjacent DND windows are skipped in one call."""
        windows = [TimeWindow("22:00", "06:00"), TimeWindow("06:00", "07:30")]

        assert defer_for_dnd(datetime(2025, 3, 9, 23, 0), windows) == datetime(2025, 3, 10, 7, 30)

    def test_24_bad_window(self):
        """Scenario 24: Malformed times are rejected."""
        with pytest.raises(ValueError):
            TimeWindow("25:00", "07:00")

    def test_25_limiter_urgent_recorded(self, clock):
        """Scenario 25: Urgent notifications pass the cap but still count."""
        limiter = DeliveryLimiter(daily_cap=1, clock=clock)

        assert limiter.allow("u1", "urgent") is True
        assert limiter.allow("u1", "low") is False
        assert limiter.sent_count("u1") == 1


# ==============================================================================
# Proactive Pass
# ==============================================================================

class TestProactivePass:
    """Rules, pattern insights and milestone celebrations behind one cap."""

    def test_26_pattern_insight_once(self, clock):
        """Scenario 26: A newly detected pattern notifies once."""
        evaluator = TriggerEvaluator(TriggerConfig(enable_habit_tracking=False), clock=clock)
        history = days("activity_level", [8] * 10)

        first = evaluator.process("u1", HealthMetrics(), history)
        second = evaluator.process("u1", HealthMetrics(), history)

        [notification] = first.notifications
        assert notification.rule_id == "pattern_workout_timing"
        assert notification.type == "pattern_insight"
        assert notification.priority == "low"
        assert notification.message.startswith("You usually train at night.")
        assert notification.trigger_data.metric == "workout_performance"
        assert [p.pattern_type for p in first.patterns] == ["workout_timing"]

        assert second.notifications == []
        assert [p.pattern_type for p in second.patterns] == ["workout_timing"]

    def test_27_milestone_celebration(self, clock):
        """Scenario 27: Reaching a streak celebrates once, expiring after a day."""
        evaluator = TriggerEvaluator(TriggerConfig(enable_patterns=False), clock=clock)
        history = days("water_intake", [2500, 2500])
        current = HealthMetrics(water_intake=2200, timestamp=clock.now)

        result = evaluator.process("u1", current, history)

        [notification] = result.notifications
        assert notification.rule_id == "hydration_3"
        assert notification.type == "milestone_celebration"
        assert notification.priority == "medium"
        assert notification.message == "3 days of staying properly hydrated! Your body thanks you!"
        assert notification.expires_at == clock.now + timedelta(hours=24)
        assert [m.id for m in result.milestones] == ["hydration_3"]

        assert evaluator.process("u1", current, history).notifications == []

    def test_28_highest_target_celebrated(self, clock):
        """Scenario 28: Several targets crossed at once celebrate only the largest per series."""
        evaluator = TriggerEvaluator(TriggerConfig(enable_patterns=False), clock=clock)
        current = HealthMetrics(activity_level=8, timestamp=clock.now)

        result = evaluator.process("u1", current, days("activity_level", [8] * 6))

        assert fired(result.notifications) == ["workout_frequency_6", "workout_streak_7"]
        streak = next(n for n in result.notifications if n.rule_id == "workout_streak_7")
        assert streak.message.endswith("Reward: Unlock workout variety pack.")
        assert len(result.milestones) == 7

    def test_29_shared_daily_cap(self, clock):
        """Scenario 29: Rule notifications come first and celebrations share the cap."""
        evaluator = TriggerEvaluator(TriggerConfig(daily_cap=1, enable_patterns=False), clock=clock)
        current = HealthMetrics(stress_level=9, water_intake=2200, timestamp=clock.now)

        result = evaluator.process("u1", current, days("water_intake", [2500, 2500]))

        assert fired(result.notifications) == ["high_stress_recovery"]
        assert [m.id for m in result.milestones] == ["hydration_3"]
        assert evaluator.limiter.sent_count("u1") == 1

    def test_30_sorted_by_priority(self, clock):
        """Scenario 30: Higher priority first, then earlier delivery."""
        evaluator = TriggerEvaluator(TriggerConfig(enable_patterns=False), clock=clock)
        current = HealthMetrics(sleep_score=5, water_intake=2200, timestamp=clock.now)

        result = evaluator.process("u1", current, days("water_intake", [2500, 2500]))

        assert [n.rule_id for n in result.notifications] == ["hydration_3", "poor_sleep_nutrition"]

    def test_31_dnd_defers_insights(self):
        """Scenario 31: Pattern insights respect do-not-disturb."""
        clock = FakeClock(datetime(2025, 3, 9, 23, 0))
        evaluator = TriggerEvaluator(
            TriggerConfig(dnd_windows=[("22:00", "07:00")], enable_habit_tracking=False), clock=clock
        )

        [notification] = evaluator.process("u1", HealthMetrics(), days("activity_level", [8] * 10)).notifications

        assert notification.scheduled_for == datetime(2025, 3, 10, 7, 0)

    def test_32_sources_disabled(self, clock):
        """Scenario 32: With both extra sources off only rules notify."""
        evaluator = TriggerEvaluator(
            TriggerConfig(enable_patterns=False, enable_habit_tracking=False), clock=clock
        )

        result = evaluator.process("u1", HealthMetrics(stress_level=9), days("activity_level", [8] * 10))

        assert fired(result.notifications) == ["high_stress_recovery"]
        assert result.patterns == []
        assert result.milestones == []
        assert evaluator.habits.progress("u1") == []
