"""
Trigger Evaluator
=================

A small rule engine over health metrics. Each TriggerRule pairs a
condition with a coaching action; firing rules produce Notification
records for an external delivery channel.

Condition kinds:
- threshold:         metric <op> value on the current snapshot
- consecutive_days:  the threshold holds for each of the last N historical points
- decline:           mean of the last K points vs the prior K dropped by >= pct
- correlation:       two thresholds on two metrics hold at the same time
- time_window:       the current clock time (and weekday) is inside a window

`process()` adds two more notification sources behind the same daily cap:
insights for newly detected behavior patterns and celebrations for newly
achieved habit milestones.

Metric scales follow HealthMetrics: scores on 0-10, water in ml.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union
import logging
import threading

from coach_engine.behavior_patterns import BehaviorPattern, PatternDetector, describe
from coach_engine.config import TriggerConfig
from coach_engine.errors import ValidationError
from coach_engine.habit_milestones import HabitMilestone, HabitTracker, highest_per_series
from coach_engine.models import HealthMetrics, new_id
from coach_engine.notification_timing import (
    DeliveryLimiter, DeliveryTiming, TimeWindow, defer_for_dnd, scheduled_time,
    windows_from_config,
)

logger = logging.getLogger(__name__)


OPERATORS = ("greater_than", "less_than", "equals")
PRIORITIES = ("low", "medium", "high", "urgent")
CELEBRATION_TTL = timedelta(hours=24)


def compare(value: float, operator: str, threshold: float) -> bool:
    if operator == "greater_than":
        return value > threshold
    if operator == "less_than":
        return value < threshold
    if operator == "equals":
        return abs(value - threshold) < 0.01
    return False


# ==============================================================================
# CONDITIONS
# ==============================================================================

@dataclass
class ThresholdCondition:
    metric: str
    operator: str
    value: float

    def __post_init__(self):
        if self.operator not in OPERATORS:
            raise ValidationError(f"Unknown operator: {self.operator!r}")
        if self.metric not in HealthMetrics.metric_names():
            raise ValidationError(f"Unknown metric: {self.metric!r}")

    def holds(self, metrics: HealthMetrics) -> bool:
        value = metrics.get(self.metric)
        return value is not None and compare(value, self.operator, self.value)

    def evaluate(self, current, historical, now) -> bool:
        return self.holds(current)


@dataclass
class ConsecutiveDaysCondition:
    threshold: ThresholdCondition
    days: int

    def evaluate(self, current, historical, now) -> bool:
        if self.days < 1 or len(historical) < self.days:
            return False
        return all(self.threshold.holds(point) for point in historical[-self.days:])


@dataclass
class DeclineCondition:
    """Fires when mean(last K) is at least `percentage` below mean(prior K)."""
    metric: str
    percentage: float       # 0.2 == 20%
    window_days: int = 7

    def evaluate(self, current, historical, now) -> bool:
        values = [p.get(self.metric) for p in historical]
        values = [v for v in values if v is not None]
        k = self.window_days
        if k < 1 or len(values) < 2 * k:
            return False

        recent = sum(values[-k:]) / k
        previous = sum(values[-2 * k:-k]) / k
        if previous == 0:
            return False
        return (previous - recent) / previous >= abs(self.percentage)


@dataclass
class CorrelationCondition:
    first: ThresholdCondition
    second: ThresholdCondition

    def evaluate(self, current, historical, now) -> bool:
        return self.first.holds(current) and self.second.holds(current)


@dataclass
class TimeWindowCondition:
    window: TimeWindow

    def evaluate(self, current, historical, now) -> bool:
        return self.window.contains(now)


TriggerCondition = Union[
    ThresholdCondition, ConsecutiveDaysCondition, DeclineCondition,
    CorrelationCondition, TimeWindowCondition,
]


def primary_metric(condition: TriggerCondition) -> Optional[str]:
    if isinstance(condition, (ThresholdCondition, DeclineCondition)):
        return condition.metric
    if isinstance(condition, ConsecutiveDaysCondition):
        return condition.threshold.metric
    if isinstance(condition, CorrelationCondition):
        return condition.first.metric
    return None


# ==============================================================================
# RULES & NOTIFICATIONS
# ==============================================================================

@dataclass
class SuggestedAction:
    type: str
    title: str
    description: str
    estimated_minutes: int = 0
    difficulty: str = "easy"


@dataclass
class CoachingAction:
    kind: str   # immediate_notification | scheduled_reminder | conversation_starter | plan_adjustment
    message: str
    actions: List[SuggestedAction] = field(default_factory=list)
    timing: DeliveryTiming = field(default_factory=DeliveryTiming)


@dataclass
class TriggerRule:
    id: str
    name: str
    condition: TriggerCondition
    action: CoachingAction
    title: Optional[str] = None
    priority: Optional[str] = None
    enabled: bool = True
    trigger_count: int = 0
    last_triggered_at: Optional[datetime] = None

    def __post_init__(self):
        if self.priority is not None and self.priority not in PRIORITIES:
            raise ValidationError(f"Unknown priority: {self.priority!r}")


@dataclass
class TriggerData:
    metric: Optional[str]
    previous_value: Optional[float]
    current_value: Optional[float]
    change_percentage: float
    trend: str    # increasing | decreasing | stable


@dataclass
class Notification:
    id: str
    user_id: str
    rule_id: str
    type: str      # health_alert | coaching_suggestion | pattern_insight | milestone_celebration
    priority: str
    title: str
    message: str
    suggested_actions: List[SuggestedAction]
    trigger_data: TriggerData
    created_at: datetime
    scheduled_for: datetime
    expires_at: datetime
    delivered: bool = False
    acknowledged: bool = False

    @property
    def actionable(self) -> bool:
        return bool(self.suggested_actions)


def default_priority(rule: TriggerRule) -> str:
    if rule.priority:
        return rule.priority
    if "stress" in rule.id or "dehydration" in rule.id:
        return "high"
    if "recovery" in rule.id or "performance" in rule.id:
        return "medium"
    return "low"


def notification_type(action: CoachingAction) -> str:
    return "health_alert" if action.kind == "immediate_notification" else "coaching_suggestion"


def trigger_data(metric: Optional[str], current: HealthMetrics, historical: List[HealthMetrics]) -> TriggerData:
    if metric is None:
        return TriggerData(None, None, None, 0.0, "stable")

    current_value = current.get(metric)
    previous_value = None
    for point in reversed(historical):
        if point.get(metric) is not None:
            previous_value = point.get(metric)
            break

    change = 0.0
    if current_value is not None and previous_value:
        change = round((current_value - previous_value) / previous_value * 100, 1)

    trend = "stable"
    if change > 5:
        trend = "increasing"
    elif change < -5:
        trend = "decreasing"
    return TriggerData(metric, previous_value, current_value, change, trend)


@dataclass
class ProactiveResult:
    notifications: List[Notification]
    patterns: List[BehaviorPattern]
    milestones: List[HabitMilestone]


PRIORITY_RANK = {"urgent": 4, "high": 3, "medium": 2, "low": 1}


# ==============================================================================
# DEFAULT RULES
# ==============================================================================

def default_rules() -> List[TriggerRule]:
    return [
        TriggerRule(
            id="poor_sleep_nutrition",
            name="Poor Sleep Nutrition Adjustment",
            title="Sleep Recovery Plan",
            condition=ThresholdCondition("sleep_score", "less_than", 6),
            action=CoachingAction(
                kind="immediate_notification",
                message="Your sleep quality was low last night. Let's optimize your nutrition today to help you recover.",
                actions=[
                    SuggestedAction("nutrition_suggestion", "Hydrate First",
                                    "Drink 16-20oz of water to combat sleep-related dehydration", 2),
                    SuggestedAction("nutrition_suggestion", "Protein-Rich Breakfast",
                                    "Focus on protein to stabilize blood sugar after poor sleep", 15),
                ],
                timing=DeliveryTiming(immediate=False, delay_minutes=30,
                                      preferred_window=TimeWindow("07:00", "10:00")),
            ),
        ),
        TriggerRule(
            id="high_stress_recovery",
            name="High Stress Recovery Protocol",
            title="High Stress Alert",
            condition=ThresholdCondition("stress_level", "greater_than", 7),
            action=CoachingAction(
                kind="immediate_notification",
                message="Your stress levels are elevated. Let's take immediate action to help you feel better.",
                actions=[
                    SuggestedAction("stress_management", "Immediate Relief",
                                    "4-7-8 breathing technique for quick stress reduction", 3),
                    SuggestedAction("workout_adjustment", "Gentle Movement",
                                    "Light stretching or short walk to release tension", 10),
                ],
                timing=DeliveryTiming(immediate=True, respect_user_preferences=False),
            ),
        ),
        TriggerRule(
            id="low_recovery_workout",
            name="Low Recovery Workout Adjustment",
            title="Workout Adjustment Needed",
            condition=ThresholdCondition("recovery_score", "less_than", 5),
            action=CoachingAction(
                kind="scheduled_reminder",
                message="Your recovery is low today. Let's adjust your workout to support your body's needs.",
                actions=[
                    SuggestedAction("workout_adjustment", "Active Recovery",
                                    "Switch to light yoga, walking, or mobility work", 30),
                    SuggestedAction("workout_adjustment", "Reduce Intensity",
                                    "If you must train, reduce intensity by 30-40%", 45, "moderate"),
                ],
                timing=DeliveryTiming(immediate=False, delay_minutes=60,
                                      preferred_window=TimeWindow("06:00", "09:00")),
            ),
        ),
        TriggerRule(
            id="high_activity_low_fuel",
            name="High Activity Low Fuel Alert",
            title="Fuel Your Performance",
            condition=CorrelationCondition(
                ThresholdCondition("activity_level", "greater_than", 8),
                ThresholdCondition("calories_consumed", "less_than", 1500),
            ),
            action=CoachingAction(
                kind="immediate_notification",
                message="You're training hard but haven't eaten enough. Let's fuel your body properly.",
                actions=[
                    SuggestedAction("nutrition_suggestion", "Post-Workout Fuel",
                                    "Eat a balanced meal with protein and carbs within 2 hours", 20),
                    SuggestedAction("nutrition_suggestion", "Quick Energy",
                                    "Have a protein shake or banana if you can't eat a full meal", 5),
                ],
                timing=DeliveryTiming(immediate=True),
            ),
        ),
        TriggerRule(
            id="activity_dehydration",
            name="Activity Dehydration Alert",
            title="Hydration Alert",
            condition=CorrelationCondition(
                ThresholdCondition("activity_level", "greater_than", 6),
                ThresholdCondition("water_intake", "less_than", 1500),
            ),
            action=CoachingAction(
                kind="immediate_notification",
                message="You're active but haven't had enough water. Let's get you hydrated.",
                actions=[
                    SuggestedAction("nutrition_suggestion", "Immediate Hydration",
                                    "Drink 16-20oz of water right now", 2),
                    SuggestedAction("nutrition_suggestion", "Electrolyte Balance",
                                    "Add electrolytes if you've been sweating heavily", 3),
                ],
                timing=DeliveryTiming(immediate=True, respect_user_preferences=False),
            ),
        ),
        TriggerRule(
            id="consistent_poor_sleep",
            name="Consistent Poor Sleep Intervention",
            title="Sleep Improvement Plan",
            condition=ConsecutiveDaysCondition(ThresholdCondition("sleep_score", "less_than", 6), days=3),
            action=CoachingAction(
                kind="conversation_starter",
                message="I've noticed your sleep has been challenging for a few days. Let's work together to improve it.",
                actions=[
                    SuggestedAction("sleep_optimization", "Sleep Environment Audit",
                                    "Review and optimize your bedroom for better sleep", 15),
                    SuggestedAction("sleep_optimization", "Bedtime Routine Reset",
                                    "Create a consistent wind-down routine", 30, "moderate"),
                ],
                timing=DeliveryTiming(immediate=False, preferred_window=TimeWindow("19:00", "21:00")),
            ),
        ),
        TriggerRule(
            id="workout_performance_decline",
            name="Workout Performance Decline Alert",
            title="Performance Check-In",
            condition=DeclineCondition("activity_level", 0.2, window_days=7),
            action=CoachingAction(
                kind="conversation_starter",
                message="I've noticed your workout performance has declined recently. Let's figure out what's going on.",
                actions=[
                    SuggestedAction("workout_adjustment", "Recovery Week",
                                    "Take a planned recovery week to reset", 0),
                    SuggestedAction("stress_management", "Stress Assessment",
                                    "Evaluate if stress is impacting your performance", 10),
                ],
                timing=DeliveryTiming(immediate=False, preferred_window=TimeWindow("18:00", "20:00")),
            ),
        ),
    ]


# ==============================================================================
# EVALUATOR
# ==============================================================================

class TriggerEvaluator:
    """
    Evaluates enabled rules and produces notifications.

    Rules are shared configuration; the per-user delivery ledger is the
    only per-user state. `mood_lookup` (user_id -> stress level or None)
    enables escalation of high-priority notifications to urgent.
    """

    ESCALATION_STRESS = 8

    def __init__(
        self,
        config: Optional[TriggerConfig] = None,
        rules: Optional[List[TriggerRule]] = None,
        clock: Callable[[], datetime] = datetime.now,
        mood_lookup: Optional[Callable[[str], Optional[float]]] = None
    ):
        self.config = config or TriggerConfig()
        self._clock = clock
        self._mood_lookup = mood_lookup
        self._lock = threading.Lock()
        self._rules: Dict[str, TriggerRule] = {}
        for rule in (default_rules() if rules is None else rules):
            self._rules[rule.id] = rule
        for rule_id in self.config.disabled_rules:
            if rule_id in self._rules:
                self._rules[rule_id].enabled = False

        self.dnd_windows: List[TimeWindow] = windows_from_config(self.config.dnd_windows)
        self.limiter = DeliveryLimiter(self.config.daily_cap, clock)
        self.patterns = PatternDetector(confidence_threshold=self.config.pattern_confidence, clock=clock)
        self.habits = HabitTracker(clock=clock)

    # ==========================================================================
    # RULE MANAGEMENT
    # ==========================================================================

    def rules(self) -> List[TriggerRule]:
        with self._lock:
            return list(self._rules.values())

    def add_rule(self, rule: TriggerRule):
        with self._lock:
            self._rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return False
            rule.enabled = enabled
        logger.info(f"Trigger {rule_id} {'enabled' if enabled else 'disabled'}")
        return True

    def get_trigger_stats(self, rule_id: str) -> Optional[dict]:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return None
            return {
                "rule_id": rule.id,
                "enabled": rule.enabled,
                "trigger_count": rule.trigger_count,
                "last_triggered_at": rule.last_triggered_at,
            }

    # ==========================================================================
    # EVALUATION
    # ==========================================================================

    def evaluate(
        self,
        user_id: str,
        current: HealthMetrics,
        historical: Optional[List[HealthMetrics]] = None
    ) -> List[Notification]:
        """
        Evaluate every enabled rule. Firing rules update their counters
        even when the daily cap suppresses the notification.
        """
        historical = historical or []
        now = self._clock()
        notifications = []

        escalate = False
        if self._mood_lookup is not None:
            stress = self._mood_lookup(user_id)
            escalate = stress is not None and stress >= self.ESCALATION_STRESS

        for rule in self.rules():
            if not rule.enabled:
                continue
            try:
                fired = rule.condition.evaluate(current, historical, now)
            except (TypeError, ValueError) as e:
                logger.error(f"Trigger {rule.id} evaluation failed: {e}")
                continue
            if not fired:
                continue

            with self._lock:
                rule.trigger_count += 1
                rule.last_triggered_at = now

            notification = self._build_notification(user_id, rule, current, historical, now, escalate)
            self._admit(notification, notifications)

        return notifications

    def _build_notification(self, user_id, rule, current, historical, now, escalate) -> Notification:
        priority = default_priority(rule)
        if escalate and priority == "high":
            priority = "urgent"

        timing = rule.action.timing
        if priority == "urgent":
            scheduled = now
        else:
            scheduled = scheduled_time(timing, now)
            if timing.respect_user_preferences:
                scheduled = defer_for_dnd(scheduled, self.dnd_windows)

        return Notification(
            id=new_id(),
            user_id=user_id,
            rule_id=rule.id,
            type=notification_type(rule.action),
            priority=priority,
            title=rule.title or "Coaching Suggestion",
            message=rule.action.message,
            suggested_actions=list(rule.action.actions),
            trigger_data=trigger_data(primary_metric(rule.condition), current, historical),
            created_at=now,
            scheduled_for=scheduled,
            expires_at=now + timedelta(hours=self.config.notification_ttl_hours),
        )

    def process(
        self,
        user_id: str,
        current: HealthMetrics,
        historical: Optional[List[HealthMetrics]] = None
    ) -> ProactiveResult:
        """
        Full proactive pass over one user's data.

        1. Rule notifications (see `evaluate`)
        2. One insight per pattern type the first time it is detected,
           from `historical` only
        3. One celebration per milestone series, for the highest target
           this update newly achieved over `historical` plus `current`

        All notifications draw on the same daily cap, in that order, and
        are returned highest priority first, then earliest delivery.
        """
        historical = historical or []
        notifications = self.evaluate(user_id, current, historical)
        now = self._clock()

        patterns: List[BehaviorPattern] = []
        if self.config.enable_patterns:
            patterns = self.patterns.detect(user_id, historical)
            for pattern in patterns:
                if pattern.is_new:
                    self._admit(self._pattern_notification(user_id, pattern, now), notifications)

        milestones: List[HabitMilestone] = []
        if self.config.enable_habit_tracking and historical:
            milestones = self.habits.update(user_id, historical + [current])
            for milestone in highest_per_series(milestones):
                self._admit(self._celebration(user_id, milestone, now), notifications)

        notifications.sort(key=lambda n: (-PRIORITY_RANK[n.priority], n.scheduled_for))
        return ProactiveResult(notifications, patterns, milestones)

    def _admit(self, notification: Notification, out: List[Notification]):
        if not self.limiter.allow(notification.user_id, notification.priority):
            logger.debug(f"Daily cap reached for {notification.user_id}, dropping {notification.rule_id}")
            return
        logger.info(f"Notification {notification.rule_id} for {notification.user_id} "
                    f"(type={notification.type}, priority={notification.priority})")
        out.append(notification)

    def _pattern_notification(self, user_id, pattern: BehaviorPattern, now) -> Notification:
        return Notification(
            id=new_id(),
            user_id=user_id,
            rule_id=f"pattern_{pattern.pattern_type}",
            type="pattern_insight",
            priority="low",
            title="Pattern Noticed",
            message=describe(pattern),
            suggested_actions=[],
            trigger_data=TriggerData(pattern.outcome.metric, None, None, 0.0, "stable"),
            created_at=now,
            scheduled_for=defer_for_dnd(now, self.dnd_windows),
            expires_at=now + timedelta(hours=self.config.notification_ttl_hours),
        )

    def _celebration(self, user_id, milestone: HabitMilestone, now) -> Notification:
        message = milestone.celebration_message
        if milestone.reward:
            message += f" Reward: {milestone.reward}."
        return Notification(
            id=new_id(),
            user_id=user_id,
            rule_id=milestone.id,
            type="milestone_celebration",
            priority="medium",
            title="Milestone Achieved!",
            message=message,
            suggested_actions=[],
            trigger_data=TriggerData(milestone.habit_type, None, milestone.current_value, 0.0, "increasing"),
            created_at=now,
            scheduled_for=defer_for_dnd(now, self.dnd_windows),
            expires_at=now + CELEBRATION_TTL,
        )
