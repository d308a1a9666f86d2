"""
Habit Milestones
================

Streak, frequency and improvement milestones tracked per user.

Series and their measures (metric scales follow HealthMetrics):
- workout_streak:       consecutive newest days with activity_level > 5
- workout_frequency:    active days among the last 7 points
- sleep_consistency:    consecutive newest days with sleep_score > 6
- sleep_improvement:    mean sleep of the last 7 points vs the prior 7
- nutrition_tracking:   consecutive newest days with calories logged
- hydration:            consecutive newest days with water_intake >= 2000 ml
- stress_management:    relative drop in mean stress, last 7 vs prior 7

A milestone is reported as achieved once, on the update that first
crosses its target.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
import logging
import threading

from coach_engine.models import HealthMetrics

logger = logging.getLogger(__name__)


STREAK_THRESHOLDS = (3, 7, 14, 30, 60, 90, 180, 365)
FREQUENCY_THRESHOLDS = (2, 3, 4, 5, 6)
IMPROVEMENT_THRESHOLDS = (0.1, 0.2, 0.3, 0.5)

ACTIVE_DAY = 5
GOOD_SLEEP = 6
HYDRATION_GOAL_ML = 2000
WINDOW_DAYS = 7


@dataclass
class HabitMilestone:
    id: str
    user_id: str
    series: str
    habit_type: str       # workout_consistency | sleep_schedule | nutrition_tracking | hydration | stress_management
    milestone_type: str   # streak | frequency | improvement
    target_value: float
    current_value: float = 0.0
    progress: float = 0.0
    achieved: bool = False
    achieved_at: Optional[datetime] = None
    celebration_message: str = ""
    reward: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "habit_type": self.habit_type,
            "milestone_type": self.milestone_type,
            "target_value": self.target_value,
            "current_value": round(self.current_value, 3),
            "progress": round(self.progress, 3),
            "achieved": self.achieved,
            "achieved_at": self.achieved_at.isoformat() if self.achieved_at else None,
            "celebration_message": self.celebration_message,
            "reward": self.reward,
        }


# ==============================================================================
# MEASURES
# ==============================================================================

def streak(history: List[HealthMetrics], metric: str, test: Callable[[float], bool]) -> int:
    """Days the test held, counted back from the newest point."""
    count = 0
    for point in sorted(history, key=lambda p: p.timestamp, reverse=True):
        value = point.get(metric)
        if value is None or not test(value):
            break
        count += 1
    return count


def weekly_frequency(history: List[HealthMetrics]) -> int:
    recent = sorted(history, key=lambda p: p.timestamp)[-WINDOW_DAYS:]
    return sum(1 for p in recent if (p.activity_level or 0) > ACTIVE_DAY)


def improvement(history: List[HealthMetrics], metric: str, lower_is_better: bool = False) -> float:
    """Relative change of the last week's mean vs the week before, 0.0 without two weeks."""
    if len(history) < 2 * WINDOW_DAYS:
        return 0.0

    ordered = sorted(history, key=lambda p: p.timestamp)
    recent = [p.get(metric) for p in ordered[-WINDOW_DAYS:] if p.get(metric) is not None]
    previous = [p.get(metric) for p in ordered[-2 * WINDOW_DAYS:-WINDOW_DAYS] if p.get(metric) is not None]
    if not recent or not previous:
        return 0.0

    recent_mean = sum(recent) / len(recent)
    previous_mean = sum(previous) / len(previous)
    if previous_mean <= 0:
        return 0.0
    if lower_is_better:
        return (previous_mean - recent_mean) / previous_mean
    return (recent_mean - previous_mean) / previous_mean


# ==============================================================================
# SERIES
# ==============================================================================

def _workout_streak_message(days) -> str:
    if days <= 7:
        return f"{days} days of consistent workouts! You're building momentum!"
    if days <= 30:
        return f"{days} days strong! Your dedication is paying off!"
    if days <= 90:
        return f"{days} days of consistency! You're a fitness champion!"
    return f"{days} days! You've mastered the art of consistency!"


WORKOUT_REWARDS = {
    7: "Unlock workout variety pack",
    30: "Unlock advanced training programs",
    90: "Unlock elite athlete protocols",
    365: "Unlock lifetime achievement badge",
}


@dataclass(frozen=True)
class MilestoneSeries:
    key: str
    habit_type: str
    milestone_type: str
    thresholds: Tuple[float, ...]
    measure: Callable[[List[HealthMetrics]], float]
    message: Callable[[float], str]
    reward: Callable[[float], Optional[str]] = field(default=lambda target: None)

    def milestone_id(self, target: float) -> str:
        if self.milestone_type == "improvement":
            return f"{self.key}_{round(target * 100)}"
        return f"{self.key}_{target}"


SERIES: List[MilestoneSeries] = [
    MilestoneSeries(
        "workout_streak", "workout_consistency", "streak", STREAK_THRESHOLDS,
        lambda h: streak(h, "activity_level", lambda v: v > ACTIVE_DAY),
        _workout_streak_message,
        WORKOUT_REWARDS.get,
    ),
    MilestoneSeries(
        "workout_frequency", "workout_consistency", "frequency", FREQUENCY_THRESHOLDS,
        weekly_frequency,
        lambda t: f"Amazing! You're working out {t} times per week consistently!",
        lambda t: "Unlock advanced workout plans" if t >= 4 else None,
    ),
    MilestoneSeries(
        "sleep_consistency", "sleep_schedule", "streak", STREAK_THRESHOLDS,
        lambda h: streak(h, "sleep_score", lambda v: v > GOOD_SLEEP),
        lambda t: f"Incredible! {t} days of consistent sleep!",
        lambda t: "Unlock advanced sleep optimization features" if t >= 30 else None,
    ),
    MilestoneSeries(
        "sleep_improvement", "sleep_schedule", "improvement", IMPROVEMENT_THRESHOLDS,
        lambda h: improvement(h, "sleep_score"),
        lambda t: f"Your sleep quality improved by {round(t * 100)}%! Great work!",
    ),
    MilestoneSeries(
        "nutrition_tracking", "nutrition_tracking", "streak", STREAK_THRESHOLDS,
        lambda h: streak(h, "calories_consumed", lambda v: v > 0),
        lambda t: f"{t} days of consistent nutrition tracking! You're building great habits!",
        lambda t: "Unlock personalized meal recommendations" if t >= 30 else None,
    ),
    MilestoneSeries(
        "hydration", "hydration", "streak", STREAK_THRESHOLDS,
        lambda h: streak(h, "water_intake", lambda v: v >= HYDRATION_GOAL_ML),
        lambda t: f"{t} days of staying properly hydrated! Your body thanks you!",
    ),
    MilestoneSeries(
        "stress_management", "stress_management", "improvement", IMPROVEMENT_THRESHOLDS,
        lambda h: improvement(h, "stress_level", lower_is_better=True),
        lambda t: f"Your stress levels improved by {round(t * 100)}%! You're mastering stress management!",
    ),
]


def highest_per_series(milestones: List[HabitMilestone]) -> List[HabitMilestone]:
    """Keep only the largest target of each series, in first-seen series order."""
    best: Dict[str, HabitMilestone] = {}
    for milestone in milestones:
        current = best.get(milestone.series)
        if current is None or milestone.target_value > current.target_value:
            best[milestone.series] = milestone
    return list(best.values())


# ==============================================================================
# TRACKER
# ==============================================================================

class HabitTracker:
    """Per-user milestone ledger."""

    def __init__(self, series: Optional[List[MilestoneSeries]] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self._series = SERIES if series is None else series
        self._clock = clock
        self._milestones: Dict[str, Dict[str, HabitMilestone]] = {}
        self._lock = threading.Lock()

    def update(self, user_id: str, history: List[HealthMetrics]) -> List[HabitMilestone]:
        """Refresh every milestone from `history`; return those achieved by this update."""
        now = self._clock()
        measured = []
        for series in self._series:
            try:
                measured.append((series, series.measure(history)))
            except (TypeError, ValueError) as e:
                logger.error(f"Habit series {series.key} failed: {e}")

        achieved = []
        with self._lock:
            ledger = self._milestones.setdefault(user_id, {})
            for series, value in measured:
                for target in series.thresholds:
                    milestone_id = series.milestone_id(target)
                    milestone = ledger.get(milestone_id)
                    if milestone is None:
                        milestone = HabitMilestone(
                            id=milestone_id,
                            user_id=user_id,
                            series=series.key,
                            habit_type=series.habit_type,
                            milestone_type=series.milestone_type,
                            target_value=target,
                            celebration_message=series.message(target),
                            reward=series.reward(target),
                        )
                        ledger[milestone_id] = milestone

                    milestone.current_value = value
                    milestone.progress = max(0.0, min(1.0, value / target))
                    if not milestone.achieved and value >= target:
                        milestone.achieved = True
                        milestone.achieved_at = now
                        achieved.append(milestone)

        if achieved:
            logger.info(f"{user_id} reached {len(achieved)} milestone(s): "
                        f"{', '.join(m.id for m in achieved)}")
        return achieved

    def progress(self, user_id: str) -> List[HabitMilestone]:
        with self._lock:
            return list(self._milestones.get(user_id, {}).values())

    def next_milestone(self, user_id: str, habit_type: str) -> Optional[HabitMilestone]:
        """The first unachieved milestone of a habit, or None."""
        for milestone in self.progress(user_id):
            if milestone.habit_type == habit_type and not milestone.achieved:
                return milestone
        return None
