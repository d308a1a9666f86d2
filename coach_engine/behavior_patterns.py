"""
Behavior Patterns
=================

Recurring habits detected from a user's metric history. Five detectors:

- workout_timing:     the time slot most hard sessions fall into
- sleep_schedule:     bedtime consistency (wake timestamp minus 8 hours)
- nutrition_habits:   the meal slot most logged eating falls into
- stress_response:    what the day after a high-stress day looks like
- recovery_patterns:  how sleep differs between good and poor recovery days

Detection needs MIN_POINTS of history; a pattern is reported only when its
confidence reaches the threshold. Confidence blends how consistent the
pattern is with how much data backs it (saturating at 30 points).

Metric scales follow HealthMetrics: scores on 0-10.
"""

from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List
import logging
import statistics
import threading

from coach_engine.models import HealthMetrics, new_id

logger = logging.getLogger(__name__)


MIN_POINTS = 7
CONFIDENCE_THRESHOLD = 0.7

WORKOUT_ACTIVITY = 6
ACTIVE_DAY = 5
HIGH_STRESS = 7
GOOD_RECOVERY = 7
POOR_RECOVERY = 4
GOOD_SLEEP = 7

@dataclass
class PatternTrigger:
    type: str         # time_of_day | health_metric
    value: object
    operator: str     # equals | greater_than


@dataclass
class PatternOutcome:
    metric: str
    impact: str       # positive | neutral
    magnitude: float


@dataclass
class BehaviorPattern:
    id: str
    user_id: str
    pattern_type: str
    frequency: float      # 0 to 1
    confidence: float     # 0 to 1
    trigger: PatternTrigger
    outcome: PatternOutcome
    first_detected_at: datetime
    last_detected_at: datetime
    times_detected: int = 1

    @property
    def is_new(self) -> bool:
        return self.times_detected == 1

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pattern_type": self.pattern_type,
            "frequency": round(self.frequency, 3),
            "confidence": round(self.confidence, 3),
            "trigger": {
                "type": self.trigger.type,
                "value": self.trigger.value,
                "operator": self.trigger.operator,
            },
            "outcome": {
                "metric": self.outcome.metric,
                "impact": self.outcome.impact,
                "magnitude": round(self.outcome.magnitude, 3),
            },
            "first_detected_at": self.first_detected_at.isoformat(),
            "last_detected_at": self.last_detected_at.isoformat(),
        }


# ==============================================================================
# HELPERS
# ==============================================================================

def time_slot(hour: int) -> str:
    if 5 <= hour < 9:
        return "early_morning"
    if 9 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def meal_slot(hour: int) -> str:
    if 6 <= hour < 10:
        return "breakfast"
    if 11 <= hour < 15:
        return "lunch"
    if 17 <= hour < 21:
        return "dinner"
    return "snack"


def confidence(frequency: float, points: int) -> float:
    return frequency * 0.7 + min(1.0, points / 30) * 0.3


def _values(points: List[HealthMetrics], metric: str) -> List[float]:
    return [p.get(metric) for p in points if p.get(metric) is not None]


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _with(history: List[HealthMetrics], metric: str, test: Callable[[float], bool]) -> List[HealthMetrics]:
    return [p for p in history if p.get(metric) is not None and test(p.get(metric))]


# ==============================================================================
# DETECTORS
# ==============================================================================
# Each returns (frequency, confidence, trigger, outcome) or None.

def detect_workout_timing(history: List[HealthMetrics]):
    workouts = _with(history, "activity_level", lambda v: v > WORKOUT_ACTIVITY)
    if len(workouts) < 3:
        return None

    slots = Counter(time_slot(p.timestamp.hour) for p in workouts)
    slot, count = slots.most_common(1)[0]
    frequency = count / len(workouts)
    if frequency < 0.6:
        return None

    preferred = _mean([p.activity_level for p in workouts if time_slot(p.timestamp.hour) == slot])
    other = _mean([p.activity_level for p in workouts if time_slot(p.timestamp.hour) != slot])
    return (
        frequency,
        confidence(frequency, len(workouts)),
        PatternTrigger("time_of_day", slot, "equals"),
        PatternOutcome(
            "workout_performance",
            "positive" if preferred > other else "neutral",
            abs(preferred - other) / other if other else 0.0,
        ),
    )


def detect_sleep_schedule(history: List[HealthMetrics]):
    sleeps = _with(history, "sleep_score", lambda v: v > 0)
    if len(sleeps) < 5:
        return None

    bedtimes = [(p.timestamp - timedelta(hours=8)).hour for p in sleeps]
    consistency = max(0.0, 1 - statistics.pvariance(bedtimes) / 4)
    if consistency < 0.5:
        return None

    average_sleep = _mean([p.sleep_score for p in sleeps])
    return (
        consistency,
        confidence(consistency, len(sleeps)),
        PatternTrigger("time_of_day", round(_mean(bedtimes)), "equals"),
        PatternOutcome(
            "sleep_quality",
            "positive" if average_sleep > GOOD_SLEEP else "neutral",
            average_sleep / 10,
        ),
    )


def detect_nutrition_habits(history: List[HealthMetrics]):
    meals = _with(history, "calories_consumed", lambda v: v > 0)
    if len(meals) < 5:
        return None

    slots = Counter(meal_slot(p.timestamp.hour) for p in meals)
    slot, count = slots.most_common(1)[0]
    consistency = count / len(meals)
    if consistency < 0.6:
        return None

    calories = [p.calories_consumed for p in meals]
    calorie_consistency = max(0.0, 1 - statistics.pvariance(calories) / _mean(calories) ** 2)
    return (
        (consistency + calorie_consistency) / 2,
        confidence(consistency, len(meals)),
        PatternTrigger("time_of_day", slot, "equals"),
        PatternOutcome(
            "energy_levels",
            "positive" if calorie_consistency > 0.7 else "neutral",
            calorie_consistency,
        ),
    )


def detect_stress_response(history: List[HealthMetrics]):
    stressed = _with(history, "stress_level", lambda v: v > 0)
    if len(stressed) < 5:
        return None

    peaks = [p for p in stressed if p.stress_level > HIGH_STRESS]
    if len(peaks) < 2:
        return None

    followups = []
    for peak in peaks:
        following = [
            p for p in history
            if peak.timestamp < p.timestamp <= peak.timestamp + timedelta(hours=24)
        ]
        if not following:
            continue
        after = min(following, key=lambda p: p.timestamp)
        next_stress = after.stress_level if after.stress_level is not None else peak.stress_level
        followups.append((peak.stress_level - next_stress, (after.activity_level or 0) > ACTIVE_DAY))

    if len(followups) < 2:
        return None

    workout_helps = sum(1 for _, active in followups if active) > len(followups) / 2
    relief = _mean([drop for drop, _ in followups])
    return (
        len(followups) / len(peaks),
        confidence(0.8, len(followups)),
        PatternTrigger("health_metric", HIGH_STRESS, "greater_than"),
        PatternOutcome(
            "stress_recovery",
            "positive" if workout_helps else "neutral",
            abs(relief) / 10,
        ),
    )


def detect_recovery_patterns(history: List[HealthMetrics]):
    recovered = _with(history, "recovery_score", lambda v: v > 0)
    if len(recovered) < 7:
        return None

    good = [p for p in recovered if p.recovery_score > GOOD_RECOVERY]
    poor = [p for p in recovered if p.recovery_score < POOR_RECOVERY]
    if len(good) < 2 or len(poor) < 2:
        return None

    sleep_impact = _mean(_values(good, "sleep_score")) - _mean(_values(poor, "sleep_score"))
    return (
        len(good) / len(recovered),
        confidence(0.8, len(recovered)),
        PatternTrigger("health_metric", GOOD_RECOVERY, "greater_than"),
        PatternOutcome(
            "recovery_quality",
            "positive" if sleep_impact > 1 else "neutral",
            abs(sleep_impact) / 10,
        ),
    )


SLOT_PHRASES = {
    "early_morning": "in the early morning",
    "morning": "in the morning",
    "afternoon": "in the afternoon",
    "evening": "in the evening",
    "night": "at night",
}


DETECTORS = {
    "workout_timing": detect_workout_timing,
    "sleep_schedule": detect_sleep_schedule,
    "nutrition_habits": detect_nutrition_habits,
    "stress_response": detect_stress_response,
    "recovery_patterns": detect_recovery_patterns,
}


def describe(pattern: BehaviorPattern) -> str:
    """One-line coaching insight for a detected pattern."""
    kind = pattern.pattern_type
    value = pattern.trigger.value
    positive = pattern.outcome.impact == "positive"

    if kind == "workout_timing":
        text = f"You usually train {SLOT_PHRASES[value]}."
        if positive:
            text += " Your sessions there are stronger than at other times."
        return text
    if kind == "sleep_schedule":
        text = f"Your bedtime has been steady, around {value:02d}:00."
        if positive:
            text += " Your sleep quality shows it."
        return text
    if kind == "nutrition_habits":
        return f"Most of your logged eating happens around {value}."
    if kind == "stress_response":
        if positive:
            return "Moving on the day after a stressful one seems to help you bounce back."
        return "High-stress days tend to carry into the next day for you."
    if positive:
        return "Your best recovery days follow your best nights of sleep."
    return "Your recovery swings between good and poor days."


# ==============================================================================
# DETECTOR
# ==============================================================================

class PatternDetector:
    """
    Runs the detectors over a user's history and remembers what it found.

    A pattern type seen again keeps its id and first detection time;
    `is_new` is true only on the run that first reports it.
    """

    def __init__(
        self,
        min_points: int = MIN_POINTS,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.min_points = min_points
        self.confidence_threshold = confidence_threshold
        self._clock = clock
        self._patterns: Dict[str, Dict[str, BehaviorPattern]] = {}
        self._lock = threading.Lock()

    def detect(self, user_id: str, history: List[HealthMetrics]) -> List[BehaviorPattern]:
        if len(history) < self.min_points:
            return []

        history = sorted(history, key=lambda p: p.timestamp)
        now = self._clock()
        detected = []

        for kind, detector in DETECTORS.items():
            try:
                found = detector(history)
            except (TypeError, ValueError, ZeroDivisionError) as e:
                logger.error(f"Pattern {kind} detection failed: {e}")
                continue
            if found is None:
                continue
            frequency, score, trigger, outcome = found
            if score < self.confidence_threshold:
                logger.debug(f"Pattern {kind} for {user_id} below threshold ({score:.2f})")
                continue

            with self._lock:
                known = self._patterns.setdefault(user_id, {})
                previous = known.get(kind)
                if previous is None:
                    pattern = BehaviorPattern(
                        id=new_id(), user_id=user_id, pattern_type=kind,
                        frequency=frequency, confidence=score,
                        trigger=trigger, outcome=outcome,
                        first_detected_at=now, last_detected_at=now,
                    )
                else:
                    pattern = replace(
                        previous, frequency=frequency, confidence=score,
                        trigger=trigger, outcome=outcome, last_detected_at=now,
                        times_detected=previous.times_detected + 1,
                    )
                known[kind] = pattern
            detected.append(pattern)

        if detected:
            logger.info(f"Detected {len(detected)} pattern(s) for {user_id}: "
                        f"{', '.join(p.pattern_type for p in detected)}")
        return detected

    def patterns(self, user_id: str) -> List[BehaviorPattern]:
        with self._lock:
            return list(self._patterns.get(user_id, {}).values())

    def has_pattern(self, user_id: str, pattern_type: str) -> bool:
        with self._lock:
            return pattern_type in self._patterns.get(user_id, {})
