"""
Correlation Engine
==================

Relates sleep to next-day metrics over a user's metric history.

- pearson(): plain Pearson coefficient, 0.0 for a constant series
- significance(): rough confidence from the t-statistic (n < 10 -> 0.5)
- analyze(): pairs series_a on day d with series_b on day d + lag
- generate_insights(): default sleep pairs, reported when |r| > 0.3
  and significance > 0.7
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import math
import statistics

from coach_engine.models import HealthMetrics

logger = logging.getLogger(__name__)


MIN_POINTS = 7
MIN_ABS_CORRELATION = 0.3
MIN_SIGNIFICANCE = 0.7

DEFAULT_PAIRS: List[Tuple[str, str]] = [
    ("sleep_score", "activity_level"),
    ("sleep_score", "stress_level"),
    ("sleep_score", "recovery_score"),
]


@dataclass
class CorrelationResult:
    first: str
    second: str
    correlation: float        # -1 to 1
    strength: str             # weak | moderate | strong
    significance: float       # 0 to 1
    sample_size: int


@dataclass
class CorrelationInsight:
    """A reportable relationship between two metrics."""
    metric: str               # "<first>_vs_<second>"
    correlation: str          # positive | negative
    strength: str
    evidence: float
    message: str
    recommendation: str
    priority: str = "medium"
    related_factors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "metric": self.metric,
            "correlation": self.correlation,
            "strength": self.strength,
            "evidence": self.evidence,
            "message": self.message,
            "recommendation": self.recommendation,
            "priority": self.priority,
            "related_factors": list(self.related_factors),
        }


# ==============================================================================
# STATISTICS
# ==============================================================================

def pearson(x: Sequence[float], y: Sequence[float]) -> float:
    if len(x) != len(y):
        raise ValueError(f"Series length mismatch: {len(x)} vs {len(y)}")
    if len(x) < 2:
        raise ValueError("At least two points are required")

    mean_x = statistics.mean(x)
    mean_y = statistics.mean(y)
    dx = [v - mean_x for v in x]
    dy = [v - mean_y for v in y]

    denominator = math.sqrt(sum(a * a for a in dx) * sum(b * b for b in dy))
    if denominator == 0:
        return 0.0
    r = sum(a * b for a, b in zip(dx, dy)) / denominator
    return max(-1.0, min(1.0, r))


def correlation_strength(r: float) -> str:
    r = abs(r)
    if r < 0.3:
        return "weak"
    if r < 0.7:
        return "moderate"
    return "strong"


def significance(r: float, n: int) -> float:
    if n < 10:
        return 0.5
    if abs(r) >= 1.0:
        return 0.95
    t_stat = abs(r) * math.sqrt((n - 2) / (1 - r * r))
    if t_stat > 2.5:
        return 0.95
    if t_stat > 2.0:
        return 0.8
    if t_stat > 1.5:
        return 0.7
    return 0.5


def daily_series(history: List[HealthMetrics], metric: str) -> Dict[date, float]:
    """Mean value of `metric` per calendar day, days without a value skipped."""
    by_day: Dict[date, List[float]] = {}
    for point in history:
        value = point.get(metric)
        if value is not None:
            by_day.setdefault(point.timestamp.date(), []).append(value)
    return {day: statistics.mean(values) for day, values in by_day.items()}


def analyze(
    series_a: Dict[date, float],
    series_b: Dict[date, float],
    lag_days: int = 1,
    names: Tuple[str, str] = ("a", "b")
) -> Optional[CorrelationResult]:
    """Correlate series_a on day d with series_b on day d + lag_days."""
    lag = timedelta(days=lag_days)
    pairs = [
        (value, series_b[day + lag])
        for day, value in sorted(series_a.items())
        if day + lag in series_b
    ]
    if len(pairs) < 2:
        return None

    xs = [a for a, _ in pairs]
    ys = [b for _, b in pairs]
    r = pearson(xs, ys)
    return CorrelationResult(
        first=names[0],
        second=names[1],
        correlation=r,
        strength=correlation_strength(r),
        significance=significance(r, len(pairs)),
        sample_size=len(pairs),
    )


# ==============================================================================
# INSIGHTS
# ==============================================================================

INSIGHT_TEXT = {
    ("activity_level", "positive"): (
        "Your activity levels rise after nights of better sleep",
        "Prioritize your sleep before demanding training days",
        "high",
    ),
    ("stress_level", "negative"): (
        "Poorer sleep is followed by higher stress the next day",
        "Address what disrupts your sleep to keep daily stress down",
        "medium",
    ),
    ("recovery_score", "positive"): (
        "Your recovery tracks closely with how well you sleep",
        "Keep a consistent sleep schedule to support recovery",
        "high",
    ),
}


def _insight(result: CorrelationResult) -> CorrelationInsight:
    direction = "positive" if result.correlation > 0 else "negative"
    message, recommendation, priority = INSIGHT_TEXT.get(
        (result.second, direction),
        (
            f"{result.first} and next-day {result.second} show a {result.strength} {direction} relationship",
            "Keep logging both metrics to confirm this pattern",
            "low",
        ),
    )
    return CorrelationInsight(
        metric=f"{result.first}_vs_{result.second}",
        correlation=direction,
        strength=result.strength,
        evidence=result.significance,
        message=message,
        recommendation=recommendation,
        priority=priority,
        related_factors=[result.first, result.second],
    )


def generate_insights(
    history: List[HealthMetrics],
    pairs: Optional[List[Tuple[str, str]]] = None,
    lag_days: int = 1
) -> List[CorrelationInsight]:
    insights = []
    for first, second in pairs or DEFAULT_PAIRS:
        result = analyze(
            daily_series(history, first),
            daily_series(history, second),
            lag_days,
            names=(first, second),
        )
        if result is None or result.sample_size < MIN_POINTS:
            continue
        if abs(result.correlation) > MIN_ABS_CORRELATION and result.significance > MIN_SIGNIFICANCE:
            insights.append(_insight(result))

    logger.debug(f"Generated {len(insights)} correlation insights from {len(history)} points")
    return insights
