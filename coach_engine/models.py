"""
Coach Engine Data Models
========================

In-memory value types for the conversation core. Nothing here is persisted;
a process restart loses every context, cache entry and stream.

Validation happens in `__post_init__` so malformed input is rejected at the
boundary with `ValidationError` instead of being coerced.
"""

from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import uuid

from coach_engine.errors import ValidationError


def new_id() -> str:
    return uuid.uuid4().hex


# ==============================================================================
# TOPICS
# ==============================================================================

@dataclass(frozen=True)
class Topic:
    """Current conversation topic."""
    id: str
    name: str
    category: str     # general, fitness_planning, nutrition_guidance, ...
    priority: int = 5


GENERAL_TOPIC = Topic(id="general", name="General Health", category="general", priority=5)
FITNESS_TOPIC = Topic(id="fitness", name="Fitness & Workouts", category="fitness_planning", priority=8)
NUTRITION_TOPIC = Topic(id="nutrition", name="Nutrition & Diet", category="nutrition_guidance", priority=7)
SLEEP_TOPIC = Topic(id="sleep", name="Sleep & Recovery", category="sleep_optimization", priority=8)


# ==============================================================================
# USER STATE
# ==============================================================================

MOOD_FIELDS = ("energy", "motivation", "stress", "confidence", "overall")


@dataclass
class MoodIndicator:
    """Mood vector, each dimension on a 0-10 scale."""
    energy: float = 5
    motivation: float = 5
    stress: float = 5
    confidence: float = 5
    overall: float = 5
    timestamp: datetime = field(default_factory=datetime.now)
    source: str = "inferred"  # inferred | reported

    def __post_init__(self):
        for name in MOOD_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"Mood {name} must be a number, got {value!r}")
            if not 0 <= value <= 10:
                raise ValidationError(f"Mood {name} must be within 0-10, got {value}")


IMPACTS = ("positive", "negative", "neutral")


@dataclass
class ContextualFactor:
    """A typed, confidence-weighted observation (weather, stress level, ...)."""
    type: str
    value: Any
    impact: str = "neutral"
    confidence: float = 0.5
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if not isinstance(self.type, str) or not self.type.strip():
            raise ValidationError("Contextual factor type must be a non-empty string")
        if self.impact not in IMPACTS:
            raise ValidationError(f"Unknown factor impact: {self.impact!r}")
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ValidationError(f"Factor confidence must be within 0-1, got {self.confidence}")


@dataclass
class Goal:
    """An active user goal."""
    id: str
    title: str
    description: str = ""
    category: str = "general"

    def __post_init__(self):
        if not isinstance(self.title, str) or not self.title.strip():
            raise ValidationError("Goal title must be a non-empty string")


@dataclass
class HealthMetrics:
    """A snapshot of health telemetry. Every metric is optional."""
    heart_rate: Optional[float] = None
    heart_rate_variability: Optional[float] = None
    sleep_score: Optional[float] = None
    recovery_score: Optional[float] = None
    stress_level: Optional[float] = None
    activity_level: Optional[float] = None
    calories_consumed: Optional[float] = None
    calories_burned: Optional[float] = None
    water_intake: Optional[float] = None       # ml
    weight: Optional[float] = None             # kg
    steps: Optional[float] = None
    active_minutes: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        for name in self.metric_names():
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"Metric {name} must be numeric, got {value!r}")
            if value < 0:
                raise ValidationError(f"Metric {name} must not be negative, got {value}")

    @classmethod
    def metric_names(cls) -> List[str]:
        return [f.name for f in fields(cls) if f.name != "timestamp"]

    def get(self, name: str) -> Optional[float]:
        """Metric value by name, None when unknown or unset."""
        if name not in self.metric_names():
            return None
        return getattr(self, name)

    def present(self) -> Dict[str, float]:
        """Only the metrics that carry a value, in declaration order."""
        return {
            name: getattr(self, name)
            for name in self.metric_names()
            if getattr(self, name) is not None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthMetrics":
        known = set(cls.metric_names()) | {"timestamp"}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown metrics: {', '.join(sorted(unknown))}")
        return cls(**data)


# ==============================================================================
# CONVERSATION
# ==============================================================================

@dataclass(frozen=True)
class MessageHints:
    """Declared sub-context of a message."""
    workout: bool = False
    nutrition: bool = False
    sleep: bool = False
    emotional: bool = False


@dataclass(frozen=True)
class TurnMetadata:
    """Structured metadata attached to a turn."""
    related_metrics: Tuple[str, ...] = ()
    related_goals: Tuple[str, ...] = ()
    confidence: Optional[float] = None
    flags: Tuple[str, ...] = ()
    processing_time_ms: Optional[float] = None


@dataclass(frozen=True)
class ActionSuggestion:
    """Quick action offered alongside a response."""
    text: str
    action: str
    priority: str = "medium"   # low | medium | high
    category: str = "general"
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict:
        return asdict(self)


SENDERS = ("user", "assistant")


@dataclass(frozen=True)
class ChatTurn:
    """Immutable message in a session's history."""
    sender: str
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    hints: MessageHints = field(default_factory=MessageHints)
    metadata: TurnMetadata = field(default_factory=TurnMetadata)
    suggestions: Tuple[ActionSuggestion, ...] = ()
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        if self.sender not in SENDERS:
            raise ValidationError(f"Unknown sender: {self.sender!r}")
        if not isinstance(self.content, str) or not self.content.strip():
            raise ValidationError("Message content must be a non-empty string")

    @property
    def role(self) -> str:
        return "user" if self.sender == "user" else "assistant"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sender": self.sender,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "related_metrics": list(self.metadata.related_metrics),
            "related_goals": list(self.metadata.related_goals),
            "confidence": self.metadata.confidence,
            "flags": list(self.metadata.flags),
            "suggestions": [s.to_dict() for s in self.suggestions],
        }


@dataclass
class AIResponse:
    """A generated (or fallback) coaching response."""
    content: str
    confidence: float
    suggestions: List[ActionSuggestion] = field(default_factory=list)
    follow_up_questions: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)
    processing_time_ms: float = 0.0
    tokens_used: int = 0
    finish_reason: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return "fallback_response" in self.flags


@dataclass
class SessionContext:
    """Per-conversation mutable state."""
    user_id: str
    session_id: str
    current_topic: Topic = GENERAL_TOPIC
    mood: MoodIndicator = field(default_factory=MoodIndicator)
    contextual_factors: List[ContextualFactor] = field(default_factory=list)
    active_goals: List[Goal] = field(default_factory=list)
    history: List[ChatTurn] = field(default_factory=list)
    recent_metrics: HealthMetrics = field(default_factory=HealthMetrics)
    created_at: datetime = field(default_factory=datetime.now)
    last_interaction_at: datetime = field(default_factory=datetime.now)
    session_duration_minutes: float = 0.0

    def factor_types(self) -> List[str]:
        return [f.type for f in self.contextual_factors]

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "current_topic": asdict(self.current_topic),
            "mood": {name: getattr(self.mood, name) for name in MOOD_FIELDS},
            "contextual_factors": [
                {"type": f.type, "value": f.value, "impact": f.impact, "confidence": f.confidence}
                for f in self.contextual_factors
            ],
            "active_goals": [asdict(g) for g in self.active_goals],
            "history": [t.to_dict() for t in self.history],
            "recent_metrics": self.recent_metrics.present(),
            "last_interaction_at": self.last_interaction_at.isoformat(),
            "session_duration_minutes": round(self.session_duration_minutes, 2),
        }
