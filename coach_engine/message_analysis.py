"""
Message Analysis
================

Rule-based analysis of chat text, both directions:

User messages:
- Intent (greeting, log_data, ask_advice, ...)
- Entities (values with units, activities, emotions)
- Sentiment and emotion -> mood mapping
- Declared sub-context hints (workout / nutrition / sleep / emotional)
- Data-logging opportunities ("I slept 8 hours" -> sleep_score = 8)

Assistant responses:
- Quick action suggestions, follow-up questions, flags
- Metric and goal references, message type

Everything here is a pure function of its input.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import re

from coach_engine.models import ActionSuggestion, AIResponse, Goal, MessageHints


@dataclass
class Entity:
    type: str          # value | activity | emotion
    value: Any
    confidence: float
    start: int
    end: int
    unit: Optional[str] = None


@dataclass
class DataLoggingOpportunity:
    """A metric the user just reported in free text."""
    metric: str
    value: Optional[float]
    unit: Optional[str]
    confidence: float
    follow_up_questions: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "metric": self.metric,
            "value": self.value,
            "unit": self.unit,
            "confidence": self.confidence,
            "follow_up_questions": list(self.follow_up_questions),
        }


@dataclass
class MessageAnalysis:
    intent: str
    sentiment: str
    hints: MessageHints
    entities: List[Entity] = field(default_factory=list)
    data_logging: Optional[DataLoggingOpportunity] = None
    confidence: float = 0.8

    @property
    def emotion(self) -> Optional[str]:
        """First emotion word found in the message."""
        for entity in self.entities:
            if entity.type == "emotion":
                return entity.value
        return None


# ==============================================================================
# INTENT
# ==============================================================================

# Checked in order, first match wins
INTENT_PATTERNS = [
    ("greeting", re.compile(r"^(hi|hello|hey|good morning|good afternoon|good evening)\b", re.I)),
    ("log_data", re.compile(r"\b(slept|ate|drank|worked out|weigh|feeling|energy|stress)\b", re.I)),
    ("ask_advice", re.compile(r"\b(should|recommend|suggest|advice|help|how to|what)\b", re.I)),
    ("report_progress", re.compile(r"\b(completed|finished|achieved|progress|goal|milestone)\b", re.I)),
    ("express_concern", re.compile(r"\b(worried|concerned|struggling|difficult|hard|problem)\b", re.I)),
    ("request_motivation", re.compile(r"\b(motivated|motivation|encourage|support|boost|inspire)\b", re.I)),
    ("plan_activity", re.compile(r"\b(plan|schedule|workout|exercise|meal|activity)\b", re.I)),
]


def determine_intent(message: str) -> str:
    text = message.strip()
    for intent, pattern in INTENT_PATTERNS:
        if pattern.search(text):
            return intent
    return "general_chat"


# ==============================================================================
# ENTITIES & SENTIMENT
# ==============================================================================

VALUE_PATTERN = re.compile(
    r"(\d+(?:\.\d+)?)\s*(hours?|hrs?|h|lbs?|kg|calories|steps|minutes?|mins?|glasses?|cups?)\b", re.I
)
ACTIVITY_PATTERN = re.compile(
    r"\b(running|cycling|swimming|yoga|lifting|cardio|strength|hiit|walking)\b", re.I
)
EMOTION_PATTERN = re.compile(
    r"\b(tired|exhausted|energetic|motivated|unmotivated|stressed|overwhelmed|anxious|"
    r"happy|sad|excited|calm|relaxed|frustrated|confident|great|good|bad|terrible)\b", re.I
)

POSITIVE_WORDS = ["great", "good", "awesome", "fantastic", "amazing", "love", "happy", "excited", "motivated", "energetic"]
NEGATIVE_WORDS = ["bad", "terrible", "awful", "hate", "sad", "tired", "stressed", "frustrated", "difficult", "struggling"]


def extract_entities(message: str) -> List[Entity]:
    entities = []

    for match in VALUE_PATTERN.finditer(message):
        entities.append(Entity(
            type="value",
            value=float(match.group(1)),
            unit=match.group(2).lower(),
            confidence=0.9,
            start=match.start(),
            end=match.end(),
        ))

    for match in ACTIVITY_PATTERN.finditer(message):
        entities.append(Entity("activity", match.group(1).lower(), 0.8, match.start(), match.end()))

    for match in EMOTION_PATTERN.finditer(message):
        entities.append(Entity("emotion", match.group(1).lower(), 0.7, match.start(), match.end()))

    return entities


def analyze_sentiment(message: str) -> str:
    message_lower = message.lower()
    positive = sum(1 for word in POSITIVE_WORDS if word in message_lower)
    negative = sum(1 for word in NEGATIVE_WORDS if word in message_lower)

    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"


# Emotion word -> value on each mood dimension. Unknown words map to 5.
EMOTION_SCALES = {
    "energy": {
        "tired": 2, "exhausted": 1, "low": 3, "okay": 5, "good": 7,
        "great": 8, "energetic": 9, "amazing": 10,
    },
    "motivation": {
        "unmotivated": 2, "low": 3, "okay": 5, "good": 7, "motivated": 8,
        "excited": 9, "inspired": 10,
    },
    "stress": {
        "calm": 2, "relaxed": 3, "okay": 5, "stressed": 7, "overwhelmed": 8,
        "anxious": 9, "panicked": 10,
    },
    "confidence": {
        "insecure": 2, "uncertain": 4, "okay": 5, "confident": 7, "strong": 8,
        "unstoppable": 10,
    },
}


def mood_from_emotion(emotion: str) -> Dict[str, int]:
    """Map one emotion word onto the four mood dimensions."""
    emotion = emotion.lower()
    return {aspect: scale.get(emotion, 5) for aspect, scale in EMOTION_SCALES.items()}


# ==============================================================================
# HINTS
# ==============================================================================

HINT_KEYWORDS = {
    "workout": ["workout", "workouts", "exercise", "exercised", "exercising", "training", "fitness", "gym",
                "worked out", "run", "runs", "running", "ran", "lift", "lifted", "lifting"],
    "nutrition": ["food", "eat", "eating", "ate", "meal", "meals", "nutrition", "diet", "calorie", "calories",
                  "protein", "snack", "snacks"],
    "sleep": ["sleep", "sleeping", "slept", "bedtime", "insomnia", "nap", "napped", "tired", "rest", "rested",
              "resting"],
    "emotional": ["stress", "stressed", "anxious", "worried", "overwhelmed", "sad", "frustrated", "feeling",
                  "mood"],
}


def _matches(message_lower: str, keywords: List[str]) -> bool:
    return any(re.search(r"\b" + re.escape(word) + r"\b", message_lower) for word in keywords)


def detect_hints(message: str) -> MessageHints:
    """Declared sub-context of a user message."""
    message_lower = message.lower()
    return MessageHints(
        workout=_matches(message_lower, HINT_KEYWORDS["workout"]),
        nutrition=_matches(message_lower, HINT_KEYWORDS["nutrition"]),
        sleep=_matches(message_lower, HINT_KEYWORDS["sleep"]),
        emotional=_matches(message_lower, HINT_KEYWORDS["emotional"]),
    )


# ==============================================================================
# DATA LOGGING
# ==============================================================================

SLEEP_LOG = re.compile(r"(?:slept|sleep|sleeping).{0,50}?(\d+(?:\.\d+)?)\s*(?:hours?|hrs?|h)\b", re.I)
WEIGHT_LOG = re.compile(r"(?:weigh|weight).{0,30}?(\d+(?:\.\d+)?)\s*(lbs?|pounds?|kg)\b", re.I)
ENERGY_LOG = re.compile(r"(?:energy|feeling).{0,20}?(\d+)(?:/10|\s*out of 10)", re.I)
WORKOUT_LOG = re.compile(r"\b(worked out|exercised|trained|gym|ran|cycling|lifted|workout)\b", re.I)


def detect_data_logging(message: str) -> Optional[DataLoggingOpportunity]:
    """
    Look for a metric the user reported. Sleep is checked first,
    then weight, energy and finally a generic workout mention.
    """
    match = SLEEP_LOG.search(message)
    if match:
        return DataLoggingOpportunity(
            metric="sleep_score",
            value=float(match.group(1)),
            unit="hours",
            confidence=0.9,
            follow_up_questions=[
                "How did you feel when you woke up?",
                "Was it restful sleep?",
            ],
        )

    match = WEIGHT_LOG.search(message)
    if match:
        return DataLoggingOpportunity(
            metric="weight",
            value=float(match.group(1)),
            unit="kg" if match.group(2).lower() == "kg" else "lbs",
            confidence=0.95,
            follow_up_questions=[
                "How are you feeling about your progress?",
                "Have you been consistent with your nutrition?",
            ],
        )

    match = ENERGY_LOG.search(message)
    if match:
        return DataLoggingOpportunity(
            metric="activity_level",
            value=float(match.group(1)),
            unit="scale_1_10",
            confidence=1.0,
            follow_up_questions=[
                "What's contributing to this energy level?",
                "How has your day been so far?",
            ],
        )

    if WORKOUT_LOG.search(message):
        return DataLoggingOpportunity(
            metric="active_minutes",
            value=30.0,  # assumed duration until the user tells us
            unit="minutes",
            confidence=0.8,
            follow_up_questions=[
                "How long was your workout?",
                "How challenging was it on a scale of 1-10?",
                "How are you feeling now?",
            ],
        )

    return None


def analyze_message(message: str) -> MessageAnalysis:
    """Full rule-based analysis of a user message."""
    return MessageAnalysis(
        intent=determine_intent(message),
        sentiment=analyze_sentiment(message),
        hints=detect_hints(message),
        entities=extract_entities(message),
        data_logging=detect_data_logging(message),
    )


# ==============================================================================
# RESPONSE CONTENT
# ==============================================================================

def extract_action_suggestions(content: str) -> List[ActionSuggestion]:
    content_lower = content.lower()
    suggestions = []

    if "workout" in content_lower or "exercise" in content_lower:
        suggestions.append(ActionSuggestion("Plan Workout", "plan_workout", "high", "fitness"))
    if "food" in content_lower or "nutrition" in content_lower:
        suggestions.append(ActionSuggestion("Log Meal", "track_meal", "medium", "nutrition"))
    if "sleep" in content_lower or "rest" in content_lower:
        suggestions.append(ActionSuggestion("Check Sleep", "check_sleep", "medium", "sleep"))

    return suggestions


QUESTION_PATTERN = re.compile(r"[^.!?]*\?")


def extract_follow_up_questions(content: str, limit: int = 2) -> List[str]:
    questions = [q.strip() for q in QUESTION_PATTERN.findall(content)]
    return [q for q in questions if len(q) > 1][:limit]


def extract_message_flags(content: str) -> List[str]:
    content_lower = content.lower()
    flags = []

    if any(word in content_lower for word in ["doctor", "medical"]):
        flags.append("health_concern")
    if any(word in content_lower for word in ["great", "excellent", "congratulations"]):
        flags.append("motivational")
    if any(word in content_lower for word in ["should", "recommend", "suggest"]):
        flags.append("actionable")

    return flags


METRIC_PHRASES = [
    ("heart rate", "heart_rate"),
    ("sleep", "sleep_score"),
    ("stress", "stress_level"),
    ("calories", "calories_consumed"),
    ("water", "water_intake"),
]


def extract_metric_references(content: str) -> List[str]:
    content_lower = content.lower()
    return [metric for phrase, metric in METRIC_PHRASES if phrase in content_lower]


def extract_goal_references(content: str, goals: List[Goal]) -> List[str]:
    """Ids of goals whose title or description is mentioned."""
    content_lower = content.lower()
    references = []
    for goal in goals:
        if goal.title.lower() in content_lower:
            references.append(goal.id)
        elif goal.description and goal.description.lower() in content_lower:
            references.append(goal.id)
    return references


def response_message_type(response: AIResponse) -> str:
    if "health_concern" in response.flags:
        return "concern"
    if "motivational" in response.flags:
        return "celebration"
    if "?" in response.content:
        return "question"
    if response.suggestions:
        return "suggestion"
    return "text"
