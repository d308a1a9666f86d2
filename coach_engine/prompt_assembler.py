"""
Prompt Assembler
================

Turns a user message plus its session context into the ordered message
list sent to the LLM:

1. system: persona + context sections + category guidelines + constraints
2. the last 10 history turns, role-mapped
3. the user message rendered through the category's template

Every formatter is a pure function of its input and no wall-clock text is
embedded, so identical state always yields an identical prompt (and cache key).

Category precedence (first match wins, whole-word keyword match):
health_concerns > workout_planning > nutrition_advice > sleep_coaching >
goal_setting > progress_review > motivation > habit_formation
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import logging
import re

from coach_engine.models import ContextualFactor, Goal, HealthMetrics, SessionContext, Topic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromptMessage:
    role: str       # system | user | assistant
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class PromptTemplate:
    """Per-category persona and generation parameters."""
    category: str
    name: str
    persona: str
    user_template: str
    max_tokens: int = 500
    temperature: float = 0.7
    context_requirements: List[str] = field(default_factory=lambda: ["user_message"])


# ==============================================================================
# CLASSIFICATION
# ==============================================================================

GENERAL_CATEGORY = "general_coaching"

# Whole words only; inflections are listed explicitly
CATEGORY_KEYWORDS: List[Tuple[str, List[str]]] = [
    ("health_concerns", ["pain", "pains", "painful", "hurt", "hurts", "hurting", "injury", "injuries",
                         "injured", "sick", "concern", "concerned", "worried", "worry"]),
    ("workout_planning", ["workout", "workouts", "exercise", "exercises", "exercising", "training",
                          "train", "fitness", "gym"]),
    ("nutrition_advice", ["food", "foods", "eat", "eating", "ate", "nutrition", "diet", "meal", "meals",
                          "calorie", "calories"]),
    ("sleep_coaching", ["sleep", "sleeping", "slept", "tired", "rest", "rested", "resting", "bedtime",
                        "insomnia"]),
    ("goal_setting", ["goal", "goals", "target", "targets", "achieve", "plan", "plans", "planning",
                      "objective", "objectives"]),
    ("progress_review", ["progress", "improvement", "improvements", "results", "tracking"]),
    ("motivation", ["motivated", "motivation", "encourage", "encouragement", "support"]),
    ("habit_formation", ["habit", "habits", "routine", "routines", "consistency", "daily"]),
]

CATEGORIES = [GENERAL_CATEGORY] + [category for category, _ in CATEGORY_KEYWORDS]

# Topic category -> prompt category when no keyword matches
TOPIC_FALLBACK = {
    "fitness_planning": "workout_planning",
    "workout_feedback": "workout_planning",
    "nutrition_guidance": "nutrition_advice",
    "sleep_optimization": "sleep_coaching",
    "goal_setting": "goal_setting",
    "progress_review": "progress_review",
    "motivation_support": "motivation",
    "health_concerns": "health_concerns",
}

_PATTERNS = {
    category: re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")\b", re.I)
    for category, keywords in CATEGORY_KEYWORDS
}


def classify(message: str, current_topic: Optional[Topic] = None) -> str:
    """Coaching category for a message."""
    for category, _ in CATEGORY_KEYWORDS:
        if _PATTERNS[category].search(message):
            return category

    if current_topic is not None:
        return TOPIC_FALLBACK.get(current_topic.category, GENERAL_CATEGORY)
    return GENERAL_CATEGORY


# ==============================================================================
# FORMATTERS
# ==============================================================================

# (field, label, suffix)
METRIC_LABELS = [
    ("heart_rate", "Heart Rate", " bpm"),
    ("heart_rate_variability", "HRV", " ms"),
    ("sleep_score", "Sleep Score", "/10"),
    ("recovery_score", "Recovery Score", "/10"),
    ("stress_level", "Stress Level", "/10"),
    ("activity_level", "Activity Level", "/10"),
    ("calories_consumed", "Calories Consumed", ""),
    ("calories_burned", "Calories Burned", ""),
    ("water_intake", "Water Intake", "ml"),
    ("weight", "Weight", " kg"),
    ("steps", "Steps", ""),
    ("active_minutes", "Active Minutes", " min"),
]


def _number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def format_health_metrics(metrics: Optional[HealthMetrics]) -> str:
    if metrics is None:
        return "No recent metrics available"
    parts = [
        f"{label}: {_number(getattr(metrics, name))}{suffix}"
        for name, label, suffix in METRIC_LABELS
        if getattr(metrics, name) is not None
    ]
    return ", ".join(parts) or "No recent metrics available"


def format_contextual_factors(factors: List[ContextualFactor], limit: int = 5) -> str:
    """Top factors by confidence. Ties keep their stored order."""
    if not factors:
        return "No specific contextual factors"
    ranked = sorted(factors, key=lambda f: f.confidence, reverse=True)[:limit]
    return ", ".join(f"{f.type}: {f.value} ({f.impact} impact)" for f in ranked)


def format_goals(goals: List[Goal], limit: int = 3) -> str:
    if not goals:
        return "No active goals set"
    return "; ".join(
        f"{g.title}: {g.description}" if g.description else g.title
        for g in goals[:limit]
    )


def format_session_context(context: SessionContext) -> str:
    mood = context.mood
    return "\n".join([
        f"Current Topic: {context.current_topic.name}",
        f"Session Duration: {round(context.session_duration_minutes)} minutes",
        f"Messages Exchanged: {len(context.history)}",
        f"User Mood - Energy: {_number(mood.energy)}/10, "
        f"Motivation: {_number(mood.motivation)}/10, Stress: {_number(mood.stress)}/10",
    ])


# ==============================================================================
# TEMPLATES
# ==============================================================================

BASE_USER_TEMPLATE = """User message: "{user_message}"

{metrics_label}: {health_metrics}
Contextual factors: {contextual_factors}
{goals_label}: {current_goals}

{instruction}"""


def _template(category, name, persona, metrics_label, goals_label, instruction, max_tokens, temperature):
    user_template = BASE_USER_TEMPLATE.replace("{metrics_label}", metrics_label) \
        .replace("{goals_label}", goals_label) \
        .replace("{instruction}", instruction)
    return PromptTemplate(category, name, persona, user_template, max_tokens, temperature)


DEFAULT_TEMPLATES: Dict[str, PromptTemplate] = {t.category: t for t in [
    _template(
        "general_coaching", "General Health Coaching",
        "You are Bud, an AI-powered personal health coach. You provide personalized, supportive "
        "guidance for fitness, nutrition, sleep, and overall wellness, adapted to the user's "
        "current health metrics, goals, and circumstances.",
        "Health metrics", "Current goals",
        "Please provide a helpful, personalized response that addresses the user's message "
        "while considering their current context and health data.",
        500, 0.7,
    ),
    _template(
        "workout_planning", "Workout Planning & Fitness Coaching",
        "You are Bud, a fitness coach specializing in personalized workout planning. You adapt "
        "exercise programs to the user's goals, fitness level, equipment, and readiness, and you "
        "prioritize safety and sustainable progress.",
        "Current health metrics", "Fitness goals",
        "Please provide specific workout recommendations or modifications that fit the user's "
        "current readiness and recovery status.",
        600, 0.6,
    ),
    _template(
        "nutrition_advice", "Nutrition & Diet Coaching",
        "You are Bud, a nutrition coach focused on sustainable, healthy eating habits that "
        "support the user's fitness goals and energy levels.",
        "Current health metrics", "Nutrition goals",
        "Please provide practical nutrition advice or meal suggestions that support the user's "
        "goals and current situation.",
        500, 0.7,
    ),
    _template(
        "sleep_coaching", "Sleep Optimization Coaching",
        "You are Bud, a sleep coach specializing in sleep quality, healthy routines, and recovery.",
        "Current health metrics", "Sleep-related goals",
        "Please provide evidence-based sleep advice or routine suggestions that address the "
        "user's sleep concerns.",
        500, 0.6,
    ),
    _template(
        "motivation", "Motivational Coaching",
        "You are Bud, a motivational health coach. You celebrate progress, reframe setbacks, and "
        "help users stay committed to their goals.",
        "Current progress", "Goals",
        "Please provide motivational support and practical strategies to help the user stay "
        "committed.",
        400, 0.8,
    ),
    _template(
        "goal_setting", "Goal Setting & Planning",
        "You are Bud, a goal-setting coach who guides users through the SMART framework and "
        "breaks large objectives into manageable steps.",
        "Current status", "Existing goals",
        "Please help the user set or refine goals that are specific, measurable, achievable, "
        "relevant, and time-bound.",
        500, 0.6,
    ),
    _template(
        "progress_review", "Progress Review & Analysis",
        "You are Bud, a progress analysis coach. You explain trends in the user's health data and "
        "turn them into next steps.",
        "Current metrics", "Goals being tracked",
        "Please analyze the user's progress, highlight positive trends, and recommend what to "
        "adjust next.",
        600, 0.5,
    ),
    _template(
        "health_concerns", "Health Concerns & Wellness",
        "You are Bud, a wellness coach who addresses health concerns with care. You give general "
        "wellness advice and always recommend professional medical consultation for health issues.",
        "Current health status", "Health goals",
        "Please address the user's concern with care, offer general wellness advice, and "
        "recommend professional consultation when necessary.",
        400, 0.5,
    ),
    _template(
        "habit_formation", "Habit Formation & Consistency",
        "You are Bud, a habit formation coach focused on small, consistent changes, habit "
        "stacking, and environmental design.",
        "Current patterns", "Habit goals",
        "Please provide specific strategies for building or keeping healthy habits.",
        500, 0.7,
    ),
]}


GUIDELINES = {
    "general_coaching": [
        "Be supportive, encouraging, and personalized",
        "Ask follow-up questions to understand user needs",
        "Provide actionable, specific advice",
        "Consider the user's current health metrics and context",
    ],
    "workout_planning": [
        "Consider fitness level, equipment, and time availability",
        "Adapt recommendations to readiness and recovery metrics",
        "Provide clear exercise instructions and modifications",
        "Ask about any pain or discomfort before recommending exercises",
    ],
    "nutrition_advice": [
        "Focus on sustainable, healthy eating habits",
        "Respect preferences and dietary restrictions",
        "Connect nutrition choices to energy levels and performance",
        "Avoid extreme diets or unsustainable restrictions",
    ],
    "sleep_coaching": [
        "Assess current sleep patterns and quality",
        "Provide evidence-based sleep hygiene recommendations",
        "Suggest gradual changes to the sleep routine",
        "Address environmental factors and stress management",
    ],
    "motivation": [
        "Acknowledge the user's efforts and progress",
        "Help identify and overcome barriers",
        "Set realistic, achievable short-term goals",
        "Celebrate small wins and milestones",
    ],
    "goal_setting": [
        "Help create SMART goals",
        "Break large goals into smaller steps",
        "Consider the user's current situation and constraints",
        "Plan for obstacles and setbacks",
    ],
    "progress_review": [
        "Analyze trends in health metrics and behaviors",
        "Highlight positive changes and improvements",
        "Identify areas for adjustment",
        "Provide data-driven recommendations",
    ],
    "health_concerns": [
        "Take all health concerns seriously",
        "Recommend consulting healthcare professionals when appropriate",
        "Avoid diagnosing or providing medical treatment advice",
        "Focus on supportive lifestyle modifications",
    ],
    "habit_formation": [
        "Start with small, manageable habit changes",
        "Focus on consistency over perfection",
        "Help identify habit triggers and rewards",
        "Track progress and adjust strategies as needed",
    ],
}

RESPONSE_CONSTRAINTS = """RESPONSE CONSTRAINTS:
- Keep responses concise but comprehensive (200-400 words)
- Use bullet points or numbered lists for clarity
- Include 1-3 specific, actionable recommendations
- Ask one follow-up question to continue the conversation
- Maintain a supportive, non-judgmental tone
- If health concerns are mentioned, recommend consulting a healthcare professional
- Personalize advice based on provided context and metrics"""


URGENT_KEYWORDS = [
    "emergency", "urgent", "pain", "injury", "hurt", "sick",
    "chest pain", "difficulty breathing", "severe", "crisis",
]


class PromptAssembler:
    """Builds category-specific prompts from session context."""

    HISTORY_TURNS = 10

    def __init__(self, templates: Optional[Dict[str, PromptTemplate]] = None):
        self.templates = dict(DEFAULT_TEMPLATES)
        if templates:
            self.templates.update(templates)

    def template_for(self, category: str) -> PromptTemplate:
        return self.templates.get(category) or self.templates[GENERAL_CATEGORY]

    def classify(self, message: str, current_topic: Optional[Topic] = None) -> str:
        return classify(message, current_topic)

    def assemble(self, category: str, context: SessionContext, user_message: str) -> List[PromptMessage]:
        """
        Ordered prompt: system message, last 10 history turns, user message.
        Order is part of the cache key and must not change.
        """
        template = self.template_for(category)

        messages = [PromptMessage("system", self._system_prompt(template, context))]
        for turn in context.history[-self.HISTORY_TURNS:]:
            messages.append(PromptMessage(turn.role, turn.content))
        messages.append(PromptMessage("user", self._user_prompt(template, context, user_message)))

        logger.debug(f"Assembled {len(messages)} prompt messages for category {category}")
        return messages

    def build(self, context: SessionContext, user_message: str) -> Tuple[str, List[PromptMessage]]:
        """Classify then assemble."""
        category = self.classify(user_message, context.current_topic)
        return category, self.assemble(category, context, user_message)

    def _system_prompt(self, template: PromptTemplate, context: SessionContext) -> str:
        sections = [template.persona]

        if context.active_goals:
            goals = context.active_goals[:3]
            sections.append("USER GOALS:\n" + "\n".join(f"- {format_goals([g])}" for g in goals))
        if context.recent_metrics.present():
            sections.append("CURRENT HEALTH METRICS:\n" + format_health_metrics(context.recent_metrics))
        if context.contextual_factors:
            sections.append("CONTEXTUAL FACTORS:\n" + format_contextual_factors(context.contextual_factors))
        sections.append("SESSION CONTEXT:\n" + format_session_context(context))

        title = template.name.upper()
        guidelines = GUIDELINES.get(template.category, GUIDELINES[GENERAL_CATEGORY])
        sections.append(f"{title} GUIDELINES:\n" + "\n".join(f"- {g}" for g in guidelines))
        sections.append(RESPONSE_CONSTRAINTS)

        return "\n\n".join(sections)

    def _user_prompt(self, template: PromptTemplate, context: SessionContext, user_message: str) -> str:
        return template.user_template.format(
            user_message=user_message,
            health_metrics=format_health_metrics(context.recent_metrics),
            contextual_factors=format_contextual_factors(context.contextual_factors),
            current_goals=format_goals(context.active_goals),
        )

    # ==========================================================================
    # CONTEXT ANALYSIS
    # ==========================================================================

    def analyze_context(self, context: SessionContext) -> dict:
        """Urgency, complexity, emotional state and topic focus of a session."""
        return {
            "urgency": self._urgency(context),
            "complexity": self._complexity(context),
            "emotional_state": self._emotional_state(context),
            "topic_focus": self._topic_focus(context),
        }

    def _urgency(self, context: SessionContext) -> str:
        recent = " ".join(t.content.lower() for t in context.history[-3:])
        if any(keyword in recent for keyword in URGENT_KEYWORDS):
            return "high"

        metrics = context.recent_metrics
        if metrics.stress_level is not None and metrics.stress_level > 8:
            return "high"
        if metrics.sleep_score is not None and metrics.sleep_score < 4:
            return "medium"
        return "low"

    def _complexity(self, context: SessionContext) -> str:
        factors = len(context.contextual_factors)
        goals = len(context.active_goals)
        history = len(context.history)

        if factors > 5 or goals > 3 or history > 20:
            return "complex"
        if factors > 2 or goals > 1 or history > 5:
            return "moderate"
        return "simple"

    def _emotional_state(self, context: SessionContext) -> str:
        mood = context.mood
        # stress counts inverted so a neutral 5/5/5/5 mood scores 5
        average = (mood.energy + mood.motivation + mood.confidence + (10 - mood.stress)) / 4
        if average > 6:
            return "positive"
        if average < 4:
            return "negative"
        return "neutral"

    def _topic_focus(self, context: SessionContext) -> List[str]:
        topics = [context.current_topic.category]
        for turn in context.history[-5:]:
            for hint, label in [("workout", "fitness"), ("nutrition", "nutrition"),
                                ("sleep", "sleep"), ("emotional", "emotional")]:
                if getattr(turn.hints, hint) and label not in topics:
                    topics.append(label)
        return topics
