"""
Response Templates
==================

Canned content used when the provider cannot answer. The wording itself is
owned by a template provider; the engine only needs `lookup()`.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple
import itertools
import threading

from coach_engine.models import ActionSuggestion


@dataclass
class TemplateContent:
    text: str
    suggestions: List[ActionSuggestion] = field(default_factory=list)


class ResponseTemplateProvider(Protocol):
    def lookup(self, category: str, subcategory: Optional[str] = None) -> Optional[TemplateContent]:
        ...


FALLBACK_TEXTS = [
    "I'm having trouble connecting right now, but I'm here to help! "
    "Can you tell me more about what you'd like to focus on?",
    "I'm experiencing some technical difficulties, but let's keep working on your health goals. "
    "What's on your mind today?",
    "Sorry, I'm having connection issues. While I get that sorted, is there something specific "
    "about your fitness or wellness you'd like to discuss?",
    "I'm temporarily offline, but I don't want that to stop your progress! "
    "What health topic would you like to explore?",
]


def basic_suggestions() -> List[ActionSuggestion]:
    return [
        ActionSuggestion("View Progress", "view_progress", "medium", "tracking"),
        ActionSuggestion("Log Workout", "log_workout", "medium", "fitness"),
        ActionSuggestion("Track Water", "log_water", "low", "nutrition"),
    ]


class StaticTemplateProvider:
    """
    Built-in provider. The "fallback" category rotates through FALLBACK_TEXTS;
    extra templates can be registered per (category, subcategory).
    """

    def __init__(self, templates: Optional[Dict[Tuple[str, Optional[str]], TemplateContent]] = None):
        self._templates = dict(templates or {})
        self._rotation = itertools.cycle(FALLBACK_TEXTS)
        self._lock = threading.Lock()

    def register(self, category: str, content: TemplateContent, subcategory: Optional[str] = None):
        self._templates[(category, subcategory)] = content

    def lookup(self, category: str, subcategory: Optional[str] = None) -> Optional[TemplateContent]:
        content = self._templates.get((category, subcategory)) or self._templates.get((category, None))
        if content is not None:
            return content

        if category == "fallback":
            with self._lock:
                text = next(self._rotation)
            return TemplateContent(text=text, suggestions=basic_suggestions())
        return None
