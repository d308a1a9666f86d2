"""
Coach Engine API Router
=======================

FastAPI router over the coach engine services.

Domain errors map to HTTP statuses:
- ContextNotFoundError -> 404
- ValidationError -> 422
"""

from datetime import datetime
from typing import Any, List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from coach_engine.correlation_engine import generate_insights
from coach_engine.errors import ContextNotFoundError, ValidationError
from coach_engine.models import ContextualFactor, Goal, HealthMetrics, new_id
from coach_engine.orchestrator import ChatRequest
from coach_engine.services import CoachServices

logger = logging.getLogger(__name__)


router = APIRouter(prefix="/api/coach", tags=["coach"])


def get_services(request: Request) -> CoachServices:
    return request.app.state.coach


# ==============================================================================
# Request/Response Models
# ==============================================================================

class ChatRequestBody(BaseModel):
    user_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    message: str = Field(..., max_length=4000)
    bypass_cache: bool = False


class SuggestionBody(BaseModel):
    id: str
    text: str
    action: str
    priority: str
    category: str


class ChatResponseBody(BaseModel):
    message: str
    turn_id: str
    category: str
    confidence: float
    topic: str
    message_type: str
    cached: bool = False
    fallback: bool = False
    non_retryable: bool = False
    suggestions: List[SuggestionBody] = []
    follow_up_questions: List[str] = []
    flags: List[str] = []
    data_logged: Optional[dict] = None
    processing_time_ms: float = 0.0


class MoodBody(BaseModel):
    energy: Optional[float] = None
    motivation: Optional[float] = None
    stress: Optional[float] = None
    confidence: Optional[float] = None
    overall: Optional[float] = None
    source: str = Field(default="reported", pattern="^(inferred|reported)$")


class FactorBody(BaseModel):
    type: str
    value: Any = None
    impact: str = "neutral"
    confidence: float = 0.5


class MetricsBody(BaseModel):
    heart_rate: Optional[float] = None
    heart_rate_variability: Optional[float] = None
    sleep_score: Optional[float] = None
    recovery_score: Optional[float] = None
    stress_level: Optional[float] = None
    activity_level: Optional[float] = None
    calories_consumed: Optional[float] = None
    calories_burned: Optional[float] = None
    water_intake: Optional[float] = None
    weight: Optional[float] = None
    steps: Optional[float] = None
    active_minutes: Optional[float] = None
    timestamp: Optional[datetime] = None

    def to_metrics(self) -> HealthMetrics:
        return HealthMetrics.from_dict(self.model_dump(exclude_none=True))


class GoalBody(BaseModel):
    id: Optional[str] = None
    title: str
    description: str = ""
    category: str = "general"


class EvaluateBody(BaseModel):
    user_id: str = Field(..., min_length=1)
    current: MetricsBody
    historical: List[MetricsBody] = []


class EnabledBody(BaseModel):
    enabled: bool


class InsightsBody(BaseModel):
    history: List[MetricsBody]
    lag_days: int = Field(default=1, ge=0, le=7)


# ==============================================================================
# Helper Functions
# ==============================================================================

def _raise_http(e: Exception):
    if isinstance(e, ContextNotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ValidationError):
        raise HTTPException(status_code=422, detail=str(e))
    raise e


def _notification_dict(n) -> dict:
    return {
        "id": n.id,
        "rule_id": n.rule_id,
        "type": n.type,
        "priority": n.priority,
        "title": n.title,
        "message": n.message,
        "suggested_actions": [
            {"type": a.type, "title": a.title, "description": a.description,
             "estimated_minutes": a.estimated_minutes, "difficulty": a.difficulty}
            for a in n.suggested_actions
        ],
        "trigger_data": {
            "metric": n.trigger_data.metric,
            "previous_value": n.trigger_data.previous_value,
            "current_value": n.trigger_data.current_value,
            "change_percentage": n.trigger_data.change_percentage,
            "trend": n.trigger_data.trend,
        },
        "scheduled_for": n.scheduled_for.isoformat(),
        "expires_at": n.expires_at.isoformat(),
    }


# ==============================================================================
# Chat & Sessions
# ==============================================================================

@router.post("/chat", response_model=ChatResponseBody)
def chat(body: ChatRequestBody, services: CoachServices = Depends(get_services)):
    """
    One coaching turn. Provider failures come back as a fallback response
    with `fallback=true`, never as an HTTP error.
    """
    try:
        response = services.coach.handle_chat(ChatRequest(
            user_id=body.user_id,
            session_id=body.session_id,
            message=body.message,
            bypass_cache=body.bypass_cache,
        ))
    except (ContextNotFoundError, ValidationError) as e:
        _raise_http(e)

    return ChatResponseBody(
        message=response.message,
        turn_id=response.turn_id,
        category=response.category,
        confidence=response.confidence,
        topic=response.topic,
        message_type=response.message_type,
        cached=response.cached,
        fallback=response.fallback,
        non_retryable=response.non_retryable,
        suggestions=[SuggestionBody(**s.to_dict()) for s in response.suggestions],
        follow_up_questions=response.follow_up_questions,
        flags=response.flags,
        data_logged=response.data_logged.to_dict() if response.data_logged else None,
        processing_time_ms=response.processing_time_ms,
    )


@router.get("/sessions/{session_id}")
def get_session(session_id: str, services: CoachServices = Depends(get_services)):
    context = services.coach.get_session(session_id)
    if context is None:
        raise HTTPException(status_code=404, detail=f"Context not found for session: {session_id}")
    data = context.to_dict()
    data["summary"] = services.context_store.conversation_summary(session_id)
    return data


@router.delete("/sessions/{session_id}")
def clear_session(session_id: str, services: CoachServices = Depends(get_services)):
    if not services.coach.clear_session(session_id):
        raise HTTPException(status_code=404, detail=f"Context not found for session: {session_id}")
    return {"status": "cleared", "session_id": session_id}


@router.post("/sessions/{session_id}/mood")
def update_mood(session_id: str, body: MoodBody, services: CoachServices = Depends(get_services)):
    try:
        context = services.context_store.update_mood(session_id, **body.model_dump(exclude_none=True))
    except (ContextNotFoundError, ValidationError) as e:
        _raise_http(e)
    return context.to_dict()["mood"]


@router.post("/sessions/{session_id}/factors")
def update_factor(session_id: str, body: FactorBody, services: CoachServices = Depends(get_services)):
    try:
        factor = ContextualFactor(type=body.type, value=body.value, impact=body.impact, confidence=body.confidence)
        context = services.context_store.update_contextual_factor(session_id, factor)
    except (ContextNotFoundError, ValidationError) as e:
        _raise_http(e)
    return {"contextual_factors": context.to_dict()["contextual_factors"]}


@router.post("/sessions/{session_id}/metrics")
def update_metrics(session_id: str, body: MetricsBody, services: CoachServices = Depends(get_services)):
    try:
        context = services.coach.update_metrics(session_id, body.to_metrics())
    except (ContextNotFoundError, ValidationError) as e:
        _raise_http(e)
    data = context.to_dict()
    return {
        "recent_metrics": data["recent_metrics"],
        "contextual_factors": data["contextual_factors"],
    }


@router.put("/sessions/{session_id}/goals")
def update_goals(session_id: str, body: List[GoalBody], services: CoachServices = Depends(get_services)):
    try:
        goals = [Goal(id=g.id or new_id(), title=g.title, description=g.description, category=g.category) for g in body]
        context = services.coach.update_goals(session_id, goals)
    except (ContextNotFoundError, ValidationError) as e:
        _raise_http(e)
    return {"active_goals": context.to_dict()["active_goals"]}


# ==============================================================================
# Triggers & Insights
# ==============================================================================

@router.post("/triggers/evaluate")
def evaluate_triggers(body: EvaluateBody, services: CoachServices = Depends(get_services)):
    try:
        current = body.current.to_metrics()
        historical = [m.to_metrics() for m in body.historical]
    except ValidationError as e:
        _raise_http(e)

    notifications = services.triggers.evaluate(body.user_id, current, historical)
    return {"notifications": [_notification_dict(n) for n in notifications]}


@router.post("/proactive/process")
def process_health_data(body: EvaluateBody, services: CoachServices = Depends(get_services)):
    try:
        current = body.current.to_metrics()
        historical = [m.to_metrics() for m in body.historical]
    except ValidationError as e:
        _raise_http(e)

    result = services.triggers.process(body.user_id, current, historical)
    return {
        "notifications": [_notification_dict(n) for n in result.notifications],
        "patterns": [p.to_dict() for p in result.patterns],
        "milestones": [m.to_dict() for m in result.milestones],
    }


@router.get("/users/{user_id}/patterns")
def user_patterns(user_id: str, services: CoachServices = Depends(get_services)):
    return {"patterns": [p.to_dict() for p in services.triggers.patterns.patterns(user_id)]}


@router.get("/users/{user_id}/milestones")
def user_milestones(user_id: str, habit_type: Optional[str] = None, services: CoachServices = Depends(get_services)):
    milestones = services.triggers.habits.progress(user_id)
    if habit_type is None:
        return {"milestones": [m.to_dict() for m in milestones]}

    upcoming = services.triggers.habits.next_milestone(user_id, habit_type)
    return {
        "milestones": [m.to_dict() for m in milestones if m.habit_type == habit_type],
        "next": upcoming.to_dict() if upcoming else None,
    }


@router.get("/triggers/{rule_id}/stats")
def trigger_stats(rule_id: str, services: CoachServices = Depends(get_services)):
    stats = services.triggers.get_trigger_stats(rule_id)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"Unknown trigger: {rule_id}")
    if stats["last_triggered_at"] is not None:
        stats["last_triggered_at"] = stats["last_triggered_at"].isoformat()
    return stats


@router.put("/triggers/{rule_id}/enabled")
def set_trigger_enabled(rule_id: str, body: EnabledBody, services: CoachServices = Depends(get_services)):
    if not services.triggers.set_rule_enabled(rule_id, body.enabled):
        raise HTTPException(status_code=404, detail=f"Unknown trigger: {rule_id}")
    return {"rule_id": rule_id, "enabled": body.enabled}


@router.post("/insights")
def insights(body: InsightsBody):
    try:
        history = [m.to_metrics() for m in body.history]
    except ValidationError as e:
        _raise_http(e)
    return {"insights": [i.to_dict() for i in generate_insights(history, lag_days=body.lag_days)]}


@router.get("/stats")
def stats(services: CoachServices = Depends(get_services)):
    data = services.coach.stats()
    data["triggers"] = {
        rule.id: {"enabled": rule.enabled, "trigger_count": rule.trigger_count}
        for rule in services.triggers.rules()
    }
    return data
