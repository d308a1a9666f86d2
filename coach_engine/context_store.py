"""
Conversation Context Store
==========================

Owns per-session conversation state:
- Bounded chat history (oldest turns dropped first)
- Current topic, reclassified from each turn's hints
- Mood vector, contextual factors, goals and latest health metrics
- Idle expiry with a periodic background sweep

Mutations for one session are expected to be serialized by the caller.
The store lock only guards the session map itself.
"""

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import copy
import logging
import threading

from coach_engine.config import ContextStoreConfig
from coach_engine.errors import ContextNotFoundError, ValidationError
from coach_engine.models import (
    ChatTurn, ContextualFactor, Goal, HealthMetrics, MessageHints,
    MoodIndicator, SessionContext, Topic, MOOD_FIELDS,
    FITNESS_TOPIC, NUTRITION_TOPIC, SLEEP_TOPIC,
)

logger = logging.getLogger(__name__)


# First matching hint wins
TOPIC_RULES = [
    ("workout", FITNESS_TOPIC),
    ("nutrition", NUTRITION_TOPIC),
    ("sleep", SLEEP_TOPIC),
]


def topic_for_hints(hints: MessageHints) -> Optional[Topic]:
    """Topic implied by a turn's declared sub-context, None if no rule applies."""
    for hint, topic in TOPIC_RULES:
        if getattr(hints, hint):
            return topic
    return None


def factors_from_metrics(metrics: HealthMetrics, now: datetime) -> List[ContextualFactor]:
    """
    Derive contextual factors from a metrics snapshot.

    - sleep_quality from sleep_score (>7 positive, <5 negative)
    - stress_level from stress_level (<4 positive, >7 negative)
    - energy_level from activity_level (>6 positive, <3 negative)
    """
    factors = []

    if metrics.sleep_score is not None:
        score = metrics.sleep_score
        impact = "positive" if score > 7 else "negative" if score < 5 else "neutral"
        factors.append(ContextualFactor("sleep_quality", score, impact, 0.8, now))

    if metrics.stress_level is not None:
        stress = metrics.stress_level
        impact = "positive" if stress < 4 else "negative" if stress > 7 else "neutral"
        factors.append(ContextualFactor("stress_level", stress, impact, 0.7, now))

    if metrics.activity_level is not None:
        activity = metrics.activity_level
        impact = "positive" if activity > 6 else "negative" if activity < 3 else "neutral"
        factors.append(ContextualFactor("energy_level", activity, impact, 0.6, now))

    return factors


class ContextStore:
    """
    In-memory store of SessionContext objects keyed by session id.

    A context is visible only while now - last_interaction_at < expiry window.
    Expired contexts are deleted lazily on access and by the periodic sweep.
    """

    def __init__(
        self,
        config: Optional[ContextStoreConfig] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.config = config or ContextStoreConfig()
        self._clock = clock
        self._contexts: Dict[str, SessionContext] = {}
        self._snapshots: Dict[str, List[SessionContext]] = {}
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._running = False

    @property
    def expiry_window(self) -> timedelta:
        return timedelta(minutes=self.config.context_expiry_minutes)

    def _is_expired(self, context: SessionContext, now: datetime) -> bool:
        return now - context.last_interaction_at >= self.expiry_window

    # ==========================================================================
    # LOOKUP
    # ==========================================================================

    def get_or_create(self, user_id: str, session_id: str) -> SessionContext:
        """
        Return the live context for a session, or create a fresh one
        (topic "general", neutral mood). Refreshes last_interaction_at.
        """
        if not user_id or not session_id:
            raise ValidationError("user_id and session_id are required")

        now = self._clock()
        with self._lock:
            context = self._contexts.get(session_id)
            if context is not None and self._is_expired(context, now):
                logger.info(f"Context expired for session {session_id}, creating a new one")
                self._drop(session_id)
                context = None

            if context is not None and context.user_id != user_id:
                raise ValidationError(f"Session {session_id} belongs to another user")

            if context is None:
                context = SessionContext(
                    user_id=user_id,
                    session_id=session_id,
                    mood=MoodIndicator(timestamp=now),
                    created_at=now,
                    last_interaction_at=now,
                )
                self._contexts[session_id] = context
                logger.info(f"Created context for user {user_id}, session {session_id}")
            else:
                context.last_interaction_at = now

        return context

    def get(self, session_id: str) -> Optional[SessionContext]:
        """Live context or None. Does not refresh the interaction time."""
        now = self._clock()
        with self._lock:
            context = self._contexts.get(session_id)
            if context is None:
                return None
            if self._is_expired(context, now):
                self._drop(session_id)
                return None
            return context

    def get_user_contexts(self, user_id: str) -> List[SessionContext]:
        """All live contexts owned by a user."""
        now = self._clock()
        with self._lock:
            return [
                c for c in self._contexts.values()
                if c.user_id == user_id and not self._is_expired(c, now)
            ]

    def clear(self, session_id: str) -> bool:
        """Explicitly destroy a session. Returns False when it did not exist."""
        with self._lock:
            existed = session_id in self._contexts
            self._drop(session_id)
        if existed:
            logger.info(f"Cleared context for session {session_id}")
        return existed

    def _require(self, session_id: str) -> SessionContext:
        context = self.get(session_id)
        if context is None:
            raise ContextNotFoundError(session_id)
        return context

    def _drop(self, session_id: str):
        # Caller holds the lock
        self._contexts.pop(session_id, None)
        self._snapshots.pop(session_id, None)

    # ==========================================================================
    # MUTATORS
    # ==========================================================================

    def append_message(self, session_id: str, turn: ChatTurn) -> SessionContext:
        """
        Append a turn, truncate history FIFO and reclassify the topic
        from the turn's hints (workout > nutrition > sleep).
        """
        context = self._require(session_id)

        context.history.append(turn)
        max_len = self.config.max_history_length
        if len(context.history) > max_len:
            del context.history[:len(context.history) - max_len]

        first, last = context.history[0], context.history[-1]
        context.session_duration_minutes = (last.timestamp - first.timestamp).total_seconds() / 60

        topic = topic_for_hints(turn.hints)
        if topic is not None and topic != context.current_topic:
            logger.debug(f"Session {session_id} topic: {context.current_topic.id} -> {topic.id}")
            context.current_topic = topic

        context.last_interaction_at = self._clock()
        self._snapshot(context)
        return context

    def update_contextual_factor(self, session_id: str, factor: ContextualFactor) -> SessionContext:
        """
        Replace any factor of the same type, then keep only the most
        recent factors by timestamp (ties favour the newest write).
        """
        context = self._require(session_id)

        factors = [factor] + [f for f in context.contextual_factors if f.type != factor.type]
        factors = sorted(factors, key=lambda f: f.timestamp, reverse=True)
        context.contextual_factors = factors[:self.config.max_factors]

        context.last_interaction_at = self._clock()
        return context

    def update_mood(self, session_id: str, **partial) -> SessionContext:
        """Merge mood fields; unspecified fields keep their prior values."""
        context = self._require(session_id)

        allowed = set(MOOD_FIELDS) | {"source"}
        unknown = set(partial) - allowed
        if unknown:
            raise ValidationError(f"Unknown mood fields: {', '.join(sorted(unknown))}")

        now = self._clock()
        context.mood = replace(context.mood, timestamp=now, **partial)
        context.last_interaction_at = now
        return context

    def update_metrics(self, session_id: str, metrics: HealthMetrics) -> SessionContext:
        """Merge a metrics snapshot and refresh the factors derived from it."""
        context = self._require(session_id)
        now = self._clock()

        merged = context.recent_metrics.present()
        merged.update(metrics.present())
        context.recent_metrics = HealthMetrics(timestamp=metrics.timestamp, **merged)

        for factor in factors_from_metrics(metrics, now):
            self.update_contextual_factor(session_id, factor)

        context.last_interaction_at = now
        self._snapshot(context)
        return context

    def update_goals(self, session_id: str, goals: List[Goal]) -> SessionContext:
        context = self._require(session_id)
        context.active_goals = list(goals)
        context.last_interaction_at = self._clock()
        return context

    # ==========================================================================
    # SUMMARIES & SNAPSHOTS
    # ==========================================================================

    def conversation_summary(self, session_id: str) -> str:
        """Short plain-text summary of the last 10 turns."""
        context = self._require(session_id)
        if not context.history:
            return "No conversation history available."

        recent = context.history[-10:]
        user_turns = sum(1 for t in recent if t.sender == "user")
        responses = len(recent) - user_turns

        topics: List[str] = []
        for turn in recent:
            for goal in turn.metadata.related_goals:
                if goal not in topics:
                    topics.append(goal)

        duration = round(context.session_duration_minutes)
        topics_list = ", ".join(topics[:3]) or "general health"
        return (
            f"Session duration: {duration} minutes. "
            f"{user_turns} user messages, {responses} responses. "
            f"Topics discussed: {topics_list}."
        )

    def _snapshot(self, context: SessionContext):
        with self._lock:
            # Skip contexts dropped since the caller looked them up
            if self._contexts.get(context.session_id) is not context:
                return
            snapshots = self._snapshots.setdefault(context.session_id, [])
            snapshots.append(copy.deepcopy(context))
            if len(snapshots) > self.config.max_snapshots:
                del snapshots[:len(snapshots) - self.config.max_snapshots]

    def snapshots(self, session_id: str) -> List[SessionContext]:
        with self._lock:
            return list(self._snapshots.get(session_id, []))

    def stats(self) -> dict:
        with self._lock:
            contexts = list(self._contexts.values())
            snapshot_count = sum(len(s) for s in self._snapshots.values())

        avg_duration = 0.0
        if contexts:
            avg_duration = sum(c.session_duration_minutes for c in contexts) / len(contexts)

        return {
            "active_contexts": len(contexts),
            "total_snapshots": snapshot_count,
            "average_session_duration_minutes": round(avg_duration, 2),
        }

    # ==========================================================================
    # EXPIRY SWEEP
    # ==========================================================================

    def sweep(self) -> int:
        """
        Delete every expired context. The lock is taken per entry so
        request handling is never blocked for the whole scan.
        """
        with self._lock:
            session_ids = list(self._contexts)

        removed = 0
        for session_id in session_ids:
            now = self._clock()
            with self._lock:
                context = self._contexts.get(session_id)
                if context is not None and self._is_expired(context, now):
                    self._drop(session_id)
                    removed += 1

        if removed:
            logger.info(f"Context sweep removed {removed} expired session(s)")
        return removed

    def start(self):
        """Start the periodic sweep on a daemon timer thread."""
        if self._running:
            return
        self._running = True
        self._schedule()
        logger.info(f"Context sweep started (every {self.config.sweep_interval_seconds}s)")

    def stop(self):
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self):
        self._timer = threading.Timer(self.config.sweep_interval_seconds, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self):
        try:
            self.sweep()
        except Exception as e:
            logger.error(f"Context sweep failed: {e}")
        if self._running:
            self._schedule()
