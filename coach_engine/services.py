"""
Coach Engine Services
=====================

Wires the components together from an EngineConfig. One instance per
process; the HTTP layer reaches it through `app.state.coach`.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
import logging

from coach_engine.config import EngineConfig
from coach_engine.context_store import ContextStore
from coach_engine.llm_client import LLMClient, create_llm_client
from coach_engine.orchestrator import CoachOrchestrator, LLMOrchestrator
from coach_engine.prompt_assembler import PromptAssembler
from coach_engine.response_cache import ResponseCache
from coach_engine.triggers import TriggerEvaluator

logger = logging.getLogger(__name__)


@dataclass
class CoachServices:
    config: EngineConfig
    context_store: ContextStore
    cache: ResponseCache
    llm: LLMOrchestrator
    coach: CoachOrchestrator
    triggers: TriggerEvaluator

    def start(self):
        self.context_store.start()

    def stop(self):
        self.context_store.stop()


def latest_stress(context_store: ContextStore) -> Callable[[str], Optional[float]]:
    """Stress level from the user's most recently active session, if any."""
    def lookup(user_id: str) -> Optional[float]:
        contexts = context_store.get_user_contexts(user_id)
        if not contexts:
            return None
        latest = max(contexts, key=lambda c: c.last_interaction_at)
        return latest.mood.stress
    return lookup


def build_services(
    config: Optional[EngineConfig] = None,
    client: Optional[LLMClient] = None,
    clock: Callable[[], datetime] = datetime.now
) -> CoachServices:
    config = config or EngineConfig()
    if client is None:
        client = create_llm_client(config.llm)

    context_store = ContextStore(config.context, clock=clock)
    cache = ResponseCache(config.cache, clock=clock)
    llm = LLMOrchestrator(client, cache, config.llm)
    coach = CoachOrchestrator(context_store, llm, PromptAssembler())
    triggers = TriggerEvaluator(
        config.triggers,
        clock=clock,
        mood_lookup=latest_stress(context_store),
    )

    logger.info(f"Coach engine ready (provider={config.llm.provider}, model={config.llm.model})")
    return CoachServices(config, context_store, cache, llm, coach, triggers)
