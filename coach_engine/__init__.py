"""
Coach Engine - Conversation Orchestration for an AI Health Coach
================================================================

Turns a user message plus live health context into a coaching reply:
- Per-session context with expiry, mood, factors and goals
- Category-specific prompt assembly
- Content-addressed response cache with streaming buffers
- Retrying, coalescing LLM orchestration with graceful fallback
- Rule-based proactive notifications over health metrics
- Behavior pattern insights and habit milestone celebrations

Key Design Principles:
1. Everything is in memory; nothing survives a restart
2. Provider failures never reach the user as errors
3. Identical concurrent prompts cost one provider call
"""

from coach_engine.config import EngineConfig, load_engine_config
from coach_engine.context_store import ContextStore
from coach_engine.llm_client import LLMClient, GeminiClient, OpenAICompatibleClient, MockLLMClient
from coach_engine.orchestrator import CoachOrchestrator, LLMOrchestrator, ChatRequest, ChatResponse
from coach_engine.prompt_assembler import PromptAssembler
from coach_engine.response_cache import ResponseCache
from coach_engine.services import CoachServices, build_services
from coach_engine.triggers import TriggerEvaluator, ProactiveResult
from coach_engine.behavior_patterns import PatternDetector
from coach_engine.habit_milestones import HabitTracker

__all__ = [
    'EngineConfig',
    'load_engine_config',
    'ContextStore',
    'LLMClient',
    'GeminiClient',
    'OpenAICompatibleClient',
    'MockLLMClient',
    'CoachOrchestrator',
    'LLMOrchestrator',
    'ChatRequest',
    'ChatResponse',
    'PromptAssembler',
    'ResponseCache',
    'CoachServices',
    'build_services',
    'TriggerEvaluator',
    'ProactiveResult',
    'PatternDetector',
    'HabitTracker',
]
