"""
Coach Engine Orchestrator
=========================

Two layers:

LLMOrchestrator.complete()
- Response cache lookup (unless bypassed)
- Request coalescing: concurrent calls with the same cache key share one
  in-flight provider call and its result
- Retries with exponential backoff; non-retryable failures stop at once
- Confidence scoring, cache write, optional streaming through the cache's
  streaming buffer
- Fallback to canned content instead of raising

CoachOrchestrator.handle_chat()
- The full chat turn: context -> analysis -> prompt -> completion -> history
"""

from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional
import copy
import logging
import threading
import time

from coach_engine.confidence import ConfidenceScorer, HeuristicConfidenceScorer
from coach_engine.config import LLMConfig
from coach_engine.context_store import ContextStore
from coach_engine.errors import ProviderError, StreamCancelledError, ValidationError
from coach_engine.llm_client import LLMClient
from coach_engine.message_analysis import (
    DataLoggingOpportunity, analyze_message, extract_action_suggestions,
    extract_follow_up_questions, extract_goal_references, extract_message_flags,
    extract_metric_references, mood_from_emotion, response_message_type,
)
from coach_engine.models import (
    AIResponse, ActionSuggestion, ChatTurn, Goal, HealthMetrics, SessionContext,
    TurnMetadata, new_id,
)
from coach_engine.prompt_assembler import GENERAL_CATEGORY, PromptAssembler, PromptMessage
from coach_engine.response_cache import CacheMetadata, ResponseCache
from coach_engine.response_templates import (
    ResponseTemplateProvider, StaticTemplateProvider, basic_suggestions,
)

logger = logging.getLogger(__name__)


FALLBACK_CONFIDENCE = 0.3
FALLBACK_FLAG = "fallback_response"
CANCELLED_FLAG = "cancelled"


@dataclass
class CompletionOptions:
    """
    Per-call settings for LLMOrchestrator.complete().

    on_chunk receives stream deltas as they arrive. A failed attempt that
    already delivered chunks is retried only when on_reset is set; on_reset
    is called first so the caller can discard the partial text. Without it
    the request falls back instead of repeating text the caller has shown.
    """
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    category: str = GENERAL_CATEGORY
    factor_types: List[str] = field(default_factory=list)
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    bypass_cache: bool = False
    stream: bool = False
    stream_id: Optional[str] = None
    on_chunk: Optional[Callable[[str], None]] = None
    on_reset: Optional[Callable[[], None]] = None
    cache_ttl_minutes: Optional[float] = None


@dataclass
class CompletionResult:
    response: AIResponse
    cache_key: str
    cached: bool = False
    coalesced: bool = False
    fallback: bool = False
    non_retryable: bool = False
    cancelled: bool = False
    attempts: int = 0
    error: Optional[str] = None
    streaming_id: Optional[str] = None


class LLMOrchestrator:
    """Cache-aware, coalescing, retrying front of an LLM client."""

    def __init__(
        self,
        client: LLMClient,
        cache: ResponseCache,
        config: Optional[LLMConfig] = None,
        templates: Optional[ResponseTemplateProvider] = None,
        scorer: Optional[ConfidenceScorer] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.client = client
        self.cache = cache
        self.config = config or LLMConfig()
        self.templates = templates or StaticTemplateProvider()
        self.scorer = scorer or HeuristicConfidenceScorer()
        self._sleep = sleep
        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()
        self._counters = {
            "requests": 0,
            "provider_calls": 0,
            "cache_hits": 0,
            "coalesced": 0,
            "retries": 0,
            "fallbacks": 0,
            "cancelled": 0,
        }
        self._counters_lock = threading.Lock()

    def _count(self, name: str, amount: int = 1):
        with self._counters_lock:
            self._counters[name] += amount

    def stats(self) -> dict:
        with self._counters_lock:
            counters = dict(self._counters)
        with self._inflight_lock:
            counters["in_flight"] = len(self._inflight)
        return counters

    # ==========================================================================
    # COMPLETE
    # ==========================================================================

    def complete(self, messages: List[PromptMessage], options: Optional[CompletionOptions] = None) -> CompletionResult:
        options = options or CompletionOptions()
        self._count("requests")

        key = self.cache.hash(messages, options.user_id, options.factor_types)

        if self.config.enable_caching and not options.bypass_cache:
            entry = self.cache.get(key)
            if entry is not None:
                self._count("cache_hits")
                logger.info(f"Cache hit for {key[:12]} (category={options.category})")
                return CompletionResult(response=entry.response, cache_key=key, cached=True)

        with self._inflight_lock:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if not owner:
            # Joiners share the owner's result but receive no stream chunks
            self._count("coalesced")
            logger.info(f"Joining in-flight request {key[:12]}")
            result = future.result()
            return replace(result, response=copy.deepcopy(result.response), coalesced=True)

        try:
            result = self._execute(key, messages, options)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
        finally:
            with self._inflight_lock:
                self._inflight.pop(key, None)
        return result

    def _execute(self, key: str, messages: List[PromptMessage], options: CompletionOptions) -> CompletionResult:
        start = time.monotonic()
        payload = [m.to_dict() if isinstance(m, PromptMessage) else dict(m) for m in messages]
        max_tokens = options.max_tokens or self.config.max_tokens
        temperature = self.config.temperature if options.temperature is None else options.temperature
        stream_id = (options.stream_id or new_id()) if options.stream else None

        metadata = CacheMetadata(
            user_id=options.user_id,
            session_id=options.session_id,
            category=options.category,
        )

        last_error: Optional[ProviderError] = None
        attempts = 0
        max_attempts = self.config.max_retries + 1
        # Chunks of the current attempt already handed to on_chunk
        delivered: List[str] = []

        while attempts < max_attempts:
            attempts += 1
            self._count("provider_calls")
            delivered.clear()
            try:
                if options.stream:
                    content, finish_reason, tokens = self._stream_once(stream_id, key, metadata, payload,
                                                                       max_tokens, temperature, options, delivered)
                else:
                    llm_response = self.client.generate(payload, max_tokens=max_tokens, temperature=temperature)
                    content = llm_response.text
                    finish_reason = llm_response.finish_reason
                    tokens = llm_response.total_tokens or len(content) // 4
            except StreamCancelledError as e:
                self._count("cancelled")
                logger.info(f"Stream {stream_id} cancelled after {len(e.partial)} characters")
                return CompletionResult(
                    response=self.cancelled_response(e.partial, start),
                    cache_key=key,
                    cancelled=True,
                    attempts=attempts,
                    streaming_id=stream_id,
                )
            except ProviderError as e:
                last_error = e
            except Exception as e:
                # Client bug, not a provider condition; do not retry it
                logger.exception(f"Unexpected LLM client failure: {e}")
                last_error = ProviderError(f"Unexpected client failure: {e}", retryable=False)
            else:
                response = self._build_response(content, finish_reason, tokens, start)
                metadata.processing_time_ms = response.processing_time_ms
                if options.stream and self.config.enable_caching:
                    # The completed buffer becomes the cache entry
                    self.cache.complete(stream_id, response=response)
                elif options.stream:
                    self.cache.cancel(stream_id)
                elif self.config.enable_caching:
                    stored = self.cache.set(key, response, metadata, options.cache_ttl_minutes)
                    logger.debug(f"Response {key[:12]} cached={stored} confidence={response.confidence}")
                return CompletionResult(
                    response=response,
                    cache_key=key,
                    attempts=attempts,
                    streaming_id=stream_id,
                )

            if last_error.non_retryable:
                logger.warning(f"Non-retryable provider error (status={last_error.status}): {last_error}")
                break
            if delivered and options.on_reset is None:
                logger.warning(
                    f"Stream {stream_id} failed after {len(delivered)} delivered chunk(s), not retrying: {last_error}"
                )
                break
            if attempts < max_attempts:
                if delivered:
                    options.on_reset()
                delay = self.config.retry_delay * 2 ** (attempts - 1)
                self._count("retries")
                logger.info(f"LLM retry attempt {attempts}/{self.config.max_retries} after {delay:.2f}s: {last_error}")
                self._sleep(delay)

        logger.error(f"LLM request failed after {attempts} attempt(s): {last_error}")
        if delivered and options.on_reset is not None:
            options.on_reset()
        if not self.config.fallback_on_error:
            raise last_error

        self._count("fallbacks")
        return CompletionResult(
            response=self.fallback_response(start),
            cache_key=key,
            fallback=True,
            non_retryable=last_error.non_retryable,
            attempts=attempts,
            error=str(last_error),
            streaming_id=stream_id,
        )

    def _stream_once(self, stream_id, key, metadata, payload, max_tokens, temperature, options, delivered):
        """
        One streaming attempt through the cache's streaming buffer.
        Deltas passed to on_chunk are recorded in `delivered`.
        """
        self.cache.start_stream(stream_id, cache_key=key, metadata=metadata)
        received: List[str] = []
        chunks = None
        try:
            chunks = self.client.stream(payload, max_tokens=max_tokens, temperature=temperature)
            for delta in chunks:
                if self.cache.append_chunk(stream_id, delta) is None:
                    raise StreamCancelledError(stream_id, "".join(received))
                received.append(delta)
                if options.on_chunk is not None:
                    delivered.append(delta)
                    options.on_chunk(delta)
        except BaseException:
            self.cache.cancel(stream_id)
            raise
        finally:
            close = getattr(chunks, "close", None)
            if close is not None:
                close()

        buffer = self.cache.get_stream(stream_id)
        if buffer is None:
            raise StreamCancelledError(stream_id, "".join(received))
        return buffer.content, "stop", len(buffer.content) // 4

    def cancel_stream(self, stream_id: str) -> bool:
        """
        Stop a streaming completion. The request returns with cancelled=True
        and the partial text; nothing is cached.
        """
        return self.cache.cancel(stream_id)

    def cancelled_response(self, partial: str, start: Optional[float] = None) -> AIResponse:
        elapsed = (time.monotonic() - start) * 1000 if start is not None else 0.0
        return AIResponse(
            content=partial,
            confidence=0.0,
            flags=[CANCELLED_FLAG],
            processing_time_ms=round(elapsed, 2),
            tokens_used=len(partial) // 4,
            finish_reason=CANCELLED_FLAG,
        )

    def _build_response(self, content: str, finish_reason: Optional[str], tokens: int, start: float) -> AIResponse:
        return AIResponse(
            content=content,
            confidence=self.scorer.score(content, finish_reason),
            suggestions=extract_action_suggestions(content),
            follow_up_questions=extract_follow_up_questions(content),
            flags=extract_message_flags(content),
            processing_time_ms=round((time.monotonic() - start) * 1000, 2),
            tokens_used=tokens,
            finish_reason=finish_reason,
        )

    def fallback_response(self, start: Optional[float] = None) -> AIResponse:
        """Same shape as a real response; low confidence and a flag."""
        template = self.templates.lookup("fallback")
        if template is not None:
            content, suggestions = template.text, list(template.suggestions) or basic_suggestions()
        else:
            content, suggestions = "I'm here to help! What would you like to focus on today?", basic_suggestions()

        elapsed = (time.monotonic() - start) * 1000 if start is not None else 0.0
        return AIResponse(
            content=content,
            confidence=FALLBACK_CONFIDENCE,
            suggestions=suggestions,
            flags=[FALLBACK_FLAG],
            processing_time_ms=round(elapsed, 2),
        )


# ==============================================================================
# CHAT FLOW
# ==============================================================================

@dataclass
class ChatRequest:
    """Chat request from user."""
    user_id: str
    session_id: str
    message: str
    bypass_cache: bool = False
    stream: bool = False
    stream_id: Optional[str] = None
    on_chunk: Optional[Callable[[str], None]] = None
    on_reset: Optional[Callable[[], None]] = None


@dataclass
class ChatResponse:
    """Chat response to user."""
    message: str
    turn_id: str
    category: str
    confidence: float
    topic: str
    message_type: str = "text"
    cached: bool = False
    fallback: bool = False
    non_retryable: bool = False
    cancelled: bool = False
    suggestions: List[ActionSuggestion] = field(default_factory=list)
    follow_up_questions: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)
    data_logged: Optional[DataLoggingOpportunity] = None
    streaming_id: Optional[str] = None
    processing_time_ms: float = 0.0


class CoachOrchestrator:
    """
    End-to-end chat handling over the context store, prompt assembler
    and LLM orchestrator.

    One request per session at a time; the caller serializes them.
    """

    def __init__(
        self,
        context_store: ContextStore,
        llm: LLMOrchestrator,
        assembler: Optional[PromptAssembler] = None
    ):
        self.context_store = context_store
        self.llm = llm
        self.assembler = assembler or PromptAssembler()

    def handle_chat(self, request: ChatRequest) -> ChatResponse:
        """
        Main entry point for one chat turn.

        1. Fetch or create the session context
        2. Analyze the message (hints, emotion, data logging)
        3. Classify and assemble the prompt from the prior history
        4. Record the user turn
        5. Complete through the cache / provider / fallback
        6. Record the assistant turn, fallbacks included; a cancelled
           stream records only the text already delivered
        """
        start = time.monotonic()
        if not isinstance(request.message, str) or not request.message.strip():
            raise ValidationError("Message must be a non-empty string")

        context = self.context_store.get_or_create(request.user_id, request.session_id)
        analysis = analyze_message(request.message)

        if analysis.emotion:
            self.context_store.update_mood(
                request.session_id, source="inferred", **mood_from_emotion(analysis.emotion)
            )

        category, messages = self.assembler.build(context, request.message)
        template = self.assembler.template_for(category)

        related_metrics = extract_metric_references(request.message)
        if analysis.data_logging and analysis.data_logging.metric not in related_metrics:
            related_metrics.append(analysis.data_logging.metric)

        user_turn = ChatTurn(
            sender="user",
            content=request.message,
            hints=analysis.hints,
            metadata=TurnMetadata(
                related_metrics=tuple(related_metrics),
                related_goals=tuple(extract_goal_references(request.message, context.active_goals)),
            ),
        )
        self.context_store.append_message(request.session_id, user_turn)

        options = CompletionOptions(
            user_id=request.user_id,
            session_id=request.session_id,
            category=category,
            factor_types=context.factor_types(),
            max_tokens=min(template.max_tokens, self.llm.config.max_tokens),
            temperature=template.temperature,
            bypass_cache=request.bypass_cache,
            stream=request.stream and self.llm.config.enable_streaming,
            stream_id=request.stream_id,
            on_chunk=request.on_chunk,
            on_reset=request.on_reset,
        )
        result = self.llm.complete(messages, options)
        response = result.response

        assistant_turn = ChatTurn(
            sender="assistant",
            content=response.content,
            metadata=TurnMetadata(
                related_metrics=tuple(extract_metric_references(response.content)),
                confidence=response.confidence,
                flags=tuple(response.flags),
                processing_time_ms=response.processing_time_ms,
            ),
            suggestions=tuple(response.suggestions),
        )
        turn_id = assistant_turn.id
        if result.cancelled and not response.content:
            turn_id = ""
        else:
            context = self.context_store.append_message(request.session_id, assistant_turn)

        logger.info(
            f"Chat turn session={request.session_id} category={category} cached={result.cached} "
            f"fallback={result.fallback} cancelled={result.cancelled} confidence={response.confidence}"
        )

        return ChatResponse(
            message=response.content,
            turn_id=turn_id,
            category=category,
            confidence=response.confidence,
            topic=context.current_topic.id,
            message_type=response_message_type(response),
            cached=result.cached,
            fallback=result.fallback,
            non_retryable=result.non_retryable,
            cancelled=result.cancelled,
            suggestions=list(response.suggestions),
            follow_up_questions=list(response.follow_up_questions),
            flags=list(response.flags),
            data_logged=analysis.data_logging,
            streaming_id=result.streaming_id,
            processing_time_ms=round((time.monotonic() - start) * 1000, 2),
        )

    # ==========================================================================
    # SESSION PASSTHROUGHS
    # ==========================================================================

    def get_session(self, session_id: str) -> Optional[SessionContext]:
        return self.context_store.get(session_id)

    def clear_session(self, session_id: str) -> bool:
        return self.context_store.clear(session_id)

    def update_metrics(self, session_id: str, metrics: HealthMetrics) -> SessionContext:
        return self.context_store.update_metrics(session_id, metrics)

    def update_goals(self, session_id: str, goals: List[Goal]) -> SessionContext:
        return self.context_store.update_goals(session_id, goals)

    def stats(self) -> dict:
        return {
            "contexts": self.context_store.stats(),
            "cache": self.llm.cache.stats(),
            "llm": self.llm.stats(),
        }
