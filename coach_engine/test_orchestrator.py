"""
Orchestrator Tests
==================

LLMOrchestrator: caching, coalescing, retries, fallbacks, streaming.
CoachOrchestrator: the full chat turn against a mock provider.
"""

import threading
import pytest
from unittest.mock import Mock

from coach_engine.config import CacheConfig, ContextStoreConfig, LLMConfig
from coach_engine.context_store import ContextStore
from coach_engine.errors import NonRetryableProviderError, TransientProviderError, ValidationError
from coach_engine.llm_client import LLMResponse, MockLLMClient
from coach_engine.orchestrator import (
    CANCELLED_FLAG, FALLBACK_CONFIDENCE, FALLBACK_FLAG, ChatRequest, CoachOrchestrator,
    CompletionOptions, LLMOrchestrator,
)
from coach_engine.prompt_assembler import PromptMessage
from coach_engine.response_cache import ResponseCache
from coach_engine.response_templates import FALLBACK_TEXTS


LONG_REPLY = "Aim for seven to nine hours of sleep and keep a consistent bedtime. How did you feel today?"

PROMPT = [
    PromptMessage("system", "You are Bud."),
    PromptMessage("user", "How should I sleep better?"),
]


def make_llm(client, **config):
    sleep = Mock()
    llm = LLMOrchestrator(client, ResponseCache(CacheConfig()), LLMConfig(**config), sleep=sleep)
    return llm, sleep


class BrokenStreamClient:
    """Streams `text` in chunks; the first `failures` calls break after one chunk."""

    def __init__(self, text, failures=1, chunk_size=20):
        self.text = text
        self.failures = failures
        self.chunk_size = chunk_size
        self.call_count = 0

    def generate(self, messages, max_tokens=1000, temperature=0.7):
        raise NotImplementedError

    def stream(self, messages, max_tokens=1000, temperature=0.7):
        self.call_count += 1
        broken = self.call_count <= self.failures
        for i in range(0, len(self.text), self.chunk_size):
            yield self.text[i:i + self.chunk_size]
            if broken:
                raise TransientProviderError("connection reset", status=503)


# ==============================================================================
# Caching & Coalescing
# ==============================================================================

class TestCaching:
    """Cache hits and request coalescing."""

    def test_1_second_call_hits_cache(self):
        """Scenario 1: A confident response is served from cache next time."""
        client = MockLLMClient([LONG_REPLY])
        llm, _ = make_llm(client)

        first = llm.complete(PROMPT, CompletionOptions(user_id="u1"))
        second = llm.complete(PROMPT, CompletionOptions(user_id="u1"))

        assert first.cached is False
        assert second.cached is True
        assert second.response.content == LONG_REPLY
        assert client.call_count == 1

    def test_2_low_confidence_not_cached(self):
        """Scenario 2: Short, low-confidence replies are requested again."""
        client = MockLLMClient(["ok"])
        llm, _ = make_llm(client)

        llm.complete(PROMPT)
        result = llm.complete(PROMPT)

        assert result.cached is False
        assert client.call_count == 2

    def test_3_bypass_cache(self):
        """Scenario 3: bypass_cache always reaches the provider."""
        client = MockLLMClient([LONG_REPLY])
        llm, _ = make_llm(client)

        llm.complete(PROMPT)
        result = llm.complete(PROMPT, CompletionOptions(bypass_cache=True))

        assert result.cached is False
        assert client.call_count == 2

    def test_4_users_do_not_share_entries(self):
        """Scenario 4: The same prompt for another user is a miss."""
        client = MockLLMClient([LONG_REPLY])
        llm, _ = make_llm(client)

        llm.complete(PROMPT, CompletionOptions(user_id="u1"))
        result = llm.complete(PROMPT, CompletionOptions(user_id="u2"))

        assert result.cached is False
        assert client.call_count == 2

    def test_5_concurrent_identical_requests_coalesce(self):
        """Scenario 5: Identical in-flight requests share one provider call."""
        client = MockLLMClient([LONG_REPLY], delay=0.5)
        llm, _ = make_llm(client, enable_caching=False)
        results = []
        lock = threading.Lock()

        def worker():
            result = llm.complete(PROMPT, CompletionOptions(user_id="u1"))
            with lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert client.call_count == 1
        assert len(results) == 5
        assert all(r.response.content == LONG_REPLY for r in results)
        assert sum(1 for r in results if r.coalesced) == 4
        assert len({id(r.response) for r in results}) == 5
        assert llm.stats()["in_flight"] == 0


# ==============================================================================
# Retries & Fallback
# ==============================================================================

class TestRetries:
    """Retry policy and graceful degradation."""

    def test_6_transient_errors_retried_with_backoff(self):
        """Scenario 6: Transient failures back off exponentially, then succeed."""
        client = MockLLMClient([
            TransientProviderError("unavailable", status=503),
            TransientProviderError("unavailable", status=503),
            LONG_REPLY,
        ])
        llm, sleep = make_llm(client, retry_delay=1.0)

        result = llm.complete(PROMPT)

        assert result.fallback is False
        assert result.attempts == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_7_non_retryable_stops_immediately(self):
        """Scenario 7: A 401 is not retried and is reported as non-retryable."""
        client = MockLLMClient([NonRetryableProviderError("invalid key", status=401)])
        llm, sleep = make_llm(client)

        result = llm.complete(PROMPT)

        assert client.call_count == 1
        assert sleep.call_count == 0
        assert result.fallback is True
        assert result.non_retryable is True
        assert result.attempts == 1

    def test_8_exhausted_retries_fall_back(self):
        """Scenario 8: After max_retries the canned fallback is returned."""
        client = MockLLMClient([TransientProviderError("timeout", status=408)])
        llm, sleep = make_llm(client, max_retries=3, retry_delay=0.5)

        result = llm.complete(PROMPT)

        assert client.call_count == 4
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0, 2.0]
        assert result.fallback is True
        assert result.non_retryable is False
        assert result.response.confidence == FALLBACK_CONFIDENCE
        assert FALLBACK_FLAG in result.response.flags
        assert result.response.content in FALLBACK_TEXTS
        assert result.response.suggestions

    def test_9_fallback_never_cached(self):
        """Scenario 9: Fallback responses do not poison the cache."""
        client = MockLLMClient([TransientProviderError("down", status=500), LONG_REPLY])
        llm, _ = make_llm(client, max_retries=0)

        first = llm.complete(PROMPT)
        second = llm.complete(PROMPT)

        assert first.fallback is True
        assert second.fallback is False
        assert second.cached is False

    def test_10_fallback_disabled_raises(self):
        """Scenario 10: With fallback_on_error off the provider error propagates."""
        client = MockLLMClient([TransientProviderError("down", status=502)])
        llm, _ = make_llm(client, max_retries=1, fallback_on_error=False)

        with pytest.raises(TransientProviderError):
            llm.complete(PROMPT)

    def test_11_unexpected_client_exception(self):
        """Scenario 11: A non-provider exception becomes a non-retryable fallback."""
        client = MockLLMClient([RuntimeError("boom")])
        llm, sleep = make_llm(client)

        result = llm.complete(PROMPT)

        assert result.fallback is True
        assert result.non_retryable is True
        assert sleep.call_count == 0

    def test_12_llm_response_passthrough(self):
        """Scenario 12: Truncated responses are scored lower."""
        text = "x" * 150
        client = MockLLMClient([LLMResponse(text, 10, 40, "mock", "length")])
        llm, _ = make_llm(client)

        result = llm.complete(PROMPT)

        assert result.response.confidence == 0.7
        assert result.response.tokens_used == 50


# ==============================================================================
# Streaming
# ==============================================================================

class TestStreaming:
    """Streaming completions."""

    def test_13_stream_delivers_chunks_and_caches(self):
        """Scenario 13: Chunks reach the callback; the whole reply is cached."""
        client = MockLLMClient([LONG_REPLY], chunk_size=10)
        llm, _ = make_llm(client)
        chunks = []

        result = llm.complete(PROMPT, CompletionOptions(stream=True, on_chunk=chunks.append))

        assert "".join(chunks) == LONG_REPLY
        assert result.response.content == LONG_REPLY
        assert result.streaming_id is not None
        assert llm.cache.get(result.cache_key).response.content == LONG_REPLY
        assert llm.cache.get_stream(result.streaming_id) is None

    def test_14_failed_stream_retried_without_leftovers(self):
        """Scenario 14: A failed stream attempt leaves no buffer behind."""
        client = MockLLMClient([TransientProviderError("reset", status=503), LONG_REPLY])
        llm, _ = make_llm(client)

        result = llm.complete(PROMPT, CompletionOptions(stream=True, stream_id="st-1"))

        assert result.attempts == 2
        assert result.response.content == LONG_REPLY
        assert llm.cache.stats()["active_streams"] == 0

    def test_21_interrupted_stream_not_replayed(self):
        """Scenario 21: A stream that breaks after delivering text falls back instead of repeating it."""
        client = BrokenStreamClient(LONG_REPLY)
        llm, sleep = make_llm(client)
        chunks = []

        result = llm.complete(PROMPT, CompletionOptions(stream=True, on_chunk=chunks.append))

        assert chunks == [LONG_REPLY[:20]]
        assert client.call_count == 1
        assert sleep.call_count == 0
        assert result.fallback is True
        assert llm.cache.stats()["active_streams"] == 0

    def test_22_reset_before_retrying_stream(self):
        """Scenario 22: With on_reset the caller clears partial text and the retry streams the whole reply."""
        client = BrokenStreamClient(LONG_REPLY)
        llm, _ = make_llm(client)
        chunks = []
        resets = []

        def on_reset():
            resets.append("".join(chunks))
            chunks.clear()

        result = llm.complete(PROMPT, CompletionOptions(stream=True, on_chunk=chunks.append, on_reset=on_reset))

        assert resets == [LONG_REPLY[:20]]
        assert "".join(chunks) == LONG_REPLY
        assert result.response.content == LONG_REPLY
        assert result.attempts == 2
        assert result.fallback is False

    def test_23_cancelled_stream(self):
        """Scenario 23: Cancelling keeps the delivered text, skips the fallback and caches nothing."""
        client = MockLLMClient([LONG_REPLY], chunk_size=10)
        llm, sleep = make_llm(client)
        chunks = []

        def on_chunk(delta):
            chunks.append(delta)
            llm.cancel_stream("st-cancel")

        result = llm.complete(PROMPT, CompletionOptions(stream=True, stream_id="st-cancel", on_chunk=on_chunk))

        assert result.cancelled is True
        assert result.fallback is False
        assert result.response.content == LONG_REPLY[:10]
        assert CANCELLED_FLAG in result.response.flags
        assert chunks == [LONG_REPLY[:10]]
        assert client.call_count == 1
        assert sleep.call_count == 0
        assert llm.cache.get(result.cache_key) is None
        assert llm.stats()["cancelled"] == 1
        assert llm.stats()["fallbacks"] == 0


# ==============================================================================
# Chat Turn
# ==============================================================================

@pytest.fixture
def chat_setup():
    client = MockLLMClient([LONG_REPLY])
    store = ContextStore(ContextStoreConfig())
    llm = LLMOrchestrator(client, ResponseCache(CacheConfig()), LLMConfig(enable_streaming=False), sleep=Mock())
    return client, store, CoachOrchestrator(store, llm)


class TestChatTurn:
    """CoachOrchestrator.handle_chat end to end."""

    def test_15_sleep_message(self, chat_setup):
        """Scenario 15: 'I slept 8 hours last night' logs sleep and sets the topic."""
        client, store, coach = chat_setup

        response = coach.handle_chat(ChatRequest("u1", "s1", "I slept 8 hours last night"))

        assert response.category == "sleep_coaching"
        assert response.topic == "sleep"
        assert response.data_logged.metric == "sleep_score"
        assert response.data_logged.value == 8.0
        assert response.message == LONG_REPLY
        assert response.follow_up_questions == ["How did you feel today?"]

        context = store.get("s1")
        assert [t.sender for t in context.history] == ["user", "assistant"]
        assert "sleep_score" in context.history[0].metadata.related_metrics

    def test_16_prompt_holds_prior_turns_only(self, chat_setup):
        """Scenario 16: The current message is not duplicated in the history window."""
        client, _, coach = chat_setup

        coach.handle_chat(ChatRequest("u1", "s1", "Hello coach"))
        assert len(client.last_messages) == 2

        coach.handle_chat(ChatRequest("u1", "s1", "What should I eat today?"))
        roles = [m["role"] for m in client.last_messages]
        assert roles == ["system", "user", "assistant", "user"]
        assert "What should I eat today?" in client.last_messages[-1]["content"]

    def test_17_fresh_sessions_share_cache(self, chat_setup):
        """Scenario 17: Identical first turns for one user hit the cache."""
        client, _, coach = chat_setup

        coach.handle_chat(ChatRequest("u1", "s1", "Hello coach"))
        second = coach.handle_chat(ChatRequest("u1", "s2", "Hello coach"))

        assert second.cached is True
        assert client.call_count == 1

    def test_18_emotion_updates_mood(self, chat_setup):
        """Scenario 18: Emotion words update the session mood."""
        _, store, coach = chat_setup

        coach.handle_chat(ChatRequest("u1", "s1", "I feel stressed about work"))

        assert store.get("s1").mood.stress == 7

    def test_19_fallback_recorded_in_history(self):
        """Scenario 19: A provider failure still yields a recorded reply."""
        client = MockLLMClient([NonRetryableProviderError("invalid key", status=401)])
        store = ContextStore()
        llm = LLMOrchestrator(client, ResponseCache(), LLMConfig(), sleep=Mock())
        coach = CoachOrchestrator(store, llm)

        response = coach.handle_chat(ChatRequest("u1", "s1", "Plan my workout"))

        assert response.fallback is True
        assert response.non_retryable is True
        assert response.confidence == FALLBACK_CONFIDENCE
        history = store.get("s1").history
        assert history[-1].sender == "assistant"
        assert FALLBACK_FLAG in history[-1].metadata.flags

    def test_20_empty_message_rejected(self, chat_setup):
        """Scenario 20: Blank messages are a validation error."""
        _, _, coach = chat_setup

        with pytest.raises(ValidationError):
            coach.handle_chat(ChatRequest("u1", "s1", "   "))

    def test_24_cancelled_chat_turn(self):
        """Scenario 24: A cancelled streaming turn records the delivered text, not a fallback."""
        client = MockLLMClient([LONG_REPLY], chunk_size=10)
        store = ContextStore()
        llm = LLMOrchestrator(client, ResponseCache(), LLMConfig(), sleep=Mock())
        coach = CoachOrchestrator(store, llm)

        response = coach.handle_chat(ChatRequest(
            "u1", "s1", "hello there", stream=True, stream_id="st-chat",
            on_chunk=lambda delta: llm.cancel_stream("st-chat"),
        ))

        assert response.cancelled is True
        assert response.fallback is False
        assert response.message == LONG_REPLY[:10]
        history = store.get("s1").history
        assert [t.content for t in history] == ["hello there", LONG_REPLY[:10]]
        assert CANCELLED_FLAG in history[-1].metadata.flags
