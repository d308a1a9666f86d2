"""
Coach Engine LLM Client Interface
=================================

Provider-agnostic chat completion clients.
- OpenAICompatibleClient: Groq (default) or OpenAI over HTTPS via requests
- GeminiClient: google-generativeai
- MockLLMClient: scripted responses for tests

Clients make exactly one provider call per method call. Retries, request
coalescing and fallbacks live in the orchestrator. Every failure is raised
as a ProviderError carrying the HTTP status and a retryable flag.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Protocol, Union
import json
import logging
import threading
import time

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
import requests

from coach_engine.config import LLMConfig
from coach_engine.errors import (
    NonRetryableProviderError, ProviderError, TransientProviderError,
    provider_error_from_status,
)

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from LLM generation."""
    text: str
    input_tokens: int
    output_tokens: int
    model: str
    finish_reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class LLMClient(Protocol):
    """
    Protocol for LLM clients.
    `messages` is the ordered list of {"role", "content"} dicts.
    """

    model_name: str

    def generate(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 1000,
        temperature: float = 0.7
    ) -> LLMResponse:
        """Generate a complete response."""
        ...

    def stream(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 1000,
        temperature: float = 0.7
    ) -> Iterator[str]:
        """Yield content deltas until the provider signals completion."""
        ...


# ==============================================================================
# OPENAI-COMPATIBLE (GROQ / OPENAI)
# ==============================================================================

class OpenAICompatibleClient:
    """POST {base_url}/chat/completions with bearer auth."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        model: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model_name = model
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise NonRetryableProviderError("Missing API key", status=401)
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _body(self, messages, max_tokens, temperature, stream) -> dict:
        return {
            "messages": messages,
            "model": self.model_name,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": stream,
        }

    def _post(self, body: dict, stream: bool) -> requests.Response:
        try:
            response = self.session.post(
                self.url,
                headers=self._headers(),
                json=body,
                timeout=self.timeout,
                stream=stream,
            )
        except requests.Timeout:
            raise TransientProviderError("Request timeout", status=408)
        except requests.RequestException as e:
            raise TransientProviderError(f"Network error: {e}")

        if response.status_code >= 400:
            try:
                data = response.json()
            except ValueError:
                data = response.text
            raise provider_error_from_status(
                response.status_code,
                f"HTTP {response.status_code}: {response.reason}",
                data=data,
            )
        return response

    def generate(self, messages, max_tokens=1000, temperature=0.7) -> LLMResponse:
        response = self._post(self._body(messages, max_tokens, temperature, False), stream=False)

        try:
            data = response.json()
            choice = data["choices"][0]
            content = choice["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise TransientProviderError(f"Malformed provider response: {e}", status=response.status_code)

        usage = data.get("usage") or {}
        return LLMResponse(
            text=content,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", usage.get("total_tokens", 0)),
            model=data.get("model", self.model_name),
            finish_reason=choice.get("finish_reason"),
            metadata={"id": data.get("id")},
        )

    def stream(self, messages, max_tokens=1000, temperature=0.7) -> Iterator[str]:
        response = self._post(self._body(messages, max_tokens, temperature, True), stream=True)

        try:
            for line in response.iter_lines(decode_unicode=True):
                if not line or not line.startswith("data: "):
                    continue
                data = line[len("data: "):].strip()
                if data == "[DONE]":
                    return
                try:
                    frame = json.loads(data)
                except ValueError:
                    logger.warning(f"Skipping malformed stream frame: {data[:80]}")
                    continue
                choices = frame.get("choices") or [{}]
                delta = choices[0].get("delta") or {}
                if delta.get("content"):
                    yield delta["content"]
        except requests.Timeout:
            raise TransientProviderError("Request timeout", status=408)
        except requests.RequestException as e:
            raise TransientProviderError(f"Stream interrupted: {e}")
        finally:
            response.close()


# ==============================================================================
# GEMINI
# ==============================================================================

GEMINI_FINISH_REASONS = {
    "stop": "stop",
    "max_tokens": "length",
}


class GeminiClient:
    """Gemini LLM client implementation."""

    def __init__(self, api_key: Optional[str], model: str = "gemini-1.5-flash", timeout: float = 30.0):
        self.api_key = api_key
        self.model_name = model
        self.timeout = timeout
        if api_key:
            genai.configure(api_key=api_key)

    def _split(self, messages: List[Dict[str, str]]):
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system") or None
        contents = [
            {"role": "user" if m["role"] == "user" else "model", "parts": [m["content"]]}
            for m in messages if m["role"] != "system"
        ]
        return system, contents

    def _call(self, messages, max_tokens, temperature, stream):
        if not self.api_key:
            raise NonRetryableProviderError("Missing API key", status=401)

        system, contents = self._split(messages)
        model = genai.GenerativeModel(model_name=self.model_name, system_instruction=system)
        config = genai.GenerationConfig(max_output_tokens=max_tokens, temperature=temperature)
        try:
            return model.generate_content(
                contents,
                generation_config=config,
                stream=stream,
                request_options={"timeout": self.timeout},
            )
        except google_exceptions.GoogleAPICallError as e:
            raise provider_error_from_status(e.code or 500, f"Gemini error: {e.message}")
        except google_exceptions.RetryError as e:
            raise TransientProviderError(f"Gemini retry exhausted: {e}", status=408)

    def generate(self, messages, max_tokens=1000, temperature=0.7) -> LLMResponse:
        response = self._call(messages, max_tokens, temperature, stream=False)

        # Blocked responses come back without content parts
        if not response.candidates or not response.candidates[0].content.parts:
            reason = response.candidates[0].finish_reason if response.candidates else "UNKNOWN"
            raise NonRetryableProviderError(f"Gemini returned no content (finish_reason: {reason})")

        reason = response.candidates[0].finish_reason
        reason_name = getattr(reason, "name", str(reason)).lower()

        input_tokens = 0
        output_tokens = 0
        if hasattr(response, "usage_metadata"):
            input_tokens = getattr(response.usage_metadata, "prompt_token_count", 0)
            output_tokens = getattr(response.usage_metadata, "candidates_token_count", 0)

        return LLMResponse(
            text=response.text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=self.model_name,
            finish_reason=GEMINI_FINISH_REASONS.get(reason_name, reason_name),
        )

    def stream(self, messages, max_tokens=1000, temperature=0.7) -> Iterator[str]:
        response = self._call(messages, max_tokens, temperature, stream=True)
        try:
            for chunk in response:
                if chunk.candidates and chunk.candidates[0].content.parts:
                    yield chunk.text
        except google_exceptions.GoogleAPICallError as e:
            raise provider_error_from_status(e.code or 500, f"Gemini stream error: {e.message}")


# ==============================================================================
# MOCK
# ==============================================================================

class MockLLMClient:
    """
    Mock LLM client for testing.

    `responses` is consumed in order; each item is a reply string, an
    LLMResponse or an exception to raise. The last item repeats.
    """

    def __init__(
        self,
        responses: Optional[List[Union[str, LLMResponse, Exception]]] = None,
        delay: float = 0.0,
        chunk_size: int = 8
    ):
        self.model_name = "mock"
        self.responses = list(responses or ["Mock response from your coach. Keep going, you are doing well!"])
        self.delay = delay
        self.chunk_size = chunk_size
        self.calls: List[List[Dict[str, str]]] = []
        self.last_messages = None
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def _next(self, messages) -> Union[str, LLMResponse, Exception]:
        with self._lock:
            self.calls.append(messages)
            self.last_messages = messages
            index = min(len(self.calls) - 1, len(self.responses) - 1)
            item = self.responses[index]
        if self.delay:
            time.sleep(self.delay)
        return item

    def generate(self, messages, max_tokens=1000, temperature=0.7) -> LLMResponse:
        item = self._next(messages)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, LLMResponse):
            return item
        prompt_chars = sum(len(m["content"]) for m in messages)
        return LLMResponse(
            text=item,
            input_tokens=prompt_chars // 4,
            output_tokens=len(item) // 4,
            model="mock",
            finish_reason="stop",
        )

    def stream(self, messages, max_tokens=1000, temperature=0.7) -> Iterator[str]:
        item = self._next(messages)
        if isinstance(item, Exception):
            raise item
        text = item.text if isinstance(item, LLMResponse) else item
        for i in range(0, len(text), self.chunk_size):
            yield text[i:i + self.chunk_size]


def create_llm_client(config: LLMConfig) -> LLMClient:
    """Client for the configured provider."""
    if config.provider == "gemini":
        return GeminiClient(config.api_key, config.model, config.request_timeout_seconds)
    if config.provider in ("groq", "openai"):
        return OpenAICompatibleClient(
            config.api_key,
            config.base_url,
            config.model,
            timeout=config.request_timeout_seconds,
        )
    raise ProviderError(f"Unknown LLM provider: {config.provider}", retryable=False)
