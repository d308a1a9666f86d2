"""
Response Cache
==============

Content-addressed cache of AI responses.

- Key: SHA-256 over canonical JSON of (ordered prompt messages, user id,
  sorted contextual factor types)
- Writes below the confidence floor are dropped
- TTL per entry, lazy expiry on read plus explicit cleanup()
- Least-recently-accessed entry evicted when capacity is reached
- Streaming buffers that become cache entries on completion

Safe for concurrent use; every public method holds one re-entrant lock.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional
import hashlib
import json
import logging
import threading

from coach_engine.config import CacheConfig
from coach_engine.models import AIResponse

logger = logging.getLogger(__name__)


@dataclass
class CacheMetadata:
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    category: Optional[str] = None
    confidence: float = 0.0
    tokens_used: int = 0
    processing_time_ms: float = 0.0


@dataclass
class CacheEntry:
    key: str
    response: AIResponse
    metadata: CacheMetadata
    inserted_at: datetime
    expires_at: datetime
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None


@dataclass
class StreamChunk:
    content: str
    timestamp: datetime
    index: int


@dataclass
class StreamingBuffer:
    """Append-only chunks of one in-flight response."""
    id: str
    started_at: datetime
    last_update_at: datetime
    chunks: List[StreamChunk] = field(default_factory=list)
    content: str = ""
    is_complete: bool = False
    cache_key: Optional[str] = None
    metadata: Optional[CacheMetadata] = None


def _message_dict(message: Any) -> Dict[str, str]:
    if isinstance(message, dict):
        return {"role": message["role"], "content": message["content"]}
    return {"role": message.role, "content": message.content}


def prompt_hash(
    messages: Iterable[Any],
    user_id: Optional[str] = None,
    factor_types: Optional[Iterable[str]] = None
) -> str:
    """
    Deterministic cache key.
    Order-sensitive over messages, order-independent over factor types.
    """
    payload = {
        "messages": [_message_dict(m) for m in messages],
        "user_id": user_id or "anonymous",
        "factors": sorted(factor_types or []),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ResponseCache:
    """In-memory LRU + TTL cache of AIResponse objects."""

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._streams: Dict[str, StreamingBuffer] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def hash(self, messages, user_id: Optional[str] = None, factor_types=None) -> str:
        return prompt_hash(messages, user_id, factor_types)

    # ==========================================================================
    # ENTRIES
    # ==========================================================================

    def get(self, key: str) -> Optional[CacheEntry]:
        """Live entry or None. A hit updates access count and recency."""
        with self._lock:
            entry = self._entries.get(key)
            now = self._clock()

            if entry is None:
                self._misses += 1
                return None

            if now >= entry.expires_at:
                del self._entries[key]
                self._misses += 1
                logger.debug(f"Cache entry expired: {key[:12]}")
                return None

            entry.access_count += 1
            entry.last_accessed_at = now
            self._entries.move_to_end(key)
            self._hits += 1
            return entry

    def set(
        self,
        key: str,
        response: AIResponse,
        metadata: Optional[CacheMetadata] = None,
        ttl_minutes: Optional[float] = None
    ) -> bool:
        """
        Store a response. Returns False when the confidence is below the floor;
        such a write also drops any older entry under the same key.
        """
        if response.confidence < self.config.min_confidence_for_cache:
            with self._lock:
                self._entries.pop(key, None)
            logger.debug(
                f"Not caching response with confidence {response.confidence:.2f} "
                f"(< {self.config.min_confidence_for_cache})"
            )
            return False

        ttl = self.config.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        ttl = min(ttl, self.config.max_ttl_minutes)

        metadata = metadata or CacheMetadata()
        metadata.confidence = response.confidence
        metadata.tokens_used = metadata.tokens_used or response.tokens_used

        with self._lock:
            now = self._clock()
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.config.max_entries:
                self._evict_lru()

            self._entries[key] = CacheEntry(
                key=key,
                response=response,
                metadata=metadata,
                inserted_at=now,
                expires_at=now + timedelta(minutes=ttl),
                last_accessed_at=now,
            )
        return True

    def _evict_lru(self):
        if not self._entries:
            return
        key, _ = self._entries.popitem(last=False)
        logger.debug(f"Evicted least recently used cache entry: {key[:12]}")

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ==========================================================================
    # STREAMING
    # ==========================================================================

    def start_stream(
        self,
        stream_id: str,
        cache_key: Optional[str] = None,
        metadata: Optional[CacheMetadata] = None
    ) -> StreamingBuffer:
        now = self._clock()
        buffer = StreamingBuffer(
            id=stream_id,
            started_at=now,
            last_update_at=now,
            cache_key=cache_key,
            metadata=metadata,
        )
        with self._lock:
            self._streams[stream_id] = buffer
        return buffer

    def append_chunk(self, stream_id: str, text: str) -> Optional[StreamingBuffer]:
        with self._lock:
            buffer = self._streams.get(stream_id)
            if buffer is None or buffer.is_complete:
                return None
            now = self._clock()
            buffer.chunks.append(StreamChunk(text, now, len(buffer.chunks)))
            buffer.content += text
            buffer.last_update_at = now
            return buffer

    def complete(
        self,
        stream_id: str,
        confidence: Optional[float] = None,
        response: Optional[AIResponse] = None
    ) -> Optional[StreamingBuffer]:
        """
        Mark a stream complete, cache its content and discard the buffer.
        Cached under the stream's bound key, else the hash of its content.
        A scored `response` built from the buffer may replace the default one.
        """
        with self._lock:
            buffer = self._streams.pop(stream_id, None)
            if buffer is None:
                return None

            buffer.is_complete = True
            buffer.last_update_at = self._clock()

            if buffer.content:
                response = response or AIResponse(
                    content=buffer.content,
                    confidence=self.config.stream_default_confidence if confidence is None else confidence,
                    processing_time_ms=(buffer.last_update_at - buffer.started_at).total_seconds() * 1000,
                    tokens_used=len(buffer.content) // 4,
                    finish_reason="stop",
                )
                key = buffer.cache_key or prompt_hash([{"role": "assistant", "content": buffer.content}])
                self.set(key, response, buffer.metadata)
            return buffer

    def cancel(self, stream_id: str) -> bool:
        """Discard a stream without caching anything."""
        with self._lock:
            return self._streams.pop(stream_id, None) is not None

    def get_stream(self, stream_id: str) -> Optional[StreamingBuffer]:
        with self._lock:
            return self._streams.get(stream_id)

    # ==========================================================================
    # MAINTENANCE
    # ==========================================================================

    def cleanup(self) -> int:
        """Purge expired entries and streams idle for too long."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired:
                del self._entries[key]

            idle_limit = timedelta(minutes=self.config.stream_idle_minutes)
            stale = [s for s, b in self._streams.items() if now - b.last_update_at > idle_limit]
            for stream_id in stale:
                del self._streams[stream_id]

        if expired or stale:
            logger.info(f"Cache cleanup removed {len(expired)} entries, {len(stale)} idle streams")
        return len(expired) + len(stale)

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._streams.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict:
        with self._lock:
            entries = list(self._entries.values())
            lookups = self._hits + self._misses
            size = sum(
                len(json.dumps({"key": e.key, "content": e.response.content}))
                for e in entries
            )
            return {
                "entry_count": len(entries),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
                "average_confidence": (
                    round(sum(e.response.confidence for e in entries) / len(entries), 4)
                    if entries else 0.0
                ),
                "total_tokens_cached": sum(e.metadata.tokens_used for e in entries),
                "active_streams": len(self._streams),
                "approximate_size_bytes": size,
            }
