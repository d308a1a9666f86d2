"""
Coach Engine Configuration
==========================

Per-component configuration dataclasses. Defaults match the production
behaviour; `load_engine_config()` overlays the environment-driven `Settings`.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


DEFAULT_BASE_URLS = {
    "groq": "https://api.groq.com/openai/v1",
    "openai": "https://api.openai.com/v1",
}

DEFAULT_MODELS = {
    "groq": "llama-3.1-70b-versatile",
    "openai": "gpt-4o-mini",
    "gemini": "gemini-1.5-flash",
}


@dataclass
class ContextStoreConfig:
    """Conversation context limits."""
    max_history_length: int = 50
    context_expiry_minutes: int = 60
    sweep_interval_seconds: int = 300
    max_factors: int = 10
    max_snapshots: int = 20


@dataclass
class CacheConfig:
    """Response cache limits."""
    max_entries: int = 1000
    default_ttl_minutes: int = 60
    max_ttl_minutes: int = 24 * 60
    min_confidence_for_cache: float = 0.7
    stream_default_confidence: float = 0.8
    stream_idle_minutes: int = 60


@dataclass
class LLMConfig:
    """Provider and orchestration settings."""
    provider: str = "groq"
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URLS["groq"]
    model: str = DEFAULT_MODELS["groq"]
    max_tokens: int = 1000
    temperature: float = 0.7
    max_retries: int = 3
    retry_delay: float = 1.0          # seconds, doubled per attempt
    request_timeout_seconds: float = 30.0
    enable_caching: bool = True
    enable_streaming: bool = True
    fallback_on_error: bool = True


@dataclass
class TriggerConfig:
    """Proactive notification settings."""
    daily_cap: int = 10
    dnd_windows: List[Tuple[str, str]] = field(default_factory=list)
    disabled_rules: List[str] = field(default_factory=list)
    notification_ttl_hours: int = 12
    enable_patterns: bool = True
    enable_habit_tracking: bool = True
    pattern_confidence: float = 0.7


@dataclass
class EngineConfig:
    """All component configs."""
    context: ContextStoreConfig = field(default_factory=ContextStoreConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    triggers: TriggerConfig = field(default_factory=TriggerConfig)
    log_level: str = "INFO"


def parse_windows(raw: str) -> List[Tuple[str, str]]:
    """
    Parse "HH:MM-HH:MM,HH:MM-HH:MM" into (start, end) tuples.
    Raises ValueError on a malformed window.
    """
    windows = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        start, sep, end = part.partition("-")
        if not sep:
            raise ValueError(f"Malformed time window: {part!r}")
        windows.append((check_hhmm(start.strip()), check_hhmm(end.strip())))
    return windows


def check_hhmm(value: str) -> str:
    hours, sep, minutes = value.partition(":")
    if not sep or not hours.isdigit() or not minutes.isdigit():
        raise ValueError(f"Malformed time: {value!r}")
    if not (0 <= int(hours) <= 23 and 0 <= int(minutes) <= 59):
        raise ValueError(f"Time out of range: {value!r}")
    return f"{int(hours):02d}:{int(minutes):02d}"


def load_engine_config(settings=None) -> EngineConfig:
    """Build the engine config from `config.Settings`."""
    if settings is None:
        from config import Settings
        settings = Settings

    provider = settings.LLM_PROVIDER
    llm = LLMConfig(
        provider=provider,
        api_key=settings.provider_api_key(),
        base_url=settings.LLM_BASE_URL or DEFAULT_BASE_URLS.get(provider, DEFAULT_BASE_URLS["groq"]),
        model=settings.LLM_MODEL or DEFAULT_MODELS.get(provider, DEFAULT_MODELS["groq"]),
        max_tokens=settings.LLM_MAX_TOKENS,
        temperature=settings.LLM_TEMPERATURE,
        max_retries=settings.LLM_MAX_RETRIES,
        retry_delay=settings.LLM_RETRY_DELAY,
        request_timeout_seconds=settings.LLM_TIMEOUT_SECONDS,
    )

    try:
        dnd_windows = parse_windows(settings.DND_WINDOWS)
    except ValueError as e:
        logger.warning(f"Ignoring DND_WINDOWS: {e}")
        dnd_windows = []

    return EngineConfig(
        context=ContextStoreConfig(
            max_history_length=settings.MAX_HISTORY_LENGTH,
            context_expiry_minutes=settings.CONTEXT_EXPIRY_MINUTES,
            sweep_interval_seconds=settings.CONTEXT_SWEEP_SECONDS,
        ),
        cache=CacheConfig(
            max_entries=settings.CACHE_MAX_ENTRIES,
            default_ttl_minutes=settings.CACHE_TTL_MINUTES,
            min_confidence_for_cache=settings.CACHE_MIN_CONFIDENCE,
        ),
        llm=llm,
        triggers=TriggerConfig(
            daily_cap=settings.NOTIFICATION_DAILY_CAP,
            dnd_windows=dnd_windows,
            disabled_rules=[r.strip() for r in settings.DISABLED_TRIGGERS.split(",") if r.strip()],
            enable_patterns=settings.ENABLE_PATTERNS,
            enable_habit_tracking=settings.ENABLE_HABIT_TRACKING,
            pattern_confidence=settings.PATTERN_CONFIDENCE,
        ),
        log_level=settings.LOG_LEVEL,
    )
