import os
from dotenv import load_dotenv

# Load .env before reading any setting
load_dotenv()


class Settings:
    """
    Application settings and environment variables.
    """
    # LLM provider (groq | openai | gemini)
    LLM_PROVIDER = os.getenv("LLM_PROVIDER", "groq").lower()
    GROQ_API_KEY = os.getenv("GROQ_API_KEY")
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
    LLM_BASE_URL = os.getenv("LLM_BASE_URL")
    LLM_MODEL = os.getenv("LLM_MODEL")
    LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "1000"))
    LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
    LLM_RETRY_DELAY = float(os.getenv("LLM_RETRY_DELAY", "1.0"))
    LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

    # Conversation context
    MAX_HISTORY_LENGTH = int(os.getenv("MAX_HISTORY_LENGTH", "50"))
    CONTEXT_EXPIRY_MINUTES = int(os.getenv("CONTEXT_EXPIRY_MINUTES", "60"))
    CONTEXT_SWEEP_SECONDS = int(os.getenv("CONTEXT_SWEEP_SECONDS", "300"))

    # Response cache
    CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "1000"))
    CACHE_TTL_MINUTES = int(os.getenv("CACHE_TTL_MINUTES", "60"))
    CACHE_MIN_CONFIDENCE = float(os.getenv("CACHE_MIN_CONFIDENCE", "0.7"))

    # Proactive notifications
    NOTIFICATION_DAILY_CAP = int(os.getenv("NOTIFICATION_DAILY_CAP", "10"))
    DND_WINDOWS = os.getenv("DND_WINDOWS", "")          # "22:00-07:00,12:00-13:00"
    DISABLED_TRIGGERS = os.getenv("DISABLED_TRIGGERS", "")  # "rule_a,rule_b"
    PATTERN_CONFIDENCE = float(os.getenv("PATTERN_CONFIDENCE", "0.7"))
    ENABLE_PATTERNS = os.getenv("ENABLE_PATTERNS", "true").lower() == "true"
    ENABLE_HABIT_TRACKING = os.getenv("ENABLE_HABIT_TRACKING", "true").lower() == "true"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def provider_api_key(cls):
        """API key for the configured provider."""
        if cls.LLM_PROVIDER == "gemini":
            return cls.GOOGLE_API_KEY
        if cls.LLM_PROVIDER == "openai":
            return cls.OPENAI_API_KEY
        return cls.GROQ_API_KEY

    @classmethod
    def validate(cls):
        """
        Checks that the critical variables are loaded.
        """
        missing = []
        if cls.LLM_PROVIDER not in ("groq", "openai", "gemini"):
            raise ValueError(f"Unknown LLM_PROVIDER: {cls.LLM_PROVIDER}")
        if not cls.provider_api_key():
            missing.append(f"{cls.LLM_PROVIDER.upper()} API key")

        if missing:
            raise ValueError(f"Missing environment variables: {', '.join(missing)}")


# Validate settings (runs on import)
try:
    Settings.validate()
except ValueError as e:
    print(f"WARNING: {e}. AI responses will fall back to canned content.")
