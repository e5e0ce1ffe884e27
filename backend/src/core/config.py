# --- EXTERNAL IMPORTS ---
import os
from dataclasses import dataclass
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    # ------------------- CORE PROJECT SETTINGS -------------------
    PROJECT_NAME: str = "MedAssist Chat Core"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # ------------------- SECURITY -------------------
    # Signs the caller identity tokens (sub = user id)
    SECRET_KEY: str = os.getenv("SECRET_KEY", "super-secret-key-change-me")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # ------------------- DATABASES -------------------
    POSTGRES_URL: str = "sqlite+aiosqlite:///./medassist_chat.db"

    @property
    def DATABASE_URL(self) -> str:
        url = self.POSTGRES_URL
        if url and "?" in url:
            url = url.split("?")[0]
        if url and url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url and url.startswith("postgresql://") and "+asyncpg" not in url:
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    # ------------------- AI PROVIDER -------------------
    AI_PROVIDER: str = "openai"  # openai | groq | google
    LLM_MODEL_NAME: str | None = None  # None = provider default
    LLM_BASE_URL: str | None = None
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 1500
    LLM_REQUEST_TIMEOUT: float = 30.0  # per attempt, seconds

    OPENAI_API_KEY: str | None = None
    GROQ_API_KEY: str | None = None
    GOOGLE_API_KEY: str | None = None

    # ------------------- RETRIES -------------------
    LLM_MAX_RETRIES: int = 3
    LLM_RETRY_BASE_DELAY: float = 0.25
    LLM_RETRY_MAX_DELAY: float = 5.0
    # Hard ceiling for one turn (all attempts + waits)
    CHAT_TURN_TIMEOUT: float = 90.0

    # ------------------- TOKEN BUDGET -------------------
    MAX_CONTEXT_TOKENS: int = 6000
    RESERVE_FOR_RESPONSE: int = 2000
    CONTEXT_SHARE: float = 0.35
    HISTORY_SHARE: float = 0.25
    MAX_HISTORY_MESSAGES: int = 20
    TOKEN_ESTIMATOR: str = "heuristic"  # heuristic | tiktoken

    # ------------------- CHAT -------------------
    MESSAGE_PAGE_SIZE: int = 50
    MESSAGE_PAGE_MAX: int = 100
    RATE_LIMIT_PER_MINUTE: int = 10
    RATE_LIMIT_PER_HOUR: int = 100

    # ------------------- IDEMPOTENCY -------------------
    IDEMPOTENCY_TTL_HOURS: int = 24
    IDEMPOTENCY_CLAIM_TIMEOUT: float = 120.0  # seconds before an unfinished claim is stale

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_file_encoding='utf-8')

@lru_cache()
def get_settings():
    return Settings()

settings = get_settings()


# ==========================================
# CHAT CONFIG (explicit value, built once)
# ==========================================

@dataclass(frozen=True)
class ChatConfig:
    """
    Everything the chat core needs, captured at startup.
    Tests build their own instead of touching the process settings.
    """
    provider: str = "openai"
    api_key: str | None = None
    model: str | None = None
    base_url: str | None = None
    temperature: float = 0.7
    max_tokens: int = 1500
    request_timeout: float = 30.0

    max_retries: int = 3
    retry_base_delay: float = 0.25
    retry_max_delay: float = 5.0
    turn_timeout: float = 90.0

    max_context_tokens: int = 6000
    reserve_for_response: int = 2000
    context_share: float = 0.35
    history_share: float = 0.25
    max_history_messages: int = 20
    token_estimator: str = "heuristic"

    page_size: int = 50
    page_max: int = 100
    rate_limit_per_minute: int = 10
    rate_limit_per_hour: int = 100

    idempotency_ttl_hours: int = 24
    idempotency_claim_timeout: float = 120.0

    @classmethod
    def from_settings(cls, s: Settings) -> "ChatConfig":
        provider = s.AI_PROVIDER.lower()
        api_keys = {
            "openai": s.OPENAI_API_KEY,
            "groq": s.GROQ_API_KEY,
            "google": s.GOOGLE_API_KEY,
        }
        return cls(
            provider=provider,
            api_key=api_keys.get(provider),
            model=s.LLM_MODEL_NAME,
            base_url=s.LLM_BASE_URL,
            temperature=s.LLM_TEMPERATURE,
            max_tokens=s.LLM_MAX_TOKENS,
            request_timeout=s.LLM_REQUEST_TIMEOUT,
            max_retries=s.LLM_MAX_RETRIES,
            retry_base_delay=s.LLM_RETRY_BASE_DELAY,
            retry_max_delay=s.LLM_RETRY_MAX_DELAY,
            turn_timeout=s.CHAT_TURN_TIMEOUT,
            max_context_tokens=s.MAX_CONTEXT_TOKENS,
            reserve_for_response=s.RESERVE_FOR_RESPONSE,
            context_share=s.CONTEXT_SHARE,
            history_share=s.HISTORY_SHARE,
            max_history_messages=s.MAX_HISTORY_MESSAGES,
            token_estimator=s.TOKEN_ESTIMATOR,
            page_size=s.MESSAGE_PAGE_SIZE,
            page_max=s.MESSAGE_PAGE_MAX,
            rate_limit_per_minute=s.RATE_LIMIT_PER_MINUTE,
            rate_limit_per_hour=s.RATE_LIMIT_PER_HOUR,
            idempotency_ttl_hours=s.IDEMPOTENCY_TTL_HOURS,
            idempotency_claim_timeout=s.IDEMPOTENCY_CLAIM_TIMEOUT,
        )
