"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API process and the
Celery workers that run the generation pipeline.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins when set (tests and one-off scripts point it at SQLite).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="assessor")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    # Pub/sub channel shared by workers (publishers) and web processes (relays)
    EVENT_CHANNEL_NAME: str = Field(default="worker-events")
    # Web processes relay worker events to WebSocket clients
    EVENT_RELAY_ENABLED: bool = Field(default=True)

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # Completion provider: openrouter | anthropic | gemini
    LLM_PROVIDER: str = Field(default="openrouter")
    OPENROUTER_API_KEY: Optional[str] = Field(default=None)
    OPENROUTER_BASE_URL: str = Field(default="https://openrouter.ai/api/v1")
    OPENROUTER_APP_URL: str = Field(default="https://ai-assessor-agent.com")
    OPENROUTER_APP_TITLE: str = Field(default="AI Assessor Agent")
    ANTHROPIC_API_KEY: Optional[str] = Field(default=None)
    GOOGLE_AI_API_KEY: Optional[str] = Field(default=None)
    LLM_REQUEST_TIMEOUT_S: float = Field(default=300.0)
    LLM_MAX_OUTPUT_TOKENS: int = Field(default=8192)

    # Model routing. Main models serve the first AI_JOB_MAIN_ATTEMPTS attempts,
    # the backup model serves the rest.
    AI_EVIDENCE_MODEL: str = Field(default="google/gemini-2.5-pro")
    AI_JUDGMENT_MODEL: str = Field(default="google/gemini-2.5-flash-lite-preview-09-2025")
    AI_NARRATIVE_MODEL: str = Field(default="google/gemini-2.5-pro")
    AI_BACKUP_MODEL: str = Field(default="google/gemini-2.5-flash-lite-preview-09-2025")
    AI_EVIDENCE_TEMPERATURE: float = Field(default=0.2)
    AI_JUDGMENT_TEMPERATURE: float = Field(default=0.2)
    AI_NARRATIVE_TEMPERATURE: float = Field(default=0.5)
    AI_CRITIQUE_TEMPERATURE: float = Field(default=0.4)
    AI_BACKUP_TEMPERATURE: float = Field(default=0.5)

    # Generation job retry policy
    AI_JOB_MAX_ATTEMPTS: int = Field(default=6, ge=1)
    AI_JOB_MAIN_ATTEMPTS: int = Field(default=3, ge=1)
    AI_JOB_BACKOFF_DELAY_S: float = Field(default=2.0, gt=0)
    AI_JOB_BACKOFF_MAX_S: float = Field(default=300.0, gt=0)
    AI_TASK_TIME_LIMIT_S: int = Field(default=60 * 60)

    # Cooperative cancellation
    CANCELLATION_POLL_INTERVAL_S: float = Field(default=1.5, gt=0)
    CANCELLATION_CHECK_BETWEEN_UNITS: bool = Field(default=True)

    # Fraction of key behaviors that must be fulfilled for a level to pass
    LEVEL_PASS_THRESHOLD: float = Field(default=0.5, gt=0, le=1)

    # Ask AI: user-directed rewrite of a generated section. The admin
    # "ai_config" system setting (askAiEnabled, askAiLLM, askAiTemp) wins over these.
    ASK_AI_ENABLED: bool = Field(default=False)
    AI_ASK_MODEL: str = Field(default="google/gemini-2.5-flash-lite-preview-09-2025")
    AI_ASK_TEMPERATURE: float = Field(default=0.5, ge=0, le=2)

    # File ingestion
    STORAGE_ROOT: str = Field(default="/data/uploads")
    INGESTION_MAX_ATTEMPTS: int = Field(default=3, ge=1)


# Global settings instance
settings = Settings()
