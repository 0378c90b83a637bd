"""Configuration management for the coach stream engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Model providers
    ANTHROPIC_API_KEY: str = Field(default="", description="Anthropic API key for the chat model")
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key for classifiers and analyses")

    # Environment
    COACH_ENGINE_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # Chat model
    CHAT_MODEL: str = Field(default="claude-sonnet-4-5-20250929", description="Streaming chat model")
    CHAT_MAX_TOKENS: int = Field(default=1024, description="Max output tokens per coaching reply")
    CHAT_TEMPERATURE: float = Field(default=0.7, description="Sampling temperature for coaching replies")
    CHAT_HISTORY_LIMIT: int = Field(default=20, description="Recent messages sent as history")
    MODEL_STREAM_TIMEOUT_SECONDS: float = Field(
        default=30.0, description="Max wait for the next chunk from the chat model"
    )

    # Signal fan-out
    SIGNAL_PROVIDER_TIMEOUT_SECONDS: float = Field(
        default=0.8, description="Per-provider bound before a signal is treated as absent"
    )
    CRISIS_PROVIDER_TIMEOUT_SECONDS: float = Field(
        default=4.0, description="Bound for the crisis check, which may call its classifier"
    )
    CLASSIFIER_MODEL: str = Field(
        default="gpt-4o-mini", description="Model for domain and crisis classification"
    )

    # Background analyses
    BACKGROUND_MODEL: str = Field(default="gpt-4o-mini", description="Model for pattern synthesis")
    BACKGROUND_QUEUE_MAXSIZE: int = Field(default=256, description="Max queued refresh jobs")
    BACKGROUND_WORKERS: int = Field(default=2, description="Background refresh worker tasks")

    # Client
    TOKEN_BUFFER_INTERVAL_MS: int = Field(
        default=75, description="Client render batching window in milliseconds"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
