"""Configuration management for the docflow pipeline."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # Sandboxed environments may not expose .env; rely on the real environment
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

    # Provider credentials (optional: call sites degrade when missing)
    OPENAI_API_KEY: str | None = Field(default=None, description="OpenAI API key")
    OPENAI_BASE_URL: str | None = Field(
        default=None, description="Base URL for an OpenAI-compatible gateway"
    )
    ANTHROPIC_API_KEY: str | None = Field(default=None, description="Anthropic API key")

    # Environment
    DOCFLOW_ENV: str = Field(default="dev", description="Environment: dev, staging, prod, test")

    # Chat model defaults
    DEFAULT_LLM_PROVIDER: str = Field(default="openai", description="Fallback chat provider")
    DEFAULT_LLM_MODEL: str = Field(default="gpt-4o-mini", description="Fallback chat model")
    PROVIDER_LIST_TIMEOUT_SECONDS: float = Field(
        default=5.0, description="Timeout for provider listing calls"
    )

    # Embedding / retrieval configuration
    DEFAULT_EMBED_PROVIDER: str = Field(default="openai", description="Fallback embedding provider")
    DEFAULT_EMBED_MODEL: str = Field(
        default="text-embedding-3-small", description="Fallback embedding model"
    )
    RAG_MAX_CONCURRENT_EMBED_JOBS: int = Field(
        default=2, description="Process-wide cap on concurrent chunk-and-embed jobs"
    )
    RAG_MAX_CHUNK_LENGTH: int = Field(default=1000, description="Max characters per chunk")
    RAG_EMBED_PACING_SECONDS: float = Field(
        default=0.1, description="Delay inserted between embedding calls"
    )
    RAG_DEFAULT_TOP_K: int = Field(default=5, description="Default number of search results")
    RAG_DEFAULT_THRESHOLD: float = Field(default=0.7, description="Default similarity threshold")

    # Policy configuration
    POLICY_CACHE_TTL_SECONDS: float = Field(
        default=30.0, description="How long loaded policies stay cached per user"
    )

    # Model capability learning
    VISION_CONFIRMATION_WINDOW_HOURS: float = Field(
        default=24.0, description="Window in which repeated capability failures confirm"
    )

    # Actions
    WEBHOOK_TIMEOUT_SECONDS: float = Field(default=15.0, description="Webhook POST timeout")

    @field_validator("RAG_MAX_CONCURRENT_EMBED_JOBS", mode="before")
    @classmethod
    def _positive_job_cap(cls, value: object) -> int:
        try:
            parsed = int(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 2
        return parsed if parsed > 0 else 2


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
