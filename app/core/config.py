"""Configuration management for the Reconstruction Engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Environment
    RECON_ENV: str = Field(default="dev", description="Environment: dev, staging, prod, test")

    # Provider credentials (optional individually, a provider without a key is unavailable)
    ANTHROPIC_API_KEY: str = Field(default="", description="Anthropic API key")
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    DEEPSEEK_API_KEY: str = Field(default="", description="DeepSeek API key")
    GROK_API_KEY: str = Field(default="", description="xAI Grok API key")
    PERPLEXITY_API_KEY: str = Field(default="", description="Perplexity API key")

    # OpenAI-compatible vendor endpoints
    DEEPSEEK_BASE_URL: str = Field(default="https://api.deepseek.com/v1")
    GROK_BASE_URL: str = Field(default="https://api.x.ai/v1")
    PERPLEXITY_BASE_URL: str = Field(default="https://api.perplexity.ai")

    # Provider selection and models
    DEFAULT_PROVIDER: str = Field(default="anthropic", description="Provider used when the request names none")
    ANTHROPIC_MODEL: str = Field(default="claude-sonnet-4-5-20250929")
    OPENAI_MODEL: str = Field(default="gpt-4o")
    DEEPSEEK_MODEL: str = Field(default="deepseek-chat")
    GROK_MODEL: str = Field(default="grok-3")
    PERPLEXITY_MODEL: str = Field(default="sonar-pro")

    # Provider call policy
    PROVIDER_TIMEOUT_SECONDS: float = Field(default=180.0, description="Per-call timeout")
    PROVIDER_MAX_TOKENS: int = Field(default=4000, description="Token budget per provider call")
    PROVIDER_TEMPERATURE: float = Field(default=0.7)
    PROVIDER_MAX_RETRIES: int = Field(default=2, description="Retries per unit of work for multi-call strategies")
    PROVIDER_RETRY_BASE_DELAY: float = Field(default=1.0, description="Exponential backoff base in seconds")

    # Strategy selection thresholds (heuristic tuning values)
    OUTLINE_FIRST_MIN_WORDS: int = Field(default=1200, description="Lower bound of the medium band")
    CROSS_CHUNK_MIN_WORDS: int = Field(default=25000, description="Inputs above this use cross-chunk")
    SMALL_INPUT_WORDS: int = Field(default=1000, description="Below this, expansion defaults to a fixed target")
    DEFAULT_EXPANSION_TARGET: int = Field(default=5000)
    LARGE_INPUT_EXPANSION_RATIO: float = Field(default=1.5)
    STREAM_MIN_WORDS: int = Field(default=1000, description="Minimum input size for the streaming endpoint")

    # Work unit sizing
    CROSS_CHUNK_MAX_WORDS: int = Field(default=1000, description="Max words per cross-chunk chunk")
    EXPANSION_SECTION_WORDS: int = Field(default=800, description="Target words per expansion section")
    EXPANSION_MIN_SECTION_WORDS: int = Field(default=20, description="Sections below this count as stalled")
    POSITION_BATCH_SIZE: int = Field(default=40, description="Positions per provider call")
    OUTLINE_SECTION_CONCURRENCY: int = Field(default=1, description="Concurrent outline section calls")

    # Live session retention
    SESSION_TTL_SECONDS: float = Field(default=900.0, description="How long finished sessions stay in memory")

    # Persistence
    PERSISTENCE_BACKEND: str = Field(default="memory", description="memory or supabase")
    SUPABASE_URL: str = Field(default="", description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(default="", description="Supabase service role key")
    MEMORY_USAGE_ROWS: int = Field(default=10000, description="Usage rows kept by the in-memory store")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If environment variables fail validation
    """
    return Settings()
