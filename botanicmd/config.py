"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups are env-overridable via the double-underscore delimiter,
e.g.:
    OPENAI_CONFIG__MODEL=gpt-4o-mini
    INTAKE__MAX_IMAGE_BYTES=5242880
    RECONCILER__INITIAL_DELAY_SECONDS=2
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OpenAIConfig(BaseModel):
    """OpenAI API call parameters."""

    model: str = "gpt-4o-mini"          # text-only calls: by-name lookup, candidates, chat
    vision_model: str = "gpt-4o"        # photo analysis
    max_tokens: int = 1500
    analysis_temperature: float = 0.4
    lookup_temperature: float = 0.3
    max_candidates: int = 4


class IntakeConfig(BaseModel):
    """Limits applied before any paid call is made."""

    max_image_bytes: int = 10 * 1024 * 1024
    allowed_mime_types: list[str] = ["image/jpeg", "image/png", "image/gif", "image/webp"]
    min_query_length: int = 2
    max_query_length: int = 100


class QuotaConfig(BaseModel):
    """Free-tier allowance."""

    free_identifications: int = 3


class ReconcilerConfig(BaseModel):
    """Post-checkout subscription polling schedule.

    Waits are initial_delay_seconds * backoff_factor ** n for n in
    range(max_attempts), so every round waits longer than the previous one.
    """

    initial_delay_seconds: float = 5.0
    backoff_factor: float = 1.5
    max_attempts: int = 3
    # Delay between the optimistic local flip and the forced re-fetch
    refresh_delay_seconds: float = 1.0


class AuthConfig(BaseModel):
    """Session bootstrap behaviour."""

    bootstrap_timeout_seconds: float = 5.0
    callback_redirect_default: str = "/app"


class ImageLookupConfig(BaseModel):
    """Wikipedia preview image lookup."""

    api_url: str = "https://en.wikipedia.org/w/api.php"
    timeout_seconds: float = 8.0
    thumbnail_size: int = 1024


class StripeConfig(BaseModel):
    """Stripe checkout and webhook settings."""

    secret_key: str = ""
    webhook_secret: str = ""
    price_monthly_brl: str = ""
    price_annual_brl: str = ""
    price_lifetime_brl: str = ""
    price_monthly_usd: str = ""
    price_annual_usd: str = ""
    price_lifetime_usd: str = ""
    checkout_success_url: str = "http://localhost:3000/app?session_id={CHECKOUT_SESSION_ID}&status=success"
    checkout_cancel_url: str = "http://localhost:3000/app?status=cancelled"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # API Keys
    openai_api_key: str

    # Supabase
    supabase_url: str = ""
    supabase_publishable_key: str = ""
    supabase_secret_key: str = ""

    # LangSmith / Observability
    langsmith_api_key: str = ""
    langsmith_project: str = "botanicmd"
    langchain_tracing_v2: bool = False  # Explicit opt-in

    # App Settings
    debug: bool = False
    default_language: str = "en"
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    openai_config: OpenAIConfig = Field(default_factory=OpenAIConfig)
    intake: IntakeConfig = Field(default_factory=IntakeConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    image_lookup: ImageLookupConfig = Field(default_factory=ImageLookupConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
