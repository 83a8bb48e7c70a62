"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase Configuration
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")

    # Model providers
    OPENAI_API_KEY: SecretStr = SecretStr("")
    ANTHROPIC_API_KEY: SecretStr = SecretStr("")
    LLM_TRANSPORT: Literal["litellm", "anthropic"] = "litellm"

    # Analyzers
    ANALYZER_MODEL: str = "gpt-4.1-mini"
    ANALYZER_TIMEOUT_SECONDS: float = 30.0
    ANALYZER_MAX_RETRIES: int = 2
    ANALYZER_RETRY_BACKOFF: float = 2.0
    ANALYZER_MAX_BODY_CHARS: int = 16_000
    ANALYZER_DISABLED: str = ""  # Comma-separated analyzer names
    ANALYZER_REQUIRED: str = "categorizer"  # Failure of these fails the email

    # Batch processing
    BATCH_SIZE: int = 10
    BATCH_PER_EMAIL_CONCURRENCY: int = 4

    # Pricing (USD per million tokens)
    MODEL_INPUT_COST_PER_M: float = 0.15
    MODEL_OUTPUT_COST_PER_M: float = 0.60

    # Cost ledger defaults (used when the user has no settings row)
    COST_DAILY_LIMIT_USD: float = 1.00
    COST_MONTHLY_LIMIT_USD: float = 10.00
    COST_ALERT_THRESHOLD: float = 0.80
    COST_ENFORCE_LIMITS: bool = True

    # Analyze / rescan / retry
    ANALYZE_MAX_EMAILS: int = 200
    RESCAN_DEFAULT_EMAILS: int = 50
    RESCAN_MAX_EMAILS: int = 100
    RETRY_ANALYSIS_MAX_EMAILS: int = 100
    RETRY_FAILED_MAX_EMAILS: int = 25

    # Shared secret for scheduled job routes (Authorization: Bearer <JOB_SECRET>)
    JOB_SECRET: SecretStr = SecretStr("")

    # Application Settings
    APP_ENV: Literal["development", "staging", "production"] = "development"

    # Logging
    LOG_FORMAT: Literal["text", "json"] = "text"
    LOG_LEVEL: str = "INFO"

    # CORS Configuration
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate that SUPABASE_URL is a valid URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must start with http:// or https://")
        return v.rstrip("/") if v else v

    @field_validator("BATCH_SIZE", "BATCH_PER_EMAIL_CONCURRENCY")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Concurrency limits must allow at least one call."""
        if v < 1:
            raise ValueError("concurrency limits must be >= 1")
        return v

    @field_validator("COST_ALERT_THRESHOLD")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """Alert threshold is a fraction of the cap."""
        if not 0 < v <= 1:
            raise ValueError("COST_ALERT_THRESHOLD must be in (0, 1]")
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return _split_csv(self.CORS_ORIGINS)

    @property
    def disabled_analyzers(self) -> set[str]:
        """Analyzer names switched off by configuration."""
        return set(_split_csv(self.ANALYZER_DISABLED))

    @property
    def required_analyzers(self) -> set[str]:
        """Analyzer names whose failure marks the whole email as failed."""
        return set(_split_csv(self.ANALYZER_REQUIRED))

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.APP_ENV == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.APP_ENV == "production"

    @property
    def model_api_key(self) -> str:
        """API key for the configured transport."""
        if self.LLM_TRANSPORT == "anthropic":
            return self.ANTHROPIC_API_KEY.get_secret_value()
        return self.OPENAI_API_KEY.get_secret_value()

    def validate_startup(self) -> None:
        """Validate that all required secrets are configured.

        Raises:
            ValueError: If any required secret is missing or empty.
        """
        key_name = "ANTHROPIC_API_KEY" if self.LLM_TRANSPORT == "anthropic" else "OPENAI_API_KEY"
        required_secrets = {
            "SUPABASE_URL": self.SUPABASE_URL,
            "SUPABASE_SERVICE_ROLE_KEY": self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
            key_name: self.model_api_key,
        }
        missing = [name for name, value in required_secrets.items() if not value]
        if missing:
            raise ValueError(f"Required secrets are missing or empty: {', '.join(missing)}")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance with validated configuration.
    """
    return Settings()
