# =============================================================================
# app/config.py - Application Settings
# =============================================================================
# This module loads configuration from environment variables using pydantic-settings.
# It provides a single Settings class with all configuration values.
#
# Usage:
#   from app.config import settings
#   print(settings.SUPABASE_URL)
#
# Environment variables are loaded from:
# 1. System environment variables
# 2. .env file in project root (if exists)
#
# Vendor keys (Anthropic, OpenAI, Expo, Resend) are optional so the API can
# start without them; the features that need a key fail with a clear error.
# =============================================================================

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings are accessed via the global `settings` instance.
    """

    # -------------------------------------------------------------------------
    # Supabase Configuration
    # -------------------------------------------------------------------------

    SUPABASE_URL: str = Field(
        ...,
        description="Supabase project URL (e.g., https://xxx.supabase.co)"
    )

    SUPABASE_ANON_KEY: str = Field(
        ...,
        description="Supabase anon/public API key"
    )

    SUPABASE_SERVICE_KEY: str = Field(
        ...,
        description="Supabase service_role key (bypasses RLS)"
    )

    SUPABASE_JWT_SECRET: str = Field(
        default="",
        description="Legacy HS256 JWT secret used to verify Supabase access tokens"
    )

    # -------------------------------------------------------------------------
    # Redis Configuration (Celery broker + WebSocket pub/sub)
    # -------------------------------------------------------------------------

    REDIS_URL: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for Celery broker and event fan-out"
    )

    # -------------------------------------------------------------------------
    # Anthropic / Claude Configuration
    # -------------------------------------------------------------------------

    ANTHROPIC_API_KEY: str = Field(
        default="",
        description="Anthropic API key used by the AI proxy"
    )

    ANTHROPIC_API_URL: str = Field(
        default="https://api.anthropic.com/v1/messages",
        description="Anthropic Messages API endpoint"
    )

    ANTHROPIC_VERSION: str = Field(
        default="2023-06-01",
        description="Value sent in the anthropic-version header"
    )

    CLAUDE_DEFAULT_MODEL: str = Field(
        default="claude-3-5-sonnet-20241022",
        description="Model used for premium tiers and vision requests"
    )

    CLAUDE_FAST_MODEL: str = Field(
        default="claude-3-haiku-20240307",
        description="Model used for free and basic text requests"
    )

    CLAUDE_MAX_TOKENS: int = Field(
        default=8192,
        ge=1,
        le=200000,
        description="Upper bound on max_tokens sent to Claude"
    )

    CLAUDE_TEMPERATURE: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Sampling temperature for Claude requests"
    )

    CLAUDE_TIMEOUT_SECONDS: float = Field(
        default=120.0,
        gt=0,
        description="HTTP timeout for Claude calls"
    )

    # -------------------------------------------------------------------------
    # OpenAI / Whisper Configuration
    # -------------------------------------------------------------------------

    OPENAI_API_KEY: str = Field(
        default="",
        description="OpenAI API key for Whisper transcription"
    )

    WHISPER_MODEL: str = Field(
        default="whisper-1",
        description="Whisper model used for speech-to-text"
    )

    # -------------------------------------------------------------------------
    # Notifications (Expo push + Resend email)
    # -------------------------------------------------------------------------

    EXPO_PUSH_URL: str = Field(
        default="https://exp.host/--/api/v2/push/send",
        description="Expo push API endpoint"
    )

    EXPO_ACCESS_TOKEN: str = Field(
        default="",
        description="Expo access token; push is skipped when empty"
    )

    RESEND_API_URL: str = Field(
        default="https://api.resend.com/emails",
        description="Resend email API endpoint"
    )

    RESEND_API_KEY: str = Field(
        default="",
        description="Resend API key; email is skipped when empty"
    )

    EMAIL_FROM: str = Field(
        default="EduDash Pro <no-reply@edudashpro.org.za>",
        description="From header for outgoing email"
    )

    APP_WEB_URL: str = Field(
        default="https://app.edudashpro.com",
        description="Web app base URL used in payment checkout links"
    )

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------

    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Current environment"
    )

    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (verbose logging, auto-reload)"
    )

    API_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the API server to"
    )

    API_PORT: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port for the API server"
    )

    CORS_ORIGINS: str = Field(
        default="http://localhost:3000,http://localhost:8081",
        description="Allowed CORS origins (comma-separated)"
    )

    # -------------------------------------------------------------------------
    # Audio Upload Settings
    # -------------------------------------------------------------------------

    MAX_AUDIO_UPLOAD_MB: int = Field(
        default=25,
        ge=1,
        le=100,
        description="Maximum audio upload size in MB (Whisper accepts up to 25MB)"
    )

    AUDIO_BYTES_PER_SECOND: int = Field(
        default=16000,
        ge=1000,
        description="Assumed audio byte rate when a client does not send a duration"
    )

    # -------------------------------------------------------------------------
    # Pydantic Settings Configuration
    # -------------------------------------------------------------------------

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=True,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Computed Properties
    # -------------------------------------------------------------------------

    @property
    def cors_origins_list(self) -> list[str]:
        """
        Parse CORS_ORIGINS string into a list.

        Example: "http://localhost:3000, https://app.edudashpro.org.za"
            -> ["http://localhost:3000", "https://app.edudashpro.org.za"]
        """
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def max_audio_upload_bytes(self) -> int:
        """Convert MB to bytes for upload validation."""
        return self.MAX_AUDIO_UPLOAD_MB * 1024 * 1024

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached Settings instance.

    Using lru_cache ensures we only parse .env and validate once,
    not on every access.
    """
    return Settings()


# Global settings instance for easy importing
# Usage: from app.config import settings
settings = get_settings()
