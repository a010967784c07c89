from functools import lru_cache
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings read from the environment (and .env)."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=True)

    APP_NAME: str = "Unbannable"
    DATABASE_URL: str = "sqlite:///./unbannable.db"
    # Run Alembic upgrade head on startup
    RUN_MIGRATIONS: bool = True
    FRONTEND_URL: str = "http://localhost:3000"
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:3001"]

    # Dodo Payments (Merchant of Record).
    # Prefer the new env var name, but fall back to the old one.
    DODO_API_KEY: str = Field(
        default="",
        validation_alias=AliasChoices("DODO_PAYMENTS_API_KEY", "DODO_API_KEY"),
    )
    DODO_BASE_URL: str = "https://test.dodopayments.com"
    DODO_PRODUCT_ID: str = ""
    DODO_WEBHOOK_SECRET: str = ""
    DODO_TIMEOUT_SECONDS: float = 15.0

    # Identity provider: session JWTs and profile webhooks
    AUTH_JWKS_URL: str = ""
    AUTH_JWT_SECRET: str = ""
    AUTH_AUDIENCE: Optional[str] = None
    AUTH_ISSUER: Optional[str] = None
    IDENTITY_WEBHOOK_SECRET: str = ""

    # Generative AI
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-1.5-flash-latest"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_TIMEOUT_SECONDS: float = 20.0
    # When true, an AI-tool charge is refunded if the model call fails and the
    # request answers 503 instead of the deterministic fallback.
    AI_REFUND_ON_FAILURE: bool = False

    # Reddit application-only OAuth
    REDDIT_CLIENT_ID: str = ""
    REDDIT_CLIENT_SECRET: str = ""
    REDDIT_USER_AGENT: str = "unbannable/1.0"

    # Billing emails (Resend); empty key disables sending
    RESEND_API_KEY: str = ""
    BILLING_FROM_EMAIL: str = "Unbannable <billing@unbannable.com>"

    @field_validator("DATABASE_URL")
    @classmethod
    def normalize_database_url(cls, value: str) -> str:
        # Normalize postgres:// -> postgresql:// for SQLAlchemy
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://"):]
        return value

    @field_validator("DODO_API_KEY", "DODO_WEBHOOK_SECRET", "IDENTITY_WEBHOOK_SECRET")
    @classmethod
    def strip_secret(cls, value: str) -> str:
        # Strip whitespace to avoid invisible copy/paste errors.
        return (value or "").strip()

    @field_validator("DODO_BASE_URL")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def dodo_configured(self) -> bool:
        return bool(self.DODO_API_KEY and self.DODO_BASE_URL and self.DODO_PRODUCT_ID)

    def dodo_missing_config_message(self) -> str:
        """Human-readable message listing which Dodo settings are missing."""
        missing_parts: list[str] = []
        if not self.DODO_API_KEY:
            missing_parts.append("API_KEY")
        if not self.DODO_BASE_URL:
            missing_parts.append("BASE_URL")
        if not self.DODO_PRODUCT_ID:
            missing_parts.append("PRODUCT_ID")
        missing = " ".join(missing_parts) if missing_parts else "UNKNOWN"
        return f"Payment system not configured. Missing: {missing}"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
