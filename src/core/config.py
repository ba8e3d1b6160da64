"""Application configuration using pydantic-settings."""
from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Hosted auth service - shared with the browser build (NEXT_PUBLIC_ prefix accepted)
    supabase_url: str = Field(
        validation_alias=AliasChoices("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"),
    )
    supabase_anon_key: str = Field(
        validation_alias=AliasChoices("SUPABASE_ANON_KEY", "NEXT_PUBLIC_SUPABASE_ANON_KEY"),
    )

    # Database
    database_url: str

    # Public base URL of this app, used to build the OAuth redirect_to
    site_url: str = Field(default="http://localhost:8000", validation_alias="SITE_URL")
    oauth_provider: str = Field(default="google", validation_alias="OAUTH_PROVIDER")

    # Session cookie
    session_cookie_name: str = Field(
        default="sb-auth-token", validation_alias="SESSION_COOKIE_NAME",
    )
    cookie_secure: bool = Field(default=False, validation_alias="COOKIE_SECURE")
    # Refresh the access token when it expires within this many seconds
    session_refresh_margin: int = Field(default=60, validation_alias="SESSION_REFRESH_MARGIN")
    auth_timeout: float = Field(default=10.0, validation_alias="AUTH_TIMEOUT")

    # Redis - relays live bookmark/auth events between worker processes
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    redis_enabled: bool = Field(default=True, validation_alias="REDIS_ENABLED")
    redis_pool_size: int = Field(default=10, validation_alias="REDIS_POOL_SIZE")

    sse_keepalive_seconds: float = Field(default=15.0, validation_alias="SSE_KEEPALIVE_SECONDS")

    @property
    def auth_url(self) -> str:
        """Base URL of the hosted auth REST API."""
        return f"{self.supabase_url.rstrip('/')}/auth/v1"

    @property
    def code_verifier_cookie_name(self) -> str:
        """Cookie holding the PKCE code verifier between login and callback."""
        return f"{self.session_cookie_name}-code-verifier"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
