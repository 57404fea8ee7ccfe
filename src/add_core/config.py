"""Configuration settings for the ADD task manager server."""
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # CloudKit Web Services
    cloudkit_container_id: str | None = None
    cloudkit_api_token: str | None = None
    cloudkit_environment: Literal["development", "production"] = "development"
    cloudkit_database: Literal["private", "public"] = "private"
    cloudkit_api_url: str = "https://api.apple-cloudkit.com"
    cloudkit_redirect_uri: str = "http://localhost:3000/auth/callback"

    # Store: "memory" keeps records in process (tests, local development only)
    backend: Literal["cloudkit", "memory"] = "cloudkit"

    # Security
    rate_limit_window_ms: int = 15 * 60 * 1000  # 15 minutes
    rate_limit_max_requests: int = 100
    session_timeout_ms: int = 24 * 60 * 60 * 1000  # 24 hours
    audit_logging: bool = True

    # App
    request_timeout_s: float = 30.0
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    @property
    def rate_limit_window_s(self) -> float:
        return self.rate_limit_window_ms / 1000

    @property
    def session_timeout_s(self) -> float:
        return self.session_timeout_ms / 1000

    def validate_runtime(self) -> None:
        """
        Reject setting combinations that must not start.

        Raises:
            ValueError: If production is paired with the in-memory store, or the
                CloudKit store is selected without container id and API token
        """
        if self.cloudkit_environment == "production" and self.backend == "memory":
            raise ValueError("The in-memory store cannot be used with CLOUDKIT_ENVIRONMENT=production")
        if self.backend == "cloudkit":
            missing = [
                name.upper()
                for name in ("cloudkit_container_id", "cloudkit_api_token")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(f"Missing required environment variables: {', '.join(missing)}")
        if self.rate_limit_max_requests < 1 or self.rate_limit_window_ms < 1:
            raise ValueError("Rate limit window and maximum must be positive")
        if self.session_timeout_ms < 1:
            raise ValueError("SESSION_TIMEOUT_MS must be positive")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
