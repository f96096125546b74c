"""Application configuration using Pydantic Settings"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=Path(__file__).parent.parent / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Nightbot OAuth
    nightbot_client_id: str = Field(..., description="Nightbot OAuth Client ID")
    nightbot_client_secret: str = Field(..., description="Nightbot OAuth Client Secret")

    # Operator identity (JWT cookie issued by the main site)
    jwt_secret_key: str = Field(..., description="Secret key for JWT token verification")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    admin_emails: str = Field(
        default="", description="Comma-separated operator e-mails allowed to manage Nightbot"
    )

    # Database
    database_url: str = Field(..., description="PostgreSQL database URL")

    # Server URLs
    frontend_url: str = Field(default="http://localhost:3000", description="Frontend URL for CORS")
    api_url: str = Field(default="http://localhost:8000", description="API server URL")

    # Environment
    environment: str = Field(default="development", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # Snapshots / tokens
    snapshot_retention_days: int = Field(
        default=14, ge=1, description="Days a soft-deleted snapshot is kept before purge"
    )
    snapshot_list_limit: int = Field(
        default=50, ge=1, le=100, description="Snapshots shown per channel listing"
    )
    token_refresh_margin_seconds: int = Field(
        default=300, ge=0, description="Refresh Nightbot tokens this long before expiry"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid logging level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            logger.warning(f"Invalid log level '{v}', defaulting to INFO")
            return "INFO"
        return v_upper

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS allowed origins"""
        return [self.frontend_url]

    @property
    def admin_email_set(self) -> set[str]:
        return {e.strip().lower() for e in self.admin_emails.split(",") if e.strip()}

    @property
    def nightbot_redirect_uri(self) -> str:
        return f"{self.api_url.rstrip('/')}/api/nightbot/callback"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment"""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()  # type: ignore[call-arg]
