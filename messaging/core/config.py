"""
Application configuration using 12-factor environment variables.
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Community Messaging Service")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Security
    webhook_secret: Optional[str] = Field(default=None, description="HMAC-SHA256 secret for contact form submissions")

    # Database
    database_url: str = Field(default="sqlite:///./data/messaging.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # Attachments
    max_attachments: int = Field(default=10, ge=0)
    max_attachment_bytes: int = Field(default=25 * 1024 * 1024, ge=0)

    # Delivery
    allow_self_messages: bool = Field(default=False)
    max_broadcast_recipients: int = Field(default=10000, ge=1)
    fanout_batch_size: int = Field(default=500, ge=1)
    system_sender_id: int = Field(default=0, description="Sender id used for unauthenticated contact form submissions")

    # Dynamic audience windows (days)
    sponsorship_expiry_days: int = Field(default=7, ge=0)
    new_user_days: int = Field(default=7, ge=0)
    new_paid_days: int = Field(default=7, ge=0)

    # Templates
    templates_path: Optional[str] = Field(default=None, description="JSON file with additional message templates")

    @property
    def is_webhook_secret_configured(self) -> bool:
        """Check if webhook secret is properly configured."""
        return bool(self.webhook_secret and len(self.webhook_secret) > 0)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
