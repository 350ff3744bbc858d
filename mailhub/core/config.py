"""Mailhub configuration settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional


class MailhubSettings(BaseSettings):
    """Service and sync configuration."""

    # API Settings
    api_port: int = Field(default=8000, description="API server port")
    debug: bool = Field(default=False, description="Debug mode")

    # CORS Settings
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173", "app://."],
        description="Allowed CORS origins"
    )

    # Local store
    store_backend: str = Field(
        default="mongo",
        description="Local store implementation: 'mongo' or 'memory'"
    )
    mongodb_uri: str = Field(
        default="mongodb://localhost:27017/?replicaSet=rs0",
        description="MongoDB connection string (transactions need a replica set)"
    )
    mongodb_database: str = Field(default="mailhub", description="Database name")
    mongodb_collection_accounts: str = Field(default="accounts")
    mongodb_collection_threads: str = Field(default="threads")
    mongodb_collection_emails: str = Field(default="emails")

    # Google OAuth
    google_client_id: str = Field(default="")
    google_client_secret: str = Field(default="")
    google_redirect_uri: str = Field(default="http://localhost:3847/auth/google/callback")

    # Microsoft OAuth
    microsoft_client_id: str = Field(default="")
    microsoft_client_secret: str = Field(default="")
    microsoft_tenant_id: str = Field(default="common")
    microsoft_redirect_uri: str = Field(default="http://localhost:3847/auth/microsoft/callback")

    # Sync behaviour
    initial_sync_limit: int = Field(
        default=100,
        description="Newest messages/conversations fetched on a first sync"
    )
    provider_timeout_seconds: float = Field(
        default=45.0,
        description="Timeout applied to every provider network call"
    )
    token_refresh_buffer_seconds: int = Field(
        default=300,
        description="Refresh OAuth tokens this many seconds before expiry"
    )

    # Credential encryption
    credential_vault_key: Optional[str] = Field(default=None)
    credential_vault_salt: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MAILHUB_",
        case_sensitive=False,
        extra="ignore",
    )


def get_settings() -> MailhubSettings:
    """Load settings from the environment and .env file."""
    return MailhubSettings()


settings = get_settings()
