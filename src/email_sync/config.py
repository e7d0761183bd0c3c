"""Configuration management for Email Sync.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the EMAIL_SYNC_ prefix (e.g., EMAIL_SYNC_IMAP_HOST).
    """

    model_config = SettingsConfigDict(
        env_prefix="EMAIL_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # IMAP Configuration
    imap_host: str = Field(
        default="localhost",
        description="IMAP server host name",
    )
    imap_port: int = Field(
        default=993,
        description="IMAP server port",
    )
    imap_username: str | None = Field(
        default=None,
        description="IMAP login user name",
    )
    imap_password: SecretStr | None = Field(
        default=None,
        description="IMAP login password",
    )
    imap_use_ssl: bool = Field(
        default=True,
        description="Connect over implicit TLS (IMAPS)",
    )
    imap_require_auth: bool = Field(
        default=True,
        description=(
            "Whether to authenticate after connecting. Disable only for anonymous "
            "or local test servers."
        ),
    )
    imap_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Network timeout for IMAP operations in seconds",
    )

    # Sync Configuration
    sync_folder: str = Field(
        default="INBOX",
        description="Folder to synchronize",
    )
    sync_subject_filter: str | None = Field(
        default=None,
        description="Only sync messages whose subject contains this text",
    )

    # Cursor store configuration
    cursor_db_path: Path = Field(
        default=Path("email_sync.sqlite3"),
        description="Path to the SQLite database holding the sync cursor",
    )
    cursor_key: str = Field(
        default="default",
        description="Key of the cursor record, one per synchronized mailbox",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
