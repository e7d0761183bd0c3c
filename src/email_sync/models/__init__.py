"""Data models for Email Sync.

This module contains Pydantic models shared by the protocol clients and the
sync service.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from email_sync.models.email_message import (
    AttachmentMetadata,
    EmailAddress,
    EmailBody,
    EmailContent,
    EmailHeader,
    EmailMessage,
    EmailMetadata,
    EmailProtocol,
)

DEFAULT_FOLDER = "INBOX"


class EmailFilterParameters(BaseModel):
    """A listing request."""

    folder: str = Field(default=DEFAULT_FOLDER, description="Folder to list")
    subject: str | None = Field(default=None, description="Subject substring filter")
    after_unique_id: int = Field(
        default=0,
        ge=0,
        description="Exclusive lower bound on the protocol-scoped id; 0 means no bound",
    )


class SyncCursor(BaseModel):
    """Persisted sync progress marker."""

    last_unique_id: int = Field(default=0, ge=0, description="Highest protocol-scoped id processed")
    last_synced_at: datetime | None = Field(default=None, description="End of the last completed pass (UTC)")


__all__ = [
    "DEFAULT_FOLDER",
    "AttachmentMetadata",
    "EmailAddress",
    "EmailBody",
    "EmailContent",
    "EmailFilterParameters",
    "EmailHeader",
    "EmailMessage",
    "EmailMetadata",
    "EmailProtocol",
    "SyncCursor",
]
