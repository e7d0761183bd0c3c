"""Protocol-agnostic email message model.

A message is split into protocol identity (``EmailMetadata``), envelope data
(``EmailHeader``) and a lazily populated payload (``EmailContent``). Listing a
mailbox always fills metadata and header; the body and attachment bytes are
only fetched when some observer asks for them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class EmailProtocol(str, Enum):
    """Mail protocol a message was retrieved with."""

    IMAP = "IMAP"
    JMAP = "JMAP"
    GMAIL_API = "GMAIL_API"


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EmailAddress(BaseModel):
    """One mailbox participant."""

    display_name: str | None = Field(default=None, description="Display name, e.g. 'Jane Doe'")
    address: str = Field(min_length=1, description="Address, e.g. 'jane@example.com'")


class EmailHeader(BaseModel):
    """Envelope-level metadata of a message."""

    subject: str = Field(default="", description="Subject header")
    sender: EmailAddress | None = Field(default=None, description="First From address")
    to: list[EmailAddress] = Field(default_factory=list, description="To recipients, in order")
    cc: list[EmailAddress] = Field(default_factory=list, description="Cc recipients, in order")
    bcc: list[EmailAddress] = Field(default_factory=list, description="Bcc recipients, in order")
    sent_at: datetime | None = Field(
        default=None,
        description="Date header converted to UTC (reflects the sender's clock)",
    )
    received_at: datetime | None = Field(
        default=None,
        description="Server-side arrival time in UTC, when the protocol exposes it",
    )

    @field_validator("sent_at", "received_at")
    @classmethod
    def _normalize_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class AttachmentMetadata(BaseModel):
    """Descriptor of one attachment, available before its bytes are fetched."""

    filename: str = Field(description="Attachment file name")
    mime_type: str = Field(default="application/octet-stream", description="MIME type")
    size: int | None = Field(default=None, ge=0, description="Size in bytes, if known")
    download_reference: str | None = Field(
        default=None,
        description="Where the downloaded bytes were stored; None until downloaded",
    )


class EmailBody(BaseModel):
    """Decoded message body."""

    text: str = Field(default="", description="Body text (plain text or HTML)")
    is_html: bool = Field(default=False, description="Whether text holds HTML")


class EmailContent(BaseModel):
    """Lazily populated message payload."""

    body: EmailBody | None = Field(default=None, description="Body, None until fetched")
    attachments: list[AttachmentMetadata] = Field(
        default_factory=list,
        description="Attachment descriptors, populated at listing time",
    )
    are_attachments_downloaded: bool = Field(
        default=False,
        description="Whether at least one attachment has been downloaded",
    )

    @property
    def is_body_downloaded(self) -> bool:
        return self.body is not None


class EmailMetadata(BaseModel):
    """Protocol identity of a message."""

    global_message_id: str | None = Field(
        default=None,
        description="Message-ID header; the only cross-protocol stable key",
    )
    protocol: str = Field(description="Protocol tag, see EmailProtocol")
    protocol_unique_id: int = Field(
        ge=0,
        description="Protocol-scoped id (IMAP UID); unique and sequential within one folder only",
    )
    folder_name: str = Field(description="Folder the message was listed from")
    is_reply: bool = Field(default=False, description="Whether an In-Reply-To header is present")


class EmailMessage(BaseModel):
    """Aggregate of metadata, header and content."""

    metadata: EmailMetadata
    header: EmailHeader
    content: EmailContent = Field(default_factory=EmailContent)
