"""Capability contract shared by all mail protocol clients.

The sync service only talks to this interface. ``ImapEmailClient`` is the one
implementation shipped here; JMAP or vendor REST clients would implement the
same four operations independently.
"""

from __future__ import annotations

import io
from typing import Protocol, runtime_checkable

from email_sync.models import AttachmentMetadata, EmailBody, EmailFilterParameters, EmailMessage


@runtime_checkable
class EmailClient(Protocol):
    """Lists messages and materializes their bodies and attachments on demand."""

    protocol: str

    async def list_messages(self, filter_parameters: EmailFilterParameters) -> list[EmailMessage]:
        """List messages matching the filter.

        Headers and attachment descriptors are populated; ``content.body`` is
        left unset and no attachment bytes are downloaded.

        Raises:
            MailboxConnectionError: If the session cannot be established.
            MailProtocolError: If the server rejects the query.
        """
        ...

    async def get_message(self, global_message_id: str, folder: str | None = None) -> EmailMessage | None:
        """Look up a single message by its Message-ID header, listing-shaped."""
        ...

    async def fetch_body(self, message: EmailMessage) -> EmailBody:
        """Fetch the decoded body. Repeated calls within a pass reuse the cached raw message."""
        ...

    async def fetch_attachment(self, message: EmailMessage, attachment: AttachmentMetadata) -> io.BytesIO:
        """Fetch one attachment's bytes as an in-memory stream positioned at its start.

        Raises:
            AttachmentNotFoundError: If the message has no attachment with that filename.
            ProtocolMismatchError: If the message was listed by another protocol.
        """
        ...

    async def close(self) -> None:
        """Release the underlying session."""
        ...
