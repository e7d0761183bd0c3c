"""Observer and event handler contracts for the sync pass.

Observers vote on what to download and receive downloaded attachments. Event
handlers are told about every message once it has been through the observer
chain. Neither can steer the pass: their failures are logged and ignored.
"""

from __future__ import annotations

import io
from typing import Protocol, runtime_checkable

import structlog

from email_sync.models import AttachmentMetadata, EmailMessage

logger = structlog.get_logger()


@runtime_checkable
class SyncObserver(Protocol):
    """Policy deciding which bodies and attachments a pass downloads."""

    async def should_download_body(self, message: EmailMessage) -> bool:
        """Vote on fetching the message body. One True vote is enough."""
        ...

    async def should_process_attachment(self, message: EmailMessage, attachment: AttachmentMetadata) -> bool:
        """Vote on fetching an attachment. True also subscribes to its bytes."""
        ...

    async def process_downloaded_attachment(
        self,
        message: EmailMessage,
        attachment: AttachmentMetadata,
        content: io.BytesIO,
    ) -> None:
        """Receive the bytes of an attachment this observer voted for.

        ``content`` is positioned at its start and private to this observer.
        """
        ...


@runtime_checkable
class SyncEventHandler(Protocol):
    """Notified after each message of a pass has been processed."""

    async def email_synced(self, message: EmailMessage) -> None:
        ...


class LoggingSyncEventHandler:
    """Logs every synced message."""

    async def email_synced(self, message: EmailMessage) -> None:
        sender = message.header.sender.address if message.header.sender else None
        logger.info(
            "email_synced",
            uid=message.metadata.protocol_unique_id,
            folder=message.metadata.folder_name,
            message_id=message.metadata.global_message_id,
            subject=message.header.subject,
            sender=sender,
            attachment_count=len(message.content.attachments),
            body_downloaded=message.content.is_body_downloaded,
        )
