"""Email sync service implementation.

This module provides the service that drives one incremental sync pass:
load the cursor, list newer messages, let observers decide what to download,
then advance and persist the cursor.
"""

from __future__ import annotations

import io
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TypeVar

import structlog

from email_sync.client import EmailClient
from email_sync.config import Settings
from email_sync.exceptions import AttachmentNotFoundError, SyncAlreadyRunningError, SyncCancelledError
from email_sync.models import AttachmentMetadata, EmailFilterParameters, EmailMessage, SyncCursor
from email_sync.sync.cursor_store import SyncCursorStore
from email_sync.sync.observer import SyncEventHandler, SyncObserver

logger = structlog.get_logger()

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncResult:
    """Summary of one completed pass."""

    listed: int = 0
    bodies_fetched: int = 0
    attachments_fetched: int = 0
    isolated_failures: int = 0
    cursor: SyncCursor = field(default_factory=SyncCursor)


class EmailSyncService:
    """Runs incremental sync passes against one mailbox folder.

    Passes are not reentrant. The cursor is written only after every listed
    message has been processed; any failure before that, or a cancellation,
    leaves the stored cursor untouched.
    """

    def __init__(
        self,
        client: EmailClient,
        cursor_store: SyncCursorStore,
        observers: Iterable[SyncObserver] = (),
        event_handlers: Iterable[SyncEventHandler] = (),
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the sync service.

        Args:
            client: Protocol client to list and fetch messages with.
            cursor_store: Store holding the sync cursor.
            observers: Download policies, consulted for every message.
            event_handlers: Notified after each processed message.
            settings: Application settings. If None, uses default settings.
            clock: Source of the last-sync timestamp.
        """
        from email_sync.config import get_settings

        self.settings = settings or get_settings()
        self.client = client
        self.cursor_store = cursor_store
        self.observers = list(observers)
        self.event_handlers = list(event_handlers)
        self._clock = clock
        self._running = False
        self._cancel_requested = False
        logger.info(
            "email_sync_service_initialized",
            folder=self.settings.sync_folder,
            subject_filter=self.settings.sync_subject_filter,
            observer_count=len(self.observers),
        )

    @property
    def is_running(self) -> bool:
        return self._running

    def request_cancel(self) -> None:
        """Ask the running pass to stop before its next message."""

        if self._running:
            logger.info("sync_cancel_requested")
            self._cancel_requested = True

    async def sync_next_emails(self) -> SyncResult:
        """Run one sync pass.

        Returns:
            SyncResult: Counts for the pass and the cursor that was saved.

        Raises:
            SyncAlreadyRunningError: If a pass is already in flight.
            SyncCancelledError: If cancelled between messages.
            MailboxConnectionError: If the mail session cannot be established.
            MailProtocolError: If the server rejects a listing or fetch.
        """

        if self._running:
            raise SyncAlreadyRunningError("A sync pass is already running.")

        self._running = True
        self._cancel_requested = False
        try:
            return await self._run_pass()
        finally:
            self._running = False
            self._cancel_requested = False

    async def _run_pass(self) -> SyncResult:
        cursor = self.cursor_store.get_or_create()
        logger.info(
            "sync_pass_started",
            last_unique_id=cursor.last_unique_id,
            last_synced_at=cursor.last_synced_at.isoformat() if cursor.last_synced_at else None,
        )

        messages = await self.client.list_messages(
            EmailFilterParameters(
                folder=self.settings.sync_folder,
                subject=self.settings.sync_subject_filter,
                after_unique_id=cursor.last_unique_id,
            )
        )
        result = SyncResult(listed=len(messages))

        for message in messages:
            self._raise_if_cancelled(cursor, next_uid=message.metadata.protocol_unique_id)
            await self._process_message(message, result)

        # A cancel that arrives during the last message still forfeits the pass.
        self._raise_if_cancelled(cursor, next_uid=None)

        cursor.last_unique_id = max(
            [cursor.last_unique_id, *(message.metadata.protocol_unique_id for message in messages)]
        )
        cursor.last_synced_at = self._clock()
        self.cursor_store.save(cursor)
        result.cursor = cursor

        logger.info(
            "sync_pass_completed",
            listed=result.listed,
            bodies_fetched=result.bodies_fetched,
            attachments_fetched=result.attachments_fetched,
            isolated_failures=result.isolated_failures,
            last_unique_id=cursor.last_unique_id,
        )
        return result

    def _raise_if_cancelled(self, cursor: SyncCursor, *, next_uid: int | None) -> None:
        if not self._cancel_requested:
            return
        logger.warning("sync_pass_cancelled", next_uid=next_uid, last_unique_id=cursor.last_unique_id)
        raise SyncCancelledError("Sync pass cancelled; cursor left unchanged.")

    async def _process_message(self, message: EmailMessage, result: SyncResult) -> None:
        uid = message.metadata.protocol_unique_id

        # Every observer votes; one True is enough.
        wants_body = False
        for observer in self.observers:
            vote = await self._call_observer(
                observer,
                "should_download_body",
                lambda o=observer: o.should_download_body(message),
                message,
                result,
                default=False,
            )
            wants_body = wants_body or bool(vote)

        if wants_body:
            message.content.body = await self.client.fetch_body(message)
            result.bodies_fetched += 1
            logger.debug("email_body_downloaded", uid=uid, is_html=message.content.body.is_html)

        for attachment in message.content.attachments:
            await self._process_attachment(message, attachment, result)

        for handler in self.event_handlers:
            await self._call_observer(
                handler,
                "email_synced",
                lambda h=handler: h.email_synced(message),
                message,
                result,
                default=None,
            )

    async def _process_attachment(
        self,
        message: EmailMessage,
        attachment: AttachmentMetadata,
        result: SyncResult,
    ) -> None:
        requesting = []
        for observer in self.observers:
            vote = await self._call_observer(
                observer,
                "should_process_attachment",
                lambda o=observer: o.should_process_attachment(message, attachment),
                message,
                result,
                default=False,
            )
            if vote:
                requesting.append(observer)

        if not requesting:
            return

        try:
            stream = await self.client.fetch_attachment(message, attachment)
        except AttachmentNotFoundError as exc:
            result.isolated_failures += 1
            logger.warning(
                "attachment_not_found",
                uid=message.metadata.protocol_unique_id,
                filename=attachment.filename,
                error=str(exc),
            )
            return

        data = stream.read()
        if attachment.size is None:
            attachment.size = len(data)
        message.content.are_attachments_downloaded = True
        result.attachments_fetched += 1

        for observer in requesting:
            await self._call_observer(
                observer,
                "process_downloaded_attachment",
                lambda o=observer: o.process_downloaded_attachment(message, attachment, io.BytesIO(data)),
                message,
                result,
                default=None,
            )

    async def _call_observer(
        self,
        observer: object,
        hook: str,
        call: Callable[[], Awaitable[T]],
        message: EmailMessage,
        result: SyncResult,
        *,
        default: T,
    ) -> T:
        try:
            return await call()
        except Exception as exc:  # noqa: BLE001
            result.isolated_failures += 1
            logger.exception(
                "observer_failed",
                observer=type(observer).__name__,
                hook=hook,
                uid=message.metadata.protocol_unique_id,
                error=str(exc),
            )
            return default
