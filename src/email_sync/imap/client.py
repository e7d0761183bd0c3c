"""IMAP implementation of the EmailClient contract.

This module provides a client that lists and materializes messages over a
single stateful IMAP session.

Notes:
    imap_tools is synchronous. Every public operation runs the blocking work
    through `asyncio.to_thread`, one call at a time, so the session is never
    used concurrently.
"""

from __future__ import annotations

import asyncio
import imaplib
import io
import ipaddress
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from imap_tools import AND, H, U, BaseMailBox, MailBox, MailBoxUnencrypted, MailMessage
from imap_tools.errors import ImapToolsError

from email_sync.config import Settings
from email_sync.exceptions import (
    AttachmentNotFoundError,
    ConfigurationError,
    MailboxConnectionError,
    MailProtocolError,
    ProtocolMismatchError,
)
from email_sync.imap.bodystructure import iter_attachments, parse_fetch_response, parse_internaldate
from email_sync.imap.parsing import (
    mail_message_to_body,
    mail_message_to_email_message,
    normalize_message_id,
)
from email_sync.models import (
    DEFAULT_FOLDER,
    AttachmentMetadata,
    EmailBody,
    EmailFilterParameters,
    EmailMessage,
    EmailProtocol,
)

logger = structlog.get_logger()

_STRUCTURE_FETCH_ITEMS = "(UID INTERNALDATE BODYSTRUCTURE)"


class SessionState(str, Enum):
    """Lifecycle of the IMAP session."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"


def is_loopback_host(host: str) -> bool:
    """Return True for ``localhost`` and loopback IP addresses."""

    candidate = host.strip().strip("[]").lower()
    if candidate == "localhost" or candidate.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(candidate).is_loopback
    except ValueError:
        return False


def build_search_criteria(
    filter_parameters: EmailFilterParameters,
    *,
    server_side_uid_range: bool = True,
) -> AND:
    """Build the UID SEARCH criteria for a listing.

    Args:
        filter_parameters: Listing request.
        server_side_uid_range: Whether to send the ``UID n:*`` lower bound to
            the server. Lightweight local test servers do not support it; the
            caller then filters the returned UIDs itself.

    Returns:
        The AND of the UID range and subject predicates, or ALL when neither applies.
    """

    criteria: dict[str, Any] = {}
    if server_side_uid_range and filter_parameters.after_unique_id > 0:
        criteria["uid"] = U(str(filter_parameters.after_unique_id + 1), "*")
    if filter_parameters.subject:
        criteria["subject"] = filter_parameters.subject

    if not criteria:
        return AND(all=True)
    return AND(**criteria)


def _search_charset(criteria: Any) -> str:
    return "US-ASCII" if str(criteria).isascii() else "UTF-8"


class ImapEmailClient:
    """IMAP client for listing and fetching messages.

    The session is opened lazily on the first operation, health-checked
    before each reuse and re-established when the server has dropped it.
    Raw messages downloaded in full are cached per pass, keyed by folder and
    UID, so several body and attachment requests for one message cost a
    single FETCH.
    """

    protocol = EmailProtocol.IMAP.value

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        mailbox_factory: Callable[[], BaseMailBox] | None = None,
    ) -> None:
        """Initialize the IMAP client.

        Args:
            settings: Application settings. If None, uses default settings.
            mailbox_factory: Creates a connected, not yet authenticated
                mailbox. Defaults to MailBox/MailBoxUnencrypted built from settings.
        """
        from email_sync.config import get_settings

        self.settings = settings or get_settings()
        self._mailbox_factory = mailbox_factory or self._create_mailbox
        self._mailbox: BaseMailBox | None = None
        self._state = SessionState.DISCONNECTED
        self._selected_folder: str | None = None
        self._message_cache: dict[tuple[str, int], MailMessage] = {}
        logger.info(
            "imap_client_initialized",
            host=self.settings.imap_host,
            port=self.settings.imap_port,
            use_ssl=self.settings.imap_use_ssl,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def uses_server_side_uid_range(self) -> bool:
        return not is_loopback_host(self.settings.imap_host)

    async def __aenter__(self) -> ImapEmailClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def list_messages(self, filter_parameters: EmailFilterParameters) -> list[EmailMessage]:
        """List messages matching the filter, header and attachment descriptors only.

        Listing starts a new pass: the raw message cache is cleared first.

        Raises:
            MailboxConnectionError: If the session cannot be established.
            MailProtocolError: If the server rejects the query.
        """

        logger.info(
            "listing_messages",
            folder=filter_parameters.folder,
            subject=filter_parameters.subject,
            after_unique_id=filter_parameters.after_unique_id,
        )
        return await asyncio.to_thread(self._list_messages_sync, filter_parameters)

    async def get_message(self, global_message_id: str, folder: str | None = None) -> EmailMessage | None:
        """Look up one message by its Message-ID header.

        Returns:
            The listing-shaped message, or None if the folder has no such message.
        """

        logger.info("getting_message", global_message_id=global_message_id, folder=folder)
        return await asyncio.to_thread(self._get_message_sync, global_message_id, folder or DEFAULT_FOLDER)

    async def fetch_body(self, message: EmailMessage) -> EmailBody:
        """Fetch the decoded body of a listed message."""

        self._check_protocol(message)
        raw = await asyncio.to_thread(self._fetch_raw_message_sync, message)
        return mail_message_to_body(raw)

    async def fetch_attachment(self, message: EmailMessage, attachment: AttachmentMetadata) -> io.BytesIO:
        """Fetch one attachment's bytes as an in-memory stream positioned at its start.

        Raises:
            ProtocolMismatchError: If the message was not listed over IMAP.
            AttachmentNotFoundError: If no attachment has that filename.
        """

        self._check_protocol(message)
        raw = await asyncio.to_thread(self._fetch_raw_message_sync, message)

        for part in raw.attachments:
            if part.filename == attachment.filename:
                logger.info(
                    "attachment_fetched",
                    uid=message.metadata.protocol_unique_id,
                    filename=attachment.filename,
                    size=len(part.payload),
                )
                return io.BytesIO(part.payload)

        raise AttachmentNotFoundError(
            f"Message UID {message.metadata.protocol_unique_id} in {message.metadata.folder_name} "
            f"has no attachment named {attachment.filename!r}"
        )

    async def close(self) -> None:
        """Log out and close the transport. Safe to call more than once."""

        await asyncio.to_thread(self._close_sync)

    def _check_protocol(self, message: EmailMessage) -> None:
        if message.metadata.protocol != self.protocol:
            raise ProtocolMismatchError(
                f"{type(self).__name__} handles {self.protocol} messages, "
                f"got one listed over {message.metadata.protocol}"
            )

    def _create_mailbox(self) -> BaseMailBox:
        if self.settings.imap_use_ssl:
            return MailBox(self.settings.imap_host, self.settings.imap_port, timeout=self.settings.imap_timeout)
        return MailBoxUnencrypted(self.settings.imap_host, self.settings.imap_port, timeout=self.settings.imap_timeout)

    def _ensure_session(self) -> BaseMailBox:
        if self._mailbox is not None:
            if self._is_alive(self._mailbox):
                return self._mailbox
            logger.warning("imap_session_stale", host=self.settings.imap_host)
            self._discard_session()

        return self._open_session()

    def _is_alive(self, mailbox: BaseMailBox) -> bool:
        if getattr(mailbox.client, "state", None) == "LOGOUT":
            return False
        try:
            mailbox.client.noop()
        except (imaplib.IMAP4.error, OSError):
            return False
        return True

    def _credentials(self) -> tuple[str, str] | None:
        if not self.settings.imap_require_auth:
            return None

        username = self.settings.imap_username
        password = self.settings.imap_password
        if not username or password is None:
            raise ConfigurationError(
                "IMAP authentication is required but imap_username/imap_password are not set."
            )
        return username, password.get_secret_value()

    def _open_session(self) -> BaseMailBox:
        credentials = self._credentials()

        try:
            mailbox = self._mailbox_factory()
        except (ImapToolsError, imaplib.IMAP4.error, OSError) as exc:
            logger.exception("imap_connect_failed", host=self.settings.imap_host, error=str(exc))
            raise MailboxConnectionError(
                f"Could not connect to {self.settings.imap_host}:{self.settings.imap_port}: {exc}"
            ) from exc

        self._mailbox = mailbox
        self._state = SessionState.CONNECTED
        self._selected_folder = None
        logger.info("imap_connected", host=self.settings.imap_host, port=self.settings.imap_port)

        if credentials is None:
            return mailbox

        username, password = credentials
        try:
            mailbox.login(username, password, initial_folder=None)
        except (ImapToolsError, imaplib.IMAP4.error, OSError) as exc:
            logger.exception("imap_login_failed", host=self.settings.imap_host, username=username, error=str(exc))
            self._discard_session()
            raise MailboxConnectionError(f"IMAP login failed for {username}: {exc}") from exc

        self._state = SessionState.AUTHENTICATED
        logger.info("imap_authenticated", username=username)
        return mailbox

    def _discard_session(self) -> None:
        mailbox = self._mailbox
        self._mailbox = None
        self._state = SessionState.DISCONNECTED
        self._selected_folder = None
        if mailbox is None:
            return
        try:
            mailbox.client.shutdown()
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.debug("imap_shutdown_failed", error=str(exc))

    def _close_sync(self) -> None:
        self._message_cache.clear()
        mailbox = self._mailbox
        if mailbox is None:
            return

        try:
            mailbox.logout()
            logger.info("imap_logged_out", host=self.settings.imap_host)
        except (ImapToolsError, imaplib.IMAP4.error, OSError) as exc:
            logger.warning("imap_logout_failed", host=self.settings.imap_host, error=str(exc))
            self._discard_session()
        finally:
            self._mailbox = None
            self._state = SessionState.DISCONNECTED
            self._selected_folder = None

    def _select_folder(self, mailbox: BaseMailBox, folder: str) -> None:
        if self._selected_folder == folder:
            return
        mailbox.folder.set(folder, readonly=True)
        self._selected_folder = folder

    def _run(self, operation: str, func: Callable[[BaseMailBox], Any]) -> Any:
        mailbox = self._ensure_session()
        try:
            return func(mailbox)
        except imaplib.IMAP4.abort as exc:
            logger.exception("imap_connection_lost", operation=operation, error=str(exc))
            self._discard_session()
            raise MailboxConnectionError(f"IMAP connection lost during {operation}: {exc}") from exc
        except OSError as exc:
            logger.exception("imap_transport_failed", operation=operation, error=str(exc))
            self._discard_session()
            raise MailboxConnectionError(f"IMAP transport failed during {operation}: {exc}") from exc
        except (ImapToolsError, imaplib.IMAP4.error, ValueError) as exc:
            logger.exception("imap_command_failed", operation=operation, error=str(exc))
            raise MailProtocolError(f"IMAP server rejected {operation}: {exc}") from exc

    def _list_messages_sync(self, filter_parameters: EmailFilterParameters) -> list[EmailMessage]:
        self._message_cache.clear()
        folder = filter_parameters.folder or DEFAULT_FOLDER
        criteria = build_search_criteria(
            filter_parameters,
            server_side_uid_range=self.uses_server_side_uid_range,
        )

        def _list(mailbox: BaseMailBox) -> list[EmailMessage]:
            self._select_folder(mailbox, folder)
            found = [int(uid) for uid in mailbox.uids(criteria, charset=_search_charset(criteria))]
            # "UID n:*" still matches the newest message when nothing is above n.
            uids = sorted(uid for uid in found if uid > filter_parameters.after_unique_id)
            logger.info(
                "imap_search_completed",
                folder=folder,
                criteria=str(criteria),
                matched=len(found),
                after_bound=len(uids),
            )
            return self._describe_messages(mailbox, folder, uids)

        return self._run("listing", _list)

    def _get_message_sync(self, global_message_id: str, folder: str) -> EmailMessage | None:
        wanted = normalize_message_id(global_message_id)
        if wanted is None:
            return None
        criteria = AND(header=H("Message-ID", wanted))

        def _get(mailbox: BaseMailBox) -> EmailMessage | None:
            self._select_folder(mailbox, folder)
            uids = sorted(int(uid) for uid in mailbox.uids(criteria, charset=_search_charset(criteria)))
            for message in self._describe_messages(mailbox, folder, uids):
                if message.metadata.global_message_id == wanted:
                    return message
            return None

        return self._run("message lookup", _get)

    def _describe_messages(self, mailbox: BaseMailBox, folder: str, uids: list[int]) -> list[EmailMessage]:
        if not uids:
            return []

        uid_set = ",".join(str(uid) for uid in uids)
        headers: dict[int, MailMessage] = {}
        for raw in mailbox.fetch(AND(uid=[str(uid) for uid in uids]), headers_only=True, mark_seen=False, bulk=True):
            if raw.uid is not None:
                headers[int(raw.uid)] = raw

        typ, data = mailbox.client.uid("FETCH", uid_set, _STRUCTURE_FETCH_ITEMS)
        if typ != "OK":
            raise MailProtocolError(f"UID FETCH BODYSTRUCTURE failed: {typ} {data!r}")
        structures = parse_fetch_response(data)

        messages = []
        for uid in uids:
            raw = headers.get(uid)
            if raw is None:
                # Expunged between SEARCH and FETCH.
                logger.warning("imap_message_vanished", folder=folder, uid=uid)
                continue

            attributes = structures.get(uid, {})
            received_at: datetime | None = parse_internaldate(attributes.get("INTERNALDATE"))
            messages.append(
                mail_message_to_email_message(
                    raw,
                    uid=uid,
                    folder=folder,
                    attachments=list(iter_attachments(attributes.get("BODYSTRUCTURE"))),
                    received_at=received_at,
                )
            )
        return messages

    def _fetch_raw_message_sync(self, message: EmailMessage) -> MailMessage:
        folder = message.metadata.folder_name
        uid = message.metadata.protocol_unique_id
        key = (folder, uid)

        cached = self._message_cache.get(key)
        if cached is not None:
            logger.debug("imap_message_cache_hit", folder=folder, uid=uid)
            return cached

        def _fetch(mailbox: BaseMailBox) -> MailMessage:
            self._select_folder(mailbox, folder)
            for raw in mailbox.fetch(AND(uid=str(uid)), mark_seen=False, bulk=True):
                if raw.uid == str(uid):
                    return raw
            raise MailProtocolError(f"Message UID {uid} no longer exists in {folder}")

        raw = self._run("message fetch", _fetch)
        self._message_cache[key] = raw
        logger.info("imap_message_fetched", folder=folder, uid=uid)
        return raw
