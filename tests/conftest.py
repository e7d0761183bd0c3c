"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import base64
import imaplib
import io
import re
from dataclasses import dataclass, field
from email.message import EmailMessage as RawEmailMessage

import pytest
import structlog
from imap_tools import MailMessage

from email_sync.exceptions import AttachmentNotFoundError
from email_sync.models import (
    AttachmentMetadata,
    EmailBody,
    EmailContent,
    EmailFilterParameters,
    EmailHeader,
    EmailMessage,
    EmailMetadata,
    EmailProtocol,
)

TEXT_PART = '("text" "plain" ("charset" "utf-8") NIL NIL "7bit" 24 1 NIL NIL NIL NIL)'


def build_raw_message(
    *,
    subject: str = "Hello",
    sender: str = "Alice Example <alice@example.com>",
    to: str = "Bob <bob@example.com>, carol@example.com",
    cc: str | None = None,
    body: str = "Plain text body\n",
    attachments: list[tuple[str, str, bytes]] | None = None,
    message_id: str = "<msg-1@example.com>",
    in_reply_to: str | None = None,
    date: str = "Tue, 02 Jan 2024 10:00:00 +0200",
) -> bytes:
    """Build an RFC 822 message with optional (filename, mime type, data) attachments."""

    msg = RawEmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    if cc:
        msg["Cc"] = cc
    msg["Message-ID"] = message_id
    msg["Date"] = date
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    msg.set_content(body)

    for filename, mime_type, data in attachments or []:
        maintype, subtype = mime_type.split("/")
        msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=filename)

    return msg.as_bytes()


def build_raw_with_named_attachment(filename: str, data: bytes) -> bytes:
    """Build a message whose attachment filename is written to the header verbatim."""

    payload = base64.encodebytes(data).decode("ascii")
    return (
        "From: Alice Example <alice@example.com>\r\n"
        "To: bob@example.com\r\n"
        "Subject: Report\r\n"
        "Message-ID: <report@example.com>\r\n"
        "MIME-Version: 1.0\r\n"
        'Content-Type: multipart/mixed; boundary="b1"\r\n'
        "\r\n"
        "--b1\r\n"
        "Content-Type: text/plain; charset=utf-8\r\n"
        "\r\n"
        "See attached.\r\n"
        "--b1\r\n"
        "Content-Type: application/pdf\r\n"
        "Content-Transfer-Encoding: base64\r\n"
        f'Content-Disposition: attachment; filename="{filename}"\r\n'
        "\r\n"
        f"{payload}\r\n"
        "--b1--\r\n"
    ).encode("ascii")


def build_bodystructure(attachments: list[tuple[str, str, bytes]] | None = None) -> str:
    """Build the BODYSTRUCTURE a server would report for build_raw_message output."""

    if not attachments:
        return TEXT_PART

    parts = [TEXT_PART]
    for filename, mime_type, data in attachments:
        maintype, subtype = mime_type.split("/")
        encoded_size = len(base64.encodebytes(data))
        parts.append(
            f'("{maintype}" "{subtype}" NIL NIL NIL "base64" {encoded_size} NIL '
            f'("attachment" ("filename" "{filename}")) NIL NIL)'
        )
    return "(" + "".join(parts) + ' "mixed" ("boundary" "===b===") NIL NIL NIL)'


class _UidMailMessage(MailMessage):
    def __init__(self, uid: int, raw: bytes) -> None:
        super().__init__([(f"1 (UID {uid} BODY[] {{{len(raw)}}}".encode(), raw), b")"])
        self._test_uid = str(uid)

    @property
    def uid(self) -> str:
        return self._test_uid


@dataclass
class StoredMessage:
    raw: bytes
    bodystructure: str = TEXT_PART
    internaldate: str = "02-Jan-2024 08:00:05 +0000"


class FakeImapConnection:
    """Stands in for the imaplib connection behind an imap_tools mailbox."""

    def __init__(self, mailbox: FakeMailBox) -> None:
        self._mailbox = mailbox
        self.state = "AUTH"
        self.noop_error: Exception | None = None
        self.noop_calls = 0
        self.structure_fetches: list[str] = []

    def noop(self) -> tuple[str, list[bytes]]:
        self.noop_calls += 1
        if self.noop_error is not None:
            raise self.noop_error
        return "OK", [b"NOOP completed"]

    def uid(self, command: str, uid_set: str, items: str) -> tuple[str, list[bytes]]:
        assert command == "FETCH"
        self.structure_fetches.append(uid_set)
        data = []
        for seq, uid in enumerate(uid_set.split(","), start=1):
            stored = self._mailbox.messages.get(int(uid))
            if stored is None:
                continue
            data.append(
                f'{seq} (UID {uid} INTERNALDATE "{stored.internaldate}" '
                f"BODYSTRUCTURE {stored.bodystructure})".encode()
            )
        return "OK", data

    def shutdown(self) -> None:
        self.state = "LOGOUT"


class FakeFolderManager:
    def __init__(self, mailbox: FakeMailBox) -> None:
        self._mailbox = mailbox

    def set(self, folder: str, readonly: bool = False) -> tuple[str, list[bytes]]:
        self._mailbox.selected_folders.append((folder, readonly))
        return "OK", [b"1"]


class FakeMailBox:
    """In-memory imap_tools mailbox double with server-like UID SEARCH semantics."""

    def __init__(self, messages: dict[int, StoredMessage] | None = None) -> None:
        self.messages = dict(messages or {})
        self.client = FakeImapConnection(self)
        self.folder = FakeFolderManager(self)
        self.selected_folders: list[tuple[str, bool]] = []
        self.search_criteria: list[str] = []
        self.search_charsets: list[str] = []
        self.header_fetches = 0
        self.full_fetches = 0
        self.login_calls: list[tuple[str, str]] = []
        self.login_error: Exception | None = None
        self.logout_calls = 0

    def login(self, username: str, password: str, initial_folder: str | None = "INBOX") -> FakeMailBox:
        self.login_calls.append((username, password))
        if self.login_error is not None:
            raise self.login_error
        return self

    def logout(self) -> None:
        self.logout_calls += 1
        self.client.state = "LOGOUT"

    def uids(self, criteria: object = "ALL", charset: str = "US-ASCII") -> list[str]:
        text = str(criteria)
        self.search_criteria.append(text)
        self.search_charsets.append(charset)
        return [str(uid) for uid in self._match(text)]

    def fetch(self, criteria: object = "ALL", *, headers_only: bool = False, mark_seen: bool = True, bulk: bool = False):
        assert mark_seen is False
        if headers_only:
            self.header_fetches += 1
        else:
            self.full_fetches += 1

        for uid in self._match(str(criteria)):
            raw = self.messages[uid].raw
            if headers_only:
                raw = re.split(rb"\r?\n\r?\n", raw, maxsplit=1)[0] + b"\r\n\r\n"
            yield _UidMailMessage(uid, raw)

    def _match(self, text: str) -> list[int]:
        uids = sorted(self.messages)

        range_match = re.search(r"UID (\d+):\*", text)
        if range_match:
            start = int(range_match.group(1))
            above = [uid for uid in uids if uid >= start]
            # Like real servers, "n:*" still yields the highest UID when none is >= n.
            uids = above or uids[-1:]
        else:
            set_match = re.search(r"UID ([\d,]+)", text)
            if set_match:
                wanted = {int(uid) for uid in set_match.group(1).split(",")}
                uids = [uid for uid in uids if uid in wanted]

        subject_match = re.search(r'SUBJECT "([^"]*)"', text)
        if subject_match:
            needle = subject_match.group(1).lower()
            uids = [uid for uid in uids if needle in self._header(uid, "Subject").lower()]

        header_match = re.search(r'HEADER "?Message-ID"? "?([^"\s)]+)"?', text, re.IGNORECASE)
        if header_match:
            needle = header_match.group(1)
            uids = [uid for uid in uids if needle in self._header(uid, "Message-ID")]

        return uids

    def _header(self, uid: int, name: str) -> str:
        return _UidMailMessage(uid, self.messages[uid].raw).headers.get(name.lower(), ("",))[0]


def make_message(
    uid: int,
    *,
    attachments: list[str] | None = None,
    protocol: str = EmailProtocol.IMAP.value,
    subject: str = "Subject",
) -> EmailMessage:
    """Build a listing-shaped message for service tests."""

    return EmailMessage(
        metadata=EmailMetadata(
            global_message_id=f"msg-{uid}@example.com",
            protocol=protocol,
            protocol_unique_id=uid,
            folder_name="INBOX",
        ),
        header=EmailHeader(subject=subject),
        content=EmailContent(
            attachments=[AttachmentMetadata(filename=name, mime_type="application/pdf") for name in attachments or []]
        ),
    )


class RecordingEmailClient:
    """EmailClient double that serves canned messages and counts fetches."""

    protocol = EmailProtocol.IMAP.value

    def __init__(self, messages: list[EmailMessage] | None = None) -> None:
        self.messages = list(messages or [])
        self.list_calls: list[EmailFilterParameters] = []
        self.body_fetches: list[int] = []
        self.attachment_fetches: list[tuple[int, str]] = []
        self.list_error: Exception | None = None
        self.body_error: Exception | None = None
        self.missing_attachments: set[str] = set()
        self.closed = False

    async def list_messages(self, filter_parameters: EmailFilterParameters) -> list[EmailMessage]:
        self.list_calls.append(filter_parameters)
        if self.list_error is not None:
            raise self.list_error
        return [
            m.model_copy(deep=True)
            for m in self.messages
            if m.metadata.protocol_unique_id > filter_parameters.after_unique_id
        ]

    async def get_message(self, global_message_id: str, folder: str | None = None) -> EmailMessage | None:
        for m in self.messages:
            if m.metadata.global_message_id == global_message_id:
                return m.model_copy(deep=True)
        return None

    async def fetch_body(self, message: EmailMessage) -> EmailBody:
        self.body_fetches.append(message.metadata.protocol_unique_id)
        if self.body_error is not None:
            raise self.body_error
        return EmailBody(text=f"body of {message.metadata.protocol_unique_id}")

    async def fetch_attachment(self, message: EmailMessage, attachment: AttachmentMetadata) -> io.BytesIO:
        self.attachment_fetches.append((message.metadata.protocol_unique_id, attachment.filename))
        if attachment.filename in self.missing_attachments:
            raise AttachmentNotFoundError(attachment.filename)
        return io.BytesIO(f"bytes of {attachment.filename}".encode())

    async def close(self) -> None:
        self.closed = True


class RecordingObserver:
    """Observer double with fixed votes that records every callback."""

    def __init__(
        self,
        *,
        body_vote: bool = False,
        attachment_vote: bool = False,
        fail_on: str | None = None,
    ) -> None:
        self.body_vote = body_vote
        self.attachment_vote = attachment_vote
        self.fail_on = fail_on
        self.body_questions: list[int] = []
        self.attachment_questions: list[tuple[int, str]] = []
        self.processed: list[tuple[int, str, bytes]] = []

    async def should_download_body(self, message: EmailMessage) -> bool:
        self.body_questions.append(message.metadata.protocol_unique_id)
        if self.fail_on == "should_download_body":
            raise RuntimeError("vote exploded")
        return self.body_vote

    async def should_process_attachment(self, message: EmailMessage, attachment: AttachmentMetadata) -> bool:
        self.attachment_questions.append((message.metadata.protocol_unique_id, attachment.filename))
        if self.fail_on == "should_process_attachment":
            raise RuntimeError("vote exploded")
        return self.attachment_vote

    async def process_downloaded_attachment(
        self,
        message: EmailMessage,
        attachment: AttachmentMetadata,
        content: io.BytesIO,
    ) -> None:
        if self.fail_on == "process_downloaded_attachment":
            raise RuntimeError("processing exploded")
        self.processed.append((message.metadata.protocol_unique_id, attachment.filename, content.read()))


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo logging configuration done by CLI tests."""
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()


@pytest.fixture
def mock_settings():
    """Provide settings for a remote, authenticated IMAP server."""
    from email_sync.config import Settings

    return Settings(
        imap_host="imap.example.com",
        imap_port=993,
        imap_username="sync@example.com",
        imap_password="secret",
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def loopback_settings():
    """Provide settings for an anonymous local test server."""
    from email_sync.config import Settings

    return Settings(
        imap_host="127.0.0.1",
        imap_port=3143,
        imap_use_ssl=False,
        imap_require_auth=False,
    )


@pytest.fixture
def invoice_attachments() -> list[tuple[str, str, bytes]]:
    """Provide two attachments for a multipart message."""
    return [
        ("invoice.pdf", "application/pdf", b"%PDF-1.4 fake invoice"),
        ("photo.png", "image/png", b"\x89PNG fake image"),
    ]


@pytest.fixture
def fake_mailbox(invoice_attachments) -> FakeMailBox:
    """Provide a mailbox holding UIDs 3, 5 and 7; UID 5 carries attachments."""
    return FakeMailBox(
        {
            3: StoredMessage(build_raw_message(subject="Welcome", message_id="<m3@example.com>")),
            5: StoredMessage(
                build_raw_message(
                    subject="Invoice 2024-01",
                    message_id="<m5@example.com>",
                    attachments=invoice_attachments,
                ),
                bodystructure=build_bodystructure(invoice_attachments),
            ),
            7: StoredMessage(
                build_raw_message(
                    subject="Re: Invoice 2024-01",
                    message_id="<m7@example.com>",
                    in_reply_to="<m5@example.com>",
                    cc="Dave <dave@example.com>",
                ),
            ),
        }
    )


@pytest.fixture
def stale_connection_error() -> Exception:
    """Provide the error imaplib raises on a dropped connection."""
    return imaplib.IMAP4.abort("socket error: EOF")


__all__ = [
    "FakeMailBox",
    "RecordingEmailClient",
    "RecordingObserver",
    "StoredMessage",
    "build_bodystructure",
    "build_raw_with_named_attachment",
    "build_raw_message",
    "make_message",
]
