"""Helpers for mapping imap_tools messages into internal models."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any

from imap_tools import MailMessage

from email_sync.models import (
    AttachmentMetadata,
    EmailAddress,
    EmailBody,
    EmailContent,
    EmailHeader,
    EmailMessage,
    EmailMetadata,
    EmailProtocol,
)


def _first_header(message: MailMessage, name: str) -> str | None:
    values = message.headers.get(name.lower()) or ()
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _to_address(value: Any) -> EmailAddress | None:
    address = (getattr(value, "email", "") or "").strip()
    if not address:
        return None
    name = (getattr(value, "name", "") or "").strip()
    return EmailAddress(display_name=name or None, address=address)


def _to_addresses(values: Iterable[Any] | None) -> list[EmailAddress]:
    result = []
    for value in values or ():
        address = _to_address(value)
        if address is not None:
            result.append(address)
    return result


def normalize_message_id(value: str | None) -> str | None:
    """Strip surrounding whitespace and angle brackets from a Message-ID."""

    if not value:
        return None
    return value.strip().strip("<>").strip() or None


def mail_message_to_email_message(
    message: MailMessage,
    *,
    uid: int,
    folder: str,
    attachments: list[AttachmentMetadata] | None = None,
    received_at: datetime | None = None,
) -> EmailMessage:
    """Convert a header-only imap_tools message to EmailMessage.

    Args:
        message: Message fetched with ``headers_only=True``.
        uid: IMAP UID of the message in ``folder``.
        folder: Folder the message was listed from.
        attachments: Descriptors derived from the message's BODYSTRUCTURE.
        received_at: INTERNALDATE of the message, if fetched.

    Returns:
        EmailMessage: Listing-shaped message with the body unset.
    """

    return EmailMessage(
        metadata=EmailMetadata(
            global_message_id=normalize_message_id(_first_header(message, "Message-ID")),
            protocol=EmailProtocol.IMAP.value,
            protocol_unique_id=uid,
            folder_name=folder,
            is_reply=_first_header(message, "In-Reply-To") is not None,
        ),
        header=EmailHeader(
            subject=message.subject or "",
            sender=_to_address(message.from_values),
            to=_to_addresses(message.to_values),
            cc=_to_addresses(message.cc_values),
            bcc=_to_addresses(message.bcc_values),
            sent_at=_parse_date(_first_header(message, "Date")),
            received_at=received_at,
        ),
        content=EmailContent(attachments=list(attachments or [])),
    )


def mail_message_to_body(message: MailMessage) -> EmailBody:
    """Extract the body of a fully fetched message, preferring the plain-text part."""

    text = message.text or ""
    if text.strip():
        return EmailBody(text=text, is_html=False)

    html = message.html or ""
    if html:
        return EmailBody(text=html, is_html=True)

    return EmailBody(text=text, is_html=False)
