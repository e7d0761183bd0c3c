"""Parsing of raw IMAP FETCH responses carrying BODYSTRUCTURE.

imap_tools only hands out fully parsed messages, so attachment descriptors for
a listing are derived here from ``UID FETCH (UID INTERNALDATE BODYSTRUCTURE)``
without downloading any part content.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from datetime import datetime
from email.header import decode_header
from email.message import Message
from typing import Any

from imap_tools.utils import decode_value

from email_sync.models import AttachmentMetadata

_LITERAL_RE = re.compile(rb"\{(\d+)\}\s*$")
_TOKEN_RE = re.compile(
    r'\s*(?:(?P<open>\()|(?P<close>\))|"(?P<quoted>(?:[^"\\]|\\.)*)"|(?P<atom>[^\s()"]+))'
)
_ESCAPE_RE = re.compile(r"\\(.)")


class Atom(str):
    """An unquoted IMAP atom (e.g. ``UID``, ``BODYSTRUCTURE``)."""


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def join_fetch_response(data: list[Any]) -> str:
    """Flatten imaplib FETCH data into one string, inlining literals as quoted strings."""

    chunks: list[str] = []
    for item in data:
        if isinstance(item, tuple):
            head, literal = item[0], item[1]
            chunks.append(_LITERAL_RE.sub(b"", head).decode("utf-8", "replace"))
            chunks.append(_quote(literal.decode("utf-8", "replace")))
        elif isinstance(item, bytes):
            chunks.append(item.decode("utf-8", "replace"))
    return " ".join(chunks)


def tokenize(text: str) -> list[Any]:
    """Parse an IMAP s-expression sequence into nested lists.

    Quoted strings stay ``str``, numeric atoms become ``int``, ``NIL`` becomes
    ``None`` and other atoms become ``Atom``.
    """

    root: list[Any] = []
    stack = [root]
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            if text[pos:].strip():
                raise ValueError(f"Unparseable FETCH response near: {text[pos:pos + 40]!r}")
            break
        pos = match.end()

        if match.group("open"):
            child: list[Any] = []
            stack[-1].append(child)
            stack.append(child)
        elif match.group("close"):
            if len(stack) == 1:
                raise ValueError("Unbalanced ')' in FETCH response")
            stack.pop()
        elif match.group("quoted") is not None:
            stack[-1].append(_ESCAPE_RE.sub(r"\1", match.group("quoted")))
        else:
            atom = match.group("atom")
            if atom.upper() == "NIL":
                stack[-1].append(None)
            elif atom.isdigit():
                stack[-1].append(int(atom))
            else:
                stack[-1].append(Atom(atom))

    if len(stack) != 1:
        raise ValueError("Unbalanced '(' in FETCH response")
    return root


def parse_fetch_response(data: list[Any]) -> dict[int, dict[str, Any]]:
    """Map each UID in a FETCH response to its attributes, keyed by upper-case name."""

    items = tokenize(join_fetch_response(data))
    result: dict[int, dict[str, Any]] = {}
    for item in items:
        # Sequence numbers sit between the attribute lists.
        if not isinstance(item, list):
            continue

        attributes: dict[str, Any] = {}
        for index in range(0, len(item) - 1, 2):
            key = item[index]
            if isinstance(key, str):
                attributes[key.upper()] = item[index + 1]

        uid = attributes.get("UID")
        if isinstance(uid, int):
            result[uid] = attributes
    return result


def parse_internaldate(value: Any) -> datetime | None:
    """Parse an INTERNALDATE value such as ``17-Jul-1996 02:44:25 -0700``."""

    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value.strip(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        return None


def _params(value: Any) -> list[tuple[str, str]]:
    if not isinstance(value, list):
        return []
    pairs = []
    for index in range(0, len(value) - 1, 2):
        name, param = value[index], value[index + 1]
        if isinstance(name, str) and isinstance(param, str):
            pairs.append((name.lower(), param))
    return pairs


def _header_value(kind: str, params: list[tuple[str, str]]) -> str:
    return "; ".join([kind, *(f"{name}={_quote(value)}" for name, value in params)])


def _decode_words(value: str) -> str:
    # Same joining as imap_tools MailAttachment.filename, so listed names match fetched ones.
    return "".join(decode_value(*part) for part in decode_header(value))


def _filename(content_type: str, type_params: list[tuple[str, str]], disposition: Any) -> str | None:
    # Rebuild the MIME headers so RFC 2231 continuations decode exactly like a parsed message.
    part = Message()
    part["Content-Type"] = _header_value(content_type, type_params)

    if isinstance(disposition, list) and disposition and isinstance(disposition[0], str):
        disposition_params = _params(disposition[1]) if len(disposition) > 1 else []
        part["Content-Disposition"] = _header_value(disposition[0].lower(), disposition_params)

    filename = part.get_filename()
    return _decode_words(filename) if filename else None


def _single_part_attachment(part: list[Any]) -> AttachmentMetadata | None:
    if len(part) < 7:
        return None

    maintype = str(part[0] or "application").lower()
    subtype = str(part[1] or "octet-stream").lower()
    content_type = f"{maintype}/{subtype}"

    # Extension data starts after the type-specific fields.
    if maintype == "text":
        extension_start = 8
    elif content_type == "message/rfc822":
        extension_start = 10
    else:
        extension_start = 7
    disposition = part[extension_start + 1] if len(part) > extension_start + 1 else None

    # Named parts count as attachments whatever their disposition; unnamed ones cannot be fetched by name.
    filename = _filename(content_type, _params(part[2]), disposition)
    if not filename:
        return None

    size = part[6] if isinstance(part[6], int) else None
    return AttachmentMetadata(filename=filename, mime_type=content_type, size=size)


def iter_attachments(structure: Any) -> Iterator[AttachmentMetadata]:
    """Yield attachment descriptors from a parsed BODYSTRUCTURE, in part order.

    Nested ``message/rfc822`` parts are reported as one attachment and not
    descended into.
    """

    if not isinstance(structure, list) or not structure:
        return

    if isinstance(structure[0], list):
        # Multipart: child parts come first, followed by the subtype and extension data.
        for child in structure:
            if not isinstance(child, list):
                break
            yield from iter_attachments(child)
        return

    attachment = _single_part_attachment(structure)
    if attachment is not None:
        yield attachment
