"""Streaming MIME parser — one instance per message.

Headers are parsed as soon as the raw header block is available so a
trigger can run before any body bytes are read.  The body is then fed
chunk by chunk into ``email.parser.BytesFeedParser``.
"""

from __future__ import annotations

import email.parser
import email.policy
import email.utils
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.message import EmailMessage
from typing import IO, Any

# Attachments above this size spill from memory to disk when streaming
SPOOL_MAX_SIZE = 1024 * 1024


@dataclass
class ParsedAttachment:
    """A single attachment extracted from a MIME message.

    With attachment streaming enabled the payload lives in a spooled
    temporary file (``stream``); otherwise it is held in ``payload``.
    """

    filename: str
    content_type: str
    size: int
    content_id: str | None = None
    payload: bytes | None = None
    stream: IO[bytes] | None = None

    def read(self) -> bytes:
        if self.payload is not None:
            return self.payload
        if self.stream is None:
            return b""
        self.stream.seek(0)
        return self.stream.read()


@dataclass
class MailHeaders:
    """Header-only view handed to the trigger in header mode."""

    headers: dict[str, Any]

    @property
    def subject(self) -> str:
        return self.headers.get("subject", "")


@dataclass
class ParsedMail:
    """Structured representation of a parsed message.

    ``partial`` is set when the parser was finalized early: only the
    header-derived fields are populated.
    """

    headers: dict[str, Any]
    message_id: str
    subject: str
    from_: str
    to: str
    cc: str
    bcc: str
    date: datetime | None
    received_date: datetime
    text: str | None = None
    html: str | None = None
    attachments: list[ParsedAttachment] = field(default_factory=list)
    partial: bool = False


class MailParser:
    """Parser for a single message.  Never reuse across messages."""

    def __init__(self, *, stream_attachments: bool = True) -> None:
        self.stream_attachments = stream_attachments
        self._feed = email.parser.BytesFeedParser(policy=email.policy.default)
        self._headers: dict[str, Any] | None = None
        self._finished = False

    @property
    def headers(self) -> dict[str, Any] | None:
        return self._headers

    def feed_headers(self, raw: bytes) -> dict[str, Any]:
        """Parse the raw header block and return the header mapping.

        Keys are lower-cased header names; repeated headers map to a list.
        """
        self._check_open()
        if not raw.endswith(b"\r\n\r\n") and not raw.endswith(b"\n\n"):
            raw = raw.rstrip(b"\r\n") + b"\r\n\r\n"
        self._feed.feed(raw)
        parsed = email.parser.BytesHeaderParser(policy=email.policy.default).parsebytes(raw)
        self._headers = _header_mapping(parsed)
        return self._headers

    def feed(self, chunk: bytes) -> None:
        self._check_open()
        if self._headers is None:
            raise RuntimeError("feed_headers() must be called before feed()")
        self._feed.feed(chunk)

    def close(self) -> ParsedMail:
        """Finish parsing and return the complete mail."""
        self._check_open()
        self._finished = True
        msg = self._feed.close()
        assert isinstance(msg, EmailMessage)
        headers = self._headers if self._headers is not None else _header_mapping(msg)
        text, html = _extract_bodies(msg)
        mail = _mail_from_headers(headers, partial=False)
        mail.text = text
        mail.html = html
        mail.attachments = _extract_attachments(msg, stream=self.stream_attachments)
        return mail

    def finalize_early(self) -> ParsedMail:
        """Stop parsing and return a mail built from the headers alone."""
        self._check_open()
        self._finished = True
        return _mail_from_headers(self._headers or {}, partial=True)

    def _check_open(self) -> None:
        if self._finished:
            raise RuntimeError("MailParser instances cannot be reused")


ParserFactory = Callable[..., MailParser]


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _header_mapping(msg: Any) -> dict[str, Any]:
    headers: dict[str, Any] = {}
    for name, value in msg.items():
        key = name.lower()
        value = str(value)
        if key in headers:
            existing = headers[key]
            headers[key] = [*existing, value] if isinstance(existing, list) else [existing, value]
        else:
            headers[key] = value
    return headers


def _first(value: Any) -> str:
    if isinstance(value, list):
        return value[0] if value else ""
    return value or ""


def _parse_date(value: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def received_date(headers: dict[str, Any]) -> datetime:
    """Date the message reached the mailbox.

    Taken from the topmost ``Received`` header (the last hop), falling
    back to ``Date`` and finally to the current time.
    """
    received = headers.get("received")
    if received:
        latest = _first(received)
        _, _, stamp = latest.rpartition(";")
        parsed = _parse_date(stamp.strip())
        if parsed is not None:
            return parsed
    parsed = _parse_date(_first(headers.get("date")))
    if parsed is not None:
        return parsed
    return datetime.now(UTC)


def _mail_from_headers(headers: dict[str, Any], *, partial: bool) -> ParsedMail:
    return ParsedMail(
        headers=headers,
        message_id=_first(headers.get("message-id")),
        subject=_first(headers.get("subject")),
        from_=_first(headers.get("from")),
        to=_first(headers.get("to")),
        cc=_first(headers.get("cc")),
        bcc=_first(headers.get("bcc")),
        date=_parse_date(_first(headers.get("date"))),
        received_date=received_date(headers),
        partial=partial,
    )


def _extract_bodies(msg: EmailMessage) -> tuple[str | None, str | None]:
    """Walk MIME parts and return (plain_text, html_text)."""
    body_text: str | None = None
    body_html: str | None = None

    for part in msg.walk():
        if part.get_content_maintype() == "multipart":
            continue
        if part.get_content_disposition() == "attachment":
            continue

        content_type = part.get_content_type()
        try:
            payload = part.get_content()
        except (LookupError, ValueError):
            continue
        if content_type == "text/plain" and isinstance(payload, str) and body_text is None:
            body_text = payload
        elif content_type == "text/html" and isinstance(payload, str) and body_html is None:
            body_html = payload

    return body_text, body_html


def _extract_attachments(msg: EmailMessage, *, stream: bool) -> list[ParsedAttachment]:
    attachments: list[ParsedAttachment] = []

    for part in msg.walk():
        filename = part.get_filename()
        if part.get_content_maintype() == "multipart":
            continue
        if part.get_content_disposition() != "attachment" and not filename:
            continue

        raw = part.get_payload(decode=True) or b""
        attachment = ParsedAttachment(
            filename=filename or "unnamed",
            content_type=part.get_content_type(),
            size=len(raw),
            content_id=part.get("Content-ID"),
        )
        if stream:
            spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
            spool.write(raw)
            spool.seek(0)
            attachment.stream = spool
        else:
            attachment.payload = raw
        attachments.append(attachment)

    return attachments
