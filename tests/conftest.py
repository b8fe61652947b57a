"""Shared test fixtures for the mailbot test suite."""

from __future__ import annotations

from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import pytest

from mailbot.config import BotConfig, ImapConfig
from mailbot.dispatcher import Dispatcher
from mailbot.errors import ErrorContext, ErrorSink

from tests.fakes import FakeSessionFactory

# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def build_email(
    *,
    subject: str = "Test Subject",
    from_addr: str = "Sender <sender@example.com>",
    to_addr: str = "recipient@example.com",
    body: str = "Hello, World!",
    message_id: str = "<test-001@example.com>",
    date: str = "Sun, 01 Jun 2025 12:00:00 +0000",
    received: str | None = None,
    cc: str | None = None,
    html: str | None = None,
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build an email as raw bytes; multipart when html or attachments are given."""
    if html is None and not attachments:
        msg = MIMEText(body, "plain")
    else:
        msg = MIMEMultipart("mixed")
        alt = MIMEMultipart("alternative")
        alt.attach(MIMEText(body, "plain"))
        if html is not None:
            alt.attach(MIMEText(html, "html"))
        msg.attach(alt)
        for filename, content_type, payload in attachments or []:
            maintype, subtype = content_type.split("/", 1)
            part = MIMEBase(maintype, subtype)
            part.set_payload(payload)
            encoders.encode_base64(part)
            part.add_header("Content-Disposition", "attachment", filename=filename)
            msg.attach(part)

    if received is not None:
        msg["Received"] = received
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Message-ID"] = message_id
    msg["Date"] = date
    if cc:
        msg["Cc"] = cc
    return msg.as_bytes()


def dated_email(uid: str, day: int, *, subject: str | None = None, **kwargs) -> bytes:
    """Email received on 2020-01-<day> at noon UTC."""
    return build_email(
        subject=subject or f"Message {uid}",
        message_id=f"<msg-{uid}@example.com>",
        date=f"{_weekday(day)}, {day:02d} Jan 2020 12:00:00 +0000",
        **kwargs,
    )


def _weekday(day: int) -> str:
    # 2020-01-01 was a Wednesday
    return ("Wed", "Thu", "Fri", "Sat", "Sun", "Mon", "Tue")[(day - 1) % 7]


# ------------------------------------------------------------------
# Config and component fixtures
# ------------------------------------------------------------------


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
        poll_interval_seconds=0.01,
    )


class ErrorRecorder:
    """Error handler collecting ``(error, context)`` pairs."""

    def __init__(self) -> None:
        self.calls: list[tuple[BaseException, ErrorContext]] = []

    def __call__(self, error: BaseException, context: ErrorContext) -> None:
        self.calls.append((error, context))

    @property
    def contexts(self) -> list[ErrorContext]:
        return [context for _, context in self.calls]


class MailRecorder:
    """Mail handler collecting ``(mail, payload)`` pairs."""

    def __init__(self) -> None:
        self.calls: list[tuple[object, object]] = []

    def __call__(self, mail, payload) -> None:
        self.calls.append((mail, payload))


@pytest.fixture
def errors_seen() -> ErrorRecorder:
    return ErrorRecorder()


@pytest.fixture
def mails_seen() -> MailRecorder:
    return MailRecorder()


@pytest.fixture
def bot_config(
    imap_config: ImapConfig,
    errors_seen: ErrorRecorder,
    mails_seen: MailRecorder,
) -> BotConfig:
    return BotConfig(
        imap=imap_config,
        mailbox="INBOX",
        filter=["UNSEEN"],
        trigger=lambda mail: True,
        mail_handler=mails_seen,
        error_handler=errors_seen,
        auto_reconnect_timeout=0.01,
        auto_reconnect_max_attempts=3,
    )


@pytest.fixture
def error_sink(bot_config: BotConfig) -> ErrorSink:
    return ErrorSink(bot_config)


@pytest.fixture
def dispatcher(bot_config: BotConfig, error_sink: ErrorSink) -> Dispatcher:
    return Dispatcher(bot_config, error_sink)


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return build_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return build_email(
        body="Plain body",
        html="<p>HTML body</p>",
        attachments=[
            ("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("data.csv", "text/csv", b"col1,col2\na,b\n"),
        ],
    )


@pytest.fixture
def session_factory() -> FakeSessionFactory:
    return FakeSessionFactory(
        messages={
            "1": dated_email("1", 1),
            "2": dated_email("2", 3),
        }
    )
