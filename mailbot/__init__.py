"""mailbot — watch an IMAP mailbox and dispatch triggered mail to a handler.

Public API re-exported here for convenience::

    from mailbot import create_bot, parse_addresses, extract_signature
"""

from .addresses import parse_addresses
from .bot import MailBot, create_bot
from .config import BotConfig, ImapConfig, LogConfig
from .connection import ConnectionManager, ConnectionState
from .errors import (
    AddressParseError,
    ErrorContext,
    FetchError,
    MailBotError,
    MailBotStateError,
    MailConnectionError,
)
from .imap_client import ImapSession
from .logging import setup_logging
from .parser import MailHeaders, MailParser, ParsedAttachment, ParsedMail
from .processor import MessageState, Watermark
from .session import BodyStream, FetchedMessage, MailSession
from .signature import extract_signature
from .trigger import NOT_MATCHED, Matched, NotMatched, TriggerResult

__all__ = [
    "NOT_MATCHED",
    "AddressParseError",
    "BodyStream",
    "BotConfig",
    "ConnectionManager",
    "ConnectionState",
    "ErrorContext",
    "FetchError",
    "FetchedMessage",
    "ImapConfig",
    "ImapSession",
    "LogConfig",
    "MailBot",
    "MailBotError",
    "MailBotStateError",
    "MailConnectionError",
    "MailHeaders",
    "MailParser",
    "MailSession",
    "Matched",
    "MessageState",
    "NotMatched",
    "ParsedAttachment",
    "ParsedMail",
    "TriggerResult",
    "Watermark",
    "create_bot",
    "extract_signature",
    "parse_addresses",
    "setup_logging",
]
