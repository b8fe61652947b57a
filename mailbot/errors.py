"""Error types and the single error sink every pipeline fault is routed to."""

from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from .config import BotConfig

logger = structlog.get_logger()


class ErrorContext(str, Enum):
    """Tag describing where in the pipeline an error was caught."""

    CONNECTION = "CONNECTION"
    INITIAL_SEARCH = "INITIAL_SEARCH"
    INCREMENTAL_SEARCH = "INCREMENTAL_SEARCH"
    FETCH = "FETCH"
    PARSE = "PARSE"
    MAIL = "MAIL"
    ADDRESS_PARSE = "ADDRESS_PARSE"


class MailBotError(Exception):
    """Base class for mailbot errors."""

    context: ErrorContext | None = None


class MailConnectionError(MailBotError):
    """The IMAP transport failed or closed unexpectedly."""

    context = ErrorContext.CONNECTION


class FetchError(MailBotError):
    """A fetch batch could not be retrieved."""

    context = ErrorContext.FETCH


class AddressParseError(MailBotError, ValueError):
    """An address header value could not be parsed."""

    context = ErrorContext.ADDRESS_PARSE

    def __init__(self, value: str) -> None:
        super().__init__(f"Invalid address: {value!r}")
        self.value = value


class MailBotStateError(MailBotError, RuntimeError):
    """A lifecycle call was made in a state that does not allow it."""


def default_error_handler(error: BaseException, context: ErrorContext) -> None:
    logger.error("mailbot_error", context=str(context), error=repr(error))


class ErrorSink:
    """Routes ``(error, context)`` pairs to the configured error handler.

    The handler may be a plain function or a coroutine function.  A fault
    raised by the handler itself is logged and never propagates.
    """

    def __init__(self, config: BotConfig) -> None:
        self.config = config
        self._pending: set[asyncio.Task] = set()

    def report(self, error: BaseException, context: ErrorContext) -> None:
        logger.debug("error_reported", context=str(context), error=repr(error))
        try:
            result = self.config.error_handler(error, context)
        except Exception:
            logger.exception("error_handler_failed", context=str(context))
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("error_handler_failed", error=repr(task.exception()))

    async def drain(self) -> None:
        """Wait for outstanding async error handler calls."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
