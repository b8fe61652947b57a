"""Dispatcher — runs the user mail handler with fault isolation."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any

import structlog

from .config import BotConfig
from .errors import ErrorContext, ErrorSink
from .parser import ParsedMail

logger = structlog.get_logger()


class Dispatcher:
    """Invokes ``config.mail_handler(mail, payload)`` as an independent task.

    Handler faults, synchronous or asynchronous, are reported under
    :attr:`ErrorContext.MAIL` and never reach the pipeline.
    """

    def __init__(self, config: BotConfig, errors: ErrorSink) -> None:
        self.config = config
        self._errors = errors
        self._tasks: set[asyncio.Task] = set()
        self.dispatched: int = 0

    def dispatch(self, mail: ParsedMail, payload: Any) -> asyncio.Task:
        self.dispatched += 1
        task = asyncio.get_running_loop().create_task(
            self._invoke(self.config.mail_handler, mail, payload)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _invoke(self, handler: Any, mail: ParsedMail, payload: Any) -> None:
        try:
            result = handler(mail, payload)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("mail_handler_failed", subject=mail.subject, error=repr(exc))
            self._errors.report(exc, ErrorContext.MAIL)
        else:
            logger.debug("mail_handled", subject=mail.subject)

    async def drain(self) -> None:
        """Wait for every handler call started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
