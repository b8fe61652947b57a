"""MailBot — public facade wiring configuration, connection and pipeline."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from .config import CONNECTION_OPTIONS, BotConfig
from .connection import ConnectionManager, ConnectionState, SessionFactory
from .dispatcher import Dispatcher
from .errors import ErrorSink
from .fetch import FetchPipeline
from .imap_client import ImapSession
from .parser import MailParser, ParserFactory
from .processor import MessageProcessor
from .session import MailSession
from .watcher import MailboxWatcher

logger = structlog.get_logger()


class MailBot:
    """Watches a mailbox and hands triggered mail to ``config.mail_handler``.

    ``start``, ``stop``, ``restart`` and ``configure`` are coroutines;
    await each before issuing the next lifecycle call.
    """

    def __init__(
        self,
        config: BotConfig,
        *,
        session_factory: SessionFactory = ImapSession,
        parser_factory: ParserFactory = MailParser,
    ) -> None:
        self._config = config
        self._errors = ErrorSink(config)
        self._dispatcher = Dispatcher(config, self._errors)
        self._processor = MessageProcessor(
            config,
            self._dispatcher,
            self._errors,
            parser_factory=parser_factory,
        )
        self._pipeline = FetchPipeline(config, self._processor)
        self._watcher = MailboxWatcher(
            config,
            self._pipeline,
            self._processor.watermark,
            self._errors,
        )
        self._connection = ConnectionManager(
            config,
            self._errors,
            session_factory,
            on_ready=self._watcher.attach,
            on_closing=self._watcher.close,
            on_lost=self._watcher.detach,
        )

    @property
    def config(self) -> BotConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def session(self) -> MailSession | None:
        return self._connection.session

    @property
    def is_live(self) -> bool:
        return self._connection.is_live

    @property
    def watermark(self) -> datetime | None:
        return self._processor.watermark.value

    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "mailbox": self._config.mailbox,
            "watermark": self.watermark.isoformat() if self.watermark else None,
            "cycles": self._watcher.cycles,
            "messages_processed": self._processor.processed,
            "messages_dispatched": self._dispatcher.dispatched,
            "reconnects_scheduled": self._connection.reconnects_scheduled,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        logger.info("mailbot_starting", mailbox=self._config.mailbox)
        await self._connection.start()

    async def stop(self, force: bool = False) -> None:
        logger.info("mailbot_stopping", force=force)
        await self._connection.stop(force)

    async def restart(self, force: bool = False) -> None:
        await self.stop(force)
        await self.start()

    async def configure(
        self,
        option: str,
        value: Any,
        auto_restart: bool = True,
        force: bool = False,
    ) -> None:
        """Set one option; reconnect if it changes the connection identity."""
        previous = self._config
        self._apply_config(previous.with_overrides(**{option: value}))
        logger.info("mailbot_configured", option=option)

        if option == "mailbox" and self._config.mailbox != previous.mailbox:
            self._processor.watermark.reset()

        if auto_restart and option in CONNECTION_OPTIONS and self._connection.is_live:
            await self.restart(force)

    def _apply_config(self, config: BotConfig) -> None:
        self._config = config
        for component in (
            self._errors,
            self._dispatcher,
            self._processor,
            self._pipeline,
            self._watcher,
            self._connection,
        ):
            component.config = config

    async def wait_idle(self) -> None:
        """Wait until the current watch cycle and handler calls have finished."""
        await self._watcher.wait_idle()
        await self._dispatcher.drain()
        await self._errors.drain()


def create_bot(
    config: BotConfig | None = None,
    *,
    session_factory: SessionFactory = ImapSession,
    parser_factory: ParserFactory = MailParser,
    **overrides: Any,
) -> MailBot:
    """Build a :class:`MailBot` from *config* (or env + defaults) and overrides.

    ``imap`` overrides are merged field by field over the IMAP defaults::

        bot = create_bot(imap={"username": "me", "password": "secret"},
                         trigger=lambda mail: "invoice" in mail.subject.lower(),
                         mail_handler=handle)
        await bot.start()
    """
    base = config if config is not None else BotConfig()
    if overrides:
        base = base.with_overrides(**overrides)
    return MailBot(base, session_factory=session_factory, parser_factory=parser_factory)
