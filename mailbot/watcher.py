"""MailboxWatcher — open the mailbox, run the initial search and one
incremental search per new-mail notification.
"""

from __future__ import annotations

import asyncio

import structlog

from .config import BotConfig
from .errors import ErrorContext, ErrorSink, FetchError
from .fetch import FetchPipeline
from .processor import Watermark
from .session import MailSession

logger = structlog.get_logger()


class MailboxWatcher:
    """Drives watch cycles for one session at a time.

    The new-mail subscription is armed before the initial search, so a
    notification arriving while the initial cycle runs is kept and served
    right after it.  Cycles never overlap; notifications received during
    a cycle collapse into a single follow-up cycle.
    """

    def __init__(
        self,
        config: BotConfig,
        pipeline: FetchPipeline,
        watermark: Watermark,
        errors: ErrorSink,
    ) -> None:
        self.config = config
        self._pipeline = pipeline
        self._watermark = watermark
        self._errors = errors
        self._session: MailSession | None = None
        self._task: asyncio.Task | None = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self.cycles: int = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def incremental_criteria(self) -> list:
        """Search criteria for the next incremental cycle."""
        criteria = list(self.config.filter)
        if self._watermark.value is not None:
            criteria += ["SINCE", self._watermark.value]
        return criteria

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------

    def attach(self, session: MailSession) -> None:
        """Start watching *session*, replacing any previous one."""
        self.detach()
        self._session = session
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        session.on("mail", self._on_mail)
        self._task = asyncio.get_running_loop().create_task(self._run(session, self._idle))

    def detach(self) -> None:
        if self._session is not None:
            self._session.remove_listener("mail", self._on_mail)
            self._session = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._idle.set()

    async def close(self, graceful: bool = True) -> None:
        """Stop watching; a graceful close lets the running cycle finish first."""
        if self._session is not None:
            self._session.remove_listener("mail", self._on_mail)
        if graceful:
            await self.wait_idle()
        self.detach()

    def _on_mail(self, count: int) -> None:
        logger.debug("new_mail", count=count, busy=not self._idle.is_set())
        self._idle.clear()
        self._wakeup.set()

    async def wait_idle(self) -> None:
        """Return once no cycle is running and no notification is pending."""
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def _run(self, session: MailSession, idle: asyncio.Event) -> None:
        config = self.config
        try:
            try:
                await session.open_mailbox(config.mailbox, read_only=False)
                logger.info("mailbox_open", mailbox=config.mailbox)
            except Exception as exc:
                logger.warning("mailbox_open_failed", mailbox=config.mailbox, error=repr(exc))
                self._errors.report(exc, ErrorContext.INITIAL_SEARCH)
                return

            await self._cycle(session, list(config.filter), ErrorContext.INITIAL_SEARCH)

            while True:
                if not self._wakeup.is_set():
                    idle.set()
                await self._wakeup.wait()
                idle.clear()
                self._wakeup.clear()
                await self._cycle(
                    session, self.incremental_criteria(), ErrorContext.INCREMENTAL_SEARCH
                )
        finally:
            idle.set()

    async def _cycle(self, session: MailSession, criteria: list, context: ErrorContext) -> None:
        self.cycles += 1
        log = logger.bind(cycle=self.cycles, kind=context.value.lower())
        try:
            ids = await session.search(criteria)
        except Exception as exc:
            log.warning("search_failed", error=repr(exc))
            self._errors.report(exc, context)
            return

        log.debug("search_complete", found=len(ids))
        try:
            await self._pipeline.run(session, ids)
        except FetchError as exc:
            self._errors.report(exc, ErrorContext.FETCH)
            return
        log.debug("cycle_complete", watermark=self._watermark.value)
