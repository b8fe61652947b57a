"""ConnectionManager — connection lifecycle state machine.

Owns the single session of a bot: connect, graceful stop, forced
destroy, and the delayed reconnect after an unsolicited close.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import structlog

from .config import BotConfig, ImapConfig
from .errors import ErrorContext, ErrorSink, MailBotStateError, MailConnectionError
from .retry import reconnect_retrying
from .session import MailSession

logger = structlog.get_logger()

SessionFactory = Callable[[ImapConfig], MailSession]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({ConnectionState.READY, ConnectionState.CLOSED}),
    ConnectionState.READY: frozenset({ConnectionState.CLOSING, ConnectionState.CLOSED}),
    ConnectionState.CLOSING: frozenset({ConnectionState.CLOSED}),
    ConnectionState.CLOSED: frozenset({ConnectionState.CONNECTING}),
}


class ConnectionManager:
    """State machine around one :class:`MailSession` at a time.

    Hooks:

    * ``on_ready(session)`` — called once the session is usable
    * ``on_closing(graceful)`` — awaited before the session is ended
    * ``on_lost()`` — called after an unsolicited close
    """

    def __init__(
        self,
        config: BotConfig,
        errors: ErrorSink,
        session_factory: SessionFactory,
        *,
        on_ready: Callable[[MailSession], None],
        on_closing: Callable[[bool], Awaitable[None]],
        on_lost: Callable[[], None],
    ) -> None:
        self.config = config
        self.state = ConnectionState.DISCONNECTED
        self.reconnects_scheduled: int = 0
        self._errors = errors
        self._session_factory = session_factory
        self._on_ready = on_ready
        self._on_closing = on_closing
        self._on_lost = on_lost
        self._session: MailSession | None = None
        self._reconnect_task: asyncio.Task | None = None

    @property
    def session(self) -> MailSession | None:
        return self._session

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def is_live(self) -> bool:
        """Connected, or about to reconnect."""
        return self.state is ConnectionState.READY or self.reconnect_pending

    def _transition(self, target: ConnectionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise MailBotStateError(
                f"Cannot move connection from {self.state.value} to {target.value}"
            )
        logger.debug("connection_state_changed", previous=self.state.value, state=target.value)
        self.state = target

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open a new session and return once it signals ``ready``."""
        self._transition(ConnectionState.CONNECTING)

        if self._session is not None:
            self._session.remove_all_listeners()
        session = self._session_factory(self.config.imap)
        self._session = session
        session.on("error", self._handle_error)
        session.on("close", functools.partial(self._handle_close, session))

        ready = self._settle_on(session, "ready", failures=("error", "close"))
        logger.info("connecting", host=self.config.imap.host, port=self.config.imap.port)
        session.connect()
        try:
            await ready
        except BaseException as exc:
            if self.state is ConnectionState.CONNECTING:
                self._transition(ConnectionState.CLOSED)
            if isinstance(exc, asyncio.CancelledError):
                session.destroy()
            raise

        self._transition(ConnectionState.READY)
        logger.info("connected", host=self.config.imap.host)
        self._on_ready(session)

    async def stop(self, force: bool = False) -> None:
        """End the session; ``force`` destroys it instead of logging out."""
        await self._cancel_reconnect()
        session = self._session
        if session is None or self.state in (ConnectionState.DISCONNECTED, ConnectionState.CLOSED):
            logger.debug("stop_skipped", state=self.state.value)
            return

        if force:
            logger.warning(
                "forced_stop",
                detail="destroy() should be used with high caution, in-flight data may be lost; "
                "use a graceful stop to avoid this warning",
            )
        self._transition(ConnectionState.CLOSING)
        await self._on_closing(not force)

        closed = self._settle_on(session, "close", failures=("error",))
        if force:
            session.destroy()
        else:
            session.end()
        try:
            await closed
        finally:
            self._transition(ConnectionState.CLOSED)
        logger.info("stopped", force=force)

    def _settle_on(
        self,
        session: MailSession,
        success: str,
        *,
        failures: tuple[str, ...],
    ) -> asyncio.Future[None]:
        """Future settled by whichever of the events fires first.

        The listeners of the other events are removed on settlement, so no
        waiter outlives the outcome.
        """
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        listeners: dict[str, Callable[..., None]] = {}

        def cleanup() -> None:
            for event, listener in listeners.items():
                session.remove_listener(event, listener)

        def on_success(*_: Any) -> None:
            cleanup()
            if not future.done():
                future.set_result(None)

        def failure_listener(event: str) -> Callable[..., None]:
            def on_failure(error: BaseException | None = None) -> None:
                cleanup()
                if not future.done():
                    future.set_exception(
                        error or MailConnectionError(f"Session emitted {event} before {success}")
                    )

            return on_failure

        listeners[success] = on_success
        for event in failures:
            listeners[event] = failure_listener(event)
        for event, listener in listeners.items():
            session.once(event, listener)
        return future

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------

    def _handle_error(self, error: BaseException) -> None:
        logger.warning("connection_error", state=self.state.value, error=repr(error))
        self._errors.report(error, ErrorContext.CONNECTION)

    def _handle_close(self, session: MailSession, error: BaseException | None = None) -> None:
        if session is not self._session or self.state is not ConnectionState.READY:
            return

        self._transition(ConnectionState.CLOSED)
        logger.warning("connection_lost", error=repr(error) if error else None)
        self._on_lost()

        if error is not None and self.config.auto_reconnect:
            self._schedule_reconnect()
        else:
            logger.info(
                "reconnect_skipped",
                reason="auto_reconnect disabled" if error is not None else "closed without error",
            )

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if self.reconnect_pending:
            logger.debug("reconnect_already_pending")
            return
        self.reconnects_scheduled += 1
        logger.info("reconnect_scheduled", delay=self.config.auto_reconnect_timeout)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await asyncio.sleep(self.config.auto_reconnect_timeout)
            async for attempt in reconnect_retrying(self.config):
                with attempt:
                    logger.info("reconnect_attempt", attempt=attempt.retry_state.attempt_number)
                    await self.start()
        except MailBotStateError as exc:
            logger.info("reconnect_abandoned", reason=str(exc))
        except Exception as exc:
            logger.error("reconnect_gave_up", error=repr(exc))
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    async def _cancel_reconnect(self) -> None:
        """Cancel a pending reconnect and wait until it has unwound."""
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("reconnect_cancelled", state=self.state.value)
