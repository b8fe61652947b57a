"""ImapSession — MailSession over stdlib imaplib, driven with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import functools
import imaplib
import ssl
from collections.abc import AsyncIterator, Callable, Sequence
from datetime import date
from typing import Any, TypeVar

import structlog

from .config import ImapConfig
from .errors import MailConnectionError
from .session import BodyStream, FetchedMessage, MailSession

logger = structlog.get_logger()

T = TypeVar("T")

_TRANSPORT_ERRORS = (imaplib.IMAP4.abort, OSError)


def build_search_criteria(criteria: Sequence[Any]) -> str:
    """Serialize a criteria list into an IMAP SEARCH string.

    Dates become ``DD-Mon-YYYY``, nested sequences become parenthesized
    groups and strings containing spaces or specials are quoted.
    """
    text = " ".join(_format_criterion(item) for item in criteria)
    return text or "ALL"


def _format_criterion(value: Any) -> str:
    if isinstance(value, date):
        return value.strftime("%d-%b-%Y")
    if isinstance(value, (list, tuple)):
        return f"({build_search_criteria(value)})"
    if isinstance(value, int):
        return str(value)
    text = str(value)
    if not text or any(ch in text for ch in ' "()\\'):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


class ImapSession(MailSession):
    """IMAP session for one connection epoch.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` and serialized by a lock, since an
    ``imaplib`` connection is not safe to share between threads.

    New mail is detected by the keepalive loop: every
    ``poll_interval_seconds`` it sends a NOOP and compares the untagged
    ``EXISTS`` count against the last known one.
    """

    def __init__(self, config: ImapConfig) -> None:
        super().__init__()
        self._config = config
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._exists: int | None = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._closed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        self._closed = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        try:
            await asyncio.to_thread(self._connect_sync)
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.warning("imap_connect_failed", host=self._config.host, error=str(exc))
            self._close(exc)
            return

        logger.info("imap_connected", host=self._config.host, port=self._config.port)
        self.emit("ready")

        if self._config.keepalive:
            await self._keepalive_loop()

    def _connect_sync(self) -> None:
        timeout = self._config.connect_timeout_seconds
        if self._config.use_ssl:
            context = ssl.create_default_context()
            if not self._config.verify_certificate:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            conn = imaplib.IMAP4_SSL(
                self._config.host,
                self._config.port,
                ssl_context=context,
                timeout=timeout,
            )
        else:
            conn = imaplib.IMAP4(self._config.host, self._config.port, timeout=timeout)
        conn.login(self._config.username, self._config.password.get_secret_value())
        self._conn = conn

    def end(self) -> None:
        asyncio.get_running_loop().create_task(self._end())

    async def _end(self) -> None:
        self._cancel_keepalive()
        if self._conn is not None:
            async with self._lock:
                try:
                    await asyncio.to_thread(self._logout_sync)
                except (imaplib.IMAP4.error, OSError) as exc:
                    logger.warning("imap_logout_failed", error=str(exc))
        logger.info("imap_disconnected")
        self._close(None)

    def _logout_sync(self) -> None:
        assert self._conn is not None
        try:
            self._conn.close()
        except imaplib.IMAP4.error:
            pass  # no mailbox selected
        self._conn.logout()

    def destroy(self) -> None:
        self._cancel_keepalive()
        conn = self._conn
        if conn is not None:
            try:
                conn.shutdown()
            except OSError as exc:
                logger.debug("imap_shutdown_error", error=str(exc))
        logger.info("imap_destroyed")
        self._close(None)

    def _cancel_keepalive(self) -> None:
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None

    def _close(self, error: BaseException | None) -> None:
        """Emit the terminal events exactly once per connection."""
        if self._closed:
            return
        self._closed = True
        self._conn = None
        if error is not None:
            wrapped = MailConnectionError(str(error) or type(error).__name__)
            wrapped.__cause__ = error
            self.emit("error", wrapped)
            self.emit("close", wrapped)
        else:
            self.emit("close", None)

    # ------------------------------------------------------------------
    # New-mail detection
    # ------------------------------------------------------------------

    async def _keepalive_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._config.poll_interval_seconds)
            try:
                count = await self._call(self._poll_exists_sync)
            except imaplib.IMAP4.error as exc:
                logger.warning("imap_keepalive_failed", error=str(exc))
                continue
            except MailConnectionError:
                return
            self._observe_exists(count)

    def _poll_exists_sync(self) -> int | None:
        assert self._conn is not None
        self._conn.noop()
        _, data = self._conn.response("EXISTS")
        if not data or data[-1] is None:
            return None
        return int(data[-1])

    def _observe_exists(self, count: int | None) -> None:
        if count is None:
            return
        previous = self._exists
        self._exists = count
        if previous is not None and count > previous:
            logger.debug("imap_new_mail", count=count - previous, exists=count)
            self.emit("mail", count - previous)

    # ------------------------------------------------------------------
    # Mailbox operations
    # ------------------------------------------------------------------

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run *fn* in a worker thread; a transport failure closes the session."""
        if not self.connected:
            raise MailConnectionError("Not connected")
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except _TRANSPORT_ERRORS as exc:
                logger.warning("imap_transport_error", error=str(exc))
                self._close(exc)
                raise MailConnectionError(str(exc)) from exc

    async def open_mailbox(self, name: str, read_only: bool = False) -> None:
        count = await self._call(self._select_sync, name, read_only)
        self._exists = count
        logger.info("imap_mailbox_open", mailbox=name, read_only=read_only, exists=count)

    def _select_sync(self, name: str, read_only: bool) -> int:
        assert self._conn is not None
        status, data = self._conn.select(name, readonly=read_only)
        if status != "OK":
            raise imaplib.IMAP4.error(f"SELECT {name} failed: {data!r}")
        return int(data[0]) if data and data[0] else 0

    async def search(self, criteria: Sequence[Any]) -> list[str]:
        query = build_search_criteria(criteria)
        uids = await self._call(self._search_sync, query)
        logger.debug("imap_search_complete", criteria=query, found=len(uids))
        return uids

    def _search_sync(self, query: str) -> list[str]:
        assert self._conn is not None
        status, data = self._conn.uid("SEARCH", None, query)
        if status != "OK":
            raise imaplib.IMAP4.error(f"SEARCH {query} failed: {data!r}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    async def fetch(
        self,
        ids: Sequence[str],
        *,
        mark_seen: bool,
    ) -> AsyncIterator[FetchedMessage]:
        for uid in ids:
            headers = await self._call(self._fetch_part_sync, uid, "BODY.PEEK[HEADER]")
            if headers is None:
                logger.warning("imap_fetch_missing", uid=uid)
                continue
            if mark_seen:
                await self._call(self._store_seen_sync, uid)
            yield FetchedMessage(
                uid=uid,
                headers=headers,
                body=BodyStream(functools.partial(self._fetch_body, uid)),
            )

    async def _fetch_body(self, uid: str) -> bytes:
        # Whole body in one round trip; BodyStream slices it afterwards.
        body = await self._call(self._fetch_part_sync, uid, "BODY.PEEK[TEXT]")
        return body or b""

    def _fetch_part_sync(self, uid: str, part: str) -> bytes | None:
        assert self._conn is not None
        status, data = self._conn.uid("FETCH", uid, f"({part})")
        if status != "OK":
            raise imaplib.IMAP4.error(f"FETCH {uid} failed: {data!r}")
        for item in data or []:
            if isinstance(item, tuple):
                return item[1]
        return None

    def _store_seen_sync(self, uid: str) -> None:
        assert self._conn is not None
        self._conn.uid("STORE", uid, "+FLAGS", "(\\Seen)")
