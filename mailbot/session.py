"""MailSession — the interface the bot consumes from a mail-store protocol.

A session is event driven: ``connect()``, ``end()`` and ``destroy()``
return immediately and the outcome is signalled through events:

* ``ready`` — the session is authenticated and usable
* ``error(exc)`` — a transport or protocol failure
* ``close(exc | None)`` — the session is gone; *exc* is set when the
  close was caused by a failure
* ``mail(count)`` — *count* new messages arrived in the open mailbox
"""

from __future__ import annotations

import abc
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

DEFAULT_CHUNK_SIZE = 64 * 1024


class EventEmitter:
    """Minimal listener registry with persistent and one-shot listeners."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[tuple[Callable[..., Any], bool]]] = defaultdict(list)

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        self._listeners[event].append((listener, False))

    def once(self, event: str, listener: Callable[..., Any]) -> None:
        self._listeners[event].append((listener, True))

    def remove_listener(self, event: str, listener: Callable[..., Any]) -> None:
        self._listeners[event] = [
            (fn, once) for fn, once in self._listeners[event] if fn != listener
        ]

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> None:
        for listener, once in list(self._listeners.get(event, ())):
            if once:
                self.remove_listener(event, listener)
            listener(*args)


class BodyStream:
    """A message body consumed as an async iterator of byte chunks.

    The body is loaded lazily on first iteration, so a stream that is
    paused before it is read never transfers the body at all. Once
    iteration starts the whole body has already arrived in a single
    fetch; pausing then only stops delivery of the remaining chunks and
    saves no bandwidth.
    """

    def __init__(
        self,
        loader: Callable[[], Awaitable[bytes]],
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._loader: Callable[[], Awaitable[bytes]] | None = loader
        self._chunk_size = chunk_size
        self._paused = False
        self.bytes_read = 0

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        """Stop delivering chunks and release the underlying source."""
        self._paused = True
        self._loader = None

    async def __aiter__(self) -> AsyncIterator[bytes]:
        loader, self._loader = self._loader, None
        if loader is None or self._paused:
            return
        data = await loader()
        for offset in range(0, len(data), self._chunk_size):
            if self._paused:
                return
            chunk = data[offset : offset + self._chunk_size]
            self.bytes_read += len(chunk)
            yield chunk


@dataclass
class FetchedMessage:
    """One message from a fetch batch: raw header block plus body stream."""

    uid: str
    headers: bytes
    body: BodyStream


class MailSession(EventEmitter, abc.ABC):
    """Abstract mail-store session (one connection)."""

    @abc.abstractmethod
    def connect(self) -> None:
        """Begin connecting; emits ``ready`` or ``error`` + ``close``."""

    @abc.abstractmethod
    def end(self) -> None:
        """Log out gracefully; emits ``close(None)`` when done."""

    @abc.abstractmethod
    def destroy(self) -> None:
        """Tear the connection down immediately; emits ``close(None)``."""

    @abc.abstractmethod
    async def open_mailbox(self, name: str, read_only: bool = False) -> None: ...

    @abc.abstractmethod
    async def search(self, criteria: Sequence[Any]) -> list[str]:
        """Return the UIDs matching *criteria*."""

    @abc.abstractmethod
    def fetch(self, ids: Sequence[str], *, mark_seen: bool) -> AsyncIterator[FetchedMessage]:
        """Yield a :class:`FetchedMessage` per UID in *ids*."""
