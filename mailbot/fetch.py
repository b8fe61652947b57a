"""FetchPipeline — stream an identifier batch into the MessageProcessor."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog

from .config import BotConfig
from .errors import FetchError
from .processor import MessageProcessor, MessageState
from .session import MailSession

logger = structlog.get_logger()


class FetchPipeline:
    """Fetches a batch of UIDs and processes each message as its own task.

    Resolves once every message of the batch has been processed.  A
    transport failure raises :class:`FetchError` after the messages that
    were already handed over have finished.
    """

    def __init__(self, config: BotConfig, processor: MessageProcessor) -> None:
        self.config = config
        self._processor = processor

    async def run(self, session: MailSession, ids: Sequence[str]) -> list[MessageState]:
        if not ids:
            logger.debug("fetch_skipped_empty_batch")
            return []

        logger.debug("fetch_started", count=len(ids), mark_seen=self.config.mark_seen)
        tasks: list[asyncio.Task[MessageState]] = []
        failure: Exception | None = None

        try:
            async for message in session.fetch(ids, mark_seen=self.config.mark_seen):
                tasks.append(asyncio.create_task(self._processor.process(message)))
        except Exception as exc:
            failure = exc
        finally:
            states = list(await asyncio.gather(*tasks)) if tasks else []

        if failure is not None:
            logger.warning(
                "fetch_failed",
                requested=len(ids),
                delivered=len(tasks),
                error=repr(failure),
            )
            raise FetchError(f"Fetch of {len(ids)} messages failed: {failure}") from failure

        logger.debug("fetch_complete", count=len(states))
        return states
