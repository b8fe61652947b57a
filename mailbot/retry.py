"""Tenacity retry policy for reconnect attempts, driven by BotConfig."""

from __future__ import annotations

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .config import BotConfig
from .errors import MailBotStateError

logger = structlog.get_logger()


def _log_failed_attempt(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    logger.warning(
        "reconnect_attempt_failed",
        attempt=retry_state.attempt_number,
        error=repr(outcome.exception()) if outcome is not None else None,
    )


def reconnect_retrying(config: BotConfig) -> AsyncRetrying:
    """Return an ``AsyncRetrying`` controller for reconnect attempts.

    Attempts are spaced by ``auto_reconnect_timeout`` and capped at
    ``auto_reconnect_max_attempts``.  A :class:`MailBotStateError` means
    someone else changed the lifecycle meanwhile, so it is not retried;
    neither is cancellation, which is not an :class:`Exception`.

    Usage::

        async for attempt in reconnect_retrying(config):
            with attempt:
                await manager.start()
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, config.auto_reconnect_max_attempts)),
        wait=wait_fixed(config.auto_reconnect_timeout),
        retry=(
            retry_if_exception_type(Exception)
            & retry_if_not_exception_type(MailBotStateError)
        ),
        before_sleep=_log_failed_attempt,
        reraise=True,
    )
