"""MessageProcessor — parse each fetched message, evaluate the trigger and
decide between dispatch and abort.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

import structlog

from .config import BotConfig
from .dispatcher import Dispatcher
from .errors import ErrorContext, ErrorSink, MailConnectionError
from .parser import MailHeaders, MailParser, ParsedMail, ParserFactory
from .session import FetchedMessage
from .trigger import Matched, NotMatched, TriggerResult, evaluate_trigger

logger = structlog.get_logger()


class MessageState(str, Enum):
    """Lifecycle of a single message through the processor."""

    INIT = "init"
    HEADERS_RECEIVED = "headers_received"
    ABORTED = "aborted"
    CONTINUING = "continuing"
    PARSED = "parsed"
    DISPATCHED = "dispatched"
    SKIPPED = "skipped"
    FAILED = "failed"


class Watermark:
    """Latest observed received-date.  Only ever moves forward."""

    def __init__(self, value: datetime | None = None) -> None:
        self._value = value

    @property
    def value(self) -> datetime | None:
        return self._value

    def advance(self, candidate: datetime | None) -> bool:
        """Raise the watermark to *candidate* if it is later.  Returns True if moved."""
        if candidate is None:
            return False
        if self._value is None or candidate > self._value:
            self._value = candidate
            return True
        return False

    def reset(self) -> None:
        self._value = None

    def __repr__(self) -> str:
        return f"Watermark({self._value!r})"


class MessageProcessor:
    """Turns a :class:`FetchedMessage` into at most one dispatch.

    Every message gets its own parser from *parser_factory*, so messages
    of one batch can be processed concurrently.
    """

    def __init__(
        self,
        config: BotConfig,
        dispatcher: Dispatcher,
        errors: ErrorSink,
        *,
        parser_factory: ParserFactory = MailParser,
        watermark: Watermark | None = None,
    ) -> None:
        self.config = config
        self.watermark = watermark if watermark is not None else Watermark()
        self._dispatcher = dispatcher
        self._errors = errors
        self._parser_factory = parser_factory
        self.processed: int = 0

    async def process(self, message: FetchedMessage) -> MessageState:
        """Process one message; never raises."""
        config = self.config
        log = logger.bind(uid=message.uid)
        parser = self._parser_factory(stream_attachments=config.stream_attachments)
        self.processed += 1

        try:
            headers = parser.feed_headers(message.headers)
        except Exception as exc:
            message.body.pause()
            self._fail(log, exc, ErrorContext.PARSE, MessageState.INIT)
            return MessageState.FAILED

        result: TriggerResult | None = None
        if config.trigger_on_headers:
            state = MessageState.HEADERS_RECEIVED
            try:
                result = await evaluate_trigger(config.trigger, MailHeaders(headers))
            except Exception as exc:
                self._abort(message, parser)
                self._fail(log, exc, ErrorContext.PARSE, state)
                return MessageState.ABORTED

            if isinstance(result, NotMatched):
                log.debug("message_not_triggered", stage="headers", subject=headers.get("subject"))
                self._abort(message, parser)
                return MessageState.ABORTED

            log.debug("message_triggered", stage="headers", subject=headers.get("subject"))
            state = MessageState.CONTINUING
        else:
            state = MessageState.INIT

        try:
            async for chunk in message.body:
                parser.feed(chunk)
            mail = parser.close()
        except Exception as exc:
            context = ErrorContext.FETCH if isinstance(exc, MailConnectionError) else ErrorContext.PARSE
            self._fail(log, exc, context, state)
            return MessageState.FAILED

        self.watermark.advance(mail.received_date)

        if result is None:
            try:
                result = await evaluate_trigger(config.trigger, mail)
            except Exception as exc:
                self._fail(log, exc, ErrorContext.PARSE, MessageState.PARSED)
                return MessageState.FAILED
            log.debug(
                "message_triggered" if isinstance(result, Matched) else "message_not_triggered",
                stage="end",
                subject=mail.subject,
            )

        if isinstance(result, Matched):
            self._dispatcher.dispatch(mail, result.payload)
            return MessageState.DISPATCHED
        return MessageState.SKIPPED

    def _abort(self, message: FetchedMessage, parser: MailParser) -> ParsedMail:
        """Stop reading the body and finalize the parser from headers alone."""
        message.body.pause()
        mail = parser.finalize_early()
        self.watermark.advance(mail.received_date)
        return mail

    def _fail(
        self,
        log: structlog.stdlib.BoundLogger,
        exc: Exception,
        context: ErrorContext,
        state: MessageState,
    ) -> None:
        log.warning("message_failed", state=state.value, context=context.value, error=repr(exc))
        self._errors.report(exc, context)
