"""Entry point for the mailbot package.

Usage::

    python -m mailbot watch   # watch IMAP_* / MAILBOT_* configured mailbox

Every message matching ``MAILBOT_FILTER`` is logged with its sender,
subject and signature.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Any

import structlog
import uvicorn

logger = structlog.get_logger()


def always_trigger(mail: Any) -> bool:
    return True


async def log_mail(mail: Any, payload: Any) -> None:
    from .addresses import parse_addresses
    from .signature import extract_signature

    headers = parse_addresses(mail.headers, quiet=True)
    logger.info(
        "mail_received",
        subject=mail.subject,
        sender=mail.from_,
        to=[record.get("address") for record in headers.get("to", [])],
        attachments=[attachment.filename for attachment in mail.attachments],
        signature=extract_signature(mail.text),
    )


async def watch() -> None:
    from .bot import create_bot
    from .health import create_health_app
    from .logging import setup_logging

    setup_logging()
    bot = create_bot(trigger=always_trigger, mail_handler=log_mail)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)

    server = uvicorn.Server(
        uvicorn.Config(
            create_health_app(bot),
            host="0.0.0.0",
            port=bot.config.health_port,
            log_level="warning",
        )
    )
    serve_task = asyncio.create_task(server.serve())

    try:
        await bot.start()
        await shutdown_event.wait()
    finally:
        logger.info("shutdown_requested")
        await bot.stop()
        server.should_exit = True
        await serve_task


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] != "watch":
        print("Usage: python -m mailbot watch", file=sys.stderr)
        sys.exit(1)

    asyncio.run(watch())


if __name__ == "__main__":
    main()
