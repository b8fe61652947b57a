"""FastAPI health endpoints for liveness and readiness probes."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .connection import ConnectionState

if TYPE_CHECKING:
    from .bot import MailBot


def create_health_app(bot: MailBot, *, started_at: float | None = None) -> FastAPI:
    """Build a minimal FastAPI app with ``/health`` and ``/ready`` routes.

    ``/health`` stays 200 while the bot is connected or waiting to
    reconnect; ``/ready`` is 200 only while the connection is ready.
    """
    app = FastAPI(title="mailbot health", docs_url=None, redoc_url=None)
    start = time.monotonic() if started_at is None else started_at

    @app.get("/health")
    async def health() -> JSONResponse:
        body = {**bot.stats(), "uptime_seconds": time.monotonic() - start}
        healthy = bot.is_live or bot.state is ConnectionState.CONNECTING
        return JSONResponse(content=body, status_code=200 if healthy else 503)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = bot.state is ConnectionState.READY
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    return app
