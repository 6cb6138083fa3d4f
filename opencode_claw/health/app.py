"""FastAPI health endpoints."""

import time
from pathlib import Path

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from opencode_claw.channels.base import BaseChannel
from opencode_claw.outbox.writer import count_entries


def create_health_app(
    channels: dict[str, BaseChannel],
    outbox_dir: Path | str,
    started_at: float | None = None,
) -> FastAPI:
    """Create the health FastAPI app."""

    app = FastAPI(title="opencode-claw health", docs_url=None, redoc_url=None)
    started = started_at if started_at is not None else time.monotonic()

    def _channel_statuses() -> dict[str, str]:
        return {name: channel.status() for name, channel in channels.items()}

    @app.get("/health")
    async def health():
        statuses = list(_channel_statuses().values())
        if all(s == "connected" for s in statuses):
            status = "up"
        elif any(s == "connected" for s in statuses):
            status = "degraded"
        else:
            status = "down"
        return JSONResponse({"status": status, "uptime": round(time.monotonic() - started, 3)})

    @app.get("/channels")
    async def channel_statuses():
        return JSONResponse(_channel_statuses())

    @app.get("/outbox")
    async def outbox():
        return JSONResponse(count_entries(outbox_dir))

    return app
