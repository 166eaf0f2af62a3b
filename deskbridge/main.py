from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deskbridge.api.deps import build_registry
from deskbridge.api.routes import router
from deskbridge.config import get_settings
from deskbridge.infra.redis_client import create_redis
from deskbridge.relay import relay
from deskbridge.sweeper import run_sweeper

settings = get_settings()

app = FastAPI(title="deskbridge", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
app.include_router(router)
# Configure logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

_sweeper_task: asyncio.Task[None] | None = None


@app.on_event("startup")
async def _startup() -> None:
    global _sweeper_task
    current = get_settings()
    if not current.sweeper_enabled:
        logger.info("Session sweeper disabled")
        return

    redis_client = create_redis()
    _sweeper_task = asyncio.create_task(
        run_sweeper(
            registry_factory=lambda: build_registry(r=redis_client),
            relay=relay,
            interval_seconds=current.sweep_interval_seconds,
        )
    )


@app.on_event("shutdown")
async def _shutdown() -> None:
    global _sweeper_task
    if _sweeper_task is None:
        return
    _sweeper_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await _sweeper_task
    _sweeper_task = None
