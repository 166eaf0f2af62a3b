from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from deskbridge.registry import SessionRegistry, SweptSession
from deskbridge.relay import SignalingRelay


logger = logging.getLogger(__name__)


async def sweep_once(*, registry: SessionRegistry, relay: SignalingRelay) -> list[SweptSession]:
    swept = registry.sweep()
    if swept:
        await relay.expire_sessions(swept)
    return swept


async def run_sweeper(
    *,
    registry_factory: Callable[[], SessionRegistry],
    relay: SignalingRelay,
    interval_seconds: float,
) -> None:
    """Sweep expired sessions on a fixed interval, independent of request traffic.

    A failing sweep is logged and retried on the next tick; cancellation stops the loop.
    """

    logger.info("Session sweeper started (every %ss)", interval_seconds)
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            swept = await sweep_once(registry=registry_factory(), relay=relay)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Session sweep failed")
            continue
        if swept:
            logger.info("Swept %d expired session(s)", len(swept))
