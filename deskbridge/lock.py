from __future__ import annotations

import time
from contextlib import contextmanager
from uuid import uuid4

import redis

from deskbridge.errors import SessionBusy


LOCK_KEY_PREFIX = "deskbridge:lock:session:"


@contextmanager
def session_lock(
    *,
    r: redis.Redis,
    code: str,
    ttl_ms: int = 5_000,
    retries: int = 10,
    backoff_s: float = 0.001,
):
    """Per-session-code mutual exclusion.

    Each holder writes a unique token so a lock that outlived its TTL and was
    re-acquired by someone else is never released by the stale holder.
    Acquisition retries with linear backoff before giving up with `SessionBusy`.
    The sleep blocks the caller, which may be the event loop, so the default
    budget stays under 60ms.
    """

    key = f"{LOCK_KEY_PREFIX}{code}"
    token = uuid4().hex

    for attempt in range(retries + 1):
        if r.set(key, token, nx=True, px=ttl_ms):
            break
        if attempt == retries:
            raise SessionBusy(f"Session {code} is busy")
        time.sleep(backoff_s * (attempt + 1))

    try:
        yield
    finally:
        # Check-then-delete is not atomic; the TTL bounds the damage of a race here.
        if r.get(key) == token:
            r.delete(key)
