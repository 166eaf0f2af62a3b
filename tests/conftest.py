from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta

import pytest


class FakeClock:
    """Injectable registry clock; tests move time forward explicitly."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _hermetic_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Keep the background sweeper off and rebuild settings per test."""

    from deskbridge.config import reset_settings_for_tests

    monkeypatch.setenv("DESKBRIDGE_SWEEPER_ENABLED", "0")
    reset_settings_for_tests()
    yield
    reset_settings_for_tests()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def redis_client():
    import fakeredis

    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture()
def registry(redis_client, clock: FakeClock):
    from deskbridge.registry import SessionRegistry

    return SessionRegistry(r=redis_client, clock=clock)


@pytest.fixture()
def client_and_redis(redis_client, clock: FakeClock):
    """FastAPI TestClient wired to fakeredis and the fake clock.

    Yields `(client, redis, clock)`.
    """

    from fastapi.testclient import TestClient

    from deskbridge.api.deps import get_clock, get_redis
    from deskbridge.main import app

    def _override() -> Generator[object, None, None]:
        yield redis_client

    app.dependency_overrides[get_redis] = _override
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as c:
        yield c, redis_client, clock
    app.dependency_overrides.clear()
