from __future__ import annotations

import pytest

from deskbridge.config import Settings, get_settings, reset_settings_for_tests


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("REDIS_URL", "DESKBRIDGE_SESSION_TTL_SECONDS", "DESKBRIDGE_ICE_SERVERS", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)

    s = Settings.from_env(load_dotenv_file=False)

    assert s.redis_url == "redis://localhost:6379/0"
    assert s.session_ttl_seconds == 3600
    assert s.sweep_interval_seconds == 300
    assert s.code_length == 6
    assert s.sweeper_enabled is False  # turned off by the test conftest
    assert s.ice_server_dicts() == [{"urls": "stun:stun.l.google.com:19302"}]


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DESKBRIDGE_SESSION_TTL_SECONDS", "60")
    monkeypatch.setenv("DESKBRIDGE_ICE_SERVERS", "stun:a.example, turn:b.example")
    monkeypatch.setenv("DESKBRIDGE_CORS_ORIGINS", "http://localhost:5173")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    reset_settings_for_tests()

    s = get_settings()

    assert s.session_ttl_seconds == 60
    assert s.ice_servers == ("stun:a.example", "turn:b.example")
    assert s.cors_origins == ("http://localhost:5173",)
    assert s.log_level == "DEBUG"
    assert get_settings() is s
