from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


DEFAULT_ICE_SERVERS = ("stun:stun.l.google.com:19302",)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return tuple(s.strip() for s in raw.split(",") if s.strip())


@dataclass(frozen=True, slots=True)
class Settings:
    redis_url: str = "redis://localhost:6379/0"
    session_ttl_seconds: int = 3600
    sweep_interval_seconds: int = 300
    code_length: int = 6
    code_max_attempts: int = 100
    ice_servers: tuple[str, ...] = DEFAULT_ICE_SERVERS
    sweeper_enabled: bool = True
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @staticmethod
    def from_env(*, load_dotenv_file: bool = True) -> "Settings":
        """Build settings from the process environment.

        A `.env` in the working directory is loaded first (without overriding
        variables that are already set).
        """

        if load_dotenv_file:
            load_dotenv(override=False)

        return Settings(
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
            session_ttl_seconds=_env_int("DESKBRIDGE_SESSION_TTL_SECONDS", 3600),
            sweep_interval_seconds=_env_int("DESKBRIDGE_SWEEP_INTERVAL_SECONDS", 300),
            code_length=_env_int("DESKBRIDGE_CODE_LENGTH", 6),
            code_max_attempts=_env_int("DESKBRIDGE_CODE_MAX_ATTEMPTS", 100),
            ice_servers=_env_list("DESKBRIDGE_ICE_SERVERS", DEFAULT_ICE_SERVERS),
            sweeper_enabled=_env_flag("DESKBRIDGE_SWEEPER_ENABLED", True),
            cors_origins=_env_list("DESKBRIDGE_CORS_ORIGINS", ("*",)),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

    def ice_server_dicts(self) -> list[dict[str, str]]:
        return [{"urls": url} for url in self.ice_servers]


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings_for_tests() -> None:
    global _SETTINGS
    _SETTINGS = None
