from __future__ import annotations

import json
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import redis

from deskbridge.api.models import Role, SessionRecord
from deskbridge.codes import generate_code, is_valid_code, normalize_code
from deskbridge.errors import CodespaceExhausted, Expired, NotFound, RoleConflict, SessionBusy
from deskbridge.lock import session_lock


logger = logging.getLogger(__name__)

SESSIONS_SET_KEY = "deskbridge:sessions"
SESSION_KEY_PREFIX = "deskbridge:session:"  # + {CODE}
# Expired records evicted on lookup whose peers the relay has not notified yet.
EVICTED_LIST_KEY = "deskbridge:evicted"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _session_key(code: str) -> str:
    return f"{SESSION_KEY_PREFIX}{code}"


@dataclass(frozen=True, slots=True)
class RoleAssignment:
    record: SessionRecord
    role: Role
    # True when the identity already held this role (idempotent rejoin).
    rebound: bool


@dataclass(frozen=True, slots=True)
class RoleRelease:
    record: SessionRecord
    role: Role


@dataclass(frozen=True, slots=True)
class SweptSession:
    code: str
    identities: tuple[str, ...]


class SessionRegistry:
    """Owns the set of session records.

    Callers only see the operations below; the Redis layout is private so the
    backing store can change without touching the API routes or the relay.
    Every mutation of a single record runs under that code's `session_lock`.
    """

    def __init__(
        self,
        *,
        r: redis.Redis,
        clock: Clock = utc_now,
        ttl_seconds: int = 3600,
        sweep_interval_seconds: int = 300,
        code_length: int = 6,
        max_code_attempts: int = 100,
        rng: random.Random | None = None,
    ) -> None:
        self._r = r
        self._clock = clock
        self._ttl = timedelta(seconds=ttl_seconds)
        self._sweep_interval_seconds = sweep_interval_seconds
        self._code_length = code_length
        self._max_code_attempts = max_code_attempts
        self._rng = rng

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def now(self) -> datetime:
        return self._clock()

    # -- storage helpers -------------------------------------------------

    def _redis_ttl_seconds(self, record: SessionRecord) -> int:
        # Safety net only: logical expiry is always checked against `expires_at`.
        remaining = int((record.expires_at - self.now()).total_seconds())
        return max(remaining, 0) + self._sweep_interval_seconds

    def _save(self, record: SessionRecord, *, nx: bool = False) -> bool:
        ok = self._r.set(
            _session_key(record.code),
            record.model_dump_json(),
            ex=self._redis_ttl_seconds(record),
            nx=nx,
        )
        if ok:
            self._r.sadd(SESSIONS_SET_KEY, record.code)
        return bool(ok)

    def _load(self, code: str) -> SessionRecord | None:
        raw = self._r.get(_session_key(code))
        if not raw:
            return None
        return SessionRecord.model_validate_json(raw)

    def _evict(self, code: str) -> None:
        self._r.delete(_session_key(code))
        self._r.srem(SESSIONS_SET_KEY, code)

    def _evict_expired(self, record: SessionRecord) -> None:
        self._evict(record.code)
        if record.identities:
            self._r.rpush(EVICTED_LIST_KEY, json.dumps({"code": record.code, "identities": list(record.identities)}))

    def _require_live(self, code: str) -> SessionRecord:
        if not is_valid_code(code):
            raise NotFound()
        norm = normalize_code(code)
        record = self._load(norm)
        if record is None:
            raise NotFound()
        if record.is_expired(now=self.now()):
            logger.info("Session %s expired, evicting", norm)
            self._evict_expired(record)
            raise Expired()
        return record

    # -- operations ------------------------------------------------------

    def create_session(self) -> SessionRecord:
        for attempt in range(1, self._max_code_attempts + 1):
            code = generate_code(self._code_length, rng=self._rng)

            existing = self._load(code)
            if existing is not None and existing.is_expired(now=self.now()):
                # An expired record does not own its code any more.
                self._evict_expired(existing)

            now = self.now()
            record = SessionRecord(
                code=code,
                session_id=uuid4().hex,
                created_at=now,
                expires_at=now + self._ttl,
            )
            if self._save(record, nx=True):
                logger.info("Session created: %s (attempt %d)", code, attempt)
                return record

            logger.debug("Session code collision on %s", code)

        raise CodespaceExhausted(f"No free session code after {self._max_code_attempts} attempts")

    def get_session(self, code: str) -> SessionRecord:
        return self._require_live(code)

    def assign_role(self, code: str, role: Role, identity: str) -> RoleAssignment:
        norm = normalize_code(code)
        with session_lock(r=self._r, code=norm):
            record = self._require_live(norm)

            held = record.role_of(identity)
            if held is not None and held != role:
                raise RoleConflict(f"Peer already joined as {held.value}")

            current = record.identity_for(role)
            if current == identity:
                return RoleAssignment(record=record, role=role, rebound=True)
            if current is not None:
                raise RoleConflict(f"{role.value.capitalize()} already connected")

            if role == Role.host:
                record.host_identity = identity
            else:
                record.client_identity = identity
            self._save(record)

        logger.info("Peer %s joined session %s as %s (status=%s)", identity, norm, role.value, record.status.value)
        return RoleAssignment(record=record, role=role, rebound=False)

    def release_role(self, code: str, identity: str) -> RoleRelease | None:
        norm = normalize_code(code)
        with session_lock(r=self._r, code=norm):
            try:
                record = self._require_live(norm)
            except (NotFound, Expired):
                return None

            role = record.role_of(identity)
            if role is None:
                return None

            if role == Role.host:
                record.host_identity = None
            else:
                record.client_identity = None
            self._save(record)

        if not record.has_host and not record.has_client:
            logger.info("Session %s is empty, kept until expiry", norm)
        logger.info("Peer %s left session %s (status=%s)", identity, norm, record.status.value)
        return RoleRelease(record=record, role=role)

    def close_session(self, code: str) -> SessionRecord:
        norm = normalize_code(code)
        with session_lock(r=self._r, code=norm):
            record = self._require_live(norm)
            self._evict(norm)
        record.closed = True
        logger.info("Session %s closed", norm)
        return record

    def take_evicted(self) -> list[SweptSession]:
        """Drain the records a lookup evicted while peers were still attached."""

        evicted: list[SweptSession] = []
        while True:
            raw = self._r.lpop(EVICTED_LIST_KEY)
            if raw is None:
                return evicted
            data = json.loads(raw)
            evicted.append(SweptSession(code=data["code"], identities=tuple(data["identities"])))

    def sweep(self) -> list[SweptSession]:
        """Remove every expired record.

        Returns the identities still attached to each removed record, including
        records already evicted by a lookup, so the relay can force-disconnect them.
        """

        swept = self.take_evicted()
        now = self.now()
        for code in sorted(self._r.smembers(SESSIONS_SET_KEY)):
            try:
                with session_lock(r=self._r, code=code, retries=0):
                    record = self._load(code)
                    if record is None:
                        # Redis TTL already dropped the record.
                        self._r.srem(SESSIONS_SET_KEY, code)
                        continue
                    if not record.is_expired(now=now):
                        continue
                    self._evict(code)
            except SessionBusy:
                logger.debug("Sweep skipped busy session %s", code)
                continue

            logger.info("Expired session swept: %s (%d attached)", code, len(record.identities))
            swept.append(SweptSession(code=code, identities=record.identities))
        return swept
