"""Named mutual-exclusion locks.

WHAT:
    `acquire(key) -> handle | None` / `release(handle)` over three backends:
    - redis: redis-py `Lock` (SET NX PX with token-checked release)
    - postgres: session-level `pg_try_advisory_lock(hashtext(key))`
    - local: in-process table, for single-process deployments and tests

WHY:
    Conversions for the same person can race across request handlers and
    workers. The session linker must never double-process one identity, but
    it also must not block: whoever holds the lock does equivalent work, so
    contention means "skip".

USAGE:
    with locks.hold(f"identity:{root_id}") as handle:
        if handle is None:
            return  # another worker is on it
        ...

REFERENCES:
    - https://redis-py.readthedocs.io/en/stable/lock.html
    - https://www.postgresql.org/docs/current/functions-admin.html#FUNCTIONS-ADVISORY-LOCKS
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from redis import Redis
from redis.exceptions import LockError
from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

LOCK_NAMESPACE = "leadgraph:lock:"


@dataclass
class LockHandle:
    """Proof of ownership returned by `acquire`; pass it back to `release`."""
    key: str
    payload: Any = None


class NamedLockProvider(ABC):
    """Non-blocking named lock interface."""

    @abstractmethod
    def acquire(self, key: str) -> Optional[LockHandle]:
        """Try to take `key`; return None immediately if someone else holds it."""

    @abstractmethod
    def release(self, handle: LockHandle) -> None:
        """Release a lock obtained from `acquire`."""

    @contextmanager
    def hold(self, key: str) -> Iterator[Optional[LockHandle]]:
        """Scoped acquisition; the lock is released on every exit path."""
        handle = self.acquire(key)
        if handle is None:
            logger.info(f"[LOCK] {key} is held elsewhere, skipping")
        try:
            yield handle
        finally:
            if handle is not None:
                self.release(handle)


# =============================================================================
# BACKENDS
# =============================================================================

class LocalNamedLockProvider(NamedLockProvider):
    """In-process lock table. Only excludes threads of the same process."""

    def __init__(self):
        self._guard = threading.Lock()
        self._held = set()

    def acquire(self, key: str) -> Optional[LockHandle]:
        with self._guard:
            if key in self._held:
                return None
            self._held.add(key)
        return LockHandle(key=key)

    def release(self, handle: LockHandle) -> None:
        with self._guard:
            self._held.discard(handle.key)

    def is_held(self, key: str) -> bool:
        with self._guard:
            return key in self._held


class RedisNamedLockProvider(NamedLockProvider):
    """Redis lock with a TTL so a crashed holder cannot wedge an identity."""

    def __init__(self, client: Redis, ttl_seconds: int = 30):
        self.client = client
        self.ttl_seconds = ttl_seconds

    def acquire(self, key: str) -> Optional[LockHandle]:
        lock = self.client.lock(
            LOCK_NAMESPACE + key,
            timeout=self.ttl_seconds,
            blocking=False,
        )
        if not lock.acquire(blocking=False):
            return None
        return LockHandle(key=key, payload=lock)

    def release(self, handle: LockHandle) -> None:
        try:
            handle.payload.release()
        except LockError:
            # TTL expired before release; another holder may own it now
            logger.warning(f"[LOCK] {handle.key} expired before release")


class PostgresAdvisoryLockProvider(NamedLockProvider):
    """Session-level advisory lock keyed by hashtext(key).

    The lock lives on a dedicated connection that is kept checked out until
    release, independent of the caller's ORM session.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def acquire(self, key: str) -> Optional[LockHandle]:
        conn = self.engine.connect()
        try:
            acquired = conn.execute(
                text("SELECT pg_try_advisory_lock(hashtext(:key))"),
                {"key": key},
            ).scalar()
        except Exception:
            conn.close()
            raise

        if not acquired:
            conn.close()
            return None
        return LockHandle(key=key, payload=conn)

    def release(self, handle: LockHandle) -> None:
        conn = handle.payload
        try:
            conn.execute(
                text("SELECT pg_advisory_unlock(hashtext(:key))"),
                {"key": handle.key},
            )
            conn.commit()
        finally:
            conn.close()


def build_lock_provider(settings) -> NamedLockProvider:
    """Instantiate the backend named by `settings.LOCK_BACKEND`."""
    backend = settings.LOCK_BACKEND.lower()

    if backend == "redis":
        from leadgraph.state import get_redis_client
        return RedisNamedLockProvider(get_redis_client(), ttl_seconds=settings.LOCK_TTL_SECONDS)
    if backend == "postgres":
        from leadgraph.database import engine
        return PostgresAdvisoryLockProvider(engine)
    if backend == "local":
        return LocalNamedLockProvider()

    raise ValueError(f"Unknown LOCK_BACKEND: {settings.LOCK_BACKEND}")
