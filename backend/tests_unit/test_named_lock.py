"""
Named Lock Tests (Unit)
=======================

WHAT: Unit tests for the non-blocking lock contract and backend selection.
WHY: The session linker treats contention as "skip"; a lock that blocks or
     leaks would stall or silently drop session linking.

REFERENCES:
- backend/leadgraph/services/named_lock.py
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from redis.exceptions import LockError

from leadgraph.services.named_lock import (
    LOCK_NAMESPACE,
    LocalNamedLockProvider,
    RedisNamedLockProvider,
    build_lock_provider,
)


def test_local_lock_is_exclusive_and_non_blocking() -> None:
    locks = LocalNamedLockProvider()

    first = locks.acquire("identity:pid_1")
    second = locks.acquire("identity:pid_1")
    other = locks.acquire("identity:pid_2")

    assert first is not None
    assert second is None
    assert other is not None

    locks.release(first)
    assert locks.acquire("identity:pid_1") is not None


def test_hold_yields_none_when_contended_and_releases_on_error() -> None:
    locks = LocalNamedLockProvider()
    held = locks.acquire("k")

    with locks.hold("k") as handle:
        assert handle is None
    assert locks.is_held("k")
    locks.release(held)

    with pytest.raises(RuntimeError):
        with locks.hold("k") as handle:
            assert handle is not None
            raise RuntimeError("linking failed")
    assert not locks.is_held("k")


def test_redis_lock_uses_namespaced_key_and_ttl() -> None:
    client = MagicMock()
    client.lock.return_value.acquire.return_value = True
    locks = RedisNamedLockProvider(client, ttl_seconds=15)

    handle = locks.acquire("identity:pid_1")

    client.lock.assert_called_once_with(LOCK_NAMESPACE + "identity:pid_1", timeout=15, blocking=False)
    assert handle.key == "identity:pid_1"
    locks.release(handle)
    client.lock.return_value.release.assert_called_once_with()


def test_redis_lock_contended_returns_none() -> None:
    client = MagicMock()
    client.lock.return_value.acquire.return_value = False

    assert RedisNamedLockProvider(client).acquire("identity:pid_1") is None


def test_redis_release_after_expiry_is_tolerated() -> None:
    client = MagicMock()
    client.lock.return_value.acquire.return_value = True
    client.lock.return_value.release.side_effect = LockError("Cannot release an unlocked lock")
    locks = RedisNamedLockProvider(client)

    locks.release(locks.acquire("identity:pid_1"))


def test_build_lock_provider() -> None:
    assert isinstance(build_lock_provider(SimpleNamespace(LOCK_BACKEND="Local")), LocalNamedLockProvider)

    with pytest.raises(ValueError):
        build_lock_provider(SimpleNamespace(LOCK_BACKEND="zookeeper"))
