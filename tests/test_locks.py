"""
Unit tests for named locks.
"""

from unittest.mock import MagicMock

import pytest
from redis.exceptions import LockNotOwnedError

from oauth_server.errors import LockContention
from oauth_server.locks import (
    LOCK_PREFIX,
    InMemoryLockBackend,
    RedisLockBackend,
    lock_name,
    named_lock,
    request_signature,
)


class TestInMemoryLockBackend:
    """Threading backed locks."""

    def test_acquire_and_release(self):
        backend = InMemoryLockBackend()

        owner = backend.acquire("a", timeout=10)
        assert owner
        assert backend.acquire("a", timeout=10) is None
        assert backend.release("a", owner) is True
        assert backend.acquire("a", timeout=10)

    def test_lock_expires(self):
        backend = InMemoryLockBackend()

        assert backend.acquire("a", timeout=0)
        assert backend.acquire("a", timeout=10)

    def test_wait_gives_up(self):
        backend = InMemoryLockBackend(poll_interval=0.001)
        backend.acquire("a", timeout=10)

        assert backend.acquire("a", timeout=10, wait=0.01) is None

    def test_expired_holder_cannot_release_next_holder(self):
        backend = InMemoryLockBackend()
        first = backend.acquire("a", timeout=0)
        second = backend.acquire("a", timeout=10)

        assert first != second
        assert backend.release("a", first) is False
        assert backend.is_locked("a")
        assert backend.release("a", second) is True
        assert not backend.is_locked("a")

    def test_stale_block_leaves_new_holder_locked(self):
        backend = InMemoryLockBackend()

        with named_lock(backend, "job", timeout=0):
            second = backend.acquire("job", timeout=10)

        assert backend.is_locked("job")
        backend.release("job", second)


class TestNamedLock:
    """Context manager semantics."""

    def test_released_on_exception(self):
        backend = InMemoryLockBackend()

        with pytest.raises(ValueError):
            with named_lock(backend, "job"):
                assert backend.is_locked("job")
                raise ValueError("boom")

        assert not backend.is_locked("job")

    def test_contention(self):
        backend = InMemoryLockBackend()
        backend.acquire("job", timeout=10)

        with pytest.raises(LockContention) as exc_info:
            with named_lock(backend, "job"):
                pass

        assert exc_info.value.retryable is True
        assert exc_info.value.http_status == 503
        assert backend.is_locked("job")


class TestRedisLockBackend:
    """Redis backend against a mocked client."""

    def test_acquire_and_release(self):
        client = MagicMock()
        redis_lock = client.lock.return_value
        redis_lock.acquire.return_value = True
        backend = RedisLockBackend(client)

        owner = backend.acquire("job", timeout=5)
        assert backend.release("job", owner) is True

        client.lock.assert_called_once_with(LOCK_PREFIX + "job", timeout=5, blocking_timeout=None)
        redis_lock.acquire.assert_called_once_with(blocking=False, token=owner)
        redis_lock.release.assert_called_once()

    def test_release_with_other_owner_is_ignored(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = True
        backend = RedisLockBackend(client)
        backend.acquire("job", timeout=5)

        assert backend.release("job", "someone-else") is False
        client.lock.return_value.release.assert_not_called()

    def test_contention(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = False
        backend = RedisLockBackend(client)

        with pytest.raises(LockContention):
            with named_lock(backend, "job"):
                pass

        client.lock.return_value.release.assert_not_called()

    def test_expired_lock_release_is_logged(self):
        client = MagicMock()
        redis_lock = client.lock.return_value
        redis_lock.acquire.return_value = True
        redis_lock.release.side_effect = LockNotOwnedError("expired")
        backend = RedisLockBackend(client)

        with named_lock(backend, "job", timeout=1):
            pass

        redis_lock.release.assert_called_once()


def test_lock_names_are_stable():
    assert lock_name("a", "b") == lock_name("a", "b")
    assert lock_name("a", "b") != lock_name("ab")
    assert request_signature("c", "client_credentials", ["y", "x"]) == request_signature(
        "c", "client_credentials", ["x", "y"]
    )
