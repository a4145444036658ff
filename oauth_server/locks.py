"""
Named locks serializing token issuance per request signature.

Two backends:
- InMemoryLockBackend: threading based, single process
- RedisLockBackend: redis ``Lock`` with a TTL, shared across processes
"""

import hashlib
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterable, Optional

from loguru import logger
from redis.exceptions import LockError

from oauth_server.errors import LockContention

LOCK_PREFIX = "oauth_server:lock:"


class LockBackend(ABC):
    """
    Named locks with an owner token per acquisition.

    ``acquire`` returns the owner token, or None when the lock is taken.
    ``release`` only frees the lock while that token still owns it, so a
    holder whose lock expired cannot free the next holder's lock.
    """

    @abstractmethod
    def acquire(self, name: str, timeout: float, wait: float = 0.0) -> Optional[str]:
        """Take the lock for ``timeout`` seconds, waiting up to ``wait``"""
        pass

    @abstractmethod
    def release(self, name: str, owner: str) -> bool:
        """Free the lock if ``owner`` still holds it"""
        pass


class InMemoryLockBackend(LockBackend):
    """
    In-process named locks.
    WARNING: single-instance only.
    """

    def __init__(self, poll_interval: float = 0.01):
        self.locks = {}  # name -> (owner, expiry (monotonic))
        self.lock = threading.Lock()
        self.poll_interval = poll_interval

    def _try_acquire(self, name: str, timeout: float) -> Optional[str]:
        now = time.monotonic()
        with self.lock:
            held = self.locks.get(name)
            if held is not None and held[1] > now:
                return None
            owner = uuid.uuid4().hex
            self.locks[name] = (owner, now + timeout)
            return owner

    def acquire(self, name: str, timeout: float, wait: float = 0.0) -> Optional[str]:
        deadline = time.monotonic() + wait
        while True:
            owner = self._try_acquire(name, timeout)
            if owner is not None:
                return owner
            if time.monotonic() >= deadline:
                return None
            time.sleep(self.poll_interval)

    def release(self, name: str, owner: str) -> bool:
        with self.lock:
            held = self.locks.get(name)
            if held is None or held[0] != owner:
                logger.warning(f"[LOCK] {name[:12]} no longer owned by this holder, not released")
                return False
            del self.locks[name]
            return True

    def is_locked(self, name: str) -> bool:
        with self.lock:
            held = self.locks.get(name)
            return held is not None and held[1] > time.monotonic()


class RedisLockBackend(LockBackend):
    """Named locks on a redis client; a lock expires after its timeout"""

    def __init__(self, client):
        self.client = client
        self._held: Dict[str, object] = {}  # owner -> redis Lock
        self._guard = threading.Lock()

    @classmethod
    def from_url(cls, url: str) -> "RedisLockBackend":
        import redis

        return cls(redis.Redis.from_url(url))

    def acquire(self, name: str, timeout: float, wait: float = 0.0) -> Optional[str]:
        redis_lock = self.client.lock(
            LOCK_PREFIX + name,
            timeout=timeout,
            blocking_timeout=wait if wait > 0 else None,
        )
        owner = uuid.uuid4().hex
        if not redis_lock.acquire(blocking=wait > 0, token=owner):
            return None
        with self._guard:
            self._held[owner] = redis_lock
        return owner

    def release(self, name: str, owner: str) -> bool:
        with self._guard:
            redis_lock = self._held.pop(owner, None)
        if redis_lock is None:
            return False
        try:
            redis_lock.release()
        except LockError as e:
            # Lock expired before release; another holder may own it now.
            logger.warning(f"[LOCK] Could not release {name[:12]}: {e}")
            return False
        return True


def lock_name(*parts: Optional[str]) -> str:
    """Stable lock name for a request signature"""
    signature = "\x1f".join("" if part is None else str(part) for part in parts)
    return hashlib.sha256(signature.encode("utf-8")).hexdigest()


def request_signature(client_id: str, grant_type: str, scopes: Iterable[str],
                      extra: Optional[str] = None) -> str:
    return lock_name(client_id, grant_type, " ".join(sorted(scopes)), extra)


@contextmanager
def named_lock(backend: LockBackend, name: str, timeout: float = 30.0, wait: float = 0.0):
    """Hold ``name`` for the duration of the block; LockContention when taken"""
    owner = backend.acquire(name, timeout, wait)
    if owner is None:
        logger.warning(f"[LOCK] Contention on {name[:12]}")
        raise LockContention(f"Lock {name[:12]} is held by another request")
    try:
        yield owner
    finally:
        backend.release(name, owner)
