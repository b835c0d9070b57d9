"""Per-key write serialization for the message store.

Writes to one ``(platform, conversation key)`` are serialized; writes to
distinct keys proceed concurrently. ``LocalKeyLock`` covers a single process,
``RedisKeyLock`` covers API process plus Celery workers.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Iterator
from typing import Protocol

import redis as redis_module
from redis.exceptions import LockError, RedisError

from unibox.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class KeyLock(Protocol):
    def hold(self, key: str) -> contextlib.AbstractContextManager[None]: ...


class LocalKeyLock:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, holders]; entries are dropped when nobody holds or waits
        self._locks: dict[str, list] = {}

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class RedisKeyLock:
    def __init__(
        self,
        redis_url: str,
        *,
        timeout: int = 30,
        blocking_timeout: float = 10,
        client: redis_module.Redis | None = None,
    ) -> None:
        self._redis = client or redis_module.from_url(redis_url)
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._redis.lock(
            f"unibox:write_lock:{key}",
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        try:
            acquired = lock.acquire()
        except RedisError as exc:
            raise StoreUnavailable(f"write lock unavailable for {key}") from exc
        if not acquired:
            raise StoreUnavailable(f"timed out waiting for write lock on {key}")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError as exc:
                logger.debug("could not release write lock %s: %s", key, exc)
