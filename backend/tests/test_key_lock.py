"""Tests for the per-key write locks."""

import threading
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockError

from unibox.errors import StoreUnavailable
from unibox.services.key_lock import LocalKeyLock, RedisKeyLock


class TestLocalKeyLock:
    def test_entry_removed_after_release(self):
        lock = LocalKeyLock()
        with lock.hold("a"):
            assert len(lock) == 1
        assert len(lock) == 0

    def test_distinct_keys_do_not_block(self):
        lock = LocalKeyLock()
        acquired = threading.Event()

        def _other():
            with lock.hold("b"):
                acquired.set()

        with lock.hold("a"):
            t = threading.Thread(target=_other)
            t.start()
            assert acquired.wait(2)
            t.join()

    def test_released_on_error(self):
        lock = LocalKeyLock()
        with pytest.raises(RuntimeError):
            with lock.hold("a"):
                raise RuntimeError("boom")
        with lock.hold("a"):
            pass


class TestRedisKeyLock:
    def _lock(self, acquire=True, acquire_error=None):
        redis_lock = MagicMock()
        if acquire_error is not None:
            redis_lock.acquire.side_effect = acquire_error
        else:
            redis_lock.acquire.return_value = acquire
        client = MagicMock()
        client.lock.return_value = redis_lock
        return RedisKeyLock("redis://unused", client=client), client, redis_lock

    def test_acquire_and_release(self):
        key_lock, client, redis_lock = self._lock()

        with key_lock.hold("gmail:t1"):
            pass

        assert client.lock.call_args[0][0] == "unibox:write_lock:gmail:t1"
        redis_lock.release.assert_called_once()

    def test_timeout_raises_store_unavailable(self):
        key_lock, _, redis_lock = self._lock(acquire=False)
        with pytest.raises(StoreUnavailable, match="timed out"):
            with key_lock.hold("gmail:t1"):
                pass
        redis_lock.release.assert_not_called()

    def test_redis_down_raises_store_unavailable(self):
        key_lock, _, _ = self._lock(acquire_error=RedisConnectionError("refused"))
        with pytest.raises(StoreUnavailable):
            with key_lock.hold("gmail:t1"):
                pass

    def test_expired_lock_release_is_tolerated(self):
        key_lock, _, redis_lock = self._lock()
        redis_lock.release.side_effect = LockError("expired")

        with key_lock.hold("gmail:t1"):
            pass
