"""Tests for the Redis-backed run lock."""
from unittest.mock import MagicMock

from customer_intel.services.run_lock import RunLock


class TestRunLock:

    def test_acquire_and_release(self, fake_redis):
        lock = RunLock(fake_redis, ttl=60)
        token = lock.acquire(7)

        assert token is not None
        assert fake_redis.get('run_lock:7') == token
        assert lock.acquire(7) is None

        lock.release(7, token)
        assert 'run_lock:7' not in fake_redis.store
        assert lock.acquire(7) is not None

    def test_release_with_wrong_token_keeps_lock(self, fake_redis):
        lock = RunLock(fake_redis)
        token = lock.acquire(7)
        lock.release(7, 'someone-else')
        assert fake_redis.get('run_lock:7') == token
        assert lock.acquire(7) is None

    def test_locks_are_per_run(self, fake_redis):
        lock = RunLock(fake_redis)
        assert lock.acquire(1)
        assert lock.acquire(2)

    def test_fails_open_when_redis_unavailable(self):
        redis = MagicMock()
        redis.set.side_effect = ConnectionError('refused')
        redis.get.side_effect = ConnectionError('refused')
        lock = RunLock(redis)

        token = lock.acquire(9)

        assert token is not None
        lock.release(9, token)
        redis.delete.assert_not_called()

    def test_key_format(self, fake_redis):
        RunLock(fake_redis).acquire(42)
        assert 'run_lock:42' in fake_redis.store
