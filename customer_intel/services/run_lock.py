"""
Redis-backed per-run execution lock.

RQ delivers jobs at least once, and a retry can be scheduled while a stale
worker is still finishing. The lock makes a second execute_run() for the
same run a no-op. If Redis is unreachable the lock fails open: execution
proceeds and the status state machine still rejects illegal transitions.
"""
import logging
import uuid

from customer_intel.config import RUN_LOCK_TTL

logger = logging.getLogger('services.run_lock')


class RunLock:

    PREFIX = 'run_lock'

    def __init__(self, redis_client=None, ttl=RUN_LOCK_TTL):
        if redis_client is None:
            from customer_intel.extensions import redis_client as rc
            redis_client = rc
        self.redis = redis_client
        self.ttl = ttl

    def _key(self, run_id):
        return f'{self.PREFIX}:{run_id}'

    def acquire(self, run_id):
        """Return a token if acquired, None if another worker holds the run."""
        token = uuid.uuid4().hex
        try:
            if self.redis.set(self._key(run_id), token, nx=True, ex=self.ttl):
                return token
            return None
        except Exception as e:
            logger.warning("Run lock unavailable for run %s (%s), proceeding unlocked", run_id, e)
            return token

    def release(self, run_id, token):
        try:
            if self.redis.get(self._key(run_id)) == token:
                self.redis.delete(self._key(run_id))
        except Exception as e:
            logger.warning("Failed to release run lock for run %s: %s", run_id, e)

