"""
Per-owner sliding-window limit on batch creation.

With Redis: one sorted set per owner, `batchlimit:{owner_id}`, members are
request timestamps scored by time. Entries older than the window are
trimmed and the remainder counted.

Without Redis (or when it errors) the same window is kept in process memory.
That state is lost on restart, which is acceptable for a single worker.
"""

import logging
import threading
import time
import uuid
from typing import Callable, Optional

import redis

from . import config

logger = logging.getLogger(__name__)


def connect_redis(url: str) -> Optional[redis.Redis]:
    """Redis client for `url`, or None when unset or unreachable."""
    if not url:
        return None
    client = redis.from_url(url, decode_responses=False)
    try:
        client.ping()
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e} — using in-memory batch limits")
        return None
    logger.info(f"Redis connected: {url[:30]}...")
    return client


class BatchStartLimiter:
    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        max_requests: int = config.BATCH_START_LIMIT,
        window_seconds: int = config.BATCH_START_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock

        self._lock = threading.Lock()
        self._log: dict[str, list[float]] = {}

    def check(self, owner_id: str) -> tuple[bool, int, int]:
        """
        Check and record one batch creation for `owner_id`.

        Returns:
            (allowed, remaining, retry_after_seconds)
        """
        if self.redis is not None:
            try:
                return self._check_redis(owner_id)
            except redis.RedisError as e:
                logger.warning(f"Redis batch limit check failed for {owner_id}: {e} — falling back to memory")
        return self._check_memory(owner_id)

    def _check_redis(self, owner_id: str) -> tuple[bool, int, int]:
        now = self.clock()
        key = f"batchlimit:{owner_id}"

        pipe = self.redis.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now - self.window_seconds)
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        _, count, oldest = pipe.execute()

        if count >= self.max_requests:
            retry_after = int(oldest[0][1] + self.window_seconds - now) + 1 if oldest else self.window_seconds
            logger.warning(f"Batch limit exceeded for {owner_id}: {count}/{self.max_requests}")
            return False, 0, retry_after

        pipe = self.redis.pipeline(transaction=True)
        pipe.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        pipe.expire(key, self.window_seconds + 60)
        pipe.execute()
        return True, self.max_requests - count - 1, 0

    def _check_memory(self, owner_id: str) -> tuple[bool, int, int]:
        now = self.clock()
        with self._lock:
            stamps = [ts for ts in self._log.get(owner_id, []) if ts > now - self.window_seconds]
            if len(stamps) >= self.max_requests:
                self._log[owner_id] = stamps
                retry_after = int(stamps[0] + self.window_seconds - now) + 1
                logger.warning(f"Batch limit exceeded for {owner_id} (in-memory): {len(stamps)}/{self.max_requests}")
                return False, 0, retry_after

            stamps.append(now)
            self._log[owner_id] = stamps
            return True, self.max_requests - len(stamps), 0
