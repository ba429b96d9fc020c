from unittest.mock import MagicMock

import redis

from conftest import FakeClock
from renderbatch.limits import BatchStartLimiter, connect_redis


def test_in_memory_window_limits_and_recovers():
    clock = FakeClock(1000.0)
    limiter = BatchStartLimiter(max_requests=2, window_seconds=60, clock=clock)

    assert limiter.check("owner-1") == (True, 1, 0)
    assert limiter.check("owner-1") == (True, 0, 0)

    clock.advance(10)
    allowed, remaining, retry_after = limiter.check("owner-1")
    assert not allowed
    assert remaining == 0
    assert retry_after == 51

    assert limiter.check("owner-2")[0]

    clock.advance(51)
    assert limiter.check("owner-1")[0]


def test_redis_limit_denies_when_window_full():
    client = MagicMock()
    pipe = client.pipeline.return_value
    pipe.execute.return_value = [0, 2, [(b"1000.0:abc", 1000.0)]]
    limiter = BatchStartLimiter(client, max_requests=2, window_seconds=60, clock=FakeClock(1030.0))

    assert limiter.check("owner-1") == (False, 0, 31)
    pipe.zadd.assert_not_called()


def test_redis_limit_records_allowed_request():
    client = MagicMock()
    pipe = client.pipeline.return_value
    pipe.execute.side_effect = [[0, 1, [(b"x", 990.0)]], [1, True]]
    limiter = BatchStartLimiter(client, max_requests=3, window_seconds=60, clock=FakeClock(1000.0))

    assert limiter.check("owner-1") == (True, 1, 0)
    pipe.zremrangebyscore.assert_called_once_with("batchlimit:owner-1", 0, 940.0)
    pipe.expire.assert_called_once_with("batchlimit:owner-1", 120)


def test_redis_error_falls_back_to_memory():
    client = MagicMock()
    client.pipeline.side_effect = redis.ConnectionError("down")
    limiter = BatchStartLimiter(client, max_requests=1, window_seconds=60, clock=FakeClock())

    assert limiter.check("owner-1")[0]
    assert not limiter.check("owner-1")[0]


def test_connect_redis_without_url():
    assert connect_redis("") is None
