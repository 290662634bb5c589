"""
Unit tests for the Redis token-bucket limiter that throttles the signer.

Redis itself is mocked; the Lua script is exercised in deployment.
"""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from skillmirror.core.redis.rate_limiter import RateLimiterSettings, RedisRateLimiter

pytestmark = pytest.mark.unit


@pytest.fixture
def redis_client(mocker):
    client = mocker.Mock()
    client.eval = mocker.AsyncMock(return_value=1)
    client.delete = mocker.AsyncMock(return_value=1)
    return client


def make_limiter(mocker, redis_client, **overrides):
    service = mocker.Mock()
    service.client.return_value = redis_client
    settings = RateLimiterSettings(rate_per_second=1000.0, burst=3, **overrides)
    return RedisRateLimiter(service, settings=settings)


class TestCheckLimit:
    async def test_allowed(self, mocker, redis_client):
        limiter = make_limiter(mocker, redis_client)

        assert await limiter.check_limit("signer:abc") is True

        args = redis_client.eval.await_args.args
        assert args[1:5] == (1, "ratelimit:tb:signer:abc", 3, 1000.0)

    async def test_denied(self, mocker, redis_client):
        redis_client.eval.return_value = 0
        limiter = make_limiter(mocker, redis_client)

        assert await limiter.check_limit("signer:abc") is False

    @pytest.mark.parametrize("mode,expected", [("allow", True), ("deny", False)])
    async def test_redis_failure_uses_fallback(self, mocker, redis_client, mode, expected):
        redis_client.eval.side_effect = RedisConnectionError("down")
        limiter = make_limiter(mocker, redis_client, fallback_mode=mode)

        assert await limiter.check_limit("signer:abc") is expected


class TestAcquire:
    async def test_waits_for_refill(self, mocker, redis_client):
        redis_client.eval.side_effect = [0, 0, 1]
        limiter = make_limiter(mocker, redis_client)

        assert await limiter.acquire("signer:abc", timeout=5.0) is True
        assert redis_client.eval.await_count == 3

    async def test_gives_up_after_timeout(self, mocker, redis_client):
        redis_client.eval.return_value = 0
        limiter = make_limiter(mocker, redis_client)

        assert await limiter.acquire("signer:abc", timeout=0.0) is False

    async def test_reset(self, mocker, redis_client):
        limiter = make_limiter(mocker, redis_client)

        await limiter.reset_limit("signer:abc")

        redis_client.delete.assert_awaited_once_with("ratelimit:tb:signer:abc")
