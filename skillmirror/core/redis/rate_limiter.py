"""
Redis Rate Limiter for SkillMirror

Purpose
-------
Distributed token-bucket throttling for the shared signing credential. Every
worker that submits ledger transactions draws from the same bucket, keyed
by the signer's public key, so the fleet as a whole respects the external
ledger and indexer rate limits.

Responsibilities
----------------
- ``check_limit``: atomic refill + consume via a single Lua script
- ``acquire``: wait (bounded) until a token is available
- ``reset_limit``: clear bucket state (administrative / tests)
- ``get_status``: configuration snapshot for diagnostics

Design Decisions
----------------
- The bucket is a Redis hash (``tokens``, ``last_refill``) with a TTL.
- Fallback behavior when Redis itself fails is config-driven:
  - ``"allow"`` (default): fail-open
  - ``"deny"``: fail-closed

Configuration
-------------
- SIGNER_RATE_PER_SECOND (default: 5)
- SIGNER_BURST (default: 10)
- SIGNER_THROTTLE_TIMEOUT_SECONDS (default: 10)
- RATE_LIMITER_FALLBACK_MODE (default: "allow")
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from redis.exceptions import RedisError

from skillmirror.core.config.config import Config
from skillmirror.core.logging.logger import get_logger

if TYPE_CHECKING:
    from redis.asyncio.client import Redis as AsyncRedis
    from skillmirror.core.redis.service import RedisService


logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimiterSettings:
    rate_per_second: float = 5.0
    burst: int = 10
    fallback_mode: str = "allow"
    bucket_ttl_seconds: int = 3600
    acquire_timeout_seconds: float = 10.0

    @classmethod
    def from_config(cls) -> RateLimiterSettings:
        fallback_mode = Config.RATE_LIMITER_FALLBACK_MODE.strip().lower()
        if fallback_mode not in {"allow", "deny"}:
            logger.warning(
                "Unsupported rate limiter fallback_mode; defaulting to 'allow'",
                extra={"configured_fallback_mode": fallback_mode},
            )
            fallback_mode = "allow"
        return cls(
            rate_per_second=float(Config.SIGNER_RATE_PER_SECOND),
            burst=int(Config.SIGNER_BURST),
            fallback_mode=fallback_mode,
            acquire_timeout_seconds=float(Config.SIGNER_THROTTLE_TIMEOUT_SECONDS),
        )


class RedisRateLimiter:
    """
    Distributed token bucket backed by Redis.

    Safe in multi-instance deployments (single shared Redis). The Lua script
    makes refill and consume one atomic step.
    """

    # KEYS: 1 bucket key
    # ARGV: 1 max_tokens, 2 refill_rate (tokens/s), 3 requested, 4 now (s), 5 ttl_seconds
    # Returns 1 if the requested tokens were consumed, 0 otherwise.
    _LUA_TOKEN_BUCKET = """
    local key = KEYS[1]
    local max_tokens = tonumber(ARGV[1])
    local refill_rate = tonumber(ARGV[2])
    local requested = tonumber(ARGV[3])
    local now = tonumber(ARGV[4])
    local ttl_seconds = tonumber(ARGV[5])

    local bucket = redis.call('HMGET', key, 'tokens', 'last_refill')
    local tokens = tonumber(bucket[1])
    local last_refill = tonumber(bucket[2])

    if tokens == nil or last_refill == nil then
        tokens = max_tokens
        last_refill = now
    end

    if now < last_refill then
        last_refill = now
    end

    local new_tokens = tokens + ((now - last_refill) * refill_rate)
    if new_tokens > max_tokens then
        new_tokens = max_tokens
    end

    local allowed = 0
    if new_tokens >= requested then
        new_tokens = new_tokens - requested
        allowed = 1
    end

    redis.call('HSET', key, 'tokens', new_tokens, 'last_refill', now)
    if ttl_seconds and ttl_seconds > 0 then
        redis.call('EXPIRE', key, ttl_seconds)
    end

    return allowed
    """

    def __init__(
        self,
        redis_service: type[RedisService],
        settings: Optional[RateLimiterSettings] = None,
    ) -> None:
        self._redis_service = redis_service
        self._settings = settings or RateLimiterSettings.from_config()

        logger.debug(
            "RedisRateLimiter initialized",
            extra={
                "rate_per_second": self._settings.rate_per_second,
                "burst": self._settings.burst,
                "fallback_mode": self._settings.fallback_mode,
                "bucket_ttl_seconds": self._settings.bucket_ttl_seconds,
            },
        )

    @property
    def settings(self) -> RateLimiterSettings:
        return self._settings

    # ════════════════════════════════════════════════════════════════════
    # Public API
    # ════════════════════════════════════════════════════════════════════

    async def check_limit(self, key: str, tokens: int = 1) -> bool:
        """
        Try to consume ``tokens`` from the bucket for ``key``.

        Returns
        -------
        bool
            True if allowed. On Redis failure the answer is decided by
            ``fallback_mode``.
        """
        client: AsyncRedis = self._redis_service.client()
        bucket_key = self._token_bucket_key(key)
        start_time = time.monotonic()

        try:
            result = await client.eval(  # type: ignore[misc]
                self._LUA_TOKEN_BUCKET,
                1,
                bucket_key,
                self._settings.burst,
                self._settings.rate_per_second,
                tokens,
                self._now(),
                self._settings.bucket_ttl_seconds,
            )
        except (RedisError, OSError) as exc:
            logger.error(
                "Rate limit check failed",
                extra={
                    "key": key,
                    "redis_key": bucket_key,
                    "fallback_mode": self._settings.fallback_mode,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
                exc_info=True,
            )
            if self._settings.fallback_mode == "allow":
                logger.warning(
                    "ALLOWING operation due to rate limiter failure (fallback mode: allow)",
                    extra={"key": key},
                )
                return True
            logger.warning(
                "DENYING operation due to rate limiter failure (fallback mode: deny)",
                extra={"key": key},
            )
            return False

        allowed = bool(result)
        logger.debug(
            "Rate limit allowed (token bucket)" if allowed else "Rate limit exceeded (token bucket)",
            extra={
                "key": key,
                "redis_key": bucket_key,
                "tokens_requested": tokens,
                "latency_ms": round((time.monotonic() - start_time) * 1000, 2),
            },
        )
        return allowed

    async def acquire(self, key: str, timeout: Optional[float] = None) -> bool:
        """
        Wait until one token is available for ``key``.

        Polls at the bucket's refill cadence and gives up after ``timeout``
        seconds (``SIGNER_THROTTLE_TIMEOUT_SECONDS`` by default).

        Returns
        -------
        bool
            True if a token was obtained, False on timeout.
        """
        budget = self._settings.acquire_timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + max(budget, 0.0)
        interval = 1.0 / self._settings.rate_per_second if self._settings.rate_per_second > 0 else 0.5

        while True:
            if await self.check_limit(key):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Rate limiter acquire timed out",
                    extra={"key": key, "timeout_seconds": budget},
                )
                return False
            await asyncio.sleep(min(interval, remaining))

    async def reset_limit(self, key: str) -> None:
        client: AsyncRedis = self._redis_service.client()
        await client.delete(self._token_bucket_key(key))
        logger.info("Rate limit reset for key", extra={"key": key})

    def get_status(self) -> dict[str, Any]:
        return {
            "algorithm": "token_bucket",
            "rate_per_second": self._settings.rate_per_second,
            "burst": self._settings.burst,
            "fallback_mode": self._settings.fallback_mode,
            "bucket_ttl_seconds": self._settings.bucket_ttl_seconds,
            "acquire_timeout_seconds": self._settings.acquire_timeout_seconds,
        }

    # ════════════════════════════════════════════════════════════════════
    # Helpers
    # ════════════════════════════════════════════════════════════════════

    @staticmethod
    def _now() -> float:
        return time.time()

    @staticmethod
    def _token_bucket_key(key: str) -> str:
        return f"ratelimit:tb:{key}"
