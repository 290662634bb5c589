"""
Redis Infrastructure for SkillMirror

Exports
-------
Core Service:
    RedisService - Singleton async client with lifecycle and health check

Rate Limiting:
    RedisRateLimiter - Distributed token bucket (signer throttling)
    RateLimiterSettings - Frozen settings loaded from Config
"""

from skillmirror.core.redis.rate_limiter import RateLimiterSettings, RedisRateLimiter
from skillmirror.core.redis.service import RedisService

__all__ = [
    "RedisService",
    "RedisRateLimiter",
    "RateLimiterSettings",
]
