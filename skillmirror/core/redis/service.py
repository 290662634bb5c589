"""
RedisService: async Redis infrastructure for SkillMirror

Purpose
-------
Own the single async Redis client used by the worker. Redis holds only
ephemeral coordination state (the signer token bucket); nothing durable
lives here.

Responsibilities
----------------
- Initialize and manage a singleton Redis connection pool
- Verify connectivity at startup and expose a PING health check
- Hand out the shared client and the signer rate limiter

Non-Responsibilities
--------------------
- Business logic of any kind
- Database transactions

Configuration Keys
------------------
- REDIS_URL              : str (e.g., "redis://localhost:6379/0")
- REDIS_SOCKET_TIMEOUT   : int (default 5)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

from redis.asyncio.client import Redis as AsyncRedis  # type: ignore[misc]
from redis.exceptions import RedisError

from skillmirror.core.config.config import Config
from skillmirror.core.exceptions import RedisConnectionError
from skillmirror.core.logging.logger import get_logger
from skillmirror.core.redis.rate_limiter import RedisRateLimiter

logger = get_logger(__name__)


class RedisService:
    """Singleton async Redis client plus the rate limiter built on it."""

    _client: Optional[AsyncRedis] = None
    _rate_limiter: Optional[RedisRateLimiter] = None
    _init_lock: asyncio.Lock = asyncio.Lock()
    _is_healthy: bool = False

    # ═══════════════════════════════════════════════════════════════════════
    # LIFECYCLE MANAGEMENT
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    async def initialize(cls, client: Optional[AsyncRedis] = None) -> None:
        """
        Create the client, PING it and build the rate limiter.

        ``client`` lets callers supply a pre-built client (tests).

        Raises
        ------
        RedisConnectionError
            If the connection cannot be established.
        """
        if cls._client is not None:
            logger.debug("RedisService already initialized, skipping")
            return

        async with cls._init_lock:
            if cls._client is not None:
                return

            url = Config.REDIS_URL
            start_time = time.monotonic()

            try:
                if client is None:
                    client = AsyncRedis.from_url(
                        url,
                        socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
                        encoding="utf-8",
                        decode_responses=True,
                        retry_on_timeout=False,
                        health_check_interval=30,
                    )

                await client.ping()  # type: ignore[misc]

                cls._client = client
                cls._is_healthy = True
                cls._rate_limiter = RedisRateLimiter(cls)

                logger.info(
                    "RedisService initialized successfully",
                    extra={
                        "url_scheme": url.split("://")[0] if "://" in url else "unknown",
                        "socket_timeout_seconds": Config.REDIS_SOCKET_TIMEOUT,
                        "initialization_time_ms": round((time.monotonic() - start_time) * 1000, 2),
                    },
                )

            except (RedisError, OSError) as exc:
                if client is not None:
                    await client.aclose()

                cls._client = None
                cls._rate_limiter = None
                cls._is_healthy = False

                logger.critical(
                    "Failed to initialize RedisService",
                    extra={
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                        "url_scheme": url.split("://")[0] if "://" in url else "unknown",
                    },
                    exc_info=True,
                )
                raise RedisConnectionError("initialize", exc) from exc

    @classmethod
    async def shutdown(cls) -> None:
        """Close the client. Safe to call even if not initialized."""
        if cls._client is None:
            logger.debug("RedisService not initialized, nothing to shutdown")
            return

        client = cls._client
        cls._client = None
        cls._rate_limiter = None
        cls._is_healthy = False

        try:
            await client.aclose()
            logger.info("RedisService shutdown complete")
        except RedisError as exc:
            logger.error(
                "Error during RedisService shutdown",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )

    # ═══════════════════════════════════════════════════════════════════════
    # HEALTH & STATUS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    async def health_check(cls) -> bool:
        """PING Redis; never raises."""
        if cls._client is None:
            logger.warning("Health check failed: RedisService not initialized")
            cls._is_healthy = False
            return False

        try:
            start_time = time.monotonic()
            pong = await cls._client.ping()  # type: ignore[misc]
            latency_ms = (time.monotonic() - start_time) * 1000
        except (RedisError, OSError) as exc:
            cls._is_healthy = False
            logger.error(
                "Redis health check failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )
            return False

        cls._is_healthy = bool(pong)
        logger.debug(
            "Redis health check completed",
            extra={"healthy": cls._is_healthy, "latency_ms": round(latency_ms, 2)},
        )
        return cls._is_healthy

    @classmethod
    def get_status(cls) -> dict[str, Any]:
        return {
            "initialized": cls._client is not None,
            "healthy": cls._is_healthy,
            "rate_limiter": cls._rate_limiter.get_status() if cls._rate_limiter else None,
        }

    # ═══════════════════════════════════════════════════════════════════════
    # ACCESSORS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    def client(cls) -> AsyncRedis:
        """
        Return the shared client.

        Raises
        ------
        RuntimeError
            If the service has not been initialized.
        """
        if cls._client is None:
            raise RuntimeError(
                "RedisService is not initialized. Call RedisService.initialize() during startup."
            )
        return cls._client

    @classmethod
    def get_rate_limiter(cls) -> RedisRateLimiter:
        if cls._rate_limiter is None:
            raise RuntimeError("RedisService is not initialized; rate limiter unavailable")
        return cls._rate_limiter
