"""
Database Retry Policy
=====================

Purpose
-------
Re-run a whole unit of database work when it fails for a transient reason
(dropped connection, serialization failure, lock timeout). The operation
passed in owns its own transaction, so every attempt starts from a clean
session.

Retry Semantics
---------------
- Only ``retriable_exceptions`` are retried (``OperationalError`` by default).
- ``IntegrityError`` is never retried: a unique-key violation is a business
  signal (for example a duplicate idempotency key), not a glitch.
- Backoff is exponential with additive jitter:
  ``min(initial * 2^(attempt-1), max) + randint(0, jitter)`` milliseconds.

Configuration
-------------
- DATABASE_RETRY_MAX_ATTEMPTS (default: 3)
- DATABASE_RETRY_INITIAL_BACKOFF_MS (default: 50)
- DATABASE_RETRY_MAX_BACKOFF_MS (default: 1000)
- DATABASE_RETRY_JITTER_MS (default: 50)

Usage Example
-------------
>>> async def operation():
...     async with DatabaseService.get_transaction() as session:
...         ...
>>> await DatabaseRetryPolicy.from_config().execute(
...     operation, operation_name="ledger.apply_experience"
... )

Do not call ``execute`` inside an open transaction; wrap the operation that
creates the transaction instead.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError

from skillmirror.core.config.config import Config
from skillmirror.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class DatabaseRetryConfig:
    """
    Configuration for database retry behavior.

    Attributes
    ----------
    max_attempts : int
        Maximum number of attempts (including initial attempt).
    initial_backoff_ms : int
        Initial backoff duration in milliseconds.
    max_backoff_ms : int
        Maximum backoff duration in milliseconds.
    jitter_ms : int
        Maximum random jitter to add to backoff in milliseconds.
    retriable_exceptions : Tuple[Type[BaseException], ...]
        Exception types considered retriable.
    """

    max_attempts: int
    initial_backoff_ms: int
    max_backoff_ms: int
    jitter_ms: int
    retriable_exceptions: Tuple[Type[BaseException], ...] = (OperationalError,)

    @classmethod
    def from_config(cls) -> DatabaseRetryConfig:
        return cls(
            max_attempts=int(getattr(Config, "DATABASE_RETRY_MAX_ATTEMPTS", 3)),
            initial_backoff_ms=int(getattr(Config, "DATABASE_RETRY_INITIAL_BACKOFF_MS", 50)),
            max_backoff_ms=int(getattr(Config, "DATABASE_RETRY_MAX_BACKOFF_MS", 1000)),
            jitter_ms=int(getattr(Config, "DATABASE_RETRY_JITTER_MS", 50)),
        )


class DatabaseRetryPolicy:
    """Execute async database operations with retry semantics."""

    def __init__(self, config: DatabaseRetryConfig) -> None:
        self._config = config

    @classmethod
    def from_config(cls) -> DatabaseRetryPolicy:
        return cls(DatabaseRetryConfig.from_config())

    @property
    def config(self) -> DatabaseRetryConfig:
        return self._config

    def _is_retriable(self, exc: BaseException) -> bool:
        if isinstance(exc, IntegrityError):
            return False
        return isinstance(exc, self._config.retriable_exceptions)

    def compute_backoff_ms(self, attempt: int) -> int:
        """
        Backoff for the given 1-indexed attempt, capped and jittered.
        """
        exponent = max(attempt - 1, 0)
        base = self._config.initial_backoff_ms * (2**exponent)
        capped = min(base, self._config.max_backoff_ms)
        jitter = random.randint(0, self._config.jitter_ms) if self._config.jitter_ms > 0 else 0
        return capped + jitter

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str,
        context: Optional[dict[str, Any]] = None,
    ) -> T:
        """
        Execute ``operation`` retrying transient failures.

        Parameters
        ----------
        operation : Callable[[], Awaitable[T]]
            Zero-argument async callable performing database work.
        operation_name : str
            Stable identifier for logging (e.g. "ledger.apply_experience").
        context : Optional[dict[str, Any]]
            Additional structured context for logs.

        Raises
        ------
        BaseException
            The last exception once retries are exhausted, or any
            non-retriable exception immediately.
        """
        ctx_extra = dict(context or {})
        ctx_extra["db_operation"] = operation_name

        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as exc:
                retriable = self._is_retriable(exc)
                will_retry = retriable and attempt < self._config.max_attempts

                if not will_retry:
                    if retriable:
                        logger.error(
                            "Database operation retries exhausted",
                            extra={
                                **ctx_extra,
                                "attempt": attempt,
                                "max_attempts": self._config.max_attempts,
                                "error": str(exc),
                                "error_type": type(exc).__name__,
                            },
                        )
                    raise

                backoff_ms = self.compute_backoff_ms(attempt)
                logger.warning(
                    "Database operation failed; backing off before retry",
                    extra={
                        **ctx_extra,
                        "attempt": attempt,
                        "backoff_ms": backoff_ms,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                await asyncio.sleep(backoff_ms / 1000.0)
