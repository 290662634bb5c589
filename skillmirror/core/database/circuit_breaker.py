"""
Circuit Breaker for Database Operations
=======================================

Purpose
-------
Stops the worker from hammering an unavailable database. After a run of
consecutive transaction failures the breaker opens and transactions fail
fast until a recovery window has elapsed; a handful of trial transactions
then decide whether to close it again.

Circuit States
--------------
**CLOSED**: all requests pass; consecutive failures are counted.
**OPEN**: all requests are rejected until the recovery timeout elapses.
**HALF_OPEN**: a limited number of trial requests are let through; one
success closes the circuit, one failure re-opens it.

Configuration
-------------
- CIRCUIT_BREAKER_FAILURE_THRESHOLD (default: 5)
- CIRCUIT_BREAKER_RECOVERY_TIMEOUT_MS (default: 60000)
- CIRCUIT_BREAKER_HALF_OPEN_MAX_REQUESTS (default: 3)

Usage Example
-------------
>>> breaker = CircuitBreaker.from_config("database")
>>> if not await breaker.allow_request():
...     raise CircuitBreakerOpenError("database")
>>> try:
...     await operation()
...     await breaker.record_success()
... except OperationalError:
...     await breaker.record_failure()
...     raise
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from skillmirror.core.config.config import Config
from skillmirror.core.exceptions import CircuitBreakerError
from skillmirror.core.logging.logger import get_logger

logger = get_logger(__name__)


class CircuitBreakerOpenError(CircuitBreakerError):
    """Raised when the circuit breaker is open and requests are rejected."""


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerSettings:
    failure_threshold: int = 5
    recovery_timeout_ms: int = 60_000
    half_open_max_requests: int = 3

    @classmethod
    def from_config(cls) -> CircuitBreakerSettings:
        return cls(
            failure_threshold=int(getattr(Config, "CIRCUIT_BREAKER_FAILURE_THRESHOLD", 5)),
            recovery_timeout_ms=int(
                getattr(Config, "CIRCUIT_BREAKER_RECOVERY_TIMEOUT_MS", 60_000)
            ),
            half_open_max_requests=int(
                getattr(Config, "CIRCUIT_BREAKER_HALF_OPEN_MAX_REQUESTS", 3)
            ),
        )


@dataclass
class CircuitBreakerMetrics:
    """Snapshot for health reporting."""

    state: CircuitState
    failure_count: int
    success_count: int
    consecutive_failures: int
    total_requests: int
    rejected_requests: int
    last_failure_time: Optional[float]


class CircuitBreaker:
    """
    Async circuit breaker guarded by an asyncio.Lock.

    Transitions are driven entirely by ``allow_request``, ``record_success``
    and ``record_failure``; callers never set the state directly.
    """

    def __init__(self, name: str, settings: Optional[CircuitBreakerSettings] = None) -> None:
        self.name = name
        self._settings = settings or CircuitBreakerSettings()
        self._state = CircuitState.CLOSED
        self._lock = asyncio.Lock()

        self._consecutive_failures = 0
        self._failure_count = 0
        self._success_count = 0
        self._total_requests = 0
        self._rejected_requests = 0
        self._half_open_in_flight = 0
        self._last_failure_time: Optional[float] = None

        logger.info(
            "Circuit breaker initialized",
            extra={
                "breaker": name,
                "failure_threshold": self._settings.failure_threshold,
                "recovery_timeout_ms": self._settings.recovery_timeout_ms,
            },
        )

    @classmethod
    def from_config(cls, name: str) -> CircuitBreaker:
        return cls(name, CircuitBreakerSettings.from_config())

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    # ========================================================================
    # Gate
    # ========================================================================

    async def allow_request(self) -> bool:
        async with self._lock:
            self._total_requests += 1

            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._recovery_window_elapsed():
                    self._transition(CircuitState.HALF_OPEN)
                    self._half_open_in_flight = 1
                    return True
                self._rejected_requests += 1
                return False

            if self._half_open_in_flight < self._settings.half_open_max_requests:
                self._half_open_in_flight += 1
                return True

            self._rejected_requests += 1
            return False

    def _recovery_window_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        elapsed_ms = (time.monotonic() - self._last_failure_time) * 1000
        return elapsed_ms >= self._settings.recovery_timeout_ms

    # ========================================================================
    # Outcomes
    # ========================================================================

    async def record_success(self) -> None:
        async with self._lock:
            self._success_count += 1
            self._consecutive_failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)

    async def release_half_open_slot(self) -> None:
        """Return a half-open slot when the request ended without an outcome."""
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_in_flight > 0:
                self._half_open_in_flight -= 1

    async def record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            self._consecutive_failures += 1
            self._last_failure_time = time.monotonic()

            logger.warning(
                "Circuit breaker recorded failure",
                extra={
                    "breaker": self.name,
                    "state": self._state.value,
                    "consecutive_failures": self._consecutive_failures,
                    "failure_threshold": self._settings.failure_threshold,
                },
            )

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self._settings.failure_threshold
            ):
                self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.CLOSED:
            self._consecutive_failures = 0
            self._half_open_in_flight = 0

        log = logger.error if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker {old_state.value} -> {new_state.value}",
            extra={
                "breaker": self.name,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "consecutive_failures": self._consecutive_failures,
            },
        )

    # ========================================================================
    # Metrics
    # ========================================================================

    def get_metrics(self) -> CircuitBreakerMetrics:
        return CircuitBreakerMetrics(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            consecutive_failures=self._consecutive_failures,
            total_requests=self._total_requests,
            rejected_requests=self._rejected_requests,
            last_failure_time=self._last_failure_time,
        )

