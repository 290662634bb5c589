"""
Unit tests for the database circuit breaker.

Covers the CLOSED -> OPEN -> HALF_OPEN -> CLOSED cycle, the half-open
request limit, and how ``DatabaseService.get_transaction`` reports each kind
of transaction outcome to the breaker.
"""

import asyncio

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from skillmirror.core.database.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitBreakerSettings,
    CircuitState,
)
from skillmirror.core.database.service import DatabaseService
from skillmirror.modules.shared.exceptions import NotFoundError
from tests.conftest import OTHER_ASSET_ID

pytestmark = pytest.mark.unit


def make_breaker(threshold=3, recovery_ms=0, slots=2):
    return CircuitBreaker(
        "test",
        CircuitBreakerSettings(
            failure_threshold=threshold,
            recovery_timeout_ms=recovery_ms,
            half_open_max_requests=slots,
        ),
    )


async def trip(breaker, times):
    for _ in range(times):
        await breaker.record_failure()


class TestStateTransitions:
    async def test_opens_after_threshold(self):
        breaker = make_breaker(threshold=3, recovery_ms=60_000)

        await trip(breaker, 2)
        assert breaker.state is CircuitState.CLOSED

        await trip(breaker, 1)
        assert breaker.state is CircuitState.OPEN
        assert await breaker.allow_request() is False
        assert breaker.get_metrics().rejected_requests == 1

    async def test_success_resets_consecutive_failures(self):
        breaker = make_breaker(threshold=3)

        await trip(breaker, 2)
        await breaker.record_success()
        await trip(breaker, 2)

        assert breaker.state is CircuitState.CLOSED
        assert breaker.consecutive_failures == 2

    async def test_half_open_after_recovery_then_closes(self):
        breaker = make_breaker(threshold=1, recovery_ms=0)
        await trip(breaker, 1)

        assert await breaker.allow_request() is True
        assert breaker.state is CircuitState.HALF_OPEN

        await breaker.record_success()
        assert breaker.state is CircuitState.CLOSED

    async def test_half_open_failure_reopens(self):
        breaker = make_breaker(threshold=1, recovery_ms=0)
        await trip(breaker, 1)
        await breaker.allow_request()

        await breaker.record_failure()

        assert breaker.state is CircuitState.OPEN


class TestHalfOpenSlots:
    async def test_half_open_request_limit(self):
        breaker = make_breaker(threshold=1, recovery_ms=0, slots=2)
        await trip(breaker, 1)

        results = [await breaker.allow_request() for _ in range(3)]

        assert results == [True, True, False]
        assert breaker.state is CircuitState.HALF_OPEN

    async def test_released_slot_can_be_reused(self):
        breaker = make_breaker(threshold=1, recovery_ms=0, slots=1)
        await trip(breaker, 1)
        assert await breaker.allow_request() is True
        assert await breaker.allow_request() is False

        await breaker.release_half_open_slot()

        assert await breaker.allow_request() is True

    async def test_release_outside_half_open_is_noop(self):
        breaker = make_breaker()

        await breaker.release_half_open_slot()

        assert breaker.state is CircuitState.CLOSED
        assert await breaker.allow_request() is True


@pytest.fixture
def half_open_breaker(database):
    """Install a tripped breaker (one half-open slot) on the live DatabaseService."""
    breaker = make_breaker(threshold=1, recovery_ms=0, slots=1)
    DatabaseService._circuit_breaker = breaker
    return breaker


class TestTransactionOutcomes:
    """How get_transaction feeds the breaker."""

    async def test_integrity_error_is_not_a_failure(self, database):
        breaker = make_breaker(threshold=1)
        DatabaseService._circuit_breaker = breaker

        with pytest.raises(IntegrityError):
            async with DatabaseService.get_transaction():
                raise IntegrityError("INSERT", {}, Exception("duplicate key"))

        assert breaker.state is CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    async def test_driver_error_opens_circuit(self, database):
        breaker = make_breaker(threshold=1, recovery_ms=60_000)
        DatabaseService._circuit_breaker = breaker

        with pytest.raises(OperationalError):
            async with DatabaseService.get_transaction():
                raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            async with DatabaseService.get_transaction():
                pass

    async def test_domain_errors_close_half_open_circuit(self, half_open_breaker, ledger):
        await trip(half_open_breaker, 1)

        for n in range(3):
            with pytest.raises(NotFoundError):
                await ledger.apply_experience(OTHER_ASSET_ID, "mining", f"ghost-{n}", 10)

        assert half_open_breaker.state is CircuitState.CLOSED
        async with DatabaseService.get_transaction():
            pass

    async def test_cancelled_transaction_returns_slot(self, half_open_breaker):
        await trip(half_open_breaker, 1)
        entered = asyncio.Event()

        async def hang():
            async with DatabaseService.get_transaction():
                entered.set()
                await asyncio.Event().wait()

        task = asyncio.create_task(hang())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert half_open_breaker.state is CircuitState.HALF_OPEN
        async with DatabaseService.get_transaction():
            pass
        assert half_open_breaker.state is CircuitState.CLOSED
