"""Unit tests for DatabaseRetryPolicy."""

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from skillmirror.core.database.retry_policy import DatabaseRetryConfig, DatabaseRetryPolicy

pytestmark = pytest.mark.unit


def operational():
    return OperationalError("UPDATE skill_records", {}, Exception("lock timeout"))


def make_policy(max_attempts=3, initial=1, maximum=5, jitter=0, **kwargs):
    return DatabaseRetryPolicy(
        DatabaseRetryConfig(
            max_attempts=max_attempts,
            initial_backoff_ms=initial,
            max_backoff_ms=maximum,
            jitter_ms=jitter,
            **kwargs,
        )
    )


class FlakyOperation:
    """Fails ``failures`` times with ``error`` before returning ``"done"``."""

    def __init__(self, failures, error=operational):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error()
        return "done"


class TestExecute:
    async def test_retries_operational_error_until_success(self):
        operation = FlakyOperation(failures=2)

        result = await make_policy(max_attempts=3).execute(operation, operation_name="test.flaky")

        assert result == "done"
        assert operation.calls == 3

    async def test_gives_up_after_max_attempts(self):
        operation = FlakyOperation(failures=10)

        with pytest.raises(OperationalError):
            await make_policy(max_attempts=4).execute(operation, operation_name="test.down")

        assert operation.calls == 4

    async def test_integrity_error_never_retried(self):
        operation = FlakyOperation(
            failures=1,
            error=lambda: IntegrityError("INSERT", {}, Exception("duplicate key")),
        )
        # IntegrityError subclasses DBAPIError; the exemption still applies.
        policy = make_policy(max_attempts=5, retriable_exceptions=(DBAPIError,))

        with pytest.raises(IntegrityError):
            await policy.execute(operation, operation_name="test.duplicate")

        assert operation.calls == 1

    async def test_other_errors_propagate_immediately(self):
        operation = FlakyOperation(failures=1, error=lambda: ValueError("bad input"))

        with pytest.raises(ValueError):
            await make_policy().execute(operation, operation_name="test.value")

        assert operation.calls == 1

    async def test_backs_off_between_attempts(self, mocker):
        sleep = mocker.patch(
            "skillmirror.core.database.retry_policy.asyncio.sleep", new=mocker.AsyncMock()
        )
        operation = FlakyOperation(failures=2)

        await make_policy(max_attempts=3, initial=50, maximum=1000).execute(
            operation, operation_name="test.backoff"
        )

        assert [c.args[0] for c in sleep.await_args_list] == [0.05, 0.1]


class TestBackoff:
    @pytest.mark.parametrize(
        "attempt,expected",
        [(1, 50), (2, 100), (3, 200), (5, 800), (6, 1000), (10, 1000)],
    )
    def test_exponential_and_capped(self, attempt, expected):
        policy = make_policy(initial=50, maximum=1000, jitter=0)

        assert policy.compute_backoff_ms(attempt) == expected

    def test_jitter_is_bounded(self):
        policy = make_policy(initial=50, maximum=1000, jitter=25)

        samples = [policy.compute_backoff_ms(1) for _ in range(200)]

        assert all(50 <= s <= 75 for s in samples)
