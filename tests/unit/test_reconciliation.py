"""
Unit tests for ReconciliationLoop.

Runs scans against a real SQLite store with the in-memory collaborators:
claiming and leases, backoff, escalation, isolation between tasks and the
operator API.
"""

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import update

from skillmirror.core.database.base import utcnow
from skillmirror.core.database.service import DatabaseService
from skillmirror.database.models import CharacterAsset
from skillmirror.modules.onchain.protocol import UpdateOutcome, UpdateProtocol, UpdateStatus
from skillmirror.modules.reconciliation.loop import ReconciliationLoop, ReconciliationSettings
from skillmirror.modules.shared.exceptions import (
    ExhaustedRetriesError,
    NotFoundError,
    PayloadTooLargeError,
)
from tests.conftest import ASSET_ID, OTHER_ASSET_ID, create_asset, load_asset, with_settings

pytestmark = [pytest.mark.unit, pytest.mark.database]

OTHER_SIGNATURE = "3kq7fNjnbTmJAZSkpHGwbQXpyvDWEcdGcoNp4tLpsQYx"


@pytest.fixture
def settings() -> ReconciliationSettings:
    return ReconciliationSettings(
        interval_seconds=0.01,
        batch_size=10,
        max_concurrency=2,
        max_attempts=3,
        backoff_base_seconds=5.0,
        backoff_max_seconds=60.0,
        backoff_jitter_seconds=0.0,
        lease_seconds=300,
    )


@pytest.fixture
def protocol(update_context, retry_policy, recording_sleep) -> UpdateProtocol:
    return UpdateProtocol(update_context, retry_policy=retry_policy, sleep=recording_sleep)


@pytest.fixture
def loop(protocol, settings) -> ReconciliationLoop:
    return ReconciliationLoop(protocol, settings=settings)


@pytest_asyncio.fixture
async def pending(ledger, asset) -> str:
    await ledger.apply_experience(asset, "mining", "seed-award", 85)
    return asset


async def set_attempts(asset_id: str, attempts: int) -> None:
    async with DatabaseService.get_transaction() as session:
        await session.execute(
            update(CharacterAsset)
            .where(CharacterAsset.asset_id == asset_id)
            .values(onchain_attempt_count=attempts)
        )


class TestScan:
    """Test one scan over pending assets."""

    async def test_confirms_pending_asset(self, loop, pending):
        report = await loop.run_once()

        assert (report.claimed, report.processed, report.confirmed) == (1, 1, 1)
        stored = await load_asset()
        assert stored.pending_onchain_update is False
        assert stored.lease_expires_at is None
        assert loop.in_flight == frozenset()

    async def test_nothing_pending(self, loop, asset):
        report = await loop.run_once()

        assert report.claimed == 0

    async def test_transient_failure_schedules_retry(self, loop, pending, fake_throttle):
        # Arrange
        fake_throttle.allow = False
        before = utcnow()

        # Act
        report = await loop.run_once()

        # Assert
        assert report.retried == 1
        stored = await load_asset()
        assert stored.pending_onchain_update is True
        assert stored.onchain_attempt_count == 1
        assert stored.next_retry_at >= before
        assert stored.lease_expires_at is None
        assert stored.last_error.startswith("TRANSIENT_NETWORK")

    async def test_backoff_hides_task_from_next_scan(self, loop, pending, fake_throttle):
        fake_throttle.allow = False
        await loop.run_once()
        fake_throttle.allow = True

        report = await loop.run_once()

        assert report.claimed == 0
        assert (await load_asset()).pending_onchain_update is True

    async def test_escalates_after_max_attempts(self, loop, pending, fake_index):
        await set_attempts(ASSET_ID, 2)
        fake_index.missing.add(ASSET_ID)

        report = await loop.run_once()

        assert report.escalated == 1
        assert isinstance(report.errors[0], ExhaustedRetriesError)
        stored = await load_asset()
        assert stored.needs_attention is True
        assert stored.pending_onchain_update is True
        assert stored.onchain_attempt_count == 3
        assert stored.last_error.startswith("EXHAUSTED_RETRIES")
        assert "UNRESOLVED_ASSET" in report.errors[0].last_error

    async def test_oversized_payload_escalates_immediately(
        self, pending, update_context, retry_policy, recording_sleep, settings
    ):
        protocol = UpdateProtocol(
            with_settings(update_context, max_tx_bytes=100),
            retry_policy=retry_policy,
            sleep=recording_sleep,
        )
        loop = ReconciliationLoop(protocol, settings=settings)

        report = await loop.run_once()

        assert report.escalated == 1
        assert isinstance(report.errors[0], PayloadTooLargeError)
        stored = await load_asset()
        assert stored.needs_attention is True
        assert stored.onchain_attempt_count == 1

    async def test_escalated_task_not_claimed(self, loop, pending, fake_index):
        await set_attempts(ASSET_ID, 2)
        fake_index.missing.add(ASSET_ID)
        await loop.run_once()
        fake_index.missing.clear()

        report = await loop.run_once()

        assert report.claimed == 0


class TestIsolation:
    """One failing task never affects its siblings."""

    @pytest_asyncio.fixture
    async def two_pending(self, ledger, pending):
        await create_asset(asset_id=OTHER_ASSET_ID, name="Bram", creation_signature=OTHER_SIGNATURE)
        await ledger.apply_experience(OTHER_ASSET_ID, "fishing", "other-award", 40)

    async def test_failing_sibling(self, loop, two_pending, fake_index):
        fake_index.missing.add(OTHER_ASSET_ID)

        report = await loop.run_once()

        assert (report.confirmed, report.retried, report.processed) == (1, 1, 2)
        assert (await load_asset(ASSET_ID)).pending_onchain_update is False
        assert (await load_asset(OTHER_ASSET_ID)).onchain_attempt_count == 1

    async def test_bookkeeping_failure_is_contained(self, loop, two_pending, fake_index, mocker):
        fake_index.missing.add(OTHER_ASSET_ID)
        mocker.patch.object(loop, "_schedule_retry", side_effect=RuntimeError("disk full"))

        report = await loop.run_once()

        assert report.confirmed == 1
        assert report.processed == 2
        assert loop.in_flight == frozenset()


class TestClaiming:
    """Test leases and the in-flight set."""

    async def test_running_task_not_claimed_twice(self, pending, settings, mocker):
        # Arrange: protocol blocks until released
        release = asyncio.Event()
        started = asyncio.Event()

        async def blocked_run(asset_id):
            started.set()
            await release.wait()
            return UpdateOutcome(asset_id=asset_id, status=UpdateStatus.CONFIRMED, state_version=1)

        protocol = mocker.Mock()
        protocol.run = mocker.AsyncMock(side_effect=blocked_run)
        loop = ReconciliationLoop(protocol, settings=settings)

        # Act
        first = asyncio.create_task(loop.run_once())
        await started.wait()
        overlapping = await loop.run_once()
        leased = await load_asset()
        in_flight = loop.in_flight
        release.set()
        await first

        # Assert
        assert overlapping.claimed == 0
        assert in_flight == frozenset({ASSET_ID})
        assert leased.lease_expires_at is not None
        protocol.run.assert_awaited_once_with(ASSET_ID)

    async def test_noop_releases_lease(self, pending, settings, mocker):
        protocol = mocker.Mock()
        protocol.run = mocker.AsyncMock(
            return_value=UpdateOutcome(asset_id=ASSET_ID, status=UpdateStatus.NOOP, state_version=0)
        )
        loop = ReconciliationLoop(protocol, settings=settings)

        report = await loop.run_once()

        assert report.noop == 1
        assert (await load_asset()).lease_expires_at is None

    async def test_oldest_pending_first(self, ledger, pending, mocker):
        await create_asset(asset_id=OTHER_ASSET_ID, name="Bram", creation_signature=OTHER_SIGNATURE)
        await ledger.apply_experience(OTHER_ASSET_ID, "fishing", "later", 40)
        protocol = mocker.Mock()
        protocol.run = mocker.AsyncMock(
            side_effect=lambda asset_id: UpdateOutcome(asset_id, UpdateStatus.CONFIRMED, 1)
        )
        loop = ReconciliationLoop(protocol, settings=ReconciliationSettings(batch_size=1, max_concurrency=1))

        await loop.run_once()

        protocol.run.assert_awaited_once_with(ASSET_ID)


class TestBackoff:
    @pytest.mark.parametrize("attempt,expected", [(1, 5.0), (2, 10.0), (3, 20.0), (4, 40.0), (5, 60.0), (12, 60.0)])
    def test_exponential_and_capped(self, loop, attempt, expected):
        assert loop.backoff_seconds(attempt) == expected

    def test_jitter_bounded(self, protocol):
        loop = ReconciliationLoop(
            protocol,
            settings=ReconciliationSettings(backoff_base_seconds=1.0, backoff_jitter_seconds=0.5),
        )

        for _ in range(50):
            assert 1.0 <= loop.backoff_seconds(1) <= 1.5


class TestOperatorApi:
    async def test_list_pending_tasks(self, loop, pending):
        tasks = await loop.list_pending_tasks()

        assert [t.asset_id for t in tasks] == [ASSET_ID]
        assert tasks[0].attempt_count == 0

    async def test_requeue_escalated_task(self, loop, pending, fake_index):
        await set_attempts(ASSET_ID, 2)
        fake_index.missing.add(ASSET_ID)
        await loop.run_once()
        assert [t.asset_id for t in await loop.list_attention_tasks()] == [ASSET_ID]
        fake_index.missing.clear()

        task = await loop.requeue(ASSET_ID)
        report = await loop.run_once()

        assert task.needs_attention is False
        assert task.attempt_count == 0
        assert report.confirmed == 1
        assert await loop.list_attention_tasks() == []

    async def test_requeue_unknown_asset(self, loop, database):
        with pytest.raises(NotFoundError):
            await loop.requeue(OTHER_ASSET_ID)


class TestRunForever:
    async def test_stops_on_event(self, loop, database, mocker):
        stop_event = asyncio.Event()

        async def scan_then_stop():
            stop_event.set()

        run_once = mocker.patch.object(loop, "run_once", side_effect=scan_then_stop)

        await asyncio.wait_for(loop.run_forever(stop_event=stop_event), timeout=5)

        run_once.assert_awaited_once()
