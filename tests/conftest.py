"""
Pytest Configuration and Fixtures for SkillMirror Tests
========================================================

Purpose
-------
Shared fixtures for the unit and integration suites.

- Unit tests run against a throwaway SQLite database (aiosqlite) through
  the real ``DatabaseService``, so transactions, row locks (serialized by
  ``BEGIN IMMEDIATE``) and constraints behave like production.
- Integration tests start PostgreSQL with testcontainers and are skipped
  when Docker is not available.
- External collaborators are replaced by in-memory fakes that return the
  same tagged results as the real HTTP clients.
"""

from __future__ import annotations

import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from dataclasses import replace  # noqa: E402
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import select  # noqa: E402

from skillmirror.core.database.retry_policy import (  # noqa: E402
    DatabaseRetryConfig,
    DatabaseRetryPolicy,
)
from skillmirror.core.database.service import DatabaseService  # noqa: E402
from skillmirror.core.logging.logger import get_logger  # noqa: E402
from skillmirror.database.models import CharacterAsset, SkillRecord  # noqa: E402
from skillmirror.modules.metadata.builder import (  # noqa: E402
    DetailLevel,
    MetadataBuilder,
    MetadataSettings,
)
from skillmirror.modules.onchain.context import ProtocolSettings, Signer, UpdateContext  # noqa: E402
from skillmirror.modules.onchain.results import (  # noqa: E402
    MerkleProof,
    NotFound,
    Ok,
    Result,
    Stale,
    SubmitReceipt,
    TransactionStatus,
)
from skillmirror.modules.progression.repository import SkillRecordRepository  # noqa: E402
from skillmirror.modules.progression.service import SkillLedgerService  # noqa: E402

logger = get_logger(__name__)

ASSET_ID = "7EYnhQoR9YM3N7UoaKRoA44Uy8JeaZV3qyouov87awMs"
OTHER_ASSET_ID = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
OWNER = "5ZWj7a1f8tWkjBESHKgrLmXshuXxqeY9SYcfbshpAqPG"
CREATION_SIGNATURE = "4vJ9JU1bJJE96FWSJKvHsmmFADCg4gpZQff4P3bkLKi"


# ============================================================================
# DATABASE FIXTURES (Unit Tests)
# ============================================================================


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[None, None]:
    """
    Fresh SQLite database behind ``DatabaseService`` for one test.

    Scope: function (new file per test, clean slate)
    """
    await DatabaseService.shutdown()
    await DatabaseService.initialize(f"sqlite+aiosqlite:///{tmp_path / 'skillmirror.db'}")
    await DatabaseService.create_schema()
    yield
    await DatabaseService.shutdown()


@pytest.fixture
def retry_policy() -> DatabaseRetryPolicy:
    return DatabaseRetryPolicy(
        DatabaseRetryConfig(max_attempts=3, initial_backoff_ms=1, max_backoff_ms=5, jitter_ms=0)
    )


@pytest.fixture
def ledger(database, retry_policy) -> SkillLedgerService:
    return SkillLedgerService(retry_policy=retry_policy)


async def create_asset(
    asset_id: Optional[str] = ASSET_ID,
    name: str = "Aria",
    creation_signature: str = CREATION_SIGNATURE,
    owner_address: str = OWNER,
    image_uri: Optional[str] = "https://content.test/portraits/aria.png",
    seed_skills: bool = True,
) -> int:
    """Insert a character row (and its skill rows when resolved)."""
    async with DatabaseService.get_transaction() as session:
        asset = CharacterAsset(
            asset_id=asset_id,
            name=name,
            creation_signature=creation_signature,
            owner_address=owner_address,
            image_uri=image_uri,
            combat_level=1,
            total_level=16,
        )
        session.add(asset)
        await session.flush()
        if asset_id is not None and seed_skills:
            repo = SkillRecordRepository(SkillRecord, get_logger("tests.SkillRecordRepository"))
            await repo.seed(session, asset_id)
        return asset.id


async def load_asset(asset_id: str = ASSET_ID) -> CharacterAsset:
    async with DatabaseService.get_session() as session:
        result = await session.execute(select(CharacterAsset).where(CharacterAsset.asset_id == asset_id))
        return result.scalar_one()


async def load_skills(asset_id: str = ASSET_ID) -> Dict[str, SkillRecord]:
    async with DatabaseService.get_session() as session:
        result = await session.execute(select(SkillRecord).where(SkillRecord.asset_id == asset_id))
        return {r.skill_name: r for r in result.scalars().all()}


@pytest_asyncio.fixture
async def asset(database) -> str:
    """A resolved character with the full skill catalog seeded."""
    await create_asset()
    return ASSET_ID


# ============================================================================
# COLLABORATOR FAKES
# ============================================================================


class FakeIndex:
    """Read index whose root changes whenever ``bump_root`` is called."""

    def __init__(self, proof_depth: int = 14) -> None:
        self.proof_depth = proof_depth
        self.root_version = 0
        self.proof_requests: List[str] = []
        self.missing: set = set()

    def bump_root(self) -> None:
        self.root_version += 1

    async def get_asset_proof(self, asset_id: str) -> Result[MerkleProof]:
        self.proof_requests.append(asset_id)
        if asset_id in self.missing:
            return NotFound(f"asset {asset_id} not found")
        return Ok(
            MerkleProof(
                asset_id=asset_id,
                root=f"root-{self.root_version}",
                proof=tuple(f"node-{self.root_version}-{i}" for i in range(self.proof_depth)),
                data_hash="data-hash",
                creator_hash="creator-hash",
                leaf_index=7,
                tree_id="tree-1",
            )
        )


class FakeLedger:
    """
    Ledger that accepts a submission only when it was built against the
    current root of ``index``. Scripted responses take precedence.
    """

    def __init__(self, index: FakeIndex) -> None:
        self.index = index
        self.submissions: List[Dict[str, Any]] = []
        self.submit_script: List[Result[SubmitReceipt]] = []
        self.status_script: List[Result[TransactionStatus]] = []
        self.on_submit: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None

    async def submit_update(self, body: Dict[str, Any]) -> Result[SubmitReceipt]:
        self.submissions.append(body)
        if self.on_submit is not None:
            await self.on_submit(body)
        if self.submit_script:
            return self.submit_script.pop(0)
        if body["transaction"]["root"] != f"root-{self.index.root_version}":
            return Stale("stale_root")
        return Ok(SubmitReceipt(signature=f"sig-{len(self.submissions)}"))

    async def get_transaction_status(self, signature: str) -> Result[TransactionStatus]:
        if self.status_script:
            return self.status_script.pop(0)
        return Ok(TransactionStatus(status="confirmed"))


class FakeContentStore:
    def __init__(self) -> None:
        self.blobs: List[bytes] = []

    async def upload(self, data: bytes, content_type: str = "application/json") -> Result[str]:
        self.blobs.append(data)
        return Ok(f"https://content.test/blobs/{len(self.blobs)}")


class FakeThrottle:
    def __init__(self, allow: bool = True) -> None:
        self.allow = allow
        self.keys: List[str] = []

    async def acquire(self, key: str, timeout: Optional[float] = None) -> bool:
        self.keys.append(key)
        return self.allow


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture
def fake_ledger(fake_index) -> FakeLedger:
    return FakeLedger(fake_index)


@pytest.fixture
def fake_content_store() -> FakeContentStore:
    return FakeContentStore()


@pytest.fixture
def fake_throttle() -> FakeThrottle:
    return FakeThrottle()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def protocol_settings() -> ProtocolSettings:
    return ProtocolSettings(
        max_tx_bytes=1232,
        fixed_overhead_bytes=400,
        canopy_depth=0,
        stale_max_attempts=3,
        stale_backoff_ms=10,
        stale_jitter_ms=5,
        confirm_timeout_seconds=5.0,
        confirm_poll_interval_seconds=0.0,
        throttle_timeout_seconds=1.0,
    )


@pytest.fixture
def update_context(
    fake_index, fake_ledger, fake_content_store, fake_throttle, protocol_settings
) -> UpdateContext:
    return UpdateContext(
        signer=Signer.generate(),
        ledger=fake_ledger,
        index=fake_index,
        content_store=fake_content_store,
        throttle=fake_throttle,
        settings=protocol_settings,
        builder=MetadataBuilder(MetadataSettings(initial_detail=DetailLevel.DIRTY, version="2.0.0")),
    )


def with_settings(context: UpdateContext, **changes: Any) -> UpdateContext:
    return replace(context, settings=replace(context.settings, **changes))
