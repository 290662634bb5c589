"""
Skill Ledger Service
====================

Purpose
-------
Authoritative experience and level store. Applies experience awards
idempotently, keeps the per-asset aggregates current and flags the asset
for the on-chain mirror.

Domain
------
- ``apply_experience``: one effective award per idempotency key
- ``get_skills``: level, experience and progress for every skill
- ``get_asset_status``: resolution and mirror state by asset id or receipt

Transaction Model
-----------------
One award is one transaction:

1. Lock the (asset, skill) row (``SELECT ... FOR UPDATE``)
2. Insert the award event and flush (unique idempotency key)
3. Update experience and level, mark the skill dirty
4. Lock the asset row, bump ``state_version`` once, mark pending
5. Recompute combat and total level from all skill rows

Lock order is skill row then asset row, the same order the on-chain commit
uses, so awards and commits never deadlock. Awards to different skills of
the same asset only contend on the short asset-row step.

A duplicate key surfaces either on the fast-path lookup or as a unique
violation on flush; both paths return the stored result of the original
award with ``duplicate=True``.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from skillmirror.core.config.config import Config
from skillmirror.core.database.base import utcnow
from skillmirror.core.database.retry_policy import DatabaseRetryPolicy
from skillmirror.core.database.service import DatabaseService
from skillmirror.core.logging.logger import LogContext, get_logger
from skillmirror.database.models import CharacterAsset, SkillRecord, XPAwardEvent
from skillmirror.modules.assets.repository import CharacterAssetRepository
from skillmirror.modules.progression.repository import (
    SkillRecordRepository,
    XPAwardEventRepository,
)
from skillmirror.modules.shared.base_service import BaseService
from skillmirror.modules.shared.constants import SKILL_NAMES
from skillmirror.modules.shared.exceptions import (
    DuplicateAwardError,
    NotFoundError,
    ValidationError,
)
from skillmirror.modules.shared.formulas import (
    combat_level,
    level_from_experience,
    progress_pct,
    total_level,
)

if TYPE_CHECKING:
    from logging import Logger


# ============================================================================
# Result types
# ============================================================================


@dataclass(frozen=True)
class AwardResult:
    """Outcome of ``apply_experience``."""

    asset_id: str
    skill: str
    level: int
    experience: int
    leveled_up: bool
    progress_pct: float
    duplicate: bool = False


@dataclass(frozen=True)
class SkillView:
    skill: str
    level: int
    experience: int
    progress_pct: float
    pending: bool


@dataclass(frozen=True)
class AssetStatus:
    """Resolution and mirror state of one character."""

    resolved: bool
    pending: bool
    last_signature: Optional[str]
    asset_id: Optional[str] = None
    state_version: int = 0
    needs_attention: bool = False


# ============================================================================
# In-process serialization
# ============================================================================


class _KeyedLocks:
    """asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._refs: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, key: Tuple[str, str]) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ============================================================================
# SkillLedgerService
# ============================================================================


class SkillLedgerService(BaseService):
    """
    Service for applying experience and reading skill state.

    Public Methods
    --------------
    - apply_experience() -> Apply one award idempotently
    - get_skills() -> All skills of a character
    - get_asset_status() -> Resolution / mirror status by asset id or receipt
    """

    def __init__(
        self,
        config: type[Config] = Config,
        logger: Optional[Logger] = None,
        retry_policy: Optional[DatabaseRetryPolicy] = None,
    ) -> None:
        super().__init__(config, logger or get_logger(__name__))
        self._retry = retry_policy or DatabaseRetryPolicy.from_config()
        self._max_gain = int(self.get_config("MAX_XP_GAIN_PER_AWARD", 10_000))
        self._locks = _KeyedLocks()

        self._assets = CharacterAssetRepository(
            CharacterAsset, get_logger(f"{__name__}.CharacterAssetRepository")
        )
        self._skills = SkillRecordRepository(
            SkillRecord, get_logger(f"{__name__}.SkillRecordRepository")
        )
        self._events = XPAwardEventRepository(
            XPAwardEvent, get_logger(f"{__name__}.XPAwardEventRepository")
        )

    # ========================================================================
    # PUBLIC API - Write Operations
    # ========================================================================

    async def apply_experience(
        self,
        asset_id: str,
        skill: str,
        idempotency_key: str,
        gain: int,
    ) -> AwardResult:
        """
        Apply ``gain`` experience to ``skill`` of ``asset_id``.

        Repeating an ``idempotency_key`` returns the original result with
        ``duplicate=True`` and changes nothing.

        Raises:
            ValidationError: Unknown skill, non-positive gain, gain above
                ``MAX_XP_GAIN_PER_AWARD``, or malformed identifiers
            NotFoundError: No character is bound to ``asset_id``

        Example:
            >>> result = await ledger.apply_experience(asset_id, "mining", "quest-42", 85)
            >>> result.level, result.leveled_up
            (2, True)
        """
        asset_id = self.validate_non_empty(asset_id, "asset_id", max_length=64)
        idempotency_key = self.validate_non_empty(idempotency_key, "idempotency_key")
        skill = self._validate_skill(skill)
        self.validate_positive_int(gain, "gain")
        if gain > self._max_gain:
            raise ValidationError(
                "gain",
                f"gain must be at most {self._max_gain} per award, got {gain}",
            )

        with LogContext(asset_id=asset_id, skill=skill, operation="apply_experience"):
            prior = await self._find_prior(idempotency_key)
            if prior is not None:
                return self._duplicate_result(prior, asset_id, skill, gain)

            try:
                async with self._locks.hold((asset_id, skill)):
                    result = await self._retry.execute(
                        lambda: self._apply_once(asset_id, skill, idempotency_key, gain),
                        operation_name="ledger.apply_experience",
                        context={"asset_id": asset_id, "skill": skill},
                    )
            except DuplicateAwardError:
                prior = await self._find_prior(idempotency_key)
                if prior is None:
                    raise
                return self._duplicate_result(prior, asset_id, skill, gain)

            self.log.info(
                "Experience applied",
                extra={
                    "asset_id": asset_id,
                    "skill": skill,
                    "gain": gain,
                    "experience": result.experience,
                    "level": result.level,
                    "leveled_up": result.leveled_up,
                },
            )
            return result

    async def _apply_once(
        self,
        asset_id: str,
        skill: str,
        idempotency_key: str,
        gain: int,
    ) -> AwardResult:
        async with DatabaseService.get_transaction() as session:
            record = await self._skills.get_for_update(session, (asset_id, skill))
            if record is None:
                if await self._assets.get_by_asset_id(session, asset_id) is None:
                    raise NotFoundError("CharacterAsset", asset_id)
                await self._skills.seed(session, asset_id, [skill])
                record = await self._skills.get_for_update(session, (asset_id, skill))
                if record is None:
                    raise NotFoundError("SkillRecord", f"{asset_id}/{skill}")

            previous_level = record.level
            experience = record.experience + gain
            level = level_from_experience(experience)
            leveled_up = level > previous_level

            self._events.add(
                session,
                XPAwardEvent(
                    idempotency_key=idempotency_key,
                    asset_id=asset_id,
                    skill_name=skill,
                    experience_gain=gain,
                    resulting_experience=experience,
                    resulting_level=level,
                    leveled_up=leveled_up,
                ),
            )
            try:
                await self._events.flush(session)
            except IntegrityError as exc:
                raise DuplicateAwardError(idempotency_key) from exc

            now = utcnow()
            record.experience = experience
            record.level = level
            record.pending_onchain_update = True
            record.updated_at = now

            asset = await self._assets.get_by_asset_id(session, asset_id, for_update=True)
            if asset is None:
                raise NotFoundError("CharacterAsset", asset_id)
            self._mark_mutated(asset, now)

            records = await self._skills.for_asset(session, asset_id)
            levels = {r.skill_name: r.level for r in records}
            asset.combat_level = combat_level(levels)
            asset.total_level = total_level(levels)

            return AwardResult(
                asset_id=asset_id,
                skill=skill,
                level=level,
                experience=experience,
                leveled_up=leveled_up,
                progress_pct=progress_pct(experience),
            )

    @staticmethod
    def _mark_mutated(asset: CharacterAsset, now: datetime) -> None:
        asset.state_version += 1
        if not asset.pending_onchain_update:
            asset.pending_onchain_update = True
            asset.pending_since = now
        asset.updated_at = now

    # ========================================================================
    # PUBLIC API - Read Operations
    # ========================================================================

    async def get_skills(self, asset_id: str) -> List[SkillView]:
        """
        Every catalog skill of the character, in catalog order.

        Raises:
            NotFoundError: No character is bound to ``asset_id``
        """
        async with DatabaseService.get_session() as session:
            if await self._assets.get_by_asset_id(session, asset_id) is None:
                raise NotFoundError("CharacterAsset", asset_id)
            records = {r.skill_name: r for r in await self._skills.for_asset(session, asset_id)}

        views = []
        for skill in SKILL_NAMES:
            record = records.get(skill)
            experience = record.experience if record else 0
            views.append(
                SkillView(
                    skill=skill,
                    level=level_from_experience(experience),
                    experience=experience,
                    progress_pct=progress_pct(experience),
                    pending=bool(record and record.pending_onchain_update),
                )
            )
        return views

    async def get_asset_status(self, key: str) -> AssetStatus:
        """
        Status by on-chain asset id or by creation receipt.

        Raises:
            NotFoundError: Neither an asset id nor a receipt matches ``key``
        """
        key = self.validate_non_empty(key, "key")
        async with DatabaseService.get_session() as session:
            asset = await self._assets.get_by_key(session, key)
            if asset is None:
                raise NotFoundError("CharacterAsset", key)

            return AssetStatus(
                resolved=asset.asset_id is not None,
                pending=asset.pending_onchain_update,
                last_signature=asset.last_committed_signature,
                asset_id=asset.asset_id,
                state_version=asset.state_version,
                needs_attention=asset.needs_attention,
            )

    # ========================================================================
    # Helpers
    # ========================================================================

    def _validate_skill(self, skill: str) -> str:
        normalized = skill.strip().lower() if isinstance(skill, str) else ""
        if normalized not in SKILL_NAMES:
            raise ValidationError("skill", f"unknown skill {skill!r}")
        return normalized

    async def _find_prior(self, idempotency_key: str) -> Optional[XPAwardEvent]:
        async with DatabaseService.get_session() as session:
            return await self._events.find_by_key(session, idempotency_key)

    def _duplicate_result(
        self,
        event: XPAwardEvent,
        asset_id: str,
        skill: str,
        gain: int,
    ) -> AwardResult:
        if (event.asset_id, event.skill_name, event.experience_gain) != (asset_id, skill, gain):
            self.log.warning(
                "Idempotency key reused with a different award; returning the original",
                extra={
                    "idempotency_key": event.idempotency_key,
                    "original_asset_id": event.asset_id,
                    "original_skill": event.skill_name,
                    "original_gain": event.experience_gain,
                    "gain": gain,
                },
            )
        else:
            self.log.info(
                "Duplicate award delivery; returning original result",
                extra={"idempotency_key": event.idempotency_key},
            )

        return AwardResult(
            asset_id=event.asset_id,
            skill=event.skill_name,
            level=event.resulting_level,
            experience=event.resulting_experience,
            leveled_up=event.leveled_up,
            progress_pct=progress_pct(event.resulting_experience),
            duplicate=True,
        )
