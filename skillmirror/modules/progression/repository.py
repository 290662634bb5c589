"""
Skill ledger repositories: skill rows and award events.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from skillmirror.database.models import SkillRecord, XPAwardEvent
from skillmirror.modules.shared.base_repository import BaseRepository
from skillmirror.modules.shared.constants import MIN_LEVEL, SKILL_NAMES


class SkillRecordRepository(BaseRepository[SkillRecord]):
    """Repository for SkillRecord model."""

    async def for_asset(
        self,
        session: AsyncSession,
        asset_id: str,
        for_update: bool = False,
    ) -> List[SkillRecord]:
        """All skill rows of an asset, in skill-name order (the lock order)."""
        return await self.find_many_where(
            session,
            SkillRecord.asset_id == asset_id,
            order_by=[SkillRecord.skill_name],
            for_update=for_update,
        )

    async def seed(
        self,
        session: AsyncSession,
        asset_id: str,
        skills: Iterable[str] = SKILL_NAMES,
    ) -> None:
        """
        Insert level-1 rows for ``skills`` that do not exist yet.

        Uses ``INSERT ... ON CONFLICT DO NOTHING`` so concurrent seeding of
        the same asset is harmless.
        """
        rows = [
            {
                "asset_id": asset_id,
                "skill_name": skill,
                "experience": 0,
                "level": MIN_LEVEL,
                "pending_onchain_update": False,
            }
            for skill in skills
        ]
        if not rows:
            return

        dialect = session.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(SkillRecord).values(rows).on_conflict_do_nothing(
            index_elements=["asset_id", "skill_name"]
        )
        await session.execute(stmt)

        self.log.debug(
            "Repository.seed: SkillRecord",
            extra={"asset_id": asset_id, "count": len(rows)},
        )


class XPAwardEventRepository(BaseRepository[XPAwardEvent]):
    """Repository for XPAwardEvent model."""

    async def find_by_key(self, session: AsyncSession, idempotency_key: str) -> Optional[XPAwardEvent]:
        return await self.find_one_where(
            session,
            XPAwardEvent.idempotency_key == idempotency_key,
        )
