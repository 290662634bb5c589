"""
CharacterAsset repository.

Data access for character rows: lookups by on-chain id or creation receipt,
the one-shot asset id binding, and the task queries used by the
reconciliation loop. No business rules live here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Set

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from skillmirror.core.database.base import utcnow
from skillmirror.database.models import CharacterAsset
from skillmirror.modules.shared.base_repository import BaseRepository


class CharacterAssetRepository(BaseRepository[CharacterAsset]):
    """Repository for CharacterAsset model."""

    async def get_by_asset_id(
        self,
        session: AsyncSession,
        asset_id: str,
        for_update: bool = False,
    ) -> Optional[CharacterAsset]:
        return await self.find_one_where(
            session,
            CharacterAsset.asset_id == asset_id,
            for_update=for_update,
        )

    async def get_by_key(self, session: AsyncSession, key: str) -> Optional[CharacterAsset]:
        """Match on the on-chain asset id or on the creation receipt."""
        return await self.find_one_where(
            session,
            or_(CharacterAsset.asset_id == key, CharacterAsset.creation_signature == key),
        )

    async def get_by_creation_signature(
        self, session: AsyncSession, creation_signature: str
    ) -> Optional[CharacterAsset]:
        return await self.find_one_where(
            session,
            CharacterAsset.creation_signature == creation_signature,
        )

    async def bind_asset_id(self, session: AsyncSession, pk: int, asset_id: str) -> bool:
        """
        Set ``asset_id`` only if it is still null.

        Returns True if this call performed the binding.
        """
        result = await session.execute(
            update(CharacterAsset)
            .where(CharacterAsset.id == pk, CharacterAsset.asset_id.is_(None))
            .values(asset_id=asset_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        bound = result.rowcount == 1
        self.log.debug(
            "Repository.bind_asset_id: CharacterAsset",
            extra={"id": pk, "asset_id": asset_id, "bound": bound},
        )
        return bound

    async def bound_asset_ids(self, session: AsyncSession, candidates: Iterable[str]) -> Set[str]:
        """Subset of ``candidates`` already bound to some character."""
        candidates = list(candidates)
        if not candidates:
            return set()
        result = await session.execute(
            select(CharacterAsset.asset_id).where(CharacterAsset.asset_id.in_(candidates))
        )
        return {row for row in result.scalars().all() if row is not None}

    async def list_unresolved(self, session: AsyncSession, limit: int) -> List[CharacterAsset]:
        return await self.find_many_where(
            session,
            CharacterAsset.asset_id.is_(None),
            order_by=[CharacterAsset.created_at, CharacterAsset.id],
            limit=limit,
        )

    async def find_claimable(
        self,
        session: AsyncSession,
        now: datetime,
        limit: int,
        exclude: Iterable[str] = (),
    ) -> List[CharacterAsset]:
        """
        Pending, resolved, unflagged assets whose backoff and lease have both
        expired, oldest pending first. Rows are locked; rows locked by another
        worker are skipped.
        """
        conditions = [
            CharacterAsset.pending_onchain_update.is_(True),
            CharacterAsset.asset_id.is_not(None),
            CharacterAsset.needs_attention.is_(False),
            or_(CharacterAsset.next_retry_at.is_(None), CharacterAsset.next_retry_at <= now),
            or_(CharacterAsset.lease_expires_at.is_(None), CharacterAsset.lease_expires_at <= now),
        ]
        excluded = list(exclude)
        if excluded:
            conditions.append(CharacterAsset.asset_id.not_in(excluded))

        stmt = (
            select(CharacterAsset)
            .where(*conditions)
            .order_by(CharacterAsset.pending_since, CharacterAsset.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        assets = list(result.scalars().all())

        self.log.debug(
            "Repository.find_claimable: CharacterAsset",
            extra={"found_count": len(assets), "limit": limit, "excluded": len(excluded)},
        )
        return assets

    async def list_attention(self, session: AsyncSession) -> List[CharacterAsset]:
        return await self.find_many_where(
            session,
            CharacterAsset.needs_attention.is_(True),
            order_by=[CharacterAsset.pending_since, CharacterAsset.id],
        )
