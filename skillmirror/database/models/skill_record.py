"""
SkillRecord: experience and level per (asset, skill).
Schema only.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, CheckConstraint, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from skillmirror.core.database.base import Base, UTCDateTime, utcnow


class SkillRecord(Base):
    """
    Authoritative experience for one skill of one character.

    ``level`` is always recomputed from ``experience``; it is stored for
    reads and metadata rendering only.
    """

    __tablename__ = "skill_records"
    __table_args__ = (
        CheckConstraint("experience >= 0", name="experience_non_negative"),
        CheckConstraint("level >= 1 AND level <= 99", name="level_range"),
    )

    asset_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("character_assets.asset_id", ondelete="CASCADE"),
        primary_key=True,
    )

    skill_name: Mapped[str] = mapped_column(String(32), primary_key=True)

    experience: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        doc="Total experience; never decreases",
    )

    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    pending_onchain_update: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Changed since the last confirmed on-chain update",
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
