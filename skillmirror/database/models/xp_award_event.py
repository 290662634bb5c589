"""
XPAwardEvent: append-only dedupe guard and audit trail for experience awards.
Schema only.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from skillmirror.core.database.base import Base, IdMixin, UTCDateTime, utcnow


class XPAwardEvent(Base, IdMixin):
    """
    One row per effective award.

    The unique ``idempotency_key`` is what guarantees at most one effective
    award per key; the ``resulting_*`` columns let a duplicate delivery
    return the original result unchanged.
    """

    __tablename__ = "xp_award_events"
    __table_args__ = (
        Index("ix_xp_award_events_idempotency_key", "idempotency_key", unique=True),
        Index("ix_xp_award_events_asset_skill", "asset_id", "skill_name"),
        CheckConstraint("experience_gain > 0", name="gain_positive"),
    )

    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)

    asset_id: Mapped[str] = mapped_column(String(64), nullable=False)

    skill_name: Mapped[str] = mapped_column(String(32), nullable=False)

    experience_gain: Mapped[int] = mapped_column(Integer, nullable=False)

    resulting_experience: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        doc="Skill experience right after this award",
    )

    resulting_level: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        doc="Skill level right after this award",
    )

    leveled_up: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )
