"""
Character Asset Model
=====================

One row per player character. The relational row is the authoritative copy
of the character; the on-chain compressed asset mirrors it.

Schema-only representation of:
- Identity (surrogate id, on-chain asset_id once resolved, creation receipt)
- Aggregates (combat_level, total_level)
- Mirror bookkeeping (state_version, pending flag, last signature and URI)
- Reconciliation task state (attempts, backoff, lease, operator flag)

All behavior lives in the progression, onchain and reconciliation modules.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from skillmirror.core.database.base import Base, IdMixin, TimestampMixin, UTCDateTime


class CharacterAsset(Base, IdMixin, TimestampMixin):
    """
    Player character and its on-chain mirror state.

    ``asset_id`` is null until the resolver binds it and never changes
    afterwards. ``state_version`` increments once per committed off-chain
    mutation; the pending flag is cleared only by a confirmed update whose
    observed version still matches.
    """

    # ========================================================================
    # TABLE CONFIGURATION
    # ========================================================================

    __tablename__ = "character_assets"
    __table_args__ = (
        Index("ix_character_assets_asset_id", "asset_id", unique=True),
        Index("ix_character_assets_creation_signature", "creation_signature", unique=True),
        Index("ix_character_assets_pending", "pending_onchain_update", "pending_since"),
        Index("ix_character_assets_owner", "owner_address"),
        CheckConstraint("state_version >= 0", name="state_version_non_negative"),
        CheckConstraint("onchain_attempt_count >= 0", name="attempts_non_negative"),
    )

    # ========================================================================
    # IDENTITY
    # ========================================================================

    asset_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        doc="On-chain asset identifier; null until resolved, immutable once set",
    )

    creation_signature: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        doc="Submission receipt of the creation transaction",
    )

    name: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        doc="Character display name",
    )

    owner_address: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        doc="Wallet address that owns the asset",
    )

    image_uri: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        default=None,
        doc="Portrait URI in the content store",
    )

    # ========================================================================
    # AGGREGATES
    # ========================================================================

    combat_level: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        doc="Derived combat level",
    )

    total_level: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        doc="Sum of all skill levels",
    )

    # ========================================================================
    # MIRROR STATE
    # ========================================================================

    state_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        doc="Monotonic counter, +1 per committed off-chain mutation",
    )

    pending_onchain_update: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="True while the on-chain mirror lags the relational state",
    )

    pending_since: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
        default=None,
        doc="When the asset first became pending (oldest-first ordering)",
    )

    last_committed_signature: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        default=None,
        doc="Signature of the last confirmed on-chain update",
    )

    last_metadata_uri: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        default=None,
        doc="Content-store URI of the last confirmed metadata document",
    )

    last_confirmed_state_version: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        default=None,
        doc="state_version mirrored by the last confirmed update that cleared pending",
    )

    # ========================================================================
    # RECONCILIATION TASK STATE
    # ========================================================================

    onchain_attempt_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        doc="Consecutive failed update attempts",
    )

    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
        default=None,
        doc="Earliest time the reconciliation loop may retry",
    )

    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
        default=None,
        doc="Claim lease held by a worker running the update protocol",
    )

    needs_attention: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Escalated to operators; skipped by the loop until requeued",
    )

    last_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        default=None,
        doc="Last update failure, for operator visibility",
    )

    def __repr__(self) -> str:
        return (
            f"<CharacterAsset(id={self.id}, asset_id={self.asset_id!r}, "
            f"state_version={self.state_version}, pending={self.pending_onchain_update})>"
        )
