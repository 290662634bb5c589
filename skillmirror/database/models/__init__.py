"""
Database Models Package
========================

SQLAlchemy ORM models for SkillMirror. Schema only; no business logic.

- CharacterAsset: character identity, aggregates and mirror/task state
- SkillRecord: experience and level per (asset, skill)
- XPAwardEvent: idempotency guard and audit trail for awards
"""

from skillmirror.core.database.base import Base

from .character_asset import CharacterAsset
from .skill_record import SkillRecord
from .xp_award_event import XPAwardEvent

__all__ = [
    "Base",
    "CharacterAsset",
    "SkillRecord",
    "XPAwardEvent",
]
