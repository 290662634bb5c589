"""
Progression module: the authoritative skill ledger.
"""

from .repository import SkillRecordRepository, XPAwardEventRepository
from .service import AssetStatus, AwardResult, SkillLedgerService, SkillView

__all__ = [
    "SkillLedgerService",
    "AwardResult",
    "AssetStatus",
    "SkillView",
    "SkillRecordRepository",
    "XPAwardEventRepository",
]
