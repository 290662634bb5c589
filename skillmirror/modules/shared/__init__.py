"""
SkillMirror Shared Module

Purpose
-------
Domain-level foundations for all feature modules:
- Domain exceptions and error handling helpers
- Base service and repository patterns
- Skill catalog constants and progression formulas

Usage
-----
    from skillmirror.modules.shared import (
        BaseService,
        BaseRepository,
        ValidationError,
        level_from_experience,
    )
"""

from __future__ import annotations

# Base patterns
from .base_repository import BaseRepository
from .base_service import BaseService

# Domain exceptions
from .exceptions import (
    DuplicateAwardError,
    ErrorSeverity,
    ExhaustedRetriesError,
    NotFoundError,
    PayloadTooLargeError,
    SkillMirrorDomainException,
    StaleProofError,
    TransientNetworkError,
    UnresolvedAssetError,
    ValidationError,
    get_error_severity,
    is_transient_error,
    should_alert,
)

# Domain constants
from .constants import (
    COMBAT_SKILLS,
    MAX_LEVEL,
    MIN_LEVEL,
    SKILL_NAMES,
)

# Formulas
from .formulas import (
    XP_TABLE,
    combat_level,
    experience_for_level,
    level_from_experience,
    progress_pct,
    total_level,
)

__all__ = [
    # Base patterns
    "BaseRepository",
    "BaseService",
    # Exceptions
    "SkillMirrorDomainException",
    "ErrorSeverity",
    "ValidationError",
    "NotFoundError",
    "TransientNetworkError",
    "StaleProofError",
    "PayloadTooLargeError",
    "DuplicateAwardError",
    "UnresolvedAssetError",
    "ExhaustedRetriesError",
    "is_transient_error",
    "get_error_severity",
    "should_alert",
    # Constants
    "COMBAT_SKILLS",
    "MAX_LEVEL",
    "MIN_LEVEL",
    "SKILL_NAMES",
    # Formulas
    "XP_TABLE",
    "combat_level",
    "experience_for_level",
    "level_from_experience",
    "progress_pct",
    "total_level",
]
