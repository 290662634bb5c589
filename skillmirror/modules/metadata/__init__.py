"""
Metadata module: deterministic, size-bounded rendering of character state.
"""

from .builder import (
    AssetSnapshot,
    DetailLevel,
    MetadataBuilder,
    MetadataPayload,
    MetadataSettings,
    SkillSnapshot,
    canonical_json,
)

__all__ = [
    "AssetSnapshot",
    "DetailLevel",
    "MetadataBuilder",
    "MetadataPayload",
    "MetadataSettings",
    "SkillSnapshot",
    "canonical_json",
]
