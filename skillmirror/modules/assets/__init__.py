"""
Assets module: character rows and on-chain asset id resolution.
"""

from .identifiers import is_plausible_asset_id
from .repository import CharacterAssetRepository
from .resolver import AssetResolver, ResolverSettings

__all__ = [
    "AssetResolver",
    "CharacterAssetRepository",
    "ResolverSettings",
    "is_plausible_asset_id",
]
