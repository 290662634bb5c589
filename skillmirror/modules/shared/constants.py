"""
SkillMirror Domain Constants

Purpose
-------
Domain-level constants for character progression: the skill catalog, level
bounds and the metadata vocabulary used on-chain.

IMPORTANT:
Infrastructure tunables (timeouts, batch sizes, rate limits) live in
``skillmirror.core.config.config.Config``.

Design Notes
------------
- Values are annotated with typing.Final to signal immutability
- Catalog order is significant: it is the attribute order of rendered
  metadata and the lock order for skill rows
"""

from __future__ import annotations

from typing import Final, Tuple

# ============================================================================
# SKILL CATALOG
# ============================================================================

COMBAT_SKILLS: Final[Tuple[str, ...]] = (
    "attack",
    "strength",
    "defense",
    "magic",
    "projectiles",
    "vitality",
)

GATHERING_SKILLS: Final[Tuple[str, ...]] = (
    "mining",
    "woodcutting",
    "fishing",
    "hunting",
)

ARTISAN_SKILLS: Final[Tuple[str, ...]] = (
    "smithing",
    "crafting",
    "cooking",
    "alchemy",
    "construction",
)

SPECIAL_SKILLS: Final[Tuple[str, ...]] = ("luck",)

SKILL_NAMES: Final[Tuple[str, ...]] = (
    COMBAT_SKILLS + GATHERING_SKILLS + ARTISAN_SKILLS + SPECIAL_SKILLS
)

# ============================================================================
# LEVELING
# ============================================================================

MIN_LEVEL: Final[int] = 1
MAX_LEVEL: Final[int] = 99

# ============================================================================
# METADATA VOCABULARY
# ============================================================================

METADATA_SYMBOL: Final[str] = "PLAYER"
METADATA_DESCRIPTION: Final[str] = (
    "A player character. Skill levels and experience are mirrored from the game "
    "server and updated as the character progresses."
)
