"""
SkillMirror Progression Formulas

Purpose
-------
Pure calculation functions for character progression: the experience
curve, progress through a level and the aggregate combat and total levels.

Design Notes
------------
All formulas:
- Accept parameters explicitly
- Have no infrastructure dependencies (no database, no config)
- Are deterministic

The experience curve is the classic RuneScape table::

    xp(L) = floor( sum_{l=1}^{L-1} floor(l + 300 * 2^(l/7)) / 4 )

so level 2 needs 83 xp and level 99 needs 13,034,431 xp. The table is
computed once at import; level lookup is a binary search over it.

Usage
-----
    from skillmirror.modules.shared.formulas import level_from_experience

    level_from_experience(85)     # 2
    progress_pct(85)              # 2.2
"""

from __future__ import annotations

import math
from bisect import bisect_right
from typing import Mapping, Tuple

from skillmirror.modules.shared.constants import MAX_LEVEL, MIN_LEVEL, SKILL_NAMES


def _build_xp_table(max_level: int) -> Tuple[int, ...]:
    thresholds = [0]
    points = 0
    for level in range(1, max_level):
        points += math.floor(level + 300 * 2 ** (level / 7))
        thresholds.append(points // 4)
    return tuple(thresholds)


# XP_TABLE[L - 1] is the experience required for level L.
XP_TABLE: Tuple[int, ...] = _build_xp_table(MAX_LEVEL)

MAX_EXPERIENCE_FOR_MAX_LEVEL: int = XP_TABLE[-1]


def experience_for_level(level: int) -> int:
    """
    Total experience required to reach ``level``.

    Example:
        >>> experience_for_level(2)
        83
        >>> experience_for_level(99)
        13034431

    Raises:
        ValueError: If level is outside 1..99
    """
    if not MIN_LEVEL <= level <= MAX_LEVEL:
        raise ValueError(f"level must be between {MIN_LEVEL} and {MAX_LEVEL}, got {level}")
    return XP_TABLE[level - 1]


def level_from_experience(experience: int) -> int:
    """
    Level for a total experience amount. Monotonic non-decreasing.

    Example:
        >>> level_from_experience(82)
        1
        >>> level_from_experience(83)
        2
    """
    if experience <= 0:
        return MIN_LEVEL
    return min(bisect_right(XP_TABLE, experience), MAX_LEVEL)


def progress_pct(experience: int) -> float:
    """
    Percentage through the current level, clamped to 0..100.

    Always 100.0 at max level.
    """
    level = level_from_experience(experience)
    if level >= MAX_LEVEL:
        return 100.0

    floor_xp = XP_TABLE[level - 1]
    next_xp = XP_TABLE[level]
    pct = (experience - floor_xp) / (next_xp - floor_xp) * 100.0
    return round(max(0.0, min(100.0, pct)), 2)


def combat_level(levels: Mapping[str, int]) -> int:
    """
    Combat level from skill levels; missing skills count as level 1.

    ``floor(max(melee, magic, ranged) + vitality * 0.25)`` where
    melee is ``(attack + strength + defense) / 3``, magic is
    ``(magic * 1.5 + defense) / 2.5`` and ranged is
    ``(projectiles + defense) / 2``.
    """

    def lvl(skill: str) -> int:
        return int(levels.get(skill, MIN_LEVEL))

    defense = lvl("defense")
    melee = (lvl("attack") + lvl("strength") + defense) / 3
    magic = (lvl("magic") * 1.5 + defense) / 2.5
    ranged = (lvl("projectiles") + defense) / 2
    return math.floor(max(melee, magic, ranged) + lvl("vitality") * 0.25)


def total_level(levels: Mapping[str, int]) -> int:
    """Sum of every catalog skill level; missing skills count as level 1."""
    return sum(int(levels.get(skill, MIN_LEVEL)) for skill in SKILL_NAMES)
