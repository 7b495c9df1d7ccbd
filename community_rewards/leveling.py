"""Leveling calculator: pure functions mapping XP to level and back.

Level is a cache; XP is the truth. ``level_for_xp`` must stay exactly
``floor(sqrt(xp / 100)) + 1`` because achievements and leaderboards assume
level can be re-derived from XP at any time.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import LevelingConfig


XP_PER_LEVEL_UNIT = 100


def level_for_xp(xp: int) -> int:
    """Level reached with *xp* total experience (always >= 1)."""
    if xp < 0:
        raise ValueError("xp must be non-negative")
    # floor(sqrt(floor(n))) == floor(sqrt(n)) for n >= 0, so this is exact
    return math.isqrt(xp // XP_PER_LEVEL_UNIT) + 1


def xp_threshold(level: int) -> int:
    """Total XP required to *reach* ``level``."""
    if level < 1:
        raise ValueError("level must be >= 1")
    return (level - 1) ** 2 * XP_PER_LEVEL_UNIT


@dataclass(frozen=True)
class LevelProgress:
    level: int
    xp: int
    xp_into_level: int
    xp_needed: int
    xp_for_next: int
    percent: int


def level_progress(xp: int) -> LevelProgress:
    """Progress from the current level threshold toward the next one."""
    level = level_for_xp(xp)
    current = xp_threshold(level)
    nxt = xp_threshold(level + 1)
    into = xp - current
    needed = nxt - current
    # Round half up, then clamp for display
    percent = math.floor(into * 100 / needed + 0.5)
    percent = max(0, min(100, percent))
    return LevelProgress(
        level=level,
        xp=xp,
        xp_into_level=into,
        xp_needed=needed,
        xp_for_next=nxt,
        percent=percent,
    )


def progress_bar(percent: int, width: int = 10) -> str:
    """Text bar like '▰▰▰▱▱▱▱▱▱▱' for a 0-100 percentage."""
    filled = max(0, min(width, round(percent * width / 100)))
    return "▰" * filled + "▱" * (width - filled)


@dataclass(frozen=True)
class LevelUpReward:
    level: int
    currency: int
    premium: int
    milestone: bool


def level_up_reward(new_level: int, config: LevelingConfig) -> LevelUpReward:
    """Reward for arriving at ``new_level``."""
    currency = new_level * config.currency_per_level
    premium = new_level // config.premium_every_levels if config.premium_every_levels > 0 else 0
    milestone = new_level in config.milestone_levels
    if milestone:
        currency += new_level * config.milestone_bonus_per_level
    return LevelUpReward(level=new_level, currency=currency, premium=premium, milestone=milestone)


def level_up_rewards(old_level: int, new_level: int, config: LevelingConfig) -> list[LevelUpReward]:
    """Rewards for every level crossed going from ``old_level`` to ``new_level``."""
    return [level_up_reward(lvl, config) for lvl in range(old_level + 1, new_level + 1)]
