"""Broadcast milestone filter.

Evaluated per pending update at flush time, never when the diff is computed,
so relaxing a guild's settings later surfaces updates that were held back.
"""

from __future__ import annotations

from typing import Callable

from ..constants import (
    CATEGORY_INTERVAL_SETTINGS,
    SKILL_BROADCAST_FIVE_THRESHOLD,
    SKILL_BROADCAST_ONE_THRESHOLD,
    SKILLS,
)


def diff_passes_milestone(base: int, new: int, interval: int) -> bool:
    """True if going from ``base`` to ``new`` reaches or crosses a multiple of ``interval``.

    An interval of 0 means the category is disabled for the guild.
    """
    if interval <= 0:
        return False
    if new - base >= interval:
        return True
    return new > base and (new % interval) < (base % interval)


def get_skill_interval(new_level: int, one_threshold: int, five_threshold: int) -> int:
    """Interval to test a skill update against; 0 suppresses it."""
    if one_threshold == 0:
        return 0
    if new_level >= one_threshold:
        return 1
    if five_threshold == 0:
        return 0
    if new_level >= five_threshold:
        return 5
    return 10


def passes_guild_milestone(category: str, base: int, new: int, get_setting: Callable[[str], int]) -> bool:
    """Apply a guild's broadcast settings to one pending update.

    ``get_setting`` resolves a guild setting key to its configured value (or default).
    """
    if category == SKILLS:
        interval = get_skill_interval(
            new,
            get_setting(SKILL_BROADCAST_ONE_THRESHOLD),
            get_setting(SKILL_BROADCAST_FIVE_THRESHOLD),
        )
    else:
        interval = get_setting(CATEGORY_INTERVAL_SETTINGS[category])
    return diff_passes_milestone(base, new, interval)
