"""Embed factory and shared footer logic.

All embeds the bot posts (player updates, maintenance notices) go through
``create_scapebot_embed`` so colour and footer stay consistent.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

import discord

from ..constants import ACTIVITIES, BOSSES, CATEGORIES, CLUES, SKILLS
from .formatting import pluralize

# NOTE:
# This module is imported by the updater and the ledger. Avoid importing
# bot.app here, otherwise you can create circular imports.
BOT_SETTINGS: dict = {}

SCAPE_BLUE = discord.Color.from_rgb(96, 96, 255)

CATEGORY_COLORS: Dict[str, discord.Color] = {
    SKILLS: discord.Color.from_rgb(96, 96, 255),
    BOSSES: discord.Color.from_rgb(158, 34, 91),
    CLUES: discord.Color.from_rgb(250, 200, 60),
    ACTIVITIES: discord.Color.from_rgb(60, 160, 110),
}

CATEGORY_TITLES: Dict[str, str] = {
    SKILLS: "Levels",
    BOSSES: "Boss kills",
    CLUES: "Clue scrolls",
    ACTIVITIES: "Activities",
}


def set_bot_settings(settings: Optional[dict]) -> None:
    """Set the global bot settings cache used by embed helpers."""
    global BOT_SETTINGS
    BOT_SETTINGS = dict(settings or {})


def apply_scapebot_footer(embed: discord.Embed, *, bot_settings: Optional[dict] = None) -> None:
    settings = bot_settings or BOT_SETTINGS
    name = settings.get("name", "ScapeBot")
    version = settings.get("version", "v1.0.0")
    embed.set_footer(text=f"{name} {version}")


def create_scapebot_embed(
    title: str,
    description: str = "",
    *,
    color: Optional[discord.Color] = None,
    bot_settings: Optional[dict] = None,
    url: str | None = None,
) -> discord.Embed:
    """Create an embed with ScapeBot defaults and footer applied."""
    if color is None:
        color = SCAPE_BLUE
    embed = discord.Embed(title=title, description=description, color=color, url=url)
    apply_scapebot_footer(embed, bot_settings=bot_settings)
    return embed


def _describe_update(category: str, key: str, delta: int, new_value: int) -> str:
    if category == SKILLS:
        gained = "a level" if delta == 1 else f"**{delta}** levels"
        return f"{gained} in **{key}**, now level **{new_value}**"
    if category == BOSSES:
        if new_value == 1:
            return f"**{key}** for the first time!"
        return f"**{key}** {'again' if delta == 1 else f'**{delta}** more times'}, now at **{new_value:,}** kills"
    if category == CLUES:
        return f"{pluralize(delta, f'{key} clue')} completed, now at **{new_value:,}**"
    return f"**{key}** up by **{delta:,}**, now at **{new_value:,}**"


def build_player_update_embeds(display_name: str, updates: Iterable) -> List[discord.Embed]:
    """One embed per category for a single player's batch of pending updates."""
    by_category: Dict[str, list] = {}
    for u in updates:
        by_category.setdefault(u.category, []).append(u)

    embeds: List[discord.Embed] = []
    for category in CATEGORIES:
        rows = sorted(by_category.get(category, []), key=lambda u: u.key)
        if not rows:
            continue
        lines = [_describe_update(category, u.key, u.new_value - u.base_value, u.new_value) for u in rows]
        embeds.append(
            create_scapebot_embed(
                f"{display_name} – {CATEGORY_TITLES[category]}",
                "\n".join(lines),
                color=CATEGORY_COLORS[category],
            )
        )
    return embeds


def build_notice_embed(title: str, description: str) -> discord.Embed:
    return create_scapebot_embed(title, description, color=discord.Color.from_rgb(111, 111, 111))
