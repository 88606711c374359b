# ==========================================================
# ScapeBot – Tracking administration
#
# Everything the slash commands and guild events change goes through
# here so in-memory state and MySQL never drift apart:
#   - track / untrack players per guild
#   - tracking channel set / clear (setting one flushes pending rows)
#   - guild settings, with the skill threshold consistency rules
#   - guild removal and untracked player purges
#   - resume after a format-change pause
#   - state load at startup
# ==========================================================

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..constants import (
    CATEGORIES,
    DEFAULT_GUILD_SETTINGS,
    SKILL_BROADCAST_FIVE_THRESHOLD,
    SKILL_BROADCAST_ONE_THRESHOLD,
)
from ..errors import InvalidPlayerName
from ..logging_utils import GuildLoggerAdapter
from ..storage import DISABLED_PROPERTY
from ..updater import record_display_name
from .ledger import flush_pending_updates

logger = logging.getLogger("bot")
boot_logger = logging.getLogger("boot")

PLAYER_NAME_RE = re.compile(r"^[a-z0-9 _-]{1,12}$")


def normalize_player_name(raw: str) -> str:
    """Canonical rsn: trimmed, lowercased, inner whitespace collapsed."""
    rsn = " ".join((raw or "").split()).lower()
    if not PLAYER_NAME_RE.match(rsn):
        raise InvalidPlayerName(raw)
    return rsn


# ---------------- Players ----------------
async def track_player(*, state, storage, hiscores, guild_id: int, raw_rsn: str) -> Tuple[str, bool]:
    """Returns (rsn, added). ``added`` is False if the guild already tracks the player."""
    rsn = normalize_player_name(raw_rsn)
    lg = GuildLoggerAdapter(logger, guild_id)
    async with state.lock:
        if state.is_tracking_player(guild_id, rsn):
            return rsn, False
        state.add_tracked_player(guild_id, rsn)
        await storage.insert_tracked_player(guild_id, rsn)
    lg.info("Now tracking %s (%s tracked)", rsn, len(state.get_all_tracked_players(guild_id)))

    if hiscores is not None and not state.has_display_name(rsn):
        display_name = await hiscores.resolve_display_name(rsn)
        await record_display_name(state=state, storage=storage, rsn=rsn, display_name=display_name)
    return rsn, True


async def untrack_player(*, state, storage, guild_id: int, raw_rsn: str) -> Tuple[str, bool]:
    """Returns (rsn, removed)."""
    rsn = normalize_player_name(raw_rsn)
    async with state.lock:
        if not state.is_tracking_player(guild_id, rsn):
            return rsn, False

        untracked_everywhere = state.remove_tracked_player(guild_id, rsn)
        await storage.delete_tracked_player(guild_id, rsn)
        GuildLoggerAdapter(logger, guild_id).info("No longer tracking %s", rsn)

        if untracked_everywhere:
            await purge_untracked_players(storage=storage)
    return rsn, True


async def purge_untracked_players(*, storage) -> Dict[str, int]:
    deleted = await storage.purge_untracked_player_data()
    if deleted:
        logger.info("Purged data of untracked players: %s", deleted)
    return deleted


# ---------------- Channels ----------------
async def set_tracking_channel(*, state, storage, guild_id: int, channel) -> Dict[str, int]:
    async with state.lock:
        state.set_tracking_channel(guild_id, channel)
        await storage.update_tracking_channel(guild_id, channel.id)
    GuildLoggerAdapter(logger, guild_id).info("Tracking channel set to %s", channel.id)

    if state.is_disabled():
        return {}
    return await flush_pending_updates(state=state, storage=storage, guild_id=guild_id)


async def clear_tracking_channel(*, state, storage, guild_id: int) -> bool:
    async with state.lock:
        if not state.has_tracking_channel(guild_id):
            return False
        state.clear_tracking_channel(guild_id)
        await storage.delete_tracking_channel(guild_id)
    GuildLoggerAdapter(logger, guild_id).info("Tracking channel cleared; updates will be held")
    return True


# ---------------- Settings ----------------
async def set_guild_setting(*, state, storage, guild_id: int, setting: str, value: int) -> Dict[str, int]:
    """Write a guild setting plus whatever the skill thresholds need to stay consistent.

    The skill pair must satisfy ``one >= five`` and ``one == 0`` implies
    ``five == 0``. Returns every setting that was written.
    """
    if setting not in DEFAULT_GUILD_SETTINGS:
        raise ValueError(f"Unknown guild setting {setting!r}")
    value = int(value)
    if value < 0:
        raise ValueError(f"{setting} must not be negative")

    async with state.lock:
        changes: Dict[str, int] = {setting: value}
        one = state.get_guild_setting_with_default(guild_id, SKILL_BROADCAST_ONE_THRESHOLD)
        five = state.get_guild_setting_with_default(guild_id, SKILL_BROADCAST_FIVE_THRESHOLD)

        if setting == SKILL_BROADCAST_ONE_THRESHOLD:
            if value == 0:
                changes[SKILL_BROADCAST_FIVE_THRESHOLD] = 0
            elif five == 0:
                changes[SKILL_BROADCAST_FIVE_THRESHOLD] = 1
            elif value < five:
                changes[SKILL_BROADCAST_FIVE_THRESHOLD] = value
        elif setting == SKILL_BROADCAST_FIVE_THRESHOLD:
            if value > one:
                changes[SKILL_BROADCAST_ONE_THRESHOLD] = value

        for key, v in changes.items():
            state.set_guild_setting(guild_id, key, v)
            await storage.write_guild_setting(guild_id, key, v)

    GuildLoggerAdapter(logger, guild_id).info("Guild settings written: %s", changes)
    return changes


# ---------------- Guilds ----------------
async def remove_guild(*, state, storage, guild_id: int) -> List[str]:
    """Forget a guild that removed the bot. Returns players nobody tracks anymore."""
    async with state.lock:
        dropped = state.remove_guild(guild_id)
        deleted = await storage.purge_guild_data(guild_id)
        if dropped:
            await purge_untracked_players(storage=storage)
    GuildLoggerAdapter(logger, guild_id).info(
        "Guild removed (rows deleted=%s; players no longer tracked anywhere=%s)", deleted, len(dropped)
    )
    return dropped


async def resume_updates(*, state, storage) -> bool:
    async with state.lock:
        if not state.is_disabled():
            return False
        state.set_disabled(False)
        await storage.write_misc_property(DISABLED_PROPERTY, "0")
    logger.warning("Updates resumed by maintainer")
    return True


# ---------------- Startup ----------------
async def load_state(*, state, storage, resolve_channel: Callable[[int], Optional[Any]]) -> None:
    """Rebuild the in-memory state from MySQL. ``resolve_channel`` maps a channel id to a live channel (or None)."""
    tracked = await storage.fetch_all_tracked_players()
    for guild_id, players in tracked.items():
        for rsn in players:
            state.add_tracked_player(guild_id, rsn)

    for category in CATEGORIES:
        state.set_all_category(category, await storage.fetch_all_player_values(category))

    for guild_id, settings in (await storage.fetch_all_guild_settings()).items():
        for key, value in settings.items():
            state.set_guild_setting(guild_id, key, value)

    for guild_id, channel_id in (await storage.fetch_all_tracking_channels()).items():
        channel = resolve_channel(channel_id)
        if channel is None:
            GuildLoggerAdapter(boot_logger, guild_id).warning("Tracking channel %s could not be resolved", channel_id)
            state.add_problematic_guild(guild_id)
            continue
        state.set_tracking_channel(guild_id, channel)

    for rsn, on_hiscores in (await storage.fetch_all_hiscore_statuses()).items():
        state.set_player_hiscore_status(rsn, on_hiscores)
    for rsn, display_name in (await storage.fetch_all_display_names()).items():
        state.set_display_name(rsn, display_name)
    for rsn, when in (await storage.fetch_all_refresh_timestamps()).items():
        state.set_last_refresh(rsn, when)

    # Replayed so tier placement survives restarts
    for rsn, when in (await storage.fetch_all_activity_timestamps()).items():
        if state.is_player_tracked_in_any_guilds(rsn):
            state.mark_player_as_active(rsn, when)

    state.set_disabled((await storage.fetch_misc_property(DISABLED_PROPERTY)) == "1")
    state.set_valid(True)

    boot_logger.info("State loaded: %s", state.to_debug_string())
    boot_logger.info("Scheduler: %s", state.player_queue.get_duration_string())
    if state.is_disabled():
        boot_logger.warning("Updates are paused (hiscores format change); use /resume once fixed")
