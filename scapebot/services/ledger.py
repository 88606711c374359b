"""Pending update ledger.

Every non-anomalous diff fans out into one row per (guild, metric). Rows stay
in MySQL until the guild has a channel to post them to and they pass the
guild's milestone filter, so updates survive restarts and guilds that have
not configured a channel yet.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping

from ..logging_utils import GuildLoggerAdapter, new_error_id
from ..utils.embeds import build_player_update_embeds
from .diff import resolve_value
from .milestones import passes_guild_milestone

logger = logging.getLogger("updater")


@dataclass(frozen=True)
class PendingUpdate:
    guild_id: int
    rsn: str
    category: str
    key: str
    base_value: int
    new_value: int

    @property
    def delta(self) -> int:
        return self.new_value - self.base_value


def build_pending_updates(
    guild_ids: Iterable[int],
    rsn: str,
    category: str,
    before: Mapping[str, int],
    after: Mapping[str, int],
    diff: Mapping[str, int],
) -> List[PendingUpdate]:
    rows: List[PendingUpdate] = []
    for guild_id in guild_ids:
        for key in diff:
            rows.append(
                PendingUpdate(
                    guild_id=guild_id,
                    rsn=rsn,
                    category=category,
                    key=key,
                    base_value=resolve_value(before, key, category),
                    new_value=after[key],
                )
            )
    return rows


async def flush_pending_updates(*, state, storage, guild_id: int) -> Dict[str, int]:
    """Deliver whatever a guild has pending that passes its milestone settings.

    Returns counters: ``sent`` (rows delivered), ``held`` (rows that did not pass
    the filter and stay pending), ``orphaned`` (rows purged because the guild no
    longer tracks the player) and ``failed`` (rows whose delivery failed).
    """
    async with state.get_flush_lock(guild_id):
        return await _flush_locked(state=state, storage=storage, guild_id=guild_id)


async def _flush_locked(*, state, storage, guild_id: int) -> Dict[str, int]:
    counts = {"sent": 0, "held": 0, "orphaned": 0, "failed": 0}
    channel = state.get_tracking_channel(guild_id)
    if channel is None:
        return counts

    lg = GuildLoggerAdapter(logger, guild_id)
    rows: List[PendingUpdate] = await storage.fetch_pending_updates(guild_id)
    if not rows:
        return counts

    def get_setting(setting: str) -> int:
        return state.get_guild_setting_with_default(guild_id, setting)

    ready: Dict[str, List[PendingUpdate]] = {}
    for row in rows:
        if not state.is_tracking_player(guild_id, row.rsn):
            await storage.delete_pending_update(row)
            counts["orphaned"] += 1
            lg.info("Lost update for untracked player %s: %s %s %s -> %s", row.rsn, row.category, row.key, row.base_value, row.new_value)
            continue

        if passes_guild_milestone(row.category, row.base_value, row.new_value, get_setting):
            ready.setdefault(row.rsn, []).append(row)
        else:
            counts["held"] += 1

    for rsn, player_rows in ready.items():
        embeds = build_player_update_embeds(state.get_display_name(rsn), player_rows)
        try:
            await channel.send(embeds=embeds)
        except Exception as e:
            err = new_error_id()
            lg.error("ERR-%s failed to deliver %s update(s) for %s: %s", err, len(player_rows), rsn, e)
            state.add_problematic_guild(guild_id)
            counts["failed"] += len(player_rows)
            continue

        for row in player_rows:
            await storage.delete_pending_update(row)
        counts["sent"] += len(player_rows)

    if counts["sent"] or counts["orphaned"]:
        lg.debug("Flushed pending updates: %s", counts)
    return counts
