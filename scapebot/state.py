# ==========================================================
# ScapeBot – In-memory state
#
# One State object is built at startup, filled from MySQL and then
# handed to the bot, the updater loop and the tracking service.
# Nothing here touches storage; callers persist what they change.
# ==========================================================

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set

from .constants import CATEGORIES, DEFAULT_GUILD_SETTINGS, PLAYER_QUEUE_COUNTER_MAX, PLAYER_QUEUE_TIERS
from .services.player_queue import PlayerQueue

logger = logging.getLogger("state")


class State:
    def __init__(self, *, player_queue: PlayerQueue | None = None, refresh_interval: float = 1.0) -> None:
        self._valid = False
        self._disabled = False

        self._queue = player_queue or PlayerQueue(
            PLAYER_QUEUE_TIERS,
            PLAYER_QUEUE_COUNTER_MAX,
            refresh_interval=refresh_interval,
        )

        # category -> rsn -> metric -> value (definitively known values only)
        self._trusted: Dict[str, Dict[str, Dict[str, int]]] = {c: {} for c in CATEGORIES}
        self._last_refresh: Dict[str, datetime] = {}
        self._display_names: Dict[str, str] = {}
        self._players_off_hiscores: Set[str] = set()

        self._guilds_by_player: Dict[str, Set[int]] = {}
        self._players_by_guild: Dict[int, Set[str]] = {}
        self._tracking_channels: Dict[int, Any] = {}
        self._settings_by_guild: Dict[int, Dict[str, int]] = {}

        # Volatile, never persisted
        self._strikes: Dict[str, int] = {}
        self._problematic_channels: Set[int] = set()

        # Held by the updater while it reconciles a player and by every admin
        # mutation, so an untrack never lands in the middle of a tick
        self.lock = asyncio.Lock()
        self._flush_locks: Dict[int, asyncio.Lock] = {}

        self.maintainer_channel: Any = None

    # ------------------------------------------------------------------
    # Global flags
    # ------------------------------------------------------------------
    def is_valid(self) -> bool:
        return self._valid

    def set_valid(self, valid: bool) -> None:
        self._valid = valid

    def is_disabled(self) -> bool:
        return self._disabled

    def set_disabled(self, disabled: bool) -> None:
        self._disabled = disabled

    # ------------------------------------------------------------------
    # Scheduler passthrough
    # ------------------------------------------------------------------
    @property
    def player_queue(self) -> PlayerQueue:
        return self._queue

    def next_tracked_player(self) -> Optional[str]:
        return self._queue.next()

    def mark_player_as_active(self, rsn: str, timestamp: Optional[datetime] = None) -> None:
        self._queue.mark_active(rsn, timestamp.timestamp() if timestamp else None)

    # ------------------------------------------------------------------
    # Guild tracking
    # ------------------------------------------------------------------
    def add_tracked_player(self, guild_id: int, rsn: str) -> None:
        self._players_by_guild.setdefault(guild_id, set()).add(rsn)
        self._guilds_by_player.setdefault(rsn, set()).add(guild_id)
        self._queue.add(rsn)

    def remove_tracked_player(self, guild_id: int, rsn: str) -> bool:
        """Untrack ``rsn`` for one guild. Returns True if no guild tracks it anymore (and its state was dropped)."""
        players = self._players_by_guild.get(guild_id)
        if players is not None:
            players.discard(rsn)
            if not players:
                del self._players_by_guild[guild_id]
                logger.debug("Deleted player set for guild %s", guild_id)

        guilds = self._guilds_by_player.get(rsn)
        if guilds is not None:
            guilds.discard(guild_id)
        if self.is_player_tracked_in_any_guilds(rsn):
            return False

        self._guilds_by_player.pop(rsn, None)
        self._queue.remove(rsn)
        for category in CATEGORIES:
            self._trusted[category].pop(rsn, None)
        self._last_refresh.pop(rsn, None)
        self._display_names.pop(rsn, None)
        self._players_off_hiscores.discard(rsn)
        self._strikes.pop(rsn, None)
        return True

    def remove_guild(self, guild_id: int) -> List[str]:
        """Forget a guild entirely. Returns players that are no longer tracked anywhere."""
        dropped = [rsn for rsn in list(self._players_by_guild.get(guild_id, ())) if self.remove_tracked_player(guild_id, rsn)]
        self._tracking_channels.pop(guild_id, None)
        self._settings_by_guild.pop(guild_id, None)
        self._problematic_channels.discard(guild_id)
        return dropped

    def is_tracking_player(self, guild_id: int, rsn: str) -> bool:
        return rsn in self._players_by_guild.get(guild_id, ())

    def is_tracking_any_players(self, guild_id: int) -> bool:
        return bool(self._players_by_guild.get(guild_id))

    def is_player_tracked_in_any_guilds(self, rsn: str) -> bool:
        return bool(self._guilds_by_player.get(rsn))

    def get_guilds_tracking_player(self, rsn: str) -> List[int]:
        return sorted(self._guilds_by_player.get(rsn, ()))

    def get_all_tracked_players(self, guild_id: int) -> List[str]:
        return sorted(self._players_by_guild.get(guild_id, ()))

    def get_all_globally_tracked_players(self) -> List[str]:
        return sorted(self._guilds_by_player)

    def get_all_relevant_guilds(self) -> List[int]:
        return sorted(set(self._players_by_guild) | set(self._tracking_channels) | set(self._settings_by_guild))

    # ------------------------------------------------------------------
    # Delivery targets
    # ------------------------------------------------------------------
    def get_tracking_channel(self, guild_id: int) -> Any:
        return self._tracking_channels.get(guild_id)

    def has_tracking_channel(self, guild_id: int) -> bool:
        return guild_id in self._tracking_channels

    def set_tracking_channel(self, guild_id: int, channel: Any) -> None:
        self._tracking_channels[guild_id] = channel

    def clear_tracking_channel(self, guild_id: int) -> None:
        self._tracking_channels.pop(guild_id, None)

    def get_flush_lock(self, guild_id: int) -> asyncio.Lock:
        """One lock per guild around fetch, send and delete of its pending rows."""
        return self._flush_locks.setdefault(guild_id, asyncio.Lock())

    def add_problematic_guild(self, guild_id: int) -> None:
        self._problematic_channels.add(guild_id)

    def get_problematic_guilds(self) -> List[int]:
        return sorted(self._problematic_channels)

    # ------------------------------------------------------------------
    # Guild settings
    # ------------------------------------------------------------------
    def get_guild_settings(self, guild_id: int) -> Dict[str, int]:
        return dict(self._settings_by_guild.get(guild_id, {}))

    def set_guild_setting(self, guild_id: int, setting: str, value: int) -> None:
        self._settings_by_guild.setdefault(guild_id, {})[setting] = int(value)

    def get_guild_setting_with_default(self, guild_id: int, setting: str) -> int:
        value = self._settings_by_guild.get(guild_id, {}).get(setting)
        if value is not None:
            return value
        return DEFAULT_GUILD_SETTINGS[setting]

    # ------------------------------------------------------------------
    # Trusted snapshots
    # ------------------------------------------------------------------
    def has_category(self, rsn: str, category: str) -> bool:
        return rsn in self._trusted[category]

    def get_category(self, rsn: str, category: str) -> Dict[str, int]:
        return dict(self._trusted[category].get(rsn, {}))

    def set_category(self, rsn: str, category: str, values: Mapping[str, int]) -> None:
        self._trusted[category][rsn] = dict(values)

    def set_all_category(self, category: str, values_by_player: Mapping[str, Mapping[str, int]]) -> None:
        self._trusted[category] = {rsn: dict(values) for rsn, values in values_by_player.items()}

    # ------------------------------------------------------------------
    # Refresh / display names / hiscore status
    # ------------------------------------------------------------------
    def get_last_refresh(self, rsn: str) -> Optional[datetime]:
        return self._last_refresh.get(rsn)

    def set_last_refresh(self, rsn: str, when: datetime) -> None:
        self._last_refresh[rsn] = when

    def get_display_name(self, rsn: str) -> str:
        return self._display_names.get(rsn, rsn)

    def has_display_name(self, rsn: str) -> bool:
        return rsn in self._display_names

    def set_display_name(self, rsn: str, display_name: str) -> None:
        self._display_names[rsn] = display_name

    def is_player_on_hiscores(self, rsn: str) -> bool:
        return rsn not in self._players_off_hiscores

    def set_player_hiscore_status(self, rsn: str, on_hiscores: bool) -> None:
        if on_hiscores:
            self._players_off_hiscores.discard(rsn)
        else:
            self._players_off_hiscores.add(rsn)

    # ------------------------------------------------------------------
    # Anomaly strikes
    # ------------------------------------------------------------------
    def get_strikes(self, rsn: str) -> int:
        return self._strikes.get(rsn, 0)

    def add_strike(self, rsn: str) -> int:
        self._strikes[rsn] = self._strikes.get(rsn, 0) + 1
        return self._strikes[rsn]

    def clear_strikes(self, rsn: str) -> None:
        self._strikes.pop(rsn, None)

    def to_debug_string(self) -> str:
        return (
            f"players={len(self._guilds_by_player)} guilds={len(self._players_by_guild)} "
            f"channels={len(self._tracking_channels)} queue=[{self._queue.get_debug_string()}] "
            f"disabled={self._disabled}"
        )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
