# ==========================================================
# ScapeBot – MySQL storage client
#
# Thin async read/write layer over the aiomysql pool.
#   - Trusted per-category snapshots (one table per category)
#   - Guild tracking, channels and settings
#   - Pending update ledger (write-if-absent base, per-row delete)
#   - Purges for untracked players and departed guilds
# ==========================================================

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional

import aiomysql
from aiomysql import DictCursor

from .constants import ACTIVITIES, BOSSES, CLUES, SKILLS
from .services.ledger import PendingUpdate

logger = logging.getLogger("storage")

# category -> (table, key column, value column)
CATEGORY_TABLES: Dict[str, tuple[str, str, str]] = {
    SKILLS: ("player_levels", "skill", "level"),
    BOSSES: ("player_bosses", "boss", "score"),
    CLUES: ("player_clues", "clue", "score"),
    ACTIVITIES: ("player_activities", "activity", "score"),
}

# Rows in these tables are dropped once no guild tracks the player
PURGEABLE_PLAYER_TABLES: List[str] = [
    "player_levels",
    "player_bosses",
    "player_clues",
    "player_activities",
    "player_hiscore_status",
    "player_display_names",
    "player_activity_timestamps",
    "player_refresh_timestamps",
    "pending_player_updates",
]

# Rows in these tables are dropped when a guild removes the bot
PURGEABLE_GUILD_TABLES: List[str] = [
    "tracked_players",
    "tracking_channels",
    "guild_settings",
    "pending_player_updates",
]

DISABLED_PROPERTY = "disabled"


def _as_utc(value: datetime) -> datetime:
    # DATETIME columns come back naive; everything we write is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_db_datetime(value: datetime) -> datetime:
    return _as_utc(value).replace(tzinfo=None)


class MySQLStorage:
    def __init__(self, pool: aiomysql.Pool) -> None:
        self.pool = pool

    def __repr__(self) -> str:
        return f"MySQLStorage(pool={self.pool!r})"

    async def _fetch_all(self, sql: str, args: tuple = ()) -> List[dict]:
        async with self.pool.acquire() as conn:
            async with conn.cursor(DictCursor) as cur:
                await cur.execute(sql, args)
                return list(await cur.fetchall())

    async def _execute(self, sql: str, args: tuple = ()) -> int:
        async with self.pool.acquire() as conn:
            async with conn.cursor() as cur:
                affected = await cur.execute(sql, args)
            await conn.commit()
        return int(affected or 0)

    async def _execute_many(self, sql: str, rows: List[tuple]) -> None:
        if not rows:
            return
        async with self.pool.acquire() as conn:
            async with conn.cursor() as cur:
                await cur.executemany(sql, rows)
            await conn.commit()

    # ------------------------------------------------------------------
    # Trusted snapshots
    # ------------------------------------------------------------------
    async def write_player_values(self, rsn: str, category: str, values: Mapping[str, int]) -> None:
        table, key_col, value_col = CATEGORY_TABLES[category]
        sql = (
            f"INSERT INTO {table} (rsn, {key_col}, {value_col}) VALUES (%s, %s, %s) "
            f"ON DUPLICATE KEY UPDATE {value_col}=VALUES({value_col})"
        )
        await self._execute_many(sql, [(rsn, key, int(value)) for key, value in values.items()])

    async def fetch_all_player_values(self, category: str) -> Dict[str, Dict[str, int]]:
        table, key_col, value_col = CATEGORY_TABLES[category]
        result: Dict[str, Dict[str, int]] = {}
        for row in await self._fetch_all(f"SELECT rsn, {key_col}, {value_col} FROM {table}"):
            result.setdefault(row["rsn"], {})[row[key_col]] = int(row[value_col])
        return result

    # ------------------------------------------------------------------
    # Guild tracking / channels / settings
    # ------------------------------------------------------------------
    async def fetch_all_tracked_players(self) -> Dict[int, List[str]]:
        result: Dict[int, List[str]] = {}
        for row in await self._fetch_all("SELECT guild_id, rsn FROM tracked_players"):
            result.setdefault(int(row["guild_id"]), []).append(row["rsn"])
        return result

    async def insert_tracked_player(self, guild_id: int, rsn: str) -> None:
        await self._execute("INSERT IGNORE INTO tracked_players (guild_id, rsn) VALUES (%s, %s)", (guild_id, rsn))

    async def delete_tracked_player(self, guild_id: int, rsn: str) -> None:
        await self._execute("DELETE FROM tracked_players WHERE guild_id=%s AND rsn=%s", (guild_id, rsn))

    async def fetch_all_tracking_channels(self) -> Dict[int, int]:
        rows = await self._fetch_all("SELECT guild_id, channel_id FROM tracking_channels")
        return {int(r["guild_id"]): int(r["channel_id"]) for r in rows}

    async def update_tracking_channel(self, guild_id: int, channel_id: int) -> None:
        await self._execute(
            "INSERT INTO tracking_channels (guild_id, channel_id) VALUES (%s, %s) "
            "ON DUPLICATE KEY UPDATE channel_id=VALUES(channel_id)",
            (guild_id, channel_id),
        )

    async def delete_tracking_channel(self, guild_id: int) -> None:
        await self._execute("DELETE FROM tracking_channels WHERE guild_id=%s", (guild_id,))

    async def fetch_all_guild_settings(self) -> Dict[int, Dict[str, int]]:
        result: Dict[int, Dict[str, int]] = {}
        for row in await self._fetch_all("SELECT guild_id, setting, value FROM guild_settings"):
            result.setdefault(int(row["guild_id"]), {})[row["setting"]] = int(row["value"])
        return result

    async def write_guild_setting(self, guild_id: int, setting: str, value: int) -> None:
        await self._execute(
            "INSERT INTO guild_settings (guild_id, setting, value) VALUES (%s, %s, %s) "
            "ON DUPLICATE KEY UPDATE value=VALUES(value)",
            (guild_id, setting, int(value)),
        )

    # ------------------------------------------------------------------
    # Per-player metadata
    # ------------------------------------------------------------------
    async def fetch_all_hiscore_statuses(self) -> Dict[str, bool]:
        rows = await self._fetch_all("SELECT rsn, on_hiscores FROM player_hiscore_status")
        return {r["rsn"]: bool(r["on_hiscores"]) for r in rows}

    async def write_player_hiscore_status(self, rsn: str, on_hiscores: bool) -> None:
        await self._execute(
            "INSERT INTO player_hiscore_status (rsn, on_hiscores) VALUES (%s, %s) "
            "ON DUPLICATE KEY UPDATE on_hiscores=VALUES(on_hiscores)",
            (rsn, bool(on_hiscores)),
        )

    async def fetch_all_display_names(self) -> Dict[str, str]:
        rows = await self._fetch_all("SELECT rsn, display_name FROM player_display_names")
        return {r["rsn"]: r["display_name"] for r in rows}

    async def write_player_display_name(self, rsn: str, display_name: str) -> None:
        await self._execute(
            "INSERT INTO player_display_names (rsn, display_name) VALUES (%s, %s) "
            "ON DUPLICATE KEY UPDATE display_name=VALUES(display_name)",
            (rsn, display_name),
        )

    async def fetch_all_activity_timestamps(self) -> Dict[str, datetime]:
        rows = await self._fetch_all("SELECT rsn, ts FROM player_activity_timestamps")
        return {r["rsn"]: _as_utc(r["ts"]) for r in rows}

    async def update_player_activity_timestamp(self, rsn: str, when: datetime) -> None:
        await self._execute(
            "INSERT INTO player_activity_timestamps (rsn, ts) VALUES (%s, %s) "
            "ON DUPLICATE KEY UPDATE ts=GREATEST(ts, VALUES(ts))",
            (rsn, _to_db_datetime(when)),
        )

    async def fetch_all_refresh_timestamps(self) -> Dict[str, datetime]:
        rows = await self._fetch_all("SELECT rsn, ts FROM player_refresh_timestamps")
        return {r["rsn"]: _as_utc(r["ts"]) for r in rows}

    async def update_player_refresh_timestamp(self, rsn: str, when: datetime) -> None:
        await self._execute(
            "INSERT INTO player_refresh_timestamps (rsn, ts) VALUES (%s, %s) "
            "ON DUPLICATE KEY UPDATE ts=VALUES(ts)",
            (rsn, _to_db_datetime(when)),
        )

    # ------------------------------------------------------------------
    # Pending update ledger
    # ------------------------------------------------------------------
    async def write_pending_updates(self, updates: Iterable[PendingUpdate]) -> None:
        # The first base value written for a row is kept; later diffs only move new_value forward
        sql = (
            "INSERT INTO pending_player_updates (guild_id, rsn, category, metric, base_value, new_value) "
            "VALUES (%s, %s, %s, %s, %s, %s) "
            "ON DUPLICATE KEY UPDATE new_value=GREATEST(new_value, VALUES(new_value))"
        )
        rows = [(u.guild_id, u.rsn, u.category, u.key, int(u.base_value), int(u.new_value)) for u in updates]
        await self._execute_many(sql, rows)

    async def fetch_pending_updates(self, guild_id: int) -> List[PendingUpdate]:
        rows = await self._fetch_all(
            "SELECT guild_id, rsn, category, metric, base_value, new_value "
            "FROM pending_player_updates WHERE guild_id=%s ORDER BY rsn, category, metric",
            (guild_id,),
        )
        return [
            PendingUpdate(
                guild_id=int(r["guild_id"]),
                rsn=r["rsn"],
                category=r["category"],
                key=r["metric"],
                base_value=int(r["base_value"]),
                new_value=int(r["new_value"]),
            )
            for r in rows
        ]

    async def delete_pending_update(self, update: PendingUpdate) -> bool:
        # Guarded on new_value so a row that moved forward since it was read survives
        affected = await self._execute(
            "DELETE FROM pending_player_updates "
            "WHERE guild_id=%s AND rsn=%s AND category=%s AND metric=%s AND new_value=%s",
            (update.guild_id, update.rsn, update.category, update.key, int(update.new_value)),
        )
        return affected > 0

    async def delete_pending_updates_above(self, rsn: str, category: str, key: str, value: int) -> int:
        """Drop rows for a metric whose new_value is higher than ``value`` (after a rollback)."""
        return await self._execute(
            "DELETE FROM pending_player_updates WHERE rsn=%s AND category=%s AND metric=%s AND new_value>%s",
            (rsn, category, key, int(value)),
        )

    async def count_pending_updates(self) -> int:
        rows = await self._fetch_all("SELECT COUNT(*) AS c FROM pending_player_updates")
        return int(rows[0]["c"]) if rows else 0

    # ------------------------------------------------------------------
    # Purges
    # ------------------------------------------------------------------
    async def purge_untracked_player_data(self) -> Dict[str, int]:
        """Delete player rows no guild tracks anymore. Returns {table: rows deleted}."""
        deleted: Dict[str, int] = {}
        for table in PURGEABLE_PLAYER_TABLES:
            count = await self._execute(
                f"DELETE FROM {table} WHERE rsn NOT IN (SELECT p.rsn FROM tracked_players p)"
            )
            if count:
                deleted[table] = count
        return deleted

    async def purge_guild_data(self, guild_id: int) -> Dict[str, int]:
        deleted: Dict[str, int] = {}
        for table in PURGEABLE_GUILD_TABLES:
            count = await self._execute(f"DELETE FROM {table} WHERE guild_id=%s", (guild_id,))
            if count:
                deleted[table] = count
        return deleted

    # ------------------------------------------------------------------
    # Misc properties
    # ------------------------------------------------------------------
    async def fetch_misc_property(self, name: str) -> Optional[str]:
        rows = await self._fetch_all("SELECT value FROM misc_properties WHERE name=%s", (name,))
        return rows[0]["value"] if rows else None

    async def write_misc_property(self, name: str, value: str) -> None:
        await self._execute(
            "INSERT INTO misc_properties (name, value) VALUES (%s, %s) ON DUPLICATE KEY UPDATE value=VALUES(value)",
            (name, value),
        )
