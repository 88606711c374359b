# ==========================================================
# ScapeBot – Database Helpers
#
# Features:
#   - Synchronous MySQL connector for one-off schema bootstrap
#   - Async aiomysql pool for the Discord bot/updater
#   - Table definitions (created on startup if missing)
# ==========================================================

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List

import aiomysql
import mysql.connector

logger = logging.getLogger("storage")

# Base config shared by sync + async
BASE_DB_CONFIG: Dict[str, Any] = {
    "host": os.getenv("DB_HOST", "localhost"),
    "port": int(os.getenv("DB_PORT", "3306")),
    "user": os.getenv("DB_USER", "root"),
    "password": os.getenv("DB_PASSWORD", ""),
    "database": os.getenv("DB_NAME", "scapebot"),
    "autocommit": True,
}

# Synchronous config for mysql.connector
SYNC_DB_CONFIG: Dict[str, Any] = dict(BASE_DB_CONFIG)

# Async config for aiomysql (uses "db" instead of "database")
ASYNC_DB_CONFIG: Dict[str, Any] = {
    "host": BASE_DB_CONFIG["host"],
    "port": BASE_DB_CONFIG["port"],
    "user": BASE_DB_CONFIG["user"],
    "password": BASE_DB_CONFIG["password"],
    "db": BASE_DB_CONFIG["database"],
    "autocommit": BASE_DB_CONFIG["autocommit"],
}

TABLES: Dict[str, str] = {
    "player_levels": (
        "CREATE TABLE player_levels (rsn VARCHAR(12) NOT NULL, skill VARCHAR(16) NOT NULL, "
        "level SMALLINT NOT NULL, PRIMARY KEY (rsn, skill))"
    ),
    "player_bosses": (
        "CREATE TABLE player_bosses (rsn VARCHAR(12) NOT NULL, boss VARCHAR(64) NOT NULL, "
        "score INT NOT NULL, PRIMARY KEY (rsn, boss))"
    ),
    "player_clues": (
        "CREATE TABLE player_clues (rsn VARCHAR(12) NOT NULL, clue VARCHAR(16) NOT NULL, "
        "score INT NOT NULL, PRIMARY KEY (rsn, clue))"
    ),
    "player_activities": (
        "CREATE TABLE player_activities (rsn VARCHAR(12) NOT NULL, activity VARCHAR(64) NOT NULL, "
        "score BIGINT NOT NULL, PRIMARY KEY (rsn, activity))"
    ),
    "tracked_players": (
        "CREATE TABLE tracked_players (guild_id BIGINT NOT NULL, rsn VARCHAR(12) NOT NULL, "
        "PRIMARY KEY (guild_id, rsn))"
    ),
    "tracking_channels": "CREATE TABLE tracking_channels (guild_id BIGINT PRIMARY KEY, channel_id BIGINT NOT NULL)",
    "guild_settings": (
        "CREATE TABLE guild_settings (guild_id BIGINT NOT NULL, setting VARCHAR(48) NOT NULL, "
        "value INT NOT NULL, PRIMARY KEY (guild_id, setting))"
    ),
    "pending_player_updates": (
        "CREATE TABLE pending_player_updates (guild_id BIGINT NOT NULL, rsn VARCHAR(12) NOT NULL, "
        "category VARCHAR(16) NOT NULL, metric VARCHAR(64) NOT NULL, base_value BIGINT NOT NULL, "
        "new_value BIGINT NOT NULL, PRIMARY KEY (guild_id, rsn, category, metric))"
    ),
    "player_hiscore_status": "CREATE TABLE player_hiscore_status (rsn VARCHAR(12) PRIMARY KEY, on_hiscores BOOLEAN NOT NULL)",
    "player_display_names": "CREATE TABLE player_display_names (rsn VARCHAR(12) PRIMARY KEY, display_name VARCHAR(12) NOT NULL)",
    "player_activity_timestamps": "CREATE TABLE player_activity_timestamps (rsn VARCHAR(12) PRIMARY KEY, ts DATETIME NOT NULL)",
    "player_refresh_timestamps": "CREATE TABLE player_refresh_timestamps (rsn VARCHAR(12) PRIMARY KEY, ts DATETIME NOT NULL)",
    "misc_properties": "CREATE TABLE misc_properties (name VARCHAR(32) PRIMARY KEY, value VARCHAR(2048) NOT NULL)",
}


def db_connect() -> mysql.connector.MySQLConnection:
    """
    Create a new synchronous MySQL connection.

    Only used for schema bootstrap; everything at runtime goes through the pool.
    """
    return mysql.connector.connect(**SYNC_DB_CONFIG)


def ensure_schema() -> List[str]:
    """Create any missing tables. Returns the names of tables that were created."""
    created: List[str] = []
    conn = db_connect()
    try:
        cur = conn.cursor()
        try:
            cur.execute("SHOW TABLES")
            existing = {row[0] for row in cur.fetchall()}
            for name, ddl in TABLES.items():
                if name in existing:
                    continue
                cur.execute(ddl)
                created.append(name)
        finally:
            cur.close()
    finally:
        conn.close()

    if created:
        logger.warning("Created missing tables: %s", ", ".join(created))
    else:
        logger.info("Schema OK (%s tables)", len(TABLES))
    return created


async def create_db_pool(minsize: int = 1, maxsize: int = 5) -> aiomysql.Pool:
    """
    Create an aiomysql connection pool.

    Intended for the Discord bot / updater.
    """
    return await aiomysql.create_pool(minsize=minsize, maxsize=maxsize, **ASYNC_DB_CONFIG)
