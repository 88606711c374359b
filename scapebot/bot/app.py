# ==========================================================
# ScapeBot – Discord Bot (app.py)
#
# Thin Discord surface over the tracking service:
#   - on_ready: pool, schema bootstrap, state load, updater task
#   - on_guild_remove: purge everything the guild owned
#   - /track, /untrack, /channel, /setting, /status, /resume
#
# All bookkeeping lives in services/tracking.py; commands here only
# validate input, call through and render the reply.
# ==========================================================

import asyncio
import logging
import os

import aiomysql
import discord
from discord import app_commands
from discord.ext import commands

from ..constants import DEFAULT_GUILD_SETTINGS
from ..db import create_db_pool, ensure_schema
from ..errors import InvalidPlayerName
from ..logging_utils import GuildLoggerAdapter, new_error_id
from ..services import tracking
from ..services.hiscores import HiScoresClient
from ..state import State
from ..storage import MySQLStorage
from ..updater import REFRESH_INTERVAL, run_updater_loop
from ..utils.embeds import create_scapebot_embed, set_bot_settings
from ..utils.formatting import natural_join

logger = logging.getLogger("bot")

# ---------------- Configuration ----------------

BOT_SETTINGS: dict = {
    "name": os.getenv("SCAPEBOT_NAME", "ScapeBot"),
    "version": os.getenv("SCAPEBOT_VERSION", "v1.0.0"),
}

# Optional channel for rollback / maintenance notices
LOG_CHANNEL_ID = int(os.getenv("SCAPEBOT_LOG_CHANNEL_ID", "0") or 0)

# Users allowed to run /resume
MAINTAINER_IDS = {int(x) for x in os.getenv("SCAPEBOT_MAINTAINER_IDS", "").replace(" ", "").split(",") if x}

intents = discord.Intents.default()
intents.guilds = True

client = commands.Bot(command_prefix="!", intents=intents)
db_pool: aiomysql.Pool | None = None

STATE = State(refresh_interval=REFRESH_INTERVAL)
STORAGE: MySQLStorage | None = None
HISCORES = HiScoresClient()

SETTING_CHOICES = [app_commands.Choice(name=key, value=key) for key in DEFAULT_GUILD_SETTINGS]


# ==========================================================
# Helpers
# ==========================================================


async def init_db_pool():
    """Initialize the global MySQL connection pool and storage client."""
    global db_pool, STORAGE
    if db_pool is None:
        db_pool = await create_db_pool(minsize=1, maxsize=5)
        STORAGE = MySQLStorage(db_pool)
        logger.info("Database pool initialized.")


def _require_storage() -> MySQLStorage:
    if STORAGE is None:
        raise RuntimeError("Database pool not initialised")
    return STORAGE


def resolve_channel(channel_id: int):
    channel = client.get_channel(channel_id)
    if channel is None or not hasattr(channel, "send"):
        return None
    return channel


async def _reply(interaction: discord.Interaction, title: str, description: str = "", *, ephemeral: bool = True) -> None:
    embed = create_scapebot_embed(title, description)
    if interaction.response.is_done():
        await interaction.followup.send(embed=embed, ephemeral=ephemeral)
    else:
        await interaction.response.send_message(embed=embed, ephemeral=ephemeral)


async def _command_failed(interaction: discord.Interaction, what: str, e: Exception) -> None:
    err = new_error_id()
    GuildLoggerAdapter(logger, interaction.guild_id).error("ERR-%s %s failed: %s", err, what, e)
    await _reply(interaction, "❌ Something went wrong", f"Please try again later. (Error ID: `{err}`)")


def _guild_only(interaction: discord.Interaction) -> bool:
    return interaction.guild_id is not None


# ==========================================================
# Slash commands
# ==========================================================


@client.tree.command(name="track", description="Start tracking a player's hiscores in this server.")
@app_commands.describe(rsn="The player's in-game name")
@app_commands.default_permissions(manage_guild=True)
async def track_command(interaction: discord.Interaction, rsn: str):
    if not _guild_only(interaction):
        await _reply(interaction, "❌ This command can only be used in a server.")
        return
    await interaction.response.defer(ephemeral=True)
    try:
        name, added = await tracking.track_player(
            state=STATE, storage=_require_storage(), hiscores=HISCORES, guild_id=interaction.guild_id, raw_rsn=rsn
        )
    except InvalidPlayerName as e:
        await _reply(interaction, "❌ Invalid name", str(e))
        return
    except Exception as e:
        await _command_failed(interaction, "/track", e)
        return

    display_name = STATE.get_display_name(name)
    if not added:
        await _reply(interaction, "Already tracking", f"**{display_name}** is already tracked here.")
        return
    hint = "" if STATE.has_tracking_channel(interaction.guild_id) else "\nUse `/channel` so updates have somewhere to go."
    await _reply(interaction, "✅ Tracking", f"Now tracking **{display_name}**.{hint}")


@client.tree.command(name="untrack", description="Stop tracking a player in this server.")
@app_commands.describe(rsn="The player's in-game name")
@app_commands.default_permissions(manage_guild=True)
async def untrack_command(interaction: discord.Interaction, rsn: str):
    if not _guild_only(interaction):
        await _reply(interaction, "❌ This command can only be used in a server.")
        return
    await interaction.response.defer(ephemeral=True)
    try:
        name, removed = await tracking.untrack_player(
            state=STATE, storage=_require_storage(), guild_id=interaction.guild_id, raw_rsn=rsn
        )
    except InvalidPlayerName as e:
        await _reply(interaction, "❌ Invalid name", str(e))
        return
    except Exception as e:
        await _command_failed(interaction, "/untrack", e)
        return

    if removed:
        await _reply(interaction, "✅ Untracked", f"No longer tracking **{name}**.")
    else:
        await _reply(interaction, "Not tracked", f"**{name}** is not tracked here.")


@client.tree.command(name="channel", description="Post player updates to this channel (or stop posting).")
@app_commands.describe(clear="Stop posting updates; they are held until a channel is set again")
@app_commands.default_permissions(manage_guild=True)
async def channel_command(interaction: discord.Interaction, clear: bool = False):
    if not _guild_only(interaction):
        await _reply(interaction, "❌ This command can only be used in a server.")
        return
    await interaction.response.defer(ephemeral=True)
    storage = _require_storage()
    try:
        if clear:
            cleared = await tracking.clear_tracking_channel(state=STATE, storage=storage, guild_id=interaction.guild_id)
            await _reply(interaction, "✅ Channel cleared" if cleared else "No channel set", "Updates will be held.")
            return
        counts = await tracking.set_tracking_channel(
            state=STATE, storage=storage, guild_id=interaction.guild_id, channel=interaction.channel
        )
    except Exception as e:
        await _command_failed(interaction, "/channel", e)
        return

    sent = counts.get("sent", 0)
    extra = f"\nDelivered {sent} held update(s)." if sent else ""
    await _reply(interaction, "✅ Channel set", f"Player updates will be posted in <#{interaction.channel_id}>.{extra}")


@client.tree.command(name="setting", description="Change how often updates are broadcast in this server.")
@app_commands.describe(setting="Which setting to change", value="New value (0 disables)")
@app_commands.choices(setting=SETTING_CHOICES)
@app_commands.default_permissions(manage_guild=True)
async def setting_command(interaction: discord.Interaction, setting: app_commands.Choice[str], value: int):
    if not _guild_only(interaction):
        await _reply(interaction, "❌ This command can only be used in a server.")
        return
    try:
        changes = await tracking.set_guild_setting(
            state=STATE, storage=_require_storage(), guild_id=interaction.guild_id, setting=setting.value, value=value
        )
    except ValueError as e:
        await _reply(interaction, "❌ Invalid setting", str(e))
        return
    except Exception as e:
        await _command_failed(interaction, "/setting", e)
        return

    lines = [f"`{key}` = **{v}**" for key, v in changes.items()]
    await _reply(interaction, "✅ Settings updated", "\n".join(lines))


@client.tree.command(name="status", description="Show what this server tracks and how the updater is doing.")
async def status_command(interaction: discord.Interaction):
    if not _guild_only(interaction):
        await _reply(interaction, "❌ This command can only be used in a server.")
        return
    if not STATE.is_valid():
        await _reply(interaction, "Starting up", "ScapeBot is still loading its state, try again in a moment.")
        return
    guild_id = interaction.guild_id
    players = STATE.get_all_tracked_players(guild_id)
    channel = STATE.get_tracking_channel(guild_id)
    queue = STATE.player_queue

    lines = [
        f"**Tracked players:** {len(players)}",
        f"**Channel:** {f'<#{channel.id}>' if channel is not None else 'not set'}",
        f"**Updates:** {'paused' if STATE.is_disabled() else 'running'}",
        f"**Queue:** {queue.get_debug_string() or 'empty'}",
        f"**Full rotation:** {queue.get_duration_string()}",
    ]
    overrides = STATE.get_guild_settings(guild_id)
    if overrides:
        lines.append("**Settings:** " + ", ".join(f"`{k}`={v}" for k, v in sorted(overrides.items())))
    if guild_id in STATE.get_problematic_guilds():
        lines.append("⚠️ The last delivery to this server's channel failed; check the bot's permissions.")
    if players:
        shown = [STATE.get_display_name(rsn) for rsn in players[:25]]
        more = f" and {len(players) - 25} more" if len(players) > 25 else ""
        lines.append(f"**Players:** {natural_join(shown)}{more}")
    await _reply(interaction, "ScapeBot status", "\n".join(lines))


@client.tree.command(name="resume", description="Resume player updates after a hiscores format change (maintainers only).")
async def resume_command(interaction: discord.Interaction):
    if interaction.user.id not in MAINTAINER_IDS:
        await _reply(interaction, "❌ Not allowed", "Only bot maintainers can resume updates.")
        return
    try:
        resumed = await tracking.resume_updates(state=STATE, storage=_require_storage())
    except Exception as e:
        await _command_failed(interaction, "/resume", e)
        return
    if resumed:
        await _reply(interaction, "✅ Resumed", "Player updates are running again.")
    else:
        await _reply(interaction, "Not paused", "Player updates were already running.")


# ==========================================================
# Events / runner
# ==========================================================


@client.event
async def on_guild_remove(guild: discord.Guild):
    if STORAGE is None:
        return
    try:
        await tracking.remove_guild(state=STATE, storage=STORAGE, guild_id=guild.id)
    except Exception as e:
        GuildLoggerAdapter(logger, guild.id, guild.name).error("ERR-%s guild purge failed: %s", new_error_id(), e)


@client.event
async def on_ready():
    logger.info("Discord ready (user=%s)", client.user)

    # Idempotency guard
    if getattr(client, "_startup_done", False):
        logger.info("on_ready fired again; startup already completed.")
        return
    client._startup_done = True

    set_bot_settings(BOT_SETTINGS)
    await asyncio.to_thread(ensure_schema)
    await init_db_pool()
    await tracking.load_state(state=STATE, storage=_require_storage(), resolve_channel=resolve_channel)

    if LOG_CHANNEL_ID:
        STATE.maintainer_channel = resolve_channel(LOG_CHANNEL_ID)
        if STATE.maintainer_channel is None:
            logger.warning("Log channel %s could not be resolved", LOG_CHANNEL_ID)

    local_cmds = client.tree.get_commands()
    logger.info("Local command tree contains %d commands: %s", len(local_cmds), [c.name for c in local_cmds])
    try:
        synced = await client.tree.sync()
        logger.info("Commands synced (global=%s)", len(synced))
    except Exception:
        logger.exception("Command sync failed")

    client._updater_task = client.loop.create_task(
        run_updater_loop(client, state=STATE, storage=_require_storage(), hiscores=HISCORES)
    )
    logger.info("Background tasks started (updater)")


def create_bot() -> commands.Bot:
    return client


def get_token() -> str:
    token = os.getenv("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_TOKEN environment variable is not set")
    return token
