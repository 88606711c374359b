# ==========================================================
# ScapeBot – Player Updater
#
# One tick every REFRESH_INTERVAL seconds:
#   - Ask the player queue who is next
#   - Fetch that player's hiscores snapshot
#   - Diff each category against trusted state (prime on first sight)
#   - Fan genuine increases out into pending_player_updates per guild
#   - Flush whatever now passes each guild's milestone settings
#
# NOTES:
# - Negative diffs never touch trusted state; they count as strikes.
#   After ROLLBACK_STRIKE_THRESHOLD strikes the regression is accepted.
# - Every per-player error is caught at update_player's caller and never
#   escapes the loop. The queue's own cadence is the retry policy.
# ==========================================================

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, Optional

from .constants import CATEGORIES, ROLLBACK_STRIKE_THRESHOLD
from .errors import DiffError, HiScoresError, HiScoresFormatChanged, NegativeDiff, PlayerNotFound, SilentRegression
from .logging_utils import new_error_id, warn_ratelimited
from .services.diff import compute_diff, find_regressions, get_default, patch_missing
from .services.ledger import build_pending_updates, flush_pending_updates
from .state import utc_now
from .storage import DISABLED_PROPERTY
from .utils.embeds import build_notice_embed

logger = logging.getLogger("updater")

# ---------------- Configuration ----------------
REFRESH_INTERVAL = float(os.getenv("SCAPEBOT_REFRESH_INTERVAL", "5"))
DISABLED_INTERVAL_MULTIPLIER = int(os.getenv("SCAPEBOT_DISABLED_INTERVAL_MULTIPLIER", "6"))

# Log a one-line summary every N ticks (debug otherwise)
TICK_SUMMARY_EVERY = 120

# update_category outcomes
PRIMED = "primed"
UNCHANGED = "unchanged"
UPDATED = "updated"
NEGATIVE = "negative"
SILENT = "silent"


# ==========================================================
# Notices
# ==========================================================
async def notify_maintainers(state, title: str, text: str) -> None:
    logger.warning("%s: %s", title, text.replace("\n", " | "))
    channel = state.maintainer_channel
    if channel is None:
        return
    try:
        await channel.send(embeds=[build_notice_embed(title, text)])
    except Exception as e:
        logger.error("ERR-%s failed to post maintainer notice: %s", new_error_id(), e)


async def broadcast_notice(state, title: str, text: str) -> int:
    """Post a notice to every tracking channel. Returns how many sends succeeded."""
    sent = 0
    for guild_id in state.get_all_relevant_guilds():
        channel = state.get_tracking_channel(guild_id)
        if channel is None:
            continue
        try:
            await channel.send(embeds=[build_notice_embed(title, text)])
            sent += 1
        except Exception as e:
            logger.error("ERR-%s notice delivery failed for guild %s: %s", new_error_id(), guild_id, e)
            state.add_problematic_guild(guild_id)
    return sent


async def pause_for_format_change(*, state, storage, error: Exception) -> None:
    if state.is_disabled():
        return
    state.set_disabled(True)
    await storage.write_misc_property(DISABLED_PROPERTY, "1")
    logger.error("Hiscores format changed, pausing all updates until resumed: %s", error)
    await broadcast_notice(
        state,
        "Updates paused",
        "The hiscores API has changed, so player updates are paused until a maintainer resumes them.",
    )


# ==========================================================
# Per-player bookkeeping
# ==========================================================
async def record_hiscore_status(*, state, storage, rsn: str, on_hiscores: bool) -> None:
    if state.is_player_on_hiscores(rsn) == on_hiscores:
        return
    state.set_player_hiscore_status(rsn, on_hiscores)
    await storage.write_player_hiscore_status(rsn, on_hiscores)
    logger.info("%s is %s the hiscores", rsn, "back on" if on_hiscores else "no longer on")


async def record_display_name(*, state, storage, rsn: str, display_name: Optional[str]) -> None:
    if not display_name:
        return
    if state.has_display_name(rsn) and state.get_display_name(rsn) == display_name:
        return
    try:
        await storage.write_player_display_name(rsn, display_name)
    except Exception as e:
        # Not worth failing the tick over; it is retried on the player's next turn
        logger.warning("Could not store display name for %s: %s", rsn, e)
        return
    state.set_display_name(rsn, display_name)


async def update_category(*, state, storage, rsn: str, category: str, raw: Dict[str, int]) -> str:
    """Reconcile one category of a fresh snapshot against trusted state."""
    baseline = get_default(category)

    if not state.has_category(rsn, category):
        state.set_category(rsn, category, raw)
        await storage.write_player_values(rsn, category, raw)
        logger.debug("Primed %s for %s (%s values)", category, rsn, len(raw))
        return PRIMED

    before = state.get_category(rsn, category)
    after = patch_missing(before, raw)
    try:
        diff = compute_diff(before, after, baseline)
    except SilentRegression:
        return SILENT
    except NegativeDiff as e:
        strikes = state.add_strike(rsn)
        logger.debug("Strike %s/%s for %s (%s): %s", strikes, ROLLBACK_STRIKE_THRESHOLD, rsn, category, e)
        return NEGATIVE

    if not diff:
        return UNCHANGED

    state.clear_strikes(rsn)
    now = utc_now()
    state.set_category(rsn, category, after)
    await storage.write_player_values(rsn, category, {key: after[key] for key in diff})
    state.set_last_refresh(rsn, now)
    await storage.update_player_refresh_timestamp(rsn, now)
    state.mark_player_as_active(rsn)
    await storage.update_player_activity_timestamp(rsn, now)

    rows = build_pending_updates(state.get_guilds_tracking_player(rsn), rsn, category, before, after, diff)
    await storage.write_pending_updates(rows)
    logger.info("%s %s diff: %s", rsn, category, diff)
    return UPDATED


async def rollback_player(*, state, storage, rsn: str, snapshot) -> Dict[str, Dict[str, tuple]]:
    """Accept a sustained regression: force trusted values down to the latest raw reading."""
    changes: Dict[str, Dict[str, tuple]] = {}
    for category in CATEGORIES:
        trusted = state.get_category(rsn, category)
        regressions = find_regressions(trusted, snapshot.get(category))
        if not regressions:
            continue
        for key, (_, raw_value) in regressions.items():
            trusted[key] = raw_value
        state.set_category(rsn, category, trusted)
        await storage.write_player_values(rsn, category, {key: raw for key, (_, raw) in regressions.items()})
        for key, (_, raw_value) in regressions.items():
            await storage.delete_pending_updates_above(rsn, category, key, raw_value)
        changes[category] = regressions

    strikes = state.get_strikes(rsn)
    state.clear_strikes(rsn)

    if changes:
        lines = [
            f"{category}/{key}: {old} -> {new}"
            for category, regressions in changes.items()
            for key, (old, new) in sorted(regressions.items())
        ]
        await notify_maintainers(
            state,
            f"Rolled back {rsn}",
            f"Accepted regression after {strikes} strikes:\n" + "\n".join(lines),
        )
    return changes


async def update_player(*, state, storage, hiscores, rsn: str) -> Dict[str, Any]:
    """Fetch, reconcile and flush a single player. Returns per-category outcomes."""
    try:
        snapshot = await hiscores.fetch_snapshot(rsn)
    except PlayerNotFound:
        logger.info("Player %s not found on the hiscores; skipping", rsn)
        return {"status": "not_found"}
    except HiScoresFormatChanged as e:
        async with state.lock:
            await pause_for_format_change(state=state, storage=storage, error=e)
        return {"status": "format_changed"}

    async with state.lock:
        # Untracked while the request was in flight
        if not state.is_player_tracked_in_any_guilds(rsn):
            logger.info("%s was untracked during its update; dropping the snapshot", rsn)
            return {"status": "untracked"}

        await record_hiscore_status(state=state, storage=storage, rsn=rsn, on_hiscores=snapshot.on_hiscores)
        await record_display_name(state=state, storage=storage, rsn=rsn, display_name=snapshot.display_name)

        results: Dict[str, Any] = {"status": "ok"}
        for category in CATEGORIES:
            results[category] = await update_category(
                state=state, storage=storage, rsn=rsn, category=category, raw=snapshot.get(category)
            )

        if state.get_strikes(rsn) >= ROLLBACK_STRIKE_THRESHOLD:
            results["rollback"] = await rollback_player(state=state, storage=storage, rsn=rsn, snapshot=snapshot)

        guild_ids = state.get_guilds_tracking_player(rsn)

    if UPDATED in (results[c] for c in CATEGORIES):
        for guild_id in guild_ids:
            await flush_pending_updates(state=state, storage=storage, guild_id=guild_id)

    return results


# ==========================================================
# Tick / loop
# ==========================================================
async def run_tick(*, state, storage, hiscores) -> Optional[str]:
    """Poll exactly one player. Returns who was polled (None if nobody is tracked)."""
    rsn = state.next_tracked_player()
    if rsn is None:
        return None
    try:
        await update_player(state=state, storage=storage, hiscores=hiscores, rsn=rsn)
    except DiffError as e:
        logger.error("ERR-%s diff contract violated for %s: %s", new_error_id(), rsn, e)
    except HiScoresError as e:
        # Provider outages hit every player in turn
        warn_ratelimited(logger, key=f"hiscores:{type(e).__name__}", message=f"Hiscores request failed for {rsn}: {e}", every_seconds=600)
    except Exception as e:
        logger.error("ERR-%s update failed for %s: %s", new_error_id(), rsn, e)
    return rsn


async def run_updater_loop(bot, *, state, storage, hiscores, interval: float = REFRESH_INTERVAL) -> None:
    await bot.wait_until_ready()

    logger.info(
        "Updater started (interval=%ss; players=%s; tiers=%s)",
        interval,
        state.player_queue.size(),
        state.player_queue.get_debug_string(),
    )

    loop = asyncio.get_running_loop()
    tick = 0
    while not bot.is_closed():
        if state.is_disabled():
            await asyncio.sleep(interval * DISABLED_INTERVAL_MULTIPLIER)
            continue

        tick += 1
        tick_start = loop.time()
        try:
            rsn = await run_tick(state=state, storage=storage, hiscores=hiscores)

            tick_ms = int((loop.time() - tick_start) * 1000)
            msg = "Tick %s complete (player=%s, %sms, queue=[%s])"
            if tick % TICK_SUMMARY_EVERY == 0:
                logger.info(msg, tick, rsn, tick_ms, state.player_queue.get_debug_string())
                logger.info(
                    "Tier durations: %s (counters=%s; pending rows=%s)",
                    state.player_queue.get_duration_string(),
                    state.player_queue.get_counters(),
                    await storage.count_pending_updates(),
                )
            else:
                logger.debug(msg, tick, rsn, tick_ms, state.player_queue.get_debug_string())
        except Exception as e:
            err = new_error_id()
            logger.error("ERR-%s updater loop error: %s", err, e)

        await asyncio.sleep(max(0.0, interval - (loop.time() - tick_start)))
