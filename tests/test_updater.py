from __future__ import annotations

import asyncio

from scapebot import updater
from scapebot.constants import BOSS_BROADCAST_INTERVAL, BOSSES, CATEGORIES, CLUES, ROLLBACK_STRIKE_THRESHOLD, SKILLS
from scapebot.errors import HiScoresFormatChanged, PlayerNotFound
from scapebot.services import tracking
from scapebot.services.ledger import PendingUpdate, flush_pending_updates
from scapebot.storage import DISABLED_PROPERTY


def _update(state, storage, hiscores, rsn="a"):
    return asyncio.run(updater.update_player(state=state, storage=storage, hiscores=hiscores, rsn=rsn))


def _track(state, storage, rsn="a", guild_id=1, channel=None):
    state.add_tracked_player(guild_id, rsn)
    storage.tracked.setdefault(guild_id, set()).add(rsn)
    if channel is not None:
        state.set_tracking_channel(guild_id, channel)


def test_first_snapshot_primes_without_notifying(state, storage, hiscores, snapshot, channel) -> None:
    _track(state, storage, channel=channel)
    hiscores.set("a", snapshot(skills={"attack": 50}, bosses={"Zulrah": 3}))

    results = _update(state, storage, hiscores)

    assert all(results[c] == updater.PRIMED for c in CATEGORIES)
    assert state.get_category("a", SKILLS) == {"attack": 50}
    assert storage.values[BOSSES] == {"a": {"Zulrah": 3}}
    assert storage.pending == {}
    assert channel.sent == []


def test_level_gain_is_broadcast_end_to_end(state, storage, hiscores, snapshot, channel) -> None:
    _track(state, storage, channel=channel)
    hiscores.set("a", snapshot(skills={"attack": 50}))
    _update(state, storage, hiscores)
    assert state.player_queue.get_containing_label("a") == "archive"

    hiscores.set("a", snapshot(display_name="A Player", skills={"attack": 52}))
    results = _update(state, storage, hiscores)

    assert results[SKILLS] == updater.UPDATED
    assert state.get_category("a", SKILLS) == {"attack": 52}
    assert storage.values[SKILLS] == {"a": {"attack": 52}}
    assert storage.pending == {}
    assert "a" in storage.refresh
    assert state.get_last_refresh("a") is not None
    assert "a" in storage.activity
    assert state.player_queue.get_containing_label("a") == "active"

    assert len(channel.sent) == 1
    [embed] = channel.sent[0]
    assert embed.title.startswith("A Player")
    assert "attack" in embed.description
    assert "52" in embed.description


def test_updates_wait_for_a_channel_and_keep_their_base(state, storage, hiscores, snapshot, make_channel) -> None:
    _track(state, storage)
    hiscores.set("a", snapshot(skills={"attack": 50}))
    _update(state, storage, hiscores)

    hiscores.set("a", snapshot(skills={"attack": 52}))
    _update(state, storage, hiscores)
    hiscores.set("a", snapshot(skills={"attack": 53}))
    _update(state, storage, hiscores)

    assert list(storage.pending.values()) == [PendingUpdate(1, "a", SKILLS, "attack", 50, 53)]

    channel = make_channel(42)
    state.set_tracking_channel(1, channel)
    counts = asyncio.run(flush_pending_updates(state=state, storage=storage, guild_id=1))
    assert counts["sent"] == 1
    assert storage.pending == {}
    assert len(channel.sent) == 1


def test_every_tracking_guild_gets_its_own_row(state, storage, hiscores, snapshot, make_channel) -> None:
    first, second = make_channel(1), make_channel(2)
    _track(state, storage, guild_id=1, channel=first)
    _track(state, storage, guild_id=2, channel=second)
    _track(state, storage, guild_id=3)
    hiscores.set("a", snapshot(bosses={"Zulrah": 3}))
    _update(state, storage, hiscores)

    hiscores.set("a", snapshot(bosses={"Zulrah": 4}))
    _update(state, storage, hiscores)

    assert len(first.sent) == 1
    assert len(second.sent) == 1
    assert list(storage.pending) == [(3, "a", BOSSES, "Zulrah")]


def test_milestone_filter_holds_rows_until_they_pass(state, storage, hiscores, snapshot, channel) -> None:
    _track(state, storage, channel=channel)
    state.set_guild_setting(1, BOSS_BROADCAST_INTERVAL, 10)
    hiscores.set("a", snapshot(bosses={"Zulrah": 4}))
    _update(state, storage, hiscores)

    hiscores.set("a", snapshot(bosses={"Zulrah": 5}))
    _update(state, storage, hiscores)
    assert channel.sent == []
    assert len(storage.pending) == 1

    hiscores.set("a", snapshot(bosses={"Zulrah": 10}))
    _update(state, storage, hiscores)
    assert len(channel.sent) == 1
    assert storage.pending == {}


def test_rows_for_untracked_players_are_purged_on_flush(state, storage, make_channel) -> None:
    channel = make_channel(42)
    state.set_tracking_channel(2, channel)
    storage.pending[(2, "gone", BOSSES, "Zulrah")] = PendingUpdate(2, "gone", BOSSES, "Zulrah", 1, 2)

    counts = asyncio.run(flush_pending_updates(state=state, storage=storage, guild_id=2))

    assert counts["orphaned"] == 1
    assert storage.pending == {}
    assert channel.sent == []


def test_failed_delivery_keeps_rows(state, storage, make_channel) -> None:
    channel = make_channel(42, fail=True)
    _track(state, storage, channel=channel)
    storage.pending[(1, "a", BOSSES, "Zulrah")] = PendingUpdate(1, "a", BOSSES, "Zulrah", 1, 2)

    counts = asyncio.run(flush_pending_updates(state=state, storage=storage, guild_id=1))

    assert counts["failed"] == 1
    assert len(storage.pending) == 1
    assert state.get_problematic_guilds() == [1]


def test_single_bad_reading_is_a_strike_not_an_update(state, storage, hiscores, snapshot, channel) -> None:
    _track(state, storage, channel=channel)
    hiscores.set("a", snapshot(bosses={"Zulrah": 10}, skills={"attack": 50}))
    _update(state, storage, hiscores)

    hiscores.set("a", snapshot(bosses={"Zulrah": 9}, skills={"attack": 51}))
    results = _update(state, storage, hiscores)

    # skills are reconciled before bosses, so the strike survives the tick
    assert results[SKILLS] == updater.UPDATED
    assert results[BOSSES] == updater.NEGATIVE
    assert state.get_category("a", BOSSES) == {"Zulrah": 10}
    assert state.get_category("a", SKILLS) == {"attack": 51}
    assert state.get_strikes("a") == 1


def test_gain_in_a_later_category_clears_the_strike(state, storage, hiscores, snapshot) -> None:
    _track(state, storage)
    hiscores.set("a", snapshot(bosses={"Zulrah": 10}, clues={"hard": 3}))
    _update(state, storage, hiscores)

    hiscores.set("a", snapshot(bosses={"Zulrah": 9}, clues={"hard": 4}))
    results = _update(state, storage, hiscores)

    assert results[BOSSES] == updater.NEGATIVE
    assert results[CLUES] == updater.UPDATED
    assert state.get_category("a", BOSSES) == {"Zulrah": 10}
    assert state.get_strikes("a") == 0


def test_sustained_regression_is_rolled_back(state, storage, hiscores, snapshot, make_channel) -> None:
    maintainer = make_channel(7)
    state.maintainer_channel = maintainer
    _track(state, storage)
    hiscores.set("a", snapshot(bosses={"Zulrah": 10, "Vorkath": 3}))
    _update(state, storage, hiscores)

    hiscores.set("a", snapshot(bosses={"Zulrah": 5, "Vorkath": 3}))
    for _ in range(ROLLBACK_STRIKE_THRESHOLD - 1):
        _update(state, storage, hiscores)
    assert state.get_strikes("a") == ROLLBACK_STRIKE_THRESHOLD - 1
    assert state.get_category("a", BOSSES)["Zulrah"] == 10
    assert maintainer.sent == []

    results = _update(state, storage, hiscores)

    assert results["rollback"] == {BOSSES: {"Zulrah": (10, 5)}}
    assert state.get_category("a", BOSSES) == {"Zulrah": 5, "Vorkath": 3}
    assert storage.values[BOSSES]["a"]["Zulrah"] == 5
    assert state.get_strikes("a") == 0
    assert len(maintainer.sent) == 1
    assert storage.pending == {}


def test_genuine_increase_clears_strikes(state, storage, hiscores, snapshot) -> None:
    _track(state, storage)
    hiscores.set("a", snapshot(bosses={"Zulrah": 10}))
    _update(state, storage, hiscores)

    hiscores.set("a", snapshot(bosses={"Zulrah": 9}))
    _update(state, storage, hiscores)
    assert state.get_strikes("a") == 1

    hiscores.set("a", snapshot(bosses={"Zulrah": 11}))
    _update(state, storage, hiscores)
    assert state.get_strikes("a") == 0


def test_falling_off_the_list_is_silent(state, storage, hiscores, snapshot, channel) -> None:
    _track(state, storage, channel=channel)
    hiscores.set("a", snapshot(skills={"attack": 50}))
    _update(state, storage, hiscores)

    hiscores.set("a", snapshot(skills={"attack": 1}))
    results = _update(state, storage, hiscores)

    assert results[SKILLS] == updater.SILENT
    assert state.get_strikes("a") == 0
    assert state.get_category("a", SKILLS) == {"attack": 50}
    assert channel.sent == []


def test_omitted_values_are_not_regressions(state, storage, hiscores, snapshot) -> None:
    _track(state, storage)
    hiscores.set("a", snapshot(bosses={"Zulrah": 10, "Vorkath": 4}))
    _update(state, storage, hiscores)

    hiscores.set("a", snapshot(bosses={"Zulrah": 10}))
    results = _update(state, storage, hiscores)

    assert results[BOSSES] == updater.UNCHANGED
    assert state.get_category("a", BOSSES) == {"Zulrah": 10, "Vorkath": 4}
    assert state.get_strikes("a") == 0


def test_format_change_pauses_everything(state, storage, hiscores, snapshot, make_channel) -> None:
    first, second = make_channel(1), make_channel(2)
    _track(state, storage, guild_id=1, channel=first)
    _track(state, storage, guild_id=2, channel=second)
    hiscores.set("a", HiScoresFormatChanged("unexpected payload"))

    assert _update(state, storage, hiscores) == {"status": "format_changed"}
    assert state.is_disabled() is True
    assert storage.misc[DISABLED_PROPERTY] == "1"
    assert len(first.sent) == 1
    assert len(second.sent) == 1

    _update(state, storage, hiscores)
    assert len(first.sent) == 1


def test_missing_player_is_skipped(state, storage, hiscores) -> None:
    _track(state, storage)
    hiscores.set("a", PlayerNotFound("a"))
    assert _update(state, storage, hiscores) == {"status": "not_found"}
    assert not state.has_category("a", SKILLS)


def test_hiscore_status_and_display_name_are_recorded(state, storage, hiscores, snapshot) -> None:
    _track(state, storage)
    hiscores.set("a", snapshot(display_name="A Player", on_hiscores=False))
    _update(state, storage, hiscores)

    assert state.is_player_on_hiscores("a") is False
    assert storage.hiscore_status == {"a": False}
    assert state.get_display_name("a") == "A Player"
    assert storage.display_names == {"a": "A Player"}


def test_display_name_failures_are_not_fatal(state, storage, hiscores, snapshot) -> None:
    _track(state, storage)
    storage.fail_display_name_writes = True
    hiscores.set("a", snapshot(display_name="A Player", skills={"attack": 5}))

    results = _update(state, storage, hiscores)

    assert results[SKILLS] == updater.PRIMED
    assert state.has_display_name("a") is False


def test_run_tick_contains_errors(state, storage, hiscores) -> None:
    _track(state, storage)
    hiscores.set("a", RuntimeError("connection reset"))

    rsn = asyncio.run(updater.run_tick(state=state, storage=storage, hiscores=hiscores))

    assert rsn == "a"
    assert hiscores.calls == ["a"]


def test_run_tick_with_nobody_tracked(state, storage, hiscores) -> None:
    assert asyncio.run(updater.run_tick(state=state, storage=storage, hiscores=hiscores)) is None
    assert hiscores.calls == []


def test_rollback_drops_pending_rows_above_the_accepted_value(state, storage, hiscores, snapshot) -> None:
    _track(state, storage)
    hiscores.set("a", snapshot(bosses={"Zulrah": 10, "Vorkath": 3}))
    _update(state, storage, hiscores)
    hiscores.set("a", snapshot(bosses={"Zulrah": 12, "Vorkath": 4}))
    _update(state, storage, hiscores)
    assert len(storage.pending) == 2

    hiscores.set("a", snapshot(bosses={"Zulrah": 5, "Vorkath": 4}))
    for _ in range(ROLLBACK_STRIKE_THRESHOLD):
        results = _update(state, storage, hiscores)

    assert results["rollback"] == {BOSSES: {"Zulrah": (12, 5)}}
    assert list(storage.pending) == [(1, "a", BOSSES, "Vorkath")]


def test_untrack_during_a_tick_waits_for_the_tick(state, storage, hiscores, snapshot) -> None:
    class SlowStorage(type(storage)):
        async def update_player_refresh_timestamp(self, rsn, when):
            for _ in range(3):
                await asyncio.sleep(0)
            await super().update_player_refresh_timestamp(rsn, when)

    slow = SlowStorage()
    _track(state, slow)
    hiscores.set("a", snapshot(skills={"attack": 50}))
    _update(state, slow, hiscores)
    hiscores.set("a", snapshot(skills={"attack": 51}))

    async def scenario():
        return await asyncio.gather(
            updater.update_player(state=state, storage=slow, hiscores=hiscores, rsn="a"),
            tracking.untrack_player(state=state, storage=slow, guild_id=1, raw_rsn="a"),
        )

    results, (_, removed) = asyncio.run(scenario())

    assert results[SKILLS] == updater.UPDATED
    assert removed is True
    assert not state.is_player_tracked_in_any_guilds("a")
    assert "a" not in state.player_queue
    assert "a" not in slow.activity
    assert "a" not in slow.refresh


def test_snapshot_for_a_player_untracked_mid_fetch_is_dropped(state, storage, hiscores, snapshot) -> None:
    class UntrackingHiScores(type(hiscores)):
        async def fetch_snapshot(self, rsn):
            result = await super().fetch_snapshot(rsn)
            state.remove_tracked_player(1, rsn)
            return result

    _track(state, storage)
    untracking = UntrackingHiScores()
    untracking.set("a", snapshot(skills={"attack": 50}))

    assert _update(state, storage, untracking) == {"status": "untracked"}
    assert not state.has_category("a", SKILLS)
    assert storage.values[SKILLS] == {}
    assert "a" not in state.player_queue


def test_concurrent_flushes_deliver_a_row_once(state, storage, make_channel) -> None:
    channel = make_channel(42, slow=True)
    _track(state, storage, channel=channel)
    storage.pending[(1, "a", BOSSES, "Zulrah")] = PendingUpdate(1, "a", BOSSES, "Zulrah", 1, 2)

    async def scenario():
        return await asyncio.gather(
            flush_pending_updates(state=state, storage=storage, guild_id=1),
            tracking.set_tracking_channel(state=state, storage=storage, guild_id=1, channel=channel),
        )

    first, second = asyncio.run(scenario())

    assert first["sent"] + second["sent"] == 1
    assert len(channel.sent) == 1
    assert storage.pending == {}
