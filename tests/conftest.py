from __future__ import annotations

import asyncio
import math
from typing import Dict, List, Optional

import pytest

from scapebot.constants import CATEGORIES
from scapebot.services.hiscores import HiScoresSnapshot
from scapebot.services.ledger import PendingUpdate
from scapebot.services.player_queue import PlayerQueue
from scapebot.state import State


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeChannel:
    def __init__(self, channel_id: int = 555, *, fail: bool = False, slow: bool = False) -> None:
        self.id = channel_id
        self.fail = fail
        self.slow = slow
        self.sent: List[list] = []

    async def send(self, *, embeds=None, **kwargs):
        if self.slow:
            # Hand control back to the loop like a real HTTP call would
            await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("Missing Access")
        self.sent.append(list(embeds or []))


class FakeStorage:
    """In-memory stand-in for MySQLStorage with the same upsert/delete semantics."""

    def __init__(self) -> None:
        self.values: Dict[str, Dict[str, Dict[str, int]]] = {c: {} for c in CATEGORIES}
        self.tracked: Dict[int, set] = {}
        self.channels: Dict[int, int] = {}
        self.settings: Dict[int, Dict[str, int]] = {}
        self.pending: Dict[tuple, PendingUpdate] = {}
        self.hiscore_status: Dict[str, bool] = {}
        self.display_names: Dict[str, str] = {}
        self.activity: Dict[str, object] = {}
        self.refresh: Dict[str, object] = {}
        self.misc: Dict[str, str] = {}
        self.fail_display_name_writes = False

    # Trusted snapshots
    async def write_player_values(self, rsn, category, values):
        self.values[category].setdefault(rsn, {}).update(values)

    async def fetch_all_player_values(self, category):
        return {rsn: dict(v) for rsn, v in self.values[category].items()}

    # Tracking / channels / settings
    async def fetch_all_tracked_players(self):
        return {g: sorted(p) for g, p in self.tracked.items()}

    async def insert_tracked_player(self, guild_id, rsn):
        self.tracked.setdefault(guild_id, set()).add(rsn)

    async def delete_tracked_player(self, guild_id, rsn):
        self.tracked.get(guild_id, set()).discard(rsn)

    async def fetch_all_tracking_channels(self):
        return dict(self.channels)

    async def update_tracking_channel(self, guild_id, channel_id):
        self.channels[guild_id] = channel_id

    async def delete_tracking_channel(self, guild_id):
        self.channels.pop(guild_id, None)

    async def fetch_all_guild_settings(self):
        return {g: dict(s) for g, s in self.settings.items()}

    async def write_guild_setting(self, guild_id, setting, value):
        self.settings.setdefault(guild_id, {})[setting] = value

    # Player metadata
    async def fetch_all_hiscore_statuses(self):
        return dict(self.hiscore_status)

    async def write_player_hiscore_status(self, rsn, on_hiscores):
        self.hiscore_status[rsn] = on_hiscores

    async def fetch_all_display_names(self):
        return dict(self.display_names)

    async def write_player_display_name(self, rsn, display_name):
        if self.fail_display_name_writes:
            raise RuntimeError("db down")
        self.display_names[rsn] = display_name

    async def fetch_all_activity_timestamps(self):
        return dict(self.activity)

    async def update_player_activity_timestamp(self, rsn, when):
        previous = self.activity.get(rsn)
        self.activity[rsn] = when if previous is None else max(previous, when)

    async def fetch_all_refresh_timestamps(self):
        return dict(self.refresh)

    async def update_player_refresh_timestamp(self, rsn, when):
        self.refresh[rsn] = when

    # Pending ledger
    async def write_pending_updates(self, updates):
        for u in updates:
            pk = (u.guild_id, u.rsn, u.category, u.key)
            existing = self.pending.get(pk)
            if existing is None:
                self.pending[pk] = u
            else:
                self.pending[pk] = PendingUpdate(
                    guild_id=u.guild_id,
                    rsn=u.rsn,
                    category=u.category,
                    key=u.key,
                    base_value=existing.base_value,
                    new_value=max(existing.new_value, u.new_value),
                )

    async def fetch_pending_updates(self, guild_id):
        rows = [u for pk, u in self.pending.items() if pk[0] == guild_id]
        return sorted(rows, key=lambda u: (u.rsn, u.category, u.key))

    async def delete_pending_update(self, update):
        pk = (update.guild_id, update.rsn, update.category, update.key)
        row = self.pending.get(pk)
        if row is None or row.new_value != update.new_value:
            return False
        del self.pending[pk]
        return True

    async def delete_pending_updates_above(self, rsn, category, key, value):
        doomed = [pk for pk, u in self.pending.items() if pk[1:] == (rsn, category, key) and u.new_value > value]
        for pk in doomed:
            del self.pending[pk]
        return len(doomed)

    async def count_pending_updates(self):
        return len(self.pending)

    # Purges
    async def purge_untracked_player_data(self):
        tracked = set().union(*self.tracked.values()) if self.tracked else set()
        deleted = 0
        for category in CATEGORIES:
            for rsn in [r for r in self.values[category] if r not in tracked]:
                del self.values[category][rsn]
                deleted += 1
        for table in (self.hiscore_status, self.display_names, self.activity, self.refresh):
            for rsn in [r for r in table if r not in tracked]:
                del table[rsn]
                deleted += 1
        for pk in [pk for pk in self.pending if pk[1] not in tracked]:
            del self.pending[pk]
            deleted += 1
        return {"rows": deleted} if deleted else {}

    async def purge_guild_data(self, guild_id):
        self.tracked.pop(guild_id, None)
        self.channels.pop(guild_id, None)
        self.settings.pop(guild_id, None)
        for pk in [pk for pk in self.pending if pk[0] == guild_id]:
            del self.pending[pk]
        return {}

    # Misc
    async def fetch_misc_property(self, name):
        return self.misc.get(name)

    async def write_misc_property(self, name, value):
        self.misc[name] = value


class FakeHiScores:
    def __init__(self) -> None:
        self.responses: Dict[str, object] = {}
        self.calls: List[str] = []

    def set(self, rsn: str, response) -> None:
        self.responses[rsn] = response

    async def fetch_snapshot(self, rsn: str) -> HiScoresSnapshot:
        self.calls.append(rsn)
        response = self.responses[rsn]
        if isinstance(response, Exception):
            raise response
        return response

    async def resolve_display_name(self, rsn: str) -> Optional[str]:
        response = self.responses.get(rsn)
        if isinstance(response, HiScoresSnapshot):
            return response.display_name
        return None


def make_snapshot(*, display_name: Optional[str] = None, on_hiscores: bool = True, **categories) -> HiScoresSnapshot:
    values = {c: dict(categories.get(c, {})) for c in CATEGORIES}
    return HiScoresSnapshot(display_name=display_name, on_hiscores=on_hiscores, categories=values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state(clock) -> State:
    queue = PlayerQueue([("active", 3 * 86400.0), ("inactive", 28 * 86400.0), ("archive", math.inf)], 10, clock=clock)
    return State(player_queue=queue)


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def hiscores() -> FakeHiScores:
    return FakeHiScores()


@pytest.fixture
def snapshot():
    return make_snapshot


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def make_channel():
    return FakeChannel
