"""Old School RuneScape hiscores client.

Fetches the JSON "index_lite" payload and splits it into the four metric
categories. Entries reported with rank/score -1 are not definitively known and
are left out of the snapshot entirely (callers patch them from trusted state).
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from ..constants import ACTIVITIES, BOSS_NAMES, BOSSES, CATEGORIES, CLUE_PREFIX, CLUES, SKILL_NAMES, SKILLS
from ..errors import HiScoresError, HiScoresFormatChanged, PlayerNotFound

logger = logging.getLogger("hiscores")

HISCORES_URL = os.getenv(
    "SCAPEBOT_HISCORES_URL",
    "https://secure.runescape.com/m=hiscore_oldschool/index_lite.json",
)
REQUEST_TIMEOUT = float(os.getenv("SCAPEBOT_REQUEST_TIMEOUT", "10"))

_BOSS_SET = set(BOSS_NAMES)


@dataclass
class HiScoresSnapshot:
    display_name: Optional[str]
    on_hiscores: bool
    categories: Dict[str, Dict[str, int]] = field(default_factory=lambda: {c: {} for c in CATEGORIES})

    def get(self, category: str) -> Dict[str, int]:
        return self.categories.get(category, {})


def _require_int(entry: dict, key: str) -> int:
    value = entry.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise HiScoresFormatChanged(f"Hiscores entry {entry.get('name')!r} has non-integer {key}: {value!r}")
    return value


def _clue_key(name: str) -> Optional[str]:
    # "Clue Scrolls (hard)" -> "hard"; the aggregate "(all)" row is derived data
    inner = name[len(CLUE_PREFIX):].strip().strip("()").strip().lower()
    if not inner or inner == "all":
        return None
    return inner


def parse_hiscores_payload(payload: Any) -> HiScoresSnapshot:
    """Turn a raw JSON payload into a snapshot. Raises HiScoresFormatChanged on unexpected shape."""
    if not isinstance(payload, dict):
        raise HiScoresFormatChanged(f"Hiscores payload is not an object: {type(payload).__name__}")
    skills = payload.get("skills")
    activities = payload.get("activities")
    if not isinstance(skills, list) or not isinstance(activities, list):
        raise HiScoresFormatChanged("Hiscores payload is missing 'skills' or 'activities'")

    snapshot = HiScoresSnapshot(display_name=payload.get("name") or None, on_hiscores=False)

    seen_skills = set()
    for entry in skills:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            raise HiScoresFormatChanged(f"Malformed skill entry: {entry!r}")
        name = entry["name"].strip().lower()
        rank = _require_int(entry, "rank")
        level = _require_int(entry, "level")
        xp = _require_int(entry, "xp")
        if name == "overall":
            snapshot.on_hiscores = rank != -1
            continue
        seen_skills.add(name)
        if rank == -1 or level == -1 or xp == -1:
            continue
        if level < 1:
            raise HiScoresError(f"Invalid {name} level {level}")
        snapshot.categories[SKILLS][name] = level

    missing = [s for s in SKILL_NAMES if s not in seen_skills]
    if missing:
        raise HiScoresFormatChanged(f"Hiscores payload is missing skills: {', '.join(missing)}")

    for entry in activities:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            raise HiScoresFormatChanged(f"Malformed activity entry: {entry!r}")
        name = entry["name"].strip()
        rank = _require_int(entry, "rank")
        score = _require_int(entry, "score")
        if rank == -1 or score == -1:
            continue
        if name.startswith(CLUE_PREFIX):
            key = _clue_key(name)
            if key:
                snapshot.categories[CLUES][key] = score
        elif name in _BOSS_SET:
            snapshot.categories[BOSSES][name] = score
        else:
            snapshot.categories[ACTIVITIES][name] = score

    return snapshot


class HiScoresClient:
    """Blocking ``requests`` calls pushed onto a worker thread, like every other HTTP call in the bot."""

    def __init__(self, *, url: str = HISCORES_URL, timeout: float = REQUEST_TIMEOUT, session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, rsn: str) -> HiScoresSnapshot:
        r = self.session.get(self.url, params={"player": rsn}, timeout=self.timeout)
        if r.status_code == 404:
            raise PlayerNotFound(rsn)
        if r.status_code != 200:
            raise HiScoresError(f"Hiscores returned HTTP {r.status_code} for {rsn!r}")
        try:
            payload = r.json()
        except ValueError as e:
            raise HiScoresFormatChanged(f"Hiscores response for {rsn!r} is not JSON: {e}") from e
        return parse_hiscores_payload(payload)

    async def fetch_snapshot(self, rsn: str) -> HiScoresSnapshot:
        return await asyncio.to_thread(self._get, rsn)

    async def resolve_display_name(self, rsn: str) -> Optional[str]:
        """Best effort; returns None instead of raising."""
        try:
            snapshot = await self.fetch_snapshot(rsn)
        except (HiScoresError, requests.RequestException) as e:
            logger.debug("Display name lookup failed for %s: %s", rsn, e)
            return None
        return snapshot.display_name
