# ==========================================================
# ScapeBot – Shared constants
#
# Metric categories, baseline defaults, guild setting keys and
# the scheduler tier layout. Keep this module import-light: it is
# used by the updater, the storage layer and the bot alike.
# ==========================================================

from __future__ import annotations

from typing import Dict, List, Tuple

# ---------------- Metric categories ----------------
SKILLS = "skills"
BOSSES = "bosses"
CLUES = "clues"
ACTIVITIES = "activities"

CATEGORIES: Tuple[str, ...] = (SKILLS, BOSSES, CLUES, ACTIVITIES)

# Baseline for a metric we have never seen. These are never written to storage.
CATEGORY_DEFAULTS: Dict[str, int] = {
    SKILLS: 1,
    BOSSES: 0,
    CLUES: 0,
    ACTIVITIES: 0,
}

# Hiscores order (overall excluded)
SKILL_NAMES: List[str] = [
    "attack", "defence", "strength", "hitpoints", "ranged", "prayer", "magic",
    "cooking", "woodcutting", "fletching", "fishing", "firemaking", "crafting",
    "smithing", "mining", "herblore", "agility", "thieving", "slayer", "farming",
    "runecraft", "hunter", "construction",
]

CLUE_PREFIX = "Clue Scrolls"

BOSS_NAMES: List[str] = [
    "Abyssal Sire", "Alchemical Hydra", "Amoxliatl", "Araxxor", "Artio", "Barrows Chests",
    "Bryophyta", "Callisto", "Calvar'ion", "Cerberus", "Chambers of Xeric",
    "Chambers of Xeric: Challenge Mode", "Chaos Elemental", "Chaos Fanatic",
    "Commander Zilyana", "Corporeal Beast", "Crazy Archaeologist", "Dagannoth Prime",
    "Dagannoth Rex", "Dagannoth Supreme", "Deranged Archaeologist", "Duke Sucellus",
    "General Graardor", "Giant Mole", "Grotesque Guardians", "Hespori", "Kalphite Queen",
    "King Black Dragon", "Kraken", "Kree'Arra", "K'ril Tsutsaroth", "Lunar Chests",
    "Mimic", "Nex", "Nightmare", "Phosani's Nightmare", "Obor", "Phantom Muspah",
    "Sarachnis", "Scorpia", "Scurrius", "Skotizo", "Sol Heredit", "Spindel",
    "Tempoross", "The Gauntlet", "The Corrupted Gauntlet", "The Hueycoatl", "The Leviathan",
    "The Royal Titans", "The Whisperer", "Theatre of Blood", "Theatre of Blood: Hard Mode",
    "Thermonuclear Smoke Devil", "Tombs of Amascut", "Tombs of Amascut: Expert Mode",
    "TzKal-Zuk", "TzTok-Jad", "Vardorvis", "Venenatis", "Vet'ion", "Vorkath",
    "Wintertodt", "Zalcano", "Zulrah",
]

# ---------------- Guild settings ----------------
SKILL_BROADCAST_ONE_THRESHOLD = "skill_broadcast_one_threshold"
SKILL_BROADCAST_FIVE_THRESHOLD = "skill_broadcast_five_threshold"
BOSS_BROADCAST_INTERVAL = "boss_broadcast_interval"
CLUE_BROADCAST_INTERVAL = "clue_broadcast_interval"
ACTIVITY_BROADCAST_INTERVAL = "activity_broadcast_interval"

DEFAULT_GUILD_SETTINGS: Dict[str, int] = {
    SKILL_BROADCAST_ONE_THRESHOLD: 1,
    SKILL_BROADCAST_FIVE_THRESHOLD: 1,
    BOSS_BROADCAST_INTERVAL: 1,
    CLUE_BROADCAST_INTERVAL: 1,
    ACTIVITY_BROADCAST_INTERVAL: 1,
}

# Single-interval categories -> the setting holding their interval
CATEGORY_INTERVAL_SETTINGS: Dict[str, str] = {
    BOSSES: BOSS_BROADCAST_INTERVAL,
    CLUES: CLUE_BROADCAST_INTERVAL,
    ACTIVITIES: ACTIVITY_BROADCAST_INTERVAL,
}

# ---------------- Scheduler ----------------
DAY_SECONDS = 24 * 60 * 60

# (label, inactivity threshold in seconds), highest priority first
PLAYER_QUEUE_TIERS: List[Tuple[str, float]] = [
    ("Active", 3 * DAY_SECONDS),
    ("Inactive", 28 * DAY_SECONDS),
    ("Archive", float("inf")),
]
PLAYER_QUEUE_COUNTER_MAX = 10

# Consecutive negative diffs before a regression is accepted as real
ROLLBACK_STRIKE_THRESHOLD = 20
