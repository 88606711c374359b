"""Exception taxonomy for the updater.

Diff errors are raised by ``services.diff.compute_diff``; hiscores errors by
``services.hiscores.HiScoresClient``. Everything is caught at the per-player
boundary in ``updater.update_player``.
"""

from __future__ import annotations


class DiffError(Exception):
    """Base class for anything that prevents a snapshot diff from being trusted."""


class SubsetViolation(DiffError):
    """The new snapshot dropped keys that were already known."""

    def __init__(self, missing_keys: list[str]):
        self.missing_keys = missing_keys
        super().__init__(f"New snapshot is missing known keys: {', '.join(missing_keys)}")


class InvalidDiff(DiffError):
    def __init__(self, key: str, before: object, after: object):
        self.key = key
        self.before = before
        self.after = after
        super().__init__(f"Invalid {key} diff, '{after}' minus '{before}' is not a valid number")


class NegativeDiff(DiffError):
    """A value appears to have decreased. Expected occasionally; counted as a strike."""

    def __init__(self, key: str, before: int, after: int):
        self.key = key
        self.before = before
        self.after = after
        super().__init__(f"Negative {key} diff, '{after}' minus '{before}' is '{after - before}'")


class SilentRegression(DiffError):
    """The player fell off the ranked list for a metric; not an anomaly and not worth logging."""

    def __init__(self, key: str):
        self.key = key
        super().__init__("")


class HiScoresError(Exception):
    """Base class for metrics provider failures."""


class PlayerNotFound(HiScoresError):
    def __init__(self, rsn: str):
        self.rsn = rsn
        super().__init__(f"Player {rsn!r} not found on the hiscores")


class HiScoresFormatChanged(HiScoresError):
    """The provider payload no longer has the shape we parse. Pauses all updates until resumed."""


class InvalidPlayerName(ValueError):
    def __init__(self, raw: str):
        self.raw = raw
        super().__init__(f"{raw!r} is not a valid player name (1-12 letters, digits, spaces, '-' or '_')")
