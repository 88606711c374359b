"""Snapshot diffing and default resolution.

Trusted maps only ever hold values the provider reported definitively. The
category baseline (level 1, zero kills, ...) is resolved at lookup time and
never merged into storage.
"""

from __future__ import annotations

import math
from typing import Dict, Mapping

from ..constants import CATEGORY_DEFAULTS
from ..errors import InvalidDiff, NegativeDiff, SilentRegression, SubsetViolation

# A decrease down to exactly this value means the player fell off the ranked list
OFF_LIST_SENTINEL = 1


def get_default(category: str) -> int:
    return CATEGORY_DEFAULTS[category]


def resolve_value(values: Mapping[str, int], key: str, category: str) -> int:
    """Value for ``key`` if definitively known, else the category baseline."""
    if key in values:
        return values[key]
    return get_default(category)


def patch_missing(trusted: Mapping[str, int], raw: Mapping[str, int]) -> Dict[str, int]:
    """Fill keys the provider omitted this time with what we already trust."""
    patched = dict(trusted)
    patched.update(raw)
    return patched


def compute_diff(before: Mapping[str, int], after: Mapping[str, int], baseline: int) -> Dict[str, int]:
    """Return ``{key: after - before}`` for every key whose value changed.

    Raises:
        SubsetViolation: ``after`` dropped a key present in ``before``.
        SilentRegression: a value decreased to the off-list sentinel.
        NegativeDiff: a value decreased otherwise.
        InvalidDiff: the difference is not a finite non-negative number.
    """
    missing = [key for key in before if key not in after]
    if missing:
        raise SubsetViolation(sorted(missing))

    diff: Dict[str, int] = {}
    for key, a in after.items():
        b = before.get(key, baseline)
        if not _is_number(a) or not _is_number(b):
            raise InvalidDiff(key, b, a)
        if a == b:
            continue
        if a < b:
            if a == OFF_LIST_SENTINEL:
                raise SilentRegression(key)
            raise NegativeDiff(key, b, a)
        delta = a - b
        if not math.isfinite(delta) or delta < 0:
            raise InvalidDiff(key, b, a)
        diff[key] = int(delta)
    return diff


def find_regressions(trusted: Mapping[str, int], raw: Mapping[str, int]) -> Dict[str, tuple[int, int]]:
    """Keys where the raw reading is lower than trusted state, as ``{key: (trusted, raw)}``."""
    return {key: (trusted[key], value) for key, value in raw.items() if key in trusted and value < trusted[key]}


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
