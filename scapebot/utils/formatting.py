"""Small text helpers shared by logs, diagnostics and embeds."""

from __future__ import annotations

from typing import Sequence


def natural_join(items: Sequence[str], conjunction: str = "and") -> str:
    """["a", "b", "c"] -> "a, b, and c"."""
    items = [str(i) for i in items]
    if not items:
        return ""
    if len(items) == 1:
        return items[0]
    if len(items) == 2:
        return f"{items[0]} {conjunction} {items[1]}"
    return f"{', '.join(items[:-1])}, {conjunction} {items[-1]}"


def get_precise_duration_string(seconds: float) -> str:
    """Render a duration using its two most significant units, e.g. "2 hours 5 minutes"."""
    if seconds == float("inf"):
        return "forever"
    total = int(max(0, seconds))
    if total == 0:
        return "no time at all"

    parts = []
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60), ("second", 1)):
        value, total = divmod(total, size)
        if value:
            parts.append(f"{value} {unit}" + ("" if value == 1 else "s"))
    return " ".join(parts[:2])


def pluralize(count: int, noun: str, plural: str | None = None) -> str:
    if count == 1:
        return f"1 {noun}"
    return f"{count:,} {plural or noun + 's'}"
