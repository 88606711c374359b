"""Tiered activity queue.

Decides, once per refresh tick, which player to poll next. Each tier is an
independent round-robin ring; higher tiers get up to ``min(counter_max, size)``
consecutive turns before deferring to the tier below, so the archive tier is
still reached periodically no matter how busy the upper tiers are.

Promotion only happens through ``mark_active`` and only for players already
in a tier; demotion only happens inside ``next``.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from ..utils.formatting import get_precise_duration_string, natural_join

logger = logging.getLogger("queue")


class CircularQueue:
    """Insertion-ordered membership set with a rotating cursor."""

    def __init__(self, values: Iterable[str] = ()) -> None:
        self._members: set[str] = set()
        self._order: List[str] = []
        self._index = 0
        for value in values:
            self.add(value)

    def add(self, value: str) -> bool:
        if value in self._members:
            return False
        self._members.add(value)
        self._order.append(value)
        return True

    def remove(self, value: str) -> bool:
        if value not in self._members:
            return False

        index = self._order.index(value)
        # Keep the cursor on the same "next" element after the list shifts.
        if self._index > index:
            self._index -= 1

        self._members.discard(value)
        del self._order[index]

        if not self._order:
            self._index = 0
        else:
            self._index %= len(self._order)
        return True

    def next(self) -> Optional[str]:
        if not self._order:
            return None
        value = self._order[self._index]
        self._index = (self._index + 1) % len(self._order)
        return value

    def __contains__(self, value: object) -> bool:
        return value in self._members

    def __len__(self) -> int:
        return len(self._order)

    def is_empty(self) -> bool:
        return not self._order

    def to_sorted_list(self) -> List[str]:
        return sorted(self._members)


@dataclass
class QueueTier:
    label: str
    # Seconds of inactivity after which a resident may be demoted to the next tier
    threshold: float
    queue: CircularQueue = field(default_factory=CircularQueue)
    counter: int = 0


class PlayerQueue:
    def __init__(
        self,
        tiers: List[tuple[str, float]],
        counter_max: int,
        *,
        refresh_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not tiers:
            raise ValueError("PlayerQueue needs at least one tier")
        self._tiers: List[QueueTier] = [QueueTier(label=label, threshold=threshold) for label, threshold in tiers]
        self._last_active: Dict[str, float] = {}
        self.counter_max = counter_max
        self.refresh_interval = refresh_interval
        self._clock = clock

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------
    def add(self, rsn: str) -> bool:
        """Queue a brand-new player at the tail of the lowest tier."""
        if any(rsn in tier.queue for tier in self._tiers):
            return False
        added = self._tiers[-1].queue.add(rsn)
        self._verify_membership(rsn)
        return added

    def remove(self, rsn: str) -> bool:
        removed = False
        for tier in self._tiers:
            if tier.queue.remove(rsn):
                removed = True
        self._last_active.pop(rsn, None)
        self._verify_membership(rsn)
        return removed

    def __contains__(self, rsn: object) -> bool:
        return any(rsn in tier.queue for tier in self._tiers)

    def _tier_cap(self, index: int) -> int:
        """How many consecutive picks a tier gets before deferring downward."""
        return min(self.counter_max, len(self._tiers[index].queue))

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def next(self) -> Optional[str]:
        last_index = len(self._tiers) - 1
        for i, tier in enumerate(self._tiers):
            is_last = i == last_index
            if tier.queue.is_empty() or tier.counter >= self._tier_cap(i):
                tier.counter = 0
                if not is_last:
                    continue

            rsn = tier.queue.next()
            if rsn is None:
                continue

            tier.counter += 1

            if not is_last and self.get_time_since_last_active(rsn) >= tier.threshold:
                lower = self._tiers[i + 1]
                tier.queue.remove(rsn)
                lower.queue.add(rsn)
                self._verify_membership(rsn)
                logger.info("Down-queue %s from %s to %s (%s)", rsn, tier.label, lower.label, self.get_debug_string())

            logger.debug("[Q%s] %s/%s -> %s", i, tier.counter, self._tier_cap(i), rsn)
            return rsn

        if self.size() > 0:
            logger.error("PlayerQueue exhausted every tier without a pick (%s)", self.get_debug_string())
        return None

    def mark_active(self, rsn: str, timestamp: Optional[float] = None) -> None:
        """Record activity for a player and promote it to the tier its recency earns.

        Out-of-order signals (older than what is already recorded) are ignored
        entirely, so a replayed timestamp can never roll recency back.
        """
        if rsn not in self:
            logger.debug("Ignoring activity for %s, not in any tier", rsn)
            return
        new_timestamp = self._clock() if timestamp is None else timestamp
        previous = self._last_active.get(rsn)
        if previous is not None and new_timestamp < previous:
            return

        self._last_active[rsn] = new_timestamp
        since = self.get_time_since_last_active(rsn)

        target: Optional[QueueTier] = None
        for tier in self._tiers:
            if since < tier.threshold:
                target = tier
                break
        if target is None or rsn in target.queue:
            return

        from_label = "-"
        for tier in self._tiers:
            if tier is not target and tier.queue.remove(rsn):
                from_label = tier.label
        target.queue.add(rsn)
        self._verify_membership(rsn)

        # Replays at startup carry explicit timestamps and would only spam the log
        if timestamp is None:
            logger.info("Up-queue %s from %s to %s (%s)", rsn, from_label, target.label, self.get_debug_string())

    def _verify_membership(self, rsn: str) -> None:
        labels = self.get_containing_labels(rsn)
        if len(labels) > 1:
            logger.error("Player %s is present in multiple tiers: %s", rsn, labels)

    # ------------------------------------------------------------------
    # Queries / diagnostics
    # ------------------------------------------------------------------
    def get_last_active(self, rsn: str) -> Optional[float]:
        return self._last_active.get(rsn)

    def has_activity_timestamp(self, rsn: str) -> bool:
        return rsn in self._last_active

    def get_time_since_last_active(self, rsn: str) -> float:
        last = self._last_active.get(rsn)
        if last is None:
            return math.inf
        return self._clock() - last

    def get_containing_labels(self, rsn: str) -> List[str]:
        return [tier.label for tier in self._tiers if rsn in tier.queue]

    def get_containing_label(self, rsn: str) -> Optional[str]:
        labels = self.get_containing_labels(rsn)
        return labels[0] if labels else None

    def get_num_players_by_tier(self) -> List[int]:
        return [len(tier.queue) for tier in self._tiers]

    def get_counters(self) -> List[int]:
        return [tier.counter for tier in self._tiers]

    def size(self) -> int:
        return sum(len(tier.queue) for tier in self._tiers)

    def get_tier_duration(self, index: int) -> float:
        """Estimated seconds to traverse every player of one tier.

        Every pick in this tier costs up to ``cap + 1`` picks in each higher
        tier, and the tier itself yields one extra pick to the tiers below
        after every ``cap`` consecutive picks.
        """
        size = len(self._tiers[index].queue)
        picks = size
        cap = self._tier_cap(index)
        if index < len(self._tiers) - 1 and cap > 0:
            picks += math.ceil(size / cap)
        for j in range(index):
            picks *= self._tier_cap(j) + 1
        return picks * self.refresh_interval

    def get_labeled_durations(self) -> List[tuple[str, str]]:
        return [
            (tier.label, get_precise_duration_string(self.get_tier_duration(i)))
            for i, tier in enumerate(self._tiers)
        ]

    def get_duration_string(self) -> str:
        return ", ".join(f"{duration} ({label})" for label, duration in self.get_labeled_durations())

    def get_debug_string(self) -> str:
        return natural_join([f"{len(tier.queue)} {tier.label}" for tier in self._tiers])

    def to_sorted_list(self) -> List[str]:
        result: List[str] = []
        for tier in self._tiers:
            result.extend(tier.queue.to_sorted_list())
        return sorted(result)
