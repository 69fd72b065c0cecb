"""
Incremental statistics helpers.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field


def rolling_average(average: float, count: int, value: float) -> float:
    """Fold *value* into an average over *count* previous observations."""
    return (average * count + value) / (count + 1)


@dataclass
class RunningAverage:
    """Average of a stream of observations, updated in O(1)."""

    value: float = 0.0
    count: int = 0

    def add(self, observation: float) -> float:
        self.value = rolling_average(self.value, self.count, observation)
        self.count += 1
        return self.value

    def reset(self) -> None:
        self.value = 0.0
        self.count = 0


@dataclass
class HitCounter:
    """Hit/miss tally with an incremental hit rate."""

    hits: int = 0
    misses: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self.hits += 1
            else:
                self.misses += 1

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def reset(self) -> None:
        with self._lock:
            self.hits = 0
            self.misses = 0
