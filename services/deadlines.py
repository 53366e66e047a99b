"""Monotonic deadline helper used for bounded waits (lock acquisition)."""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass
class Deadline:
    """Monotonic deadline tracker.

    ``Deadline(seconds=1.0)`` bounds a polling loop such as the refresh lock
    acquisition; ``next_sleep(interval)`` never sleeps past the deadline.
    """

    seconds: float

    def __post_init__(self) -> None:
        self._deadline = time.monotonic() + max(0.0, float(self.seconds))

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._deadline

    def remaining(self) -> float:
        return max(0.0, self._deadline - time.monotonic())

    def next_sleep(self, interval: float) -> float:
        return min(max(0.0, interval), self.remaining())
