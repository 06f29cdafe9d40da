"""Soft deadlines for long-running catalog syncs."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class Deadline:
    """Monotonic deadline tracker.

    ``Deadline(seconds=270)`` keeps a sync inside Cloud Run's 300 second hard
    timeout; the sync loop checks ``deadline.expired`` between pages and stops
    with a truncated report instead of being killed mid-write.
    """

    seconds: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def __post_init__(self) -> None:
        self._deadline = self.clock() + max(0.0, float(self.seconds))

    @property
    def expired(self) -> bool:
        return self.clock() >= self._deadline

    def remaining(self) -> float:
        return max(0.0, self._deadline - self.clock())
