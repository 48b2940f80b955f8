"""Deadlines threaded through every blocking call."""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(frozen=True)
class Deadline:
    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def shorten(self, seconds: float) -> Deadline:
        """Return whichever is sooner: this deadline or ``seconds`` from now."""
        return Deadline(min(self.expires_at, time.monotonic() + seconds))
